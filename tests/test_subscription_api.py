"""
Tests for the signed-in user's subscription summary.
"""

import os
import unittest
from datetime import datetime
from unittest.mock import patch

from backend_api import app
from shared.auth_utils import create_token
from mock_db import make_connection

TEST_ENV = {'JWT_SECRET': 'unit-test-secret'}

USER = {
    'id': 'user-1', 'email': 'jane@example.com', 'subscription_tier': 'pro',
    'flows_generated_this_month': 12, 'total_flows_generated': 40
}


@patch.dict(os.environ, TEST_ENV)
class TestSubscriptionApi(unittest.TestCase):

    def setUp(self):
        self.client = app.test_client()
        with patch.dict(os.environ, TEST_ENV):
            token = create_token('user-1', 'jane@example.com')
        self.headers = {'Authorization': f'Bearer {token}'}

    def test_requires_session(self):
        self.assertEqual(self.client.get('/api/user/subscription').status_code, 401)

    @patch('api.subscription.get_db_connection')
    def test_unknown_user(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[None])
        response = self.client.get('/api/user/subscription', headers=self.headers)
        self.assertEqual(response.status_code, 404)

    @patch('api.subscription.get_db_connection')
    def test_summary(self, mock_db):
        flows = [
            {'flow_name': 'Approvals', 'created_at': datetime(2025, 3, 2, 10, 0), 'success': True},
            {'flow_name': 'Broken', 'created_at': datetime(2025, 3, 1, 9, 0), 'success': False},
        ]
        subscription = {
            'stripe_subscription_id': 'sub_1', 'tier': 'pro',
            'current_period_end': datetime(2025, 4, 1), 'cancel_at_period_end': None
        }
        conn, _ = make_connection(fetchone=[USER, subscription], fetchall=[flows])
        mock_db.return_value = conn

        response = self.client.get('/api/user/subscription', headers=self.headers)

        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body['tier'], 'pro')
        self.assertEqual(body['flowsThisMonth'], 12)
        self.assertEqual(body['totalFlows'], 40)
        self.assertEqual(body['remaining'], 38)
        self.assertEqual([flow['status'] for flow in body['recentFlows']], ['completed', 'failed'])
        self.assertEqual(body['recentFlows'][0]['createdAt'], '2025-03-02T10:00:00')
        self.assertEqual(body['subscription'], {
            'stripeSubscriptionId': 'sub_1', 'tier': 'pro',
            'currentPeriodEnd': '2025-04-01T00:00:00', 'cancelAtPeriodEnd': False
        })
        self.assertEqual(body['limits'], {'free': 3, 'pro': 50, 'enterprise': 999999})
        self.assertTrue(body['nextResetDate'].endswith('-01'))
        conn.close.assert_called_once()

    @patch('api.subscription.get_db_connection')
    def test_free_user_over_allowance(self, mock_db):
        user = dict(USER, subscription_tier=None, flows_generated_this_month=5, total_flows_generated=None)
        mock_db.return_value, _ = make_connection(fetchone=[user, None], fetchall=[[]])

        body = self.client.get('/api/user/subscription', headers=self.headers).get_json()

        self.assertEqual(body['tier'], 'free')
        self.assertEqual(body['remaining'], 0)
        self.assertEqual(body['totalFlows'], 0)
        self.assertIsNone(body['subscription'])
        self.assertEqual(body['recentFlows'], [])


if __name__ == '__main__':
    unittest.main()
