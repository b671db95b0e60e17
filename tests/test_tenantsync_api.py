"""
Tests for the TenantSync relay endpoint: API key auth, action routing and the
chunked package protocol.
"""

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from backend_api import app
from config.settings import Settings, TransferSettings
from shared.tenant_manager import generate_api_key
from mock_db import make_connection, executed_sql, executed_params

API_KEY = generate_api_key()

CUSTOMER = {
    'id': 'cust-1',
    'company_name': 'Contoso',
    'subscription_tier': 'starter',
    'subscription_status': 'trial',
    'max_sync_pairs': 1,
    'max_flows_per_pair': 25,
    'bidirectional_enabled': False,
}

PAIR = {'id': 'pair-1', 'customer_id': 'cust-1', 'pair_name': 'Dev to Prod'}


def _small_settings():
    settings = Settings()
    settings.transfer = TransferSettings(max_inline_size=10, chunk_size=4)
    return settings


def _queue_entry(**overrides):
    entry = {
        'id': 'queue-1', 'customer_id': 'cust-1', 'sync_pair_id': 'pair-1',
        'direction': 'inbound', 'status': 'pending', 'has_inline_data': False,
        'package_size_bytes': 0, 'total_chunks': 0, 'chunks_received': 0
    }
    entry.update(overrides)
    return entry


@patch('api.tenantsync.get_settings', _small_settings)
@patch('api.tenantsync.get_db_connection')
class TestTenantSyncApi(unittest.TestCase):

    def setUp(self):
        self.client = app.test_client()

    def _call(self, method, action, body=None, query=None, key=API_KEY):
        headers = {'X-API-Key': key} if key else {}
        params = {'action': action}
        params.update(query or {})
        if method == 'GET':
            return self.client.get('/api/tenantsync', query_string=params, headers=headers)
        return self.client.post('/api/tenantsync', query_string=params, json=body or {}, headers=headers)

    # --- auth and routing -------------------------------------------------

    def test_key_required(self, mock_db):
        mock_db.return_value, _ = make_connection()
        response = self._call('GET', 'status', key=None)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json(), {'error': 'API key required'})

    def test_invalid_key(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[None])
        response = self._call('GET', 'status')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json(), {'error': 'Invalid API key'})

    def test_error_log_keeps_action_on_one_line(self, mock_db):
        conn, cursor = make_connection()
        cursor.execute.side_effect = Exception('connection reset')
        mock_db.return_value = conn

        with self.assertLogs('api.tenantsync', level='ERROR') as logs:
            response = self._call('GET', 'status\nINFO forged entry')

        self.assertEqual(response.status_code, 500)
        self.assertEqual(len(logs.records), 1)
        self.assertNotIn('\n', logs.records[0].getMessage())
        self.assertIn('status INFO forged entry', logs.records[0].getMessage())

    def test_unknown_action_lists_valid_actions(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER])
        response = self._call('GET', 'teleport')
        self.assertEqual(response.status_code, 400)
        body = response.get_json()
        self.assertEqual(body['error'], 'Unknown action')
        self.assertIn('upload-chunk', body['validActions'])
        self.assertIn('register', body['validActions'])

    def test_action_from_body(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER], fetchall=[[]])
        response = self.client.post('/api/tenantsync', json={'action': 'pairs'}, headers={'X-API-Key': API_KEY})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'pairs': []})

    def test_database_unavailable(self, mock_db):
        mock_db.return_value = None
        response = self._call('GET', 'status')
        self.assertEqual(response.status_code, 500)

    # --- register ---------------------------------------------------------

    def test_register_returns_key_once(self, mock_db):
        row = {'id': 'cust-2', 'company_name': 'Fabrikam', 'subscription_tier': 'starter',
               'max_sync_pairs': 1, 'max_flows_per_pair': 25}
        mock_db.return_value, _ = make_connection(fetchone=[None, row])

        response = self._call('POST', 'register', {'company_name': 'Fabrikam', 'contact_email': 'it@fabrikam.com'}, key=None)

        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertRegex(body['api_key'], r'^ts_live_[0-9a-f]{48}$')
        self.assertEqual(body['customer']['company_name'], 'Fabrikam')

    def test_register_duplicate_email(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[{'id': 'cust-1'}])
        response = self._call('POST', 'register', {'company_name': 'Contoso', 'contact_email': 'it@contoso.com'}, key=None)
        self.assertEqual(response.status_code, 409)

    def test_register_requires_post(self, mock_db):
        mock_db.return_value, _ = make_connection()
        self.assertEqual(self._call('GET', 'register', key=None).status_code, 405)

    # --- pairs ------------------------------------------------------------

    def test_create_pair_limit(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, {'count': 1}])
        response = self._call('POST', 'create-pair', {
            'pair_name': 'Dev to Prod', 'source_tenant_id': 'a', 'target_tenant_id': 'b'
        })
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json(), {'error': 'Sync pair limit reached', 'limit': 1})

    def test_bidirectional_needs_tier(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, {'count': 0}])
        response = self._call('POST', 'create-pair', {
            'pair_name': 'Dev to Prod', 'source_tenant_id': 'a', 'target_tenant_id': 'b',
            'sync_direction': 'bidirectional'
        })
        self.assertEqual(response.status_code, 403)

    def test_create_pair(self, mock_db):
        created = dict(PAIR, created_at=datetime(2025, 5, 1, tzinfo=timezone.utc))
        conn, _ = make_connection(fetchone=[CUSTOMER, {'count': 0}, created])
        mock_db.return_value = conn

        response = self._call('POST', 'create-pair', {
            'pair_name': 'Dev to Prod', 'source_tenant_id': 'a', 'target_tenant_id': 'b'
        })

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['pair']['created_at'], '2025-05-01T00:00:00+00:00')
        conn.commit.assert_called_once()

    # --- upload -----------------------------------------------------------

    def test_inline_upload(self, mock_db):
        conn, cursor = make_connection(fetchone=[CUSTOMER, PAIR, {'id': 'queue-1'}])
        mock_db.return_value = conn

        response = self._call('POST', 'upload', {
            'sync_pair_id': 'pair-1', 'manifest': {'components': {'flows': [{}, {}]}}, 'package_base64': 'QUJD'
        })

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.get_json()['status'], 'completed')
        self.assertTrue(response.get_json()['has_package'])
        statements = executed_sql(cursor)
        self.assertTrue(any('syncs_initiated' in s for s in statements))
        audit = executed_params(cursor)[-1]
        self.assertEqual(audit[2], 'sync_upload_received')
        self.assertEqual(audit[3].adapted['flows'], 2)

    def test_manifest_first_upload(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, PAIR, {'id': 'queue-1'}])
        response = self._call('POST', 'upload', {'sync_pair_id': 'pair-1', 'manifest': {'solution': 'Core'}})
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.get_json()['status'], 'pending')

    def test_oversize_inline_upload(self, mock_db):
        conn, _ = make_connection(fetchone=[CUSTOMER, PAIR])
        mock_db.return_value = conn

        response = self._call('POST', 'upload', {
            'sync_pair_id': 'pair-1', 'manifest': {'solution': 'Core'}, 'package_base64': 'A' * 11
        })

        self.assertEqual(response.status_code, 413)
        self.assertIn('upload-chunk', response.get_json()['error'])
        conn.commit.assert_not_called()

    def test_non_string_package_is_client_error(self, mock_db):
        conn, _ = make_connection(fetchone=[CUSTOMER, PAIR])
        mock_db.return_value = conn

        response = self._call('POST', 'upload', {
            'sync_pair_id': 'pair-1', 'manifest': {'a': 1}, 'package_base64': 12345
        })

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['error'], 'package_base64 must be a string')
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_upload_foreign_pair(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, None])
        response = self._call('POST', 'upload', {'sync_pair_id': 'pair-9', 'manifest': {'a': 1}})
        self.assertEqual(response.status_code, 404)

    def test_upload_requires_fields(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER])
        response = self._call('POST', 'upload', {'sync_pair_id': 'pair-1'})
        self.assertEqual(response.status_code, 400)

    # --- chunks -----------------------------------------------------------

    def test_upload_chunk(self, mock_db):
        conn, _ = make_connection(fetchone=[CUSTOMER, _queue_entry(), {'count': 1}])
        mock_db.return_value = conn

        response = self._call('POST', 'upload-chunk', {
            'queue_id': 'queue-1', 'chunk_index': 0, 'chunk_data': 'ABCD', 'total_chunks': 3
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {
            'success': True, 'chunk_index': 0, 'chunks_received': 1, 'total_chunks': 3
        })
        conn.commit.assert_called_once()

    def test_upload_chunk_after_completion(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, _queue_entry(status='completed')])
        response = self._call('POST', 'upload-chunk', {'queue_id': 'queue-1', 'chunk_index': 0, 'chunk_data': 'ABCD'})
        self.assertEqual(response.status_code, 409)

    def test_upload_chunk_negative_index(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, _queue_entry()])
        response = self._call('POST', 'upload-chunk', {'queue_id': 'queue-1', 'chunk_index': -1, 'chunk_data': 'ABCD'})
        self.assertEqual(response.status_code, 400)

    def test_upload_chunk_foreign_entry(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, None])
        response = self._call('POST', 'upload-chunk', {'queue_id': 'queue-9', 'chunk_index': 0, 'chunk_data': 'ABCD'})
        self.assertEqual(response.status_code, 404)

    def test_upload_complete(self, mock_db):
        rows = [{'chunk_index': 0, 'size': 4}, {'chunk_index': 1, 'size': 4}, {'chunk_index': 2, 'size': 2}]
        conn, cursor = make_connection(
            fetchone=[CUSTOMER, _queue_entry(status='processing', total_chunks=3)],
            fetchall=[rows]
        )
        mock_db.return_value = conn

        response = self._call('POST', 'upload-complete', {'queue_id': 'queue-1'})

        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body['total_chunks'], 3)
        self.assertEqual(body['total_size_bytes'], 10)
        self.assertEqual(body['missing_indices'], [])
        self.assertEqual(executed_params(cursor)[-1][2], 'chunked_upload_completed')

    def test_download_nothing_ready(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, None])
        response = self._call('GET', 'download', query={'sync_pair_id': 'pair-1'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'available': False, 'message': 'No packages ready'})

    def test_download_chunked(self, mock_db):
        entry = {'id': 'queue-1', 'manifest': {'solution': 'Core'}, 'package_data': None,
                 'package_size_bytes': 10, 'total_chunks': 3,
                 'created_at': datetime(2025, 5, 1, tzinfo=timezone.utc)}
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, entry])

        response = self._call('GET', 'download', query={'sync_pair_id': 'pair-1'})

        body = response.get_json()
        self.assertEqual(body['transfer_mode'], 'chunked')
        self.assertEqual(body['package']['total_chunks'], 3)

    def test_download_requires_pair(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER])
        self.assertEqual(self._call('GET', 'download').status_code, 400)

    def test_download_chunk(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, _queue_entry(), {'chunk_data': 'EFGH'}])
        response = self._call('GET', 'download-chunk', query={'queue_id': 'queue-1', 'chunk_index': '1'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'queue_id': 'queue-1', 'chunk_index': 1, 'chunk_data': 'EFGH'})

    def test_download_missing_chunk(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, _queue_entry(), None])
        response = self._call('GET', 'download-chunk', query={'queue_id': 'queue-1', 'chunk_index': '7'})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'error': 'Chunk not found'})

    def test_download_chunk_foreign_entry(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, None])
        response = self._call('GET', 'download-chunk', query={'queue_id': 'queue-9', 'chunk_index': '0'})
        self.assertEqual(response.get_json(), {'error': 'Queue entry not found'})

    # --- conflicts, ledger, sync reports ---------------------------------

    def test_resolve_invalid(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER])
        response = self._call('POST', 'resolve', {'conflict_id': 'conf-1', 'resolution': 'both'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {'error': 'Invalid resolution'})

    def test_resolve_unknown_conflict(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, None])
        response = self._call('POST', 'resolve', {'conflict_id': 'conf-9', 'resolution': 'skip'})
        self.assertEqual(response.status_code, 404)

    def test_ledger(self, mock_db):
        rows = [{'flow_name': 'A'}, {'flow_name': 'B'}]
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER], fetchall=[rows])
        response = self._call('GET', 'ledger', query={'sync_pair_id': 'pair-1'})
        self.assertEqual(response.get_json(), {'sync_pair_id': 'pair-1', 'flows': rows, 'total': 2})

    def test_sync_complete_requires_status(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER])
        response = self._call('POST', 'sync-complete', {'sync_pair_id': 'pair-1'})
        self.assertEqual(response.status_code, 400)

    def test_sync_complete_rejects_long_status(self, mock_db):
        conn, cursor = make_connection(fetchone=[CUSTOMER])
        mock_db.return_value = conn
        response = self._call('POST', 'sync-complete', {'status': 'partially-succeeded-with-warnings'})
        self.assertEqual(response.status_code, 400)
        self.assertIn('status', response.get_json()['error'])
        conn.commit.assert_not_called()

    def test_sync_complete_rejects_non_numeric_duration(self, mock_db):
        conn, _ = make_connection(fetchone=[CUSTOMER])
        mock_db.return_value = conn
        response = self._call('POST', 'sync-complete', {'status': 'success', 'duration_seconds': 'slow'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['error'], 'duration_seconds must be a non-negative number')
        conn.rollback.assert_called_once()

    def test_sync_complete(self, mock_db):
        conn, _ = make_connection(fetchone=[CUSTOMER, {'id': 'hist-1'}])
        mock_db.return_value = conn
        response = self._call('POST', 'sync-complete', {'sync_pair_id': 'pair-1', 'status': 'success', 'flows_activated': 3})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['history_id'], 'hist-1')
        conn.commit.assert_called_once()

    def test_status(self, mock_db):
        mock_db.return_value, _ = make_connection(fetchone=[CUSTOMER, {'count': 1}, None, {'count': 0}])
        response = self._call('GET', 'status')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['usage']['sync_pairs'], 1)


if __name__ == '__main__':
    unittest.main()
