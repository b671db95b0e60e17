"""
TenantSync Customer Manager
Handles customer registration, API keys, sync pairs, conflicts, usage metrics and the audit trail
"""

import hashlib
import math
import logging
import secrets

from psycopg2 import sql
from psycopg2.extras import Json

from shared.pricing_config import (
    TENANTSYNC_ACTIVE_STATUSES,
    TENANTSYNC_DEFAULT_TIER,
    get_tenantsync_limits,
)

logger = logging.getLogger(__name__)

API_KEY_PREFIX = 'ts_live_'
API_KEY_DISPLAY_PREFIX_LENGTH = 12

CONFLICT_RESOLUTIONS = ('keep_a', 'keep_b', 'merge', 'skip')
SYNC_DIRECTIONS = ('one_way', 'bidirectional')

# Width of sync_history.status
SYNC_STATUS_MAX_LENGTH = 20
# Counters land in INTEGER columns
REPORT_NUMBER_MAX = 2 ** 31 - 1

# Counters in ts_usage_metrics that handlers may bump
USAGE_COUNTERS = (
    'syncs_initiated',
    'syncs_completed',
    'syncs_failed',
    'flows_synced',
    'conflicts_resolved',
)


def generate_api_key():
    """Generate a new customer API key"""
    return API_KEY_PREFIX + secrets.token_hex(24)


def hash_api_key(api_key):
    return hashlib.sha256(api_key.encode('utf-8')).hexdigest()


def _report_number(report, key, cast):
    """Non-negative counter or duration from a client sync report; missing means 0"""
    value = report.get(key)
    if value is None or value == '':
        return cast(0)
    try:
        number = cast(value)
        finite = math.isfinite(number)
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f'{key} must be a non-negative number')
    if isinstance(value, bool) or not finite or not 0 <= number <= REPORT_NUMBER_MAX:
        raise ValueError(f'{key} must be a non-negative number')
    return number


class TenantManager:
    """
    TenantSync customer data for one database connection.
    The caller owns the connection and commits.
    """

    def __init__(self, conn):
        self.conn = conn

    # ------------------------------------------------------------------
    # Customers and API keys
    # ------------------------------------------------------------------
    def validate_api_key(self, api_key):
        """
        Find the active customer owning an API key

        Returns:
            dict: Customer row or None for unknown keys and inactive customers
        """
        if not api_key or not api_key.startswith(API_KEY_PREFIX):
            return None

        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM ts_customers
            WHERE api_key_hash = %s
            AND subscription_status IN %s
        """, (hash_api_key(api_key), TENANTSYNC_ACTIVE_STATUSES))
        return cursor.fetchone()

    def email_registered(self, contact_email):
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT id FROM ts_customers WHERE contact_email = %s
        """, (contact_email,))
        return cursor.fetchone() is not None

    def register_customer(self, company_name, contact_email, contact_name=None):
        """
        Create a trial customer on the default tier

        Returns:
            tuple: (customer row, plaintext API key). The key is not stored.
        """
        api_key = generate_api_key()
        tier = TENANTSYNC_DEFAULT_TIER
        limits = get_tenantsync_limits(tier)

        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO ts_customers (
                company_name, contact_email, contact_name,
                api_key_hash, api_key_prefix,
                subscription_tier, subscription_status,
                max_sync_pairs, max_flows_per_pair, bidirectional_enabled
            ) VALUES (%s, %s, %s, %s, %s, %s, 'trial', %s, %s, %s)
            RETURNING id, company_name, subscription_tier, max_sync_pairs, max_flows_per_pair
        """, (
            company_name, contact_email, contact_name,
            hash_api_key(api_key), api_key[:API_KEY_DISPLAY_PREFIX_LENGTH],
            tier,
            limits['max_sync_pairs'], limits['max_flows_per_pair'], limits['bidirectional_enabled']
        ))
        customer = cursor.fetchone()

        self.log_audit(customer['id'], None, 'customer_registered', {
            'company': company_name, 'tier': tier
        })

        logger.info(f"Registered TenantSync customer {customer['id']} on {tier} tier")
        return customer, api_key

    # ------------------------------------------------------------------
    # Audit trail and usage metrics
    # ------------------------------------------------------------------
    def log_audit(self, customer_id, sync_pair_id, action, details):
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO ts_audit_log (customer_id, sync_pair_id, action, details)
            VALUES (%s, %s, %s, %s)
        """, (customer_id, sync_pair_id, action, Json(details)))

    def bump_usage(self, customer_id, **increments):
        """
        Add to today's usage counters, creating the row on first use

        Example:
            manager.bump_usage(customer_id, syncs_completed=1, flows_synced=12)
        """
        unknown = set(increments) - set(USAGE_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown usage counters: {sorted(unknown)}")
        if not increments:
            return

        columns = list(increments)
        query = sql.SQL("""
            INSERT INTO ts_usage_metrics (customer_id, date, {columns})
            VALUES (%s, CURRENT_DATE, {values})
            ON CONFLICT (customer_id, date)
            DO UPDATE SET {updates}
        """).format(
            columns=sql.SQL(', ').join(sql.Identifier(c) for c in columns),
            values=sql.SQL(', ').join(sql.Placeholder() for _ in columns),
            updates=sql.SQL(', ').join(
                sql.SQL('{col} = ts_usage_metrics.{col} + EXCLUDED.{col}').format(col=sql.Identifier(c))
                for c in columns
            )
        )
        cursor = self.conn.cursor()
        cursor.execute(query, [customer_id] + [int(increments[c] or 0) for c in columns])

    def get_status(self, customer):
        """Customer summary with limits and today's usage"""
        customer_id = customer['id']
        cursor = self.conn.cursor()

        cursor.execute("""
            SELECT COUNT(*) AS count FROM ts_sync_pairs WHERE customer_id = %s
        """, (customer_id,))
        pair_count = int(cursor.fetchone()['count'])

        cursor.execute("""
            SELECT * FROM ts_usage_metrics
            WHERE customer_id = %s AND date = CURRENT_DATE
        """, (customer_id,))
        usage = cursor.fetchone() or {}

        cursor.execute("""
            SELECT COUNT(*) AS count FROM ts_conflicts
            WHERE customer_id = %s AND resolution = 'unresolved'
        """, (customer_id,))
        conflicts_pending = int(cursor.fetchone()['count'])

        return {
            'customer': {
                'id': customer_id,
                'company_name': customer['company_name'],
                'tier': customer['subscription_tier'],
                'status': customer['subscription_status']
            },
            'limits': {
                'max_sync_pairs': customer['max_sync_pairs'],
                'max_flows_per_pair': customer['max_flows_per_pair'],
                'bidirectional_enabled': customer['bidirectional_enabled']
            },
            'usage': {
                'sync_pairs': pair_count,
                'syncs_today': usage.get('syncs_initiated') or 0,
                'flows_synced_today': usage.get('flows_synced') or 0,
                'conflicts_pending': conflicts_pending
            }
        }

    # ------------------------------------------------------------------
    # Sync pairs
    # ------------------------------------------------------------------
    def list_pairs(self, customer_id):
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT
                id, pair_name,
                source_tenant_id, source_environment_id, source_dataverse_org,
                target_tenant_id, target_environment_id, target_dataverse_org,
                sync_direction, sync_frequency,
                last_sync_at, next_sync_at, status, flows_synced
            FROM ts_sync_pairs
            WHERE customer_id = %s
            ORDER BY created_at DESC
        """, (customer_id,))
        return cursor.fetchall()

    def get_pair(self, customer_id, sync_pair_id):
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM ts_sync_pairs
            WHERE id = %s AND customer_id = %s
        """, (sync_pair_id, customer_id))
        return cursor.fetchone()

    def count_pairs(self, customer_id):
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT COUNT(*) AS count FROM ts_sync_pairs WHERE customer_id = %s
        """, (customer_id,))
        return int(cursor.fetchone()['count'])

    def create_pair(self, customer_id, pair_name, source_tenant_id, target_tenant_id,
                    source_environment_id=None, target_environment_id=None,
                    source_dataverse_org=None, target_dataverse_org=None,
                    sync_direction=None, sync_frequency=None):
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO ts_sync_pairs (
                customer_id, pair_name,
                source_tenant_id, source_environment_id, source_dataverse_org,
                target_tenant_id, target_environment_id, target_dataverse_org,
                sync_direction, sync_frequency
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """, (
            customer_id, pair_name,
            source_tenant_id, source_environment_id or f"Default-{source_tenant_id}", source_dataverse_org,
            target_tenant_id, target_environment_id or f"Default-{target_tenant_id}", target_dataverse_org,
            sync_direction or 'one_way', sync_frequency or 'manual'
        ))
        pair = cursor.fetchone()

        self.log_audit(customer_id, pair['id'], 'sync_pair_created', {'pair_name': pair_name})
        return pair

    # ------------------------------------------------------------------
    # Conflicts and version ledger
    # ------------------------------------------------------------------
    def list_unresolved_conflicts(self, customer_id):
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT c.*, sp.pair_name
            FROM ts_conflicts c
            JOIN ts_sync_pairs sp ON c.sync_pair_id = sp.id
            WHERE c.customer_id = %s AND c.resolution = 'unresolved'
            ORDER BY c.created_at DESC
        """, (customer_id,))
        return cursor.fetchall()

    def resolve_conflict(self, customer, conflict_id, resolution):
        """
        Record a conflict resolution

        Returns:
            dict: Updated conflict row or None if the conflict is not the customer's
        """
        if resolution not in CONFLICT_RESOLUTIONS:
            raise ValueError(f"Invalid resolution: {resolution}")

        cursor = self.conn.cursor()
        cursor.execute("""
            UPDATE ts_conflicts
            SET resolution = %s, resolved_at = NOW(), resolved_by = %s
            WHERE id = %s AND customer_id = %s
            RETURNING *
        """, (resolution, customer['company_name'], conflict_id, customer['id']))
        conflict = cursor.fetchone()
        if not conflict:
            return None

        self.log_audit(customer['id'], conflict['sync_pair_id'], 'conflict_resolved', {
            'conflict_id': str(conflict_id), 'resolution': resolution
        })
        self.bump_usage(customer['id'], conflicts_resolved=1)
        return conflict

    def get_ledger(self, customer_id, sync_pair_id):
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM ts_version_ledger
            WHERE customer_id = %s AND sync_pair_id = %s
            ORDER BY flow_name ASC
        """, (customer_id, sync_pair_id))
        return cursor.fetchall()

    # ------------------------------------------------------------------
    # Sync results reported by the desktop app
    # ------------------------------------------------------------------
    def record_sync_result(self, customer_id, report):
        """
        Store a sync run reported by the desktop app

        Args:
            customer_id: Customer ID
            report (dict): status, sync_pair_id and optional flow counters

        Returns:
            dict: The sync_history row

        Raises:
            ValueError: for a missing or over-long status or non-numeric counters
        """
        status = report.get('status')
        if not isinstance(status, str) or not status or len(status) > SYNC_STATUS_MAX_LENGTH:
            raise ValueError(f'status must be a string of at most {SYNC_STATUS_MAX_LENGTH} characters')

        sync_pair_id = report.get('sync_pair_id') or None
        flows_activated = _report_number(report, 'flows_activated', int)
        flows_processed = _report_number(report, 'flows_processed', int)
        duration_seconds = _report_number(report, 'duration_seconds', float)

        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO sync_history (
                sync_pair_id, started_at, completed_at,
                flows_processed, status, error_message
            ) VALUES (
                %s, NOW() - INTERVAL '1 second' * %s, NOW(),
                %s, %s, %s
            ) RETURNING *
        """, (
            sync_pair_id,
            duration_seconds,
            flows_processed,
            status,
            report.get('error_message') or None
        ))
        history = cursor.fetchone()

        if sync_pair_id:
            cursor.execute("""
                UPDATE ts_sync_pairs
                SET last_sync_at = NOW(),
                    last_sync_status = %s,
                    flows_synced = COALESCE(flows_synced, 0) + %s
                WHERE id = %s AND customer_id = %s
            """, (status, flows_activated, sync_pair_id, customer_id))

        if status == 'success':
            self.bump_usage(customer_id, syncs_completed=1, flows_synced=flows_activated)
        else:
            self.bump_usage(customer_id, syncs_failed=1)

        self.log_audit(customer_id, sync_pair_id, 'sync_completed', {
            key: report.get(key) for key in (
                'status', 'flows_processed', 'flows_activated', 'flows_skipped', 'flows_failed',
                'duration_seconds', 'solution_name', 'source_org', 'target_org', 'app_version'
            )
        })
        return history
