"""
TenantSync relay API

Single endpoint routed by ?action= (or "action" in the JSON body).
`register` is public; every other action authenticates with X-API-Key.
"""

import logging
from datetime import date, datetime

from flask import Blueprint, request, jsonify

from config.settings import get_settings
from shared.database import get_db_connection
from shared.log_sanitizer import sanitize_for_log
from shared.package_store import (
    PackageStore,
    PackageTransferError,
    parse_chunk_index,
)
from shared.tenant_manager import TenantManager, CONFLICT_RESOLUTIONS, SYNC_DIRECTIONS

logger = logging.getLogger(__name__)

tenantsync_bp = Blueprint('tenantsync', __name__)

API_KEY_HEADER = 'X-API-Key'


def _serialize(row):
    """JSON-safe copy of a database row"""
    if row is None:
        return None
    result = {}
    for key, value in dict(row).items():
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif value is not None and not isinstance(value, (str, int, float, bool, dict, list)):
            value = str(value)
        result[key] = value
    return result


def _post_required():
    return jsonify({'error': 'POST required'}), 405


def _manifest_flow_count(manifest):
    components = manifest.get('components') if isinstance(manifest, dict) else None
    flows = components.get('flows') if isinstance(components, dict) else None
    return len(flows) if isinstance(flows, list) else 0


@tenantsync_bp.route('/api/tenantsync', methods=['GET', 'POST'])
def tenantsync_handler():
    """Authenticate the caller and dispatch to the requested action"""
    body = request.get_json(silent=True) or {}
    action = request.args.get('action') or body.get('action')

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        manager = TenantManager(conn)

        if action == 'register':
            return handle_register(conn, manager, body)

        api_key = request.headers.get(API_KEY_HEADER)
        if not api_key:
            return jsonify({'error': 'API key required'}), 401

        customer = manager.validate_api_key(api_key)
        if not customer:
            return jsonify({'error': 'Invalid API key'}), 401

        handler = ACTION_HANDLERS.get(action)
        if not handler:
            return jsonify({'error': 'Unknown action', 'validActions': VALID_ACTIONS}), 400

        return handler(conn, manager, customer, body)

    except PackageTransferError as e:
        conn.rollback()
        return jsonify({'error': str(e)}), e.status_code
    except Exception as e:
        conn.rollback()
        logger.error(f"TenantSync error ({sanitize_for_log(action)}): {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()


def handle_register(conn, manager, body):
    """Create a trial customer and hand back its API key once"""
    if request.method != 'POST':
        return _post_required()

    company_name = body.get('company_name')
    contact_email = body.get('contact_email')
    if not company_name or not contact_email:
        return jsonify({'error': 'company_name and contact_email required'}), 400

    if manager.email_registered(contact_email):
        return jsonify({'error': 'Email already registered'}), 409

    customer, api_key = manager.register_customer(company_name, contact_email, body.get('contact_name'))
    conn.commit()

    return jsonify({
        'success': True,
        'customer': _serialize(customer),
        'api_key': api_key,
        'warning': 'Save your API key now - it cannot be retrieved later!'
    }), 201


def handle_status(conn, manager, customer, body):
    status = manager.get_status(customer)
    status['customer']['id'] = str(status['customer']['id'])
    return jsonify(status), 200


def handle_pairs(conn, manager, customer, body):
    pairs = manager.list_pairs(customer['id'])
    return jsonify({'pairs': [_serialize(pair) for pair in pairs]}), 200


def handle_create_pair(conn, manager, customer, body):
    """Create a sync pair within the customer's tier limits"""
    if request.method != 'POST':
        return _post_required()

    pair_name = body.get('pair_name')
    source_tenant_id = body.get('source_tenant_id')
    target_tenant_id = body.get('target_tenant_id')
    if not pair_name or not source_tenant_id or not target_tenant_id:
        return jsonify({'error': 'pair_name, source_tenant_id, target_tenant_id required'}), 400

    sync_direction = body.get('sync_direction') or 'one_way'
    if sync_direction not in SYNC_DIRECTIONS:
        return jsonify({'error': f'sync_direction must be one of {list(SYNC_DIRECTIONS)}'}), 400

    if manager.count_pairs(customer['id']) >= customer['max_sync_pairs']:
        return jsonify({'error': 'Sync pair limit reached', 'limit': customer['max_sync_pairs']}), 403

    if sync_direction == 'bidirectional' and not customer['bidirectional_enabled']:
        return jsonify({'error': 'Bidirectional sync requires Enterprise tier'}), 403

    pair = manager.create_pair(
        customer['id'], pair_name, source_tenant_id, target_tenant_id,
        source_environment_id=body.get('source_environment_id'),
        target_environment_id=body.get('target_environment_id'),
        source_dataverse_org=body.get('source_dataverse_org'),
        target_dataverse_org=body.get('target_dataverse_org'),
        sync_direction=sync_direction,
        sync_frequency=body.get('sync_frequency')
    )
    conn.commit()

    return jsonify({'success': True, 'pair': _serialize(pair)}), 201


def handle_upload(conn, manager, customer, body):
    """Queue a package: inline when small, manifest-first when chunks follow"""
    if request.method != 'POST':
        return _post_required()

    sync_pair_id = body.get('sync_pair_id')
    manifest = body.get('manifest')
    package_base64 = body.get('package_base64') or None
    if not sync_pair_id or not manifest:
        return jsonify({'error': 'sync_pair_id and manifest required'}), 400

    if not manager.get_pair(customer['id'], sync_pair_id):
        return jsonify({'error': 'Sync pair not found'}), 404

    store = PackageStore(conn, get_settings().transfer)
    entry = store.create_entry(
        customer['id'], sync_pair_id, manifest, package_base64,
        direction=body.get('direction') or 'inbound'
    )

    manager.bump_usage(customer['id'], syncs_initiated=1)
    manager.log_audit(customer['id'], sync_pair_id, 'sync_upload_received', {
        'queue_id': str(entry['queue_id']),
        'has_package': entry['has_package'],
        'package_size': entry['package_size'],
        'flows': _manifest_flow_count(manifest)
    })
    conn.commit()

    return jsonify({
        'success': True,
        'queue_id': str(entry['queue_id']),
        'status': entry['status'],
        'has_package': entry['has_package'],
        'message': 'Package stored successfully' if entry['has_package']
        else 'Manifest queued (use upload-chunk for large packages)'
    }), 202


def handle_upload_chunk(conn, manager, customer, body):
    if request.method != 'POST':
        return _post_required()

    queue_id = body.get('queue_id')
    chunk_index = body.get('chunk_index')
    chunk_data = body.get('chunk_data')
    if not queue_id or chunk_index is None or not chunk_data:
        return jsonify({'error': 'queue_id, chunk_index, chunk_data required'}), 400

    store = PackageStore(conn, get_settings().transfer)
    entry = store.get_entry(customer['id'], queue_id)
    if not entry:
        return jsonify({'error': 'Queue entry not found'}), 404

    result = store.store_chunk(entry, chunk_index, chunk_data, body.get('total_chunks'))
    conn.commit()

    return jsonify({'success': True, **result}), 200


def handle_upload_complete(conn, manager, customer, body):
    """Close a chunked upload and record its aggregate size"""
    if request.method != 'POST':
        return _post_required()

    queue_id = body.get('queue_id')
    if not queue_id:
        return jsonify({'error': 'queue_id required'}), 400

    store = PackageStore(conn, get_settings().transfer)
    entry = store.get_entry(customer['id'], queue_id)
    if not entry:
        return jsonify({'error': 'Queue entry not found'}), 404

    result = store.complete_upload(entry)
    manager.log_audit(customer['id'], entry['sync_pair_id'], 'chunked_upload_completed', {
        'queue_id': str(queue_id),
        'total_chunks': result['total_chunks'],
        'total_size': result['total_size_bytes'],
        'missing_indices': result['missing_indices']
    })
    conn.commit()

    result['queue_id'] = str(result['queue_id'])
    return jsonify({'success': True, **result}), 200


def handle_download(conn, manager, customer, body):
    """Latest completed inbound package for a sync pair"""
    sync_pair_id = request.args.get('sync_pair_id') or body.get('sync_pair_id')
    if not sync_pair_id:
        return jsonify({'error': 'sync_pair_id required'}), 400

    store = PackageStore(conn, get_settings().transfer)
    entry = store.latest_package(customer['id'], sync_pair_id)
    if not entry:
        return jsonify({'available': False, 'message': 'No packages ready'}), 200

    result = store.describe_package(entry)
    result['package']['queue_id'] = str(result['package']['queue_id'])
    return jsonify(result), 200


def handle_download_chunk(conn, manager, customer, body):
    queue_id = request.args.get('queue_id') or body.get('queue_id')
    chunk_index = request.args.get('chunk_index', body.get('chunk_index'))
    if not queue_id or chunk_index is None:
        return jsonify({'error': 'queue_id and chunk_index required'}), 400

    index = parse_chunk_index(chunk_index)

    store = PackageStore(conn, get_settings().transfer)
    if not store.get_entry(customer['id'], queue_id):
        return jsonify({'error': 'Queue entry not found'}), 404

    chunk_data = store.get_chunk(queue_id, index)
    if chunk_data is None:
        return jsonify({'error': 'Chunk not found'}), 404

    return jsonify({'queue_id': queue_id, 'chunk_index': index, 'chunk_data': chunk_data}), 200


def handle_conflicts(conn, manager, customer, body):
    conflicts = manager.list_unresolved_conflicts(customer['id'])
    return jsonify({'conflicts': [_serialize(c) for c in conflicts]}), 200


def handle_resolve(conn, manager, customer, body):
    if request.method != 'POST':
        return _post_required()

    conflict_id = body.get('conflict_id')
    resolution = body.get('resolution')
    if not conflict_id or not resolution:
        return jsonify({'error': 'conflict_id and resolution required'}), 400
    if resolution not in CONFLICT_RESOLUTIONS:
        return jsonify({'error': 'Invalid resolution'}), 400

    conflict = manager.resolve_conflict(customer, conflict_id, resolution)
    if not conflict:
        return jsonify({'error': 'Conflict not found'}), 404
    conn.commit()

    return jsonify({'success': True, 'conflict': _serialize(conflict)}), 200


def handle_ledger(conn, manager, customer, body):
    sync_pair_id = request.args.get('sync_pair_id') or body.get('sync_pair_id')
    if not sync_pair_id:
        return jsonify({'error': 'sync_pair_id required'}), 400

    ledger = manager.get_ledger(customer['id'], sync_pair_id)
    return jsonify({
        'sync_pair_id': sync_pair_id,
        'flows': [_serialize(row) for row in ledger],
        'total': len(ledger)
    }), 200


def handle_sync_complete(conn, manager, customer, body):
    """Record a sync run reported by the desktop app"""
    if request.method != 'POST':
        return _post_required()

    status = body.get('status')
    if not status:
        return jsonify({'error': 'status required (success or failed)'}), 400

    try:
        history = manager.record_sync_result(customer['id'], body)
    except ValueError as e:
        conn.rollback()
        return jsonify({'error': str(e)}), 400
    conn.commit()

    logger.info(f"Sync {sanitize_for_log(status)} recorded for customer {customer['id']}")
    return jsonify({
        'success': True,
        'history_id': str(history['id']) if history else None,
        'message': f'Sync {status} recorded'
    }), 200


ACTION_HANDLERS = {
    'status': handle_status,
    'pairs': handle_pairs,
    'create-pair': handle_create_pair,
    'upload': handle_upload,
    'upload-chunk': handle_upload_chunk,
    'upload-complete': handle_upload_complete,
    'download': handle_download,
    'download-chunk': handle_download_chunk,
    'conflicts': handle_conflicts,
    'resolve': handle_resolve,
    'ledger': handle_ledger,
    'sync-complete': handle_sync_complete,
}

VALID_ACTIONS = ['register'] + list(ACTION_HANDLERS)
