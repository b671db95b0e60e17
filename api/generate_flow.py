"""
Flow generation handlers

/api/generate-flow is the open demo endpoint; /api/generate-flow-protected
meters generation against the signed-in user's subscription tier.
"""

import logging

from flask import Blueprint, request, jsonify, g

from shared.auth_utils import require_auth
from shared.database import get_db_connection
from shared.flow_generator import FlowGenerationError, generate_flow
from shared.log_sanitizer import sanitize_for_log, sanitize_exception_for_db
from shared.usage_meter import UsageMeter

logger = logging.getLogger(__name__)

generate_flow_bp = Blueprint('generate_flow', __name__)

DEFAULT_FLOW_NAME = 'Untitled Flow'


def _read_prompt():
    data = request.get_json(silent=True) or {}
    prompt = data.get('prompt')
    if not isinstance(prompt, str) or not prompt.strip():
        return None, None
    return prompt, data.get('flowName') or None


@generate_flow_bp.route('/api/generate-flow', methods=['POST'])
def generate_flow_public():
    """Generate a flow without usage metering"""
    try:
        prompt, flow_name = _read_prompt()
        if prompt is None:
            return jsonify({'error': 'Prompt is required'}), 400

        logger.info("Generating flow (public endpoint)")
        result = generate_flow(prompt, flow_name)

        return jsonify({
            'success': True,
            'flow': result['flow'],
            'rawJson': result['raw_json']
        }), 200

    except FlowGenerationError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception as e:
        logger.error(f"Flow generation error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500


@generate_flow_bp.route('/api/generate-flow-protected', methods=['POST'])
@require_auth
def generate_flow_protected():
    """Generate a flow for the signed-in user, enforcing the monthly allowance"""
    prompt, flow_name = _read_prompt()
    if prompt is None:
        return jsonify({'error': 'Prompt is required'}), 400

    user_id = g.current_user['user_id']

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    meter = UsageMeter(conn)
    try:
        try:
            usage = meter.check_usage_limit(user_id)
        except LookupError:
            return jsonify({'error': 'User not found'}), 404

        if not usage['can_generate']:
            return jsonify({
                'error': 'Usage limit exceeded',
                'limit': usage['limit'],
                'used': usage['used'],
                'tier': usage['tier'],
                'upgradeRequired': True
            }), 429

        logger.info(f"Generating flow for user {user_id} ({usage['tier']})")
        result = generate_flow(prompt, flow_name)

        meter.record_flow(
            user_id,
            flow_name or DEFAULT_FLOW_NAME,
            prompt,
            result['flow'],
            result['tokens_used'],
            result['generation_time']
        )
        conn.commit()

        return jsonify({
            'success': True,
            'flow': result['flow'],
            'rawJson': result['raw_json'],
            'usage': {
                'tier': usage['tier'],
                'limit': usage['limit'],
                'used': usage['used'] + 1,
                'remaining': usage['remaining'] - 1
            },
            'stats': {
                'tokensUsed': result['tokens_used'],
                'generationTime': result['generation_time']
            }
        }), 200

    except FlowGenerationError as e:
        conn.rollback()
        _log_generation_error(conn, meter, user_id, prompt, e)
        return jsonify(e.to_dict()), e.status_code
    except Exception as e:
        conn.rollback()
        logger.error(f"Flow generation error: {sanitize_for_log(e)}")
        _log_generation_error(conn, meter, user_id, prompt, e)
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()


def _log_generation_error(conn, meter, user_id, prompt, error):
    try:
        meter.log_usage(user_id, 'flow_generation_error', {
            'error': sanitize_exception_for_db(error),
            'prompt': prompt[:100]
        })
        conn.commit()
    except Exception as log_error:
        conn.rollback()
        logger.error(f"Failed to log generation error: {sanitize_for_log(log_error)}")
