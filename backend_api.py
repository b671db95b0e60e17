"""
Get Flowing / TenantSync Backend API
Handles user auth, flow generation, billing, the TenantSync relay and the waitlist
"""

from flask import Flask, jsonify
from flask_cors import CORS
from datetime import datetime, timezone
import logging

from config.settings import get_settings
from api.auth import auth_bp
from api.generate_flow import generate_flow_bp
from api.stripe_billing import stripe_bp
from api.subscription import subscription_bp
from api.tenantsync import tenantsync_bp
from api.waitlist import waitlist_bp

settings = get_settings()

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Waitlist views carry their own origin allow-list
CORS(app,
     resources={r"/api/(?!waitlist).*": {"origins": "*"}},
     methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
     allow_headers=["Content-Type", "Authorization", "X-API-Key"])

app.register_blueprint(auth_bp)
app.register_blueprint(generate_flow_bp)
app.register_blueprint(stripe_bp)
app.register_blueprint(subscription_bp)
app.register_blueprint(tenantsync_bp)
app.register_blueprint(waitlist_bp)

validation = settings.validate_settings()
for warning in validation['warnings']:
    logger.warning(f"Configuration: {warning}")
for error in validation['errors']:
    logger.error(f"Configuration: {error}")


@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({'status': 'healthy', 'timestamp': datetime.now(timezone.utc).isoformat()}), 200


@app.errorhandler(404)
def not_found(error):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({'error': 'Method not allowed'}), 405


if __name__ == '__main__':
    import argparse
    parser = argparse.ArgumentParser()
    parser.add_argument('--port', type=int, default=5000, help='Port to run the server on')
    args = parser.parse_args()
    app.run(host='0.0.0.0', port=args.port, debug=True)
