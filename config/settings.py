import os
from typing import Dict, Any, List
from dataclasses import dataclass, field

DEFAULT_ANTHROPIC_MODEL = 'claude-sonnet-4-20250514'


@dataclass
class TransferSettings:
    """Settings for TenantSync package transfer"""

    # Packages up to this many encoded characters are stored inline (4MB base64 ~ 3MB binary)
    max_inline_size: int = 4 * 1024 * 1024
    # Clients split larger packages into parts of this many encoded characters
    chunk_size: int = 3 * 1024 * 1024

    # Upload directions a queue entry may carry
    directions: List[str] = field(default_factory=lambda: ['inbound', 'outbound'])


@dataclass
class GenerationSettings:
    """Settings for workflow generation through the LLM provider"""

    api_url: str = 'https://api.anthropic.com/v1/messages'
    api_version: str = '2023-06-01'
    model: str = DEFAULT_ANTHROPIC_MODEL
    max_tokens: int = 4000
    timeout_seconds: int = 120


class Settings:
    """Main settings class for the Get Flowing / TenantSync backend"""

    def __init__(self):
        self.transfer = TransferSettings()
        self.generation = GenerationSettings(
            model=os.getenv('ANTHROPIC_MODEL', DEFAULT_ANTHROPIC_MODEL)
        )
        self.api_keys = self._load_api_keys()
        self.urls = self._setup_urls()
        self.waitlist = self._setup_waitlist()
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    def _load_api_keys(self) -> Dict[str, str]:
        """Load API keys and secrets from environment variables"""
        return {
            'anthropic_api_key': os.getenv('ANTHROPIC_API_KEY', ''),
            'stripe_secret_key': os.getenv('STRIPE_SECRET_KEY', ''),
            'stripe_webhook_secret': os.getenv('STRIPE_WEBHOOK_SECRET', ''),
            'jwt_secret': os.getenv('JWT_SECRET', 'change-this-secret-key'),
        }

    def _setup_urls(self) -> Dict[str, str]:
        """Setup public URLs"""
        app_url = os.getenv('APP_URL', 'http://localhost:3000').rstrip('/')
        return {
            'app_url': app_url,
            'checkout_success_url': f"{app_url}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            'checkout_cancel_url': f"{app_url}/pricing",
            'portal_return_url': f"{app_url}/pages/dashboard.html",
        }

    def _setup_waitlist(self) -> Dict[str, Any]:
        """Setup waitlist access control"""
        origins = os.getenv(
            'WAITLIST_ALLOWED_ORIGINS',
            'https://tenantsync.io,https://www.tenantsync.io,http://localhost,http://127.0.0.1'
        )
        return {
            'secret': os.getenv('WAITLIST_SECRET', ''),
            'allowed_origins': [o.strip() for o in origins.split(',') if o.strip()],
        }

    def validate_settings(self) -> Dict[str, Any]:
        """Validate settings configuration"""
        validation_results = {
            'valid': True,
            'errors': [],
            'warnings': []
        }

        if self.transfer.chunk_size > self.transfer.max_inline_size:
            validation_results['errors'].append(
                f"Chunk size ({self.transfer.chunk_size}) "
                f"above inline limit ({self.transfer.max_inline_size})"
            )
            validation_results['valid'] = False

        if self.api_keys['jwt_secret'] == 'change-this-secret-key':
            validation_results['warnings'].append("JWT_SECRET not set, using development secret")

        if not self.api_keys['anthropic_api_key']:
            validation_results['warnings'].append("No Anthropic API key provided")

        if not self.api_keys['stripe_secret_key']:
            validation_results['warnings'].append("No Stripe secret key provided")

        if not self.api_keys['stripe_webhook_secret']:
            validation_results['warnings'].append("No Stripe webhook secret provided")

        if not (os.getenv('DATABASE_URL') or os.getenv('PGHOST')):
            validation_results['warnings'].append("No database configured")

        return validation_results


def get_settings() -> Settings:
    """Build settings from the current environment"""
    return Settings()
