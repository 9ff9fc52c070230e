"""Service configuration.

Reads environment variables (and a local ``.env``) once at process start and
exposes them as a single ``Settings`` object that is passed into the ledger,
the cart store, the order coordinator and the HTTP layer.
"""

import os
from decimal import Decimal
from pathlib import Path
from functools import lru_cache
from typing import FrozenSet
from dotenv import load_dotenv


# parse_roles: Turns the raw "role,role" string into a set of role names.
def parse_roles(raw: str) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    return frozenset(r.strip() for r in raw.split(',') if r.strip())


# get_settings: Returns the (cached) single Settings instance.
@lru_cache
def get_settings():
    return Settings()


class Settings:
    """Groups every configuration value used by the service.

    Initialised from environment variables. Includes credential signing,
    reservation expiry, payment retry policy and the PayPal endpoint.
    """
    def __init__(self, **overrides):
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'ecommerce.db'
        self.database_url = os.getenv('TX_DB_URL', f"sqlite:///{default_db_path}")
        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change-me-to-a-long-random-value')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', '60'))
        self.default_roles = parse_roles(os.getenv('DEFAULT_ROLES', 'user'))
        self.admin_username = os.getenv('ADMIN_USERNAME', 'admin')
        self.admin_password = os.getenv('ADMIN_PASSWORD', 'admin')

        # Inventory holds
        self.reservation_ttl_minutes = int(os.getenv('RESERVATION_TTL_MIN', '15'))
        self.reconcile_interval = int(os.getenv('RECONCILE_INTERVAL_SEC', '60'))

        # Payment provider
        self.payment_max_attempts = int(os.getenv('PAYMENT_MAX_ATTEMPTS', '3'))
        self.payment_backoff_seconds = float(os.getenv('PAYMENT_BACKOFF_SEC', '0.5'))
        self.request_timeout = float(os.getenv('REQUEST_TIMEOUT', '3'))
        self.paypal_base_url = os.getenv('PAYPAL_BASE_URL', 'https://api-m.sandbox.paypal.com')
        self.paypal_client_id = os.getenv('PAYPAL_CLIENT_ID', '')
        self.paypal_client_secret = os.getenv('PAYPAL_CLIENT_SECRET', '')
        # Where PayPal sends the buyer back after approving or cancelling
        self.paypal_return_url = os.getenv('PAYPAL_RETURN_URL', 'http://localhost:8000/payments/paypal/return')
        self.paypal_cancel_url = os.getenv('PAYPAL_CANCEL_URL', 'http://localhost:8000/payments/paypal/cancel')
        self.currency = os.getenv('CURRENCY', 'USD')
        self.money_quantum = Decimal('0.01')

        # None lets logging_config pick a level from ENVIRONMENT
        self.log_level = os.getenv('LOG_LEVEL', '').upper() or None

        # Explicit keyword overrides win over the environment (tests, scripts).
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)
        self._frozen = True

    def __setattr__(self, key, value):
        if getattr(self, "_frozen", False):
            raise AttributeError(f"Settings are read-only once built: {key}")
        super().__setattr__(key, value)
