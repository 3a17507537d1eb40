import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/billing.db")).resolve()
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.stripe_webhook_tolerance = self._get_int("STRIPE_WEBHOOK_TOLERANCE", default=300)
        self.stripe_timeout_seconds = self._get_int("STRIPE_TIMEOUT_SECONDS", default=10)
        self.stripe_price_ids: Dict[str, str] = {
            "free-trial": os.getenv("STRIPE_PRICE_FREE_TRIAL", ""),
            "monthly": os.getenv("STRIPE_PRICE_MONTHLY", ""),
            "annual": os.getenv("STRIPE_PRICE_ANNUAL", ""),
            "family": os.getenv("STRIPE_PRICE_FAMILY", ""),
        }
        self.stripe_portal_configuration = os.getenv("STRIPE_CUSTOMER_PORTAL_CONFIG") or None
        self.trial_period_days = self._get_int("TRIAL_PERIOD_DAYS", default=7)
        self.jwt_secret = os.getenv("JWT_SECRET", "change-me")
        self.jwt_expiration_hours = self._get_int("JWT_EXPIRATION_HOURS", default=24)
        self.verify_retry_after_seconds = self._get_int("VERIFY_RETRY_AFTER_SECONDS", default=5)
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.frontend_base_url = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000")
        # Accounts with full access regardless of billing, e.g. shared demo logins
        self.demo_account_emails = self._get_list("DEMO_ACCOUNT_EMAILS")
        self.cors_allow_origins = self._get_list("CORS_ALLOW_ORIGINS") or ["*"]

    @staticmethod
    def _get_list(key: str) -> List[str]:
        value = os.getenv(key, "")
        return [item.strip() for item in value.split(",") if item.strip()]

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc
