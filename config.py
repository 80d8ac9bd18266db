import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        environment: str,
        timezone: str,
        jwt_secret: str,
        token_expiry_secs: int,
        salt_rounds: int,
        cookie_name: str,
        csrf_cookie_name: str,
        email_hmac_key: str,
        email_encryption_key: str,
        reset_token_expiry_secs: int,
        app_name: str,
        app_base_url: str,
        email_from: str,
        resend_api_key: Optional[str] = None,
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_pass: Optional[str] = None,
        rate_limit_enabled: bool = True,
    ) -> None:
        self.database_url = database_url
        self.environment = environment
        self.timezone = timezone
        self.jwt_secret = jwt_secret
        self.token_expiry_secs = token_expiry_secs
        self.salt_rounds = salt_rounds
        self.cookie_name = cookie_name
        self.csrf_cookie_name = csrf_cookie_name
        self.email_hmac_key = email_hmac_key
        self.email_encryption_key = email_encryption_key
        self.reset_token_expiry_secs = reset_token_expiry_secs
        self.app_name = app_name
        self.app_base_url = app_base_url.rstrip("/")
        self.email_from = email_from
        self.resend_api_key = resend_api_key
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        # Throttling can only be bypassed outside production.
        self.rate_limit_enabled = rate_limit_enabled or self.is_production

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def email_encryption_key_bytes(self) -> bytes:
        try:
            key = bytes.fromhex(self.email_encryption_key)
        except ValueError as exc:
            raise ValueError("EMAIL_ENCRYPTION_KEY must be hex encoded") from exc
        if len(key) != 32:
            raise ValueError("EMAIL_ENCRYPTION_KEY must be 32 bytes (64 hex chars)")
        return key


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CYCLES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "cycles.db"
    database_url = os.getenv("CYCLES_DATABASE_URL", f"sqlite:///{default_db}")
    environment = os.getenv("CYCLES_ENV", "development").strip().lower()
    return Settings(
        database_url=database_url,
        environment=environment,
        timezone=os.getenv("CYCLES_TIMEZONE", "Europe/Berlin"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
        token_expiry_secs=int(os.getenv("TOKEN_EXPIRY_SECS", str(24 * 60 * 60))),
        salt_rounds=int(os.getenv("SALT_ROUNDS", "10")),
        cookie_name=os.getenv("CYCLES_COOKIE_NAME", "ft_token"),
        csrf_cookie_name=os.getenv("CYCLES_CSRF_COOKIE_NAME", "ft_csrf"),
        email_hmac_key=os.getenv(
            "EMAIL_HMAC_KEY", "dev-hmac-key-change-me-in-production"
        ),
        email_encryption_key=os.getenv("EMAIL_ENCRYPTION_KEY", "0" * 64),
        reset_token_expiry_secs=int(os.getenv("RESET_TOKEN_EXPIRY_SECS", "3600")),
        app_name=os.getenv("CYCLES_APP_NAME", "Finance Tracker"),
        app_base_url=os.getenv("CYCLES_APP_BASE_URL", "http://localhost:8000"),
        email_from=os.getenv("EMAIL_FROM", "noreply@localhost"),
        resend_api_key=os.getenv("RESEND_API_KEY") or None,
        smtp_host=os.getenv("SMTP_HOST", "localhost"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_pass=os.getenv("SMTP_PASS") or None,
        rate_limit_enabled=_env_flag("CYCLES_RATE_LIMIT", environment != "test"),
    )
