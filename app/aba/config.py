import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    billing_timezone: str
    invoice_unit_minutes: int
    invoice_view_token_days: int
    cron_secret: str
    app_base_url: str

    smtp_server: str
    smtp_port: str
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    email_from: str
    email_batch_recipient: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///aba.db"),
        billing_timezone=_getenv("BILLING_TIMEZONE", "America/New_York"),
        invoice_unit_minutes=_getint("INVOICE_UNIT_MINUTES", 15),
        invoice_view_token_days=_getint("INVOICE_VIEW_TOKEN_DAYS", 30),
        cron_secret=_getenv("CRON_SECRET", ""),
        app_base_url=_getenv("APP_BASE_URL", "http://localhost:8080").rstrip("/"),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=_getenv("SMTP_PORT", ""),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_getenv("SMTP_USE_TLS", "1").lower() in ("1", "true", "yes", "on"),
        email_from=_getenv("EMAIL_FROM", ""),
        email_batch_recipient=_getenv("EMAIL_BATCH_RECIPIENT", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "BILLING_TIMEZONE": s.billing_timezone,
        "INVOICE_UNIT_MINUTES": s.invoice_unit_minutes,
        "INVOICE_VIEW_TOKEN_DAYS": s.invoice_view_token_days,
        "CRON_SECRET": s.cron_secret,
        "APP_BASE_URL": s.app_base_url,
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "EMAIL_FROM": s.email_from,
        "EMAIL_BATCH_RECIPIENT": s.email_batch_recipient,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # CSV imports only (5MB)
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
    }
