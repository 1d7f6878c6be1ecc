"""
Release phase: migrate, seed, then report what the weekly invoice job will need.

Runs before gunicorn starts (see start.py) or on its own:
  python scripts/release.py

DATABASE_URL is required here; the SQLite fallback used by local scripts is refused in production.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.aba.config import load_config, load_settings  # noqa: E402
from app.aba.mailer import smtp_configured  # noqa: E402


def _log(msg: str) -> None:
    print(msg, flush=True)


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL must be set for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Production releases need a Postgres DATABASE_URL, got sqlite.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def readiness_warnings() -> list[str]:
    """Settings the app starts without but that break invoicing or the email batch."""
    settings = load_settings()
    warnings = []
    try:
        ZoneInfo(settings.billing_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        warnings.append(f"BILLING_TIMEZONE '{settings.billing_timezone}' is not a known IANA zone.")
    if not settings.cron_secret:
        warnings.append("CRON_SECRET is empty; scheduled invoice generation will be rejected.")
    if not smtp_configured(load_config()):
        warnings.append("SMTP is not configured; timesheet batches and admin notices will not be emailed.")
    if not settings.email_batch_recipient:
        warnings.append("EMAIL_BATCH_RECIPIENT is empty; the email queue cannot be sent.")
    return warnings


def run_release() -> None:
    db_url = _database_url()
    _log("=== ABA practice manager release ===")
    _log(f"ENV={(os.environ.get('ENV') or '').strip() or '(unset)'}")

    _log("Applying migrations...")
    migrate(db_url)

    _log("Seeding permissions, roles and the admin account...")
    from scripts import init_db

    init_db.seed_only(database_url=db_url)

    for warning in readiness_warnings():
        _log(f"WARNING: {warning}")
    _log("=== release complete ===")


if __name__ == "__main__":
    run_release()
