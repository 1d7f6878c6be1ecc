import logging
from datetime import timedelta

import click
from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from app.aba.config import load_config
from app.aba.db import init_db, session_scope, teardown_db_session
from app.aba.routes import bp as routes_bp
from app.aba.auth import bp as auth_bp, load_current_user
from app.aba.admin import bp as admin_bp
from app.aba.modules.directory.admin import bp as directory_bp
from app.aba.modules.timesheets.admin import bp as timesheets_bp
from app.aba.modules.invoices.admin import bp as invoices_bp, cron_bp, public_bp
from app.aba.modules.email_queue.admin import bp as email_queue_bp
from app.aba.modules.reports.admin import bp as reports_bp

# Unsafe requests that skip the session CSRF check: bearer-token cron, public invoice links
# and the pre-login auth endpoints. Everything else under /api/auth is guarded.
_CSRF_EXEMPT_BLUEPRINTS = ("cron", "public")
_CSRF_EXEMPT_ENDPOINTS = ("auth.login", "auth.logout", "auth.forgot_password", "auth.reset_password")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.aba.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if (request.blueprint or "") in _CSRF_EXEMPT_BLUEPRINTS or request.endpoint in _CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("CRON_SECRET"):
            app.logger.warning("CRON_SECRET is not set; /api/cron/invoice-generation will reject every call.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(admin_bp, url_prefix="/api")
    app.register_blueprint(directory_bp, url_prefix="/api")
    app.register_blueprint(timesheets_bp, url_prefix="/api")
    app.register_blueprint(invoices_bp, url_prefix="/api")
    app.register_blueprint(email_queue_bp, url_prefix="/api")
    app.register_blueprint(reports_bp, url_prefix="/api")
    app.register_blueprint(cron_bp, url_prefix="/api")
    app.register_blueprint(public_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    # Runs before the CSRF guard so g.request_id exists for every log line.
    app.before_request_funcs.setdefault(None, []).insert(0, _load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    def _json_error(e: HTTPException, message: str | None = None, **extra):
        body = {"error": message or e.description or e.name}
        body.update(extra)
        return jsonify(body), e.code

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return _json_error(e)

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        return _json_error(e, "Unauthorized")

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return _json_error(e, "Forbidden", missing_permission=missing)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return _json_error(e, "Not found")

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return _json_error(e, "Method not allowed")

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return _json_error(e, "File too large. Maximum size is 5MB.")

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "Internal server error", "request_id": rid}), 500

    @app.cli.command("generate-invoices")
    @click.option("--start-date", default=None, help="Custom period start (YYYY-MM-DD).")
    @click.option("--end-date", default=None, help="Custom period end (YYYY-MM-DD).")
    def generate_invoices_command(start_date, end_date):
        """Run weekly invoice generation (default: last completed billing period)."""
        from app.aba.modules.invoices.billing_period import billing_period_from_dates
        from app.aba.modules.invoices.generation import generate_invoices_for_approved_timesheets
        from app.aba.utils import parse_date

        period = None
        if start_date or end_date:
            if not (start_date and end_date):
                raise click.UsageError("--start-date and --end-date must be given together.")
            period = billing_period_from_dates(
                parse_date(start_date), parse_date(end_date), app.config.get("BILLING_TIMEZONE")
            )
        with session_scope(app) as s:
            result = generate_invoices_for_approved_timesheets(s, period, config=app.config)
        click.echo(
            f"Invoices created: {result.invoices_created} "
            f"(clients processed: {result.clients_processed}, errors: {len(result.errors)})"
        )
        for err in result.errors:
            click.echo(f"  error: {err}", err=True)
        if not result.success:
            raise SystemExit(1)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
