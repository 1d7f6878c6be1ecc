import logging

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

bp = Blueprint("routes", __name__)
logger = logging.getLogger(__name__)


@bp.get("/health")
def health():
    """Liveness plus a database round trip. 503 when the database is unreachable."""
    engine = current_app.extensions["sqlalchemy_engine"]
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return jsonify({"ok": False, "database": "unreachable"}), 503
    return jsonify({"ok": True, "database": "ok"})


@bp.get("/healthz")
def healthz():
    # Load balancer health check: no DB access.
    return "ok", 200
