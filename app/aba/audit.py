import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.aba.models import AuditEvent, User

_REASON_MAX = 512


def diff_changes(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """{field: {"old", "new"}} for every key whose value differs between two snapshots."""
    return {
        key: {"old": before.get(key), "new": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }


def _encode(metadata: dict[str, Any] | None) -> str | None:
    if not metadata:
        return None
    return json.dumps(metadata, sort_keys=True, default=str)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Add an audit row to the caller's transaction; it is persisted with the caller's commit.

    Outside a request (cron runs, CLI, scripts) there is no request id or client IP, and
    `actor` may be None for system actions.
    """
    rid, ip = request_id, None
    if has_request_context():
        rid = rid or getattr(g, "request_id", None)
        ip = request.remote_addr
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=getattr(actor, "id", None),
        actor_user_email=getattr(actor, "email", None),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason[:_REASON_MAX] if reason else None,
        metadata_json=_encode(metadata),
        client_ip=ip,
    )
    s.add(ev)
    return ev
