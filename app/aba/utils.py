from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from flask import abort, jsonify, request

CENTS = Decimal("0.01")
_HHMM_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")
_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def parse_date(value: Any) -> date | None:
    """Parse a YYYY-MM-DD string (an ISO datetime prefix is accepted). Raises ValueError."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    return date.fromisoformat(s[:10])


def parse_decimal(value: Any, field: str) -> Decimal:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"{field} is required.")
    try:
        d = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"{field} must be a number.") from None
    if not d.is_finite():
        raise ValueError(f"{field} must be a number.")
    return d


def quantize_money(d: Decimal) -> Decimal:
    return d.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_hhmm(value: str | None) -> int | None:
    """`HH:MM` (24h) → minutes after midnight, or None if malformed."""
    if not value:
        return None
    m = _HHMM_RE.match(value.strip())
    if not m:
        return None
    return int(m.group(1)) * 60 + int(m.group(2))


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def parse_bool(value: Any, default: bool | None = None) -> bool | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return default


def money(d: Decimal | None) -> str:
    return str(quantize_money(d if d is not None else Decimal("0")))


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def json_payload() -> dict:
    """Request JSON body as a dict; 400 for anything else."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="JSON object expected.")
    return data


def page_args(default_limit: int = 25, max_limit: int = 200) -> tuple[int, int]:
    try:
        page = max(int(request.args.get("page") or 1), 1)
    except ValueError:
        page = 1
    try:
        limit = int(request.args.get("limit") or default_limit)
    except ValueError:
        limit = default_limit
    return page, min(max(limit, 1), max_limit)


def paginate(q, page: int, limit: int) -> dict:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * limit).limit(limit).all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit if total else 0,
    }


def error_response(message: str, status: int = 400, **extra: Any):
    """JSON error body `{"error": message, ...}` with the given status."""
    body = {"error": message}
    body.update(extra)
    return jsonify(body), status
