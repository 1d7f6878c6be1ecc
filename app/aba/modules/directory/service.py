from __future__ import annotations

import csv
import io
from decimal import Decimal
from typing import TYPE_CHECKING

from app.aba.audit import record_event
from app.aba.constants import PROVIDER_KINDS
from app.aba.models import utcnow
from app.aba.utils import is_valid_email, parse_bool, parse_decimal

from .models import Client, Insurance, Provider

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.aba.models import User


def _clean(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    return str(value).strip() or None


def _parse_rate(payload: dict, key: str, field: str, *, required: bool = False) -> Decimal | None:
    raw = payload.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            raise ValueError(f"{field} is required.")
        return None
    rate = parse_decimal(raw, field)
    if rate < 0:
        raise ValueError(f"{field} cannot be negative.")
    return rate


# ---------- Insurance ----------
def validate_insurance_payload(s: "Session", payload: dict, existing: Insurance | None = None) -> list[str]:
    errors = []
    name = _clean(payload, "name")
    if not name and existing is None:
        errors.append("Name is required.")
    if name:
        q = s.query(Insurance).filter(Insurance.name == name)
        if existing is not None:
            q = q.filter(Insurance.id != existing.id)
        if q.first():
            errors.append("An insurance with this name already exists.")
    for key, field in (
        ("rate_per_unit", "Rate per unit"),
        ("regular_rate_per_unit", "Regular rate per unit"),
        ("bcba_rate_per_unit", "BCBA rate per unit"),
    ):
        try:
            _parse_rate(payload, key, field, required=(key == "rate_per_unit" and (existing is None or key in payload)))
        except ValueError as e:
            errors.append(str(e))
    return errors


def create_insurance(s: "Session", payload: dict, user: "User") -> Insurance:
    now = utcnow()
    ins = Insurance(
        name=_clean(payload, "name") or "",
        rate_per_unit=_parse_rate(payload, "rate_per_unit", "Rate per unit", required=True),
        regular_rate_per_unit=_parse_rate(payload, "regular_rate_per_unit", "Regular rate per unit"),
        bcba_rate_per_unit=_parse_rate(payload, "bcba_rate_per_unit", "BCBA rate per unit"),
        active=bool(parse_bool(payload.get("active"), True)),
        created_at=now,
        updated_at=now,
    )
    s.add(ins)
    s.flush()
    record_event(
        s,
        actor=user,
        action="insurance.create",
        entity_type="Insurance",
        entity_id=str(ins.id),
        metadata={"name": ins.name, "rate_per_unit": str(ins.rate_per_unit)},
    )
    return ins


def update_insurance(s: "Session", ins: Insurance, payload: dict, user: "User") -> Insurance:
    changes = {}
    name = _clean(payload, "name")
    if name and name != ins.name:
        changes["name"] = {"old": ins.name, "new": name}
        ins.name = name
    for key, field in (
        ("rate_per_unit", "Rate per unit"),
        ("regular_rate_per_unit", "Regular rate per unit"),
        ("bcba_rate_per_unit", "BCBA rate per unit"),
    ):
        if key not in payload:
            continue
        new_rate = _parse_rate(payload, key, field, required=(key == "rate_per_unit"))
        old_rate = getattr(ins, key)
        if new_rate != old_rate:
            changes[key] = {"old": str(old_rate) if old_rate is not None else None, "new": str(new_rate) if new_rate is not None else None}
            setattr(ins, key, new_rate)
    if "active" in payload:
        active = bool(parse_bool(payload.get("active"), ins.active))
        if active != ins.active:
            changes["active"] = {"old": ins.active, "new": active}
            ins.active = active
    ins.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="insurance.edit",
        entity_type="Insurance",
        entity_id=str(ins.id),
        metadata={"name": ins.name, "changes": changes},
    )
    return ins


# ---------- Clients ----------
def validate_client_payload(s: "Session", payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    name = _clean(payload, "name")
    if not name and not partial:
        errors.append("Name is required.")
    email = _clean(payload, "email")
    if email and not is_valid_email(email):
        errors.append("Invalid email format.")
    insurance_id = payload.get("insurance_id")
    if insurance_id not in (None, ""):
        try:
            ins = s.get(Insurance, int(insurance_id))
        except (TypeError, ValueError):
            ins = None
        if not ins:
            errors.append("Insurance not found.")
    return errors


def _insurance_id(payload: dict) -> int | None:
    raw = payload.get("insurance_id")
    if raw in (None, ""):
        return None
    return int(raw)


def create_client(s: "Session", payload: dict, user: "User") -> Client:
    now = utcnow()
    client = Client(
        name=_clean(payload, "name") or "",
        medicaid_id=_clean(payload, "medicaid_id"),
        address=_clean(payload, "address"),
        phone=_clean(payload, "phone"),
        email=_clean(payload, "email"),
        insurance_id=_insurance_id(payload),
        active=bool(parse_bool(payload.get("active"), True)),
        created_at=now,
        updated_at=now,
    )
    s.add(client)
    s.flush()
    record_event(
        s,
        actor=user,
        action="client.create",
        entity_type="Client",
        entity_id=str(client.id),
        metadata={"name": client.name, "insurance_id": client.insurance_id},
    )
    return client


def update_client(s: "Session", client: Client, payload: dict, user: "User") -> Client:
    changes = {}
    for key in ("name", "medicaid_id", "address", "phone", "email"):
        if key not in payload:
            continue
        new_value = _clean(payload, key)
        if key == "name" and not new_value:
            continue
        if new_value != getattr(client, key):
            changes[key] = {"old": getattr(client, key), "new": new_value}
            setattr(client, key, new_value)
    if "insurance_id" in payload:
        new_ins = _insurance_id(payload)
        if new_ins != client.insurance_id:
            changes["insurance_id"] = {"old": client.insurance_id, "new": new_ins}
            client.insurance_id = new_ins
            client.insurance = s.get(Insurance, new_ins) if new_ins else None
    if "active" in payload:
        active = bool(parse_bool(payload.get("active"), client.active))
        if active != client.active:
            changes["active"] = {"old": client.active, "new": active}
            client.active = active
    client.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="client.edit",
        entity_type="Client",
        entity_id=str(client.id),
        metadata={"name": client.name, "changes": changes},
    )
    return client


def delete_client(s: "Session", client: Client, user: "User") -> None:
    client.deleted_at = utcnow()
    client.active = False
    record_event(s, actor=user, action="client.delete", entity_type="Client", entity_id=str(client.id), metadata={"name": client.name})


# ---------- Providers ----------
def validate_provider_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    name = _clean(payload, "name")
    if not name and not partial:
        errors.append("Name is required.")
    email = _clean(payload, "email")
    if email and not is_valid_email(email):
        errors.append("Invalid email format.")
    kind = (_clean(payload, "kind") or "").upper()
    if kind and kind not in PROVIDER_KINDS:
        errors.append(f"Invalid kind. Must be one of: {', '.join(PROVIDER_KINDS)}")
    return errors


def create_provider(s: "Session", payload: dict, user: "User") -> Provider:
    now = utcnow()
    provider = Provider(
        name=_clean(payload, "name") or "",
        email=_clean(payload, "email"),
        phone=_clean(payload, "phone"),
        kind=(_clean(payload, "kind") or "RBT").upper(),
        active=bool(parse_bool(payload.get("active"), True)),
        created_at=now,
        updated_at=now,
    )
    s.add(provider)
    s.flush()
    record_event(
        s,
        actor=user,
        action="provider.create",
        entity_type="Provider",
        entity_id=str(provider.id),
        metadata={"name": provider.name, "kind": provider.kind},
    )
    return provider


def update_provider(s: "Session", provider: Provider, payload: dict, user: "User") -> Provider:
    changes = {}
    for key in ("name", "email", "phone"):
        if key not in payload:
            continue
        new_value = _clean(payload, key)
        if key == "name" and not new_value:
            continue
        if new_value != getattr(provider, key):
            changes[key] = {"old": getattr(provider, key), "new": new_value}
            setattr(provider, key, new_value)
    kind = (_clean(payload, "kind") or "").upper()
    if kind and kind != provider.kind:
        changes["kind"] = {"old": provider.kind, "new": kind}
        provider.kind = kind
    if "active" in payload:
        active = bool(parse_bool(payload.get("active"), provider.active))
        if active != provider.active:
            changes["active"] = {"old": provider.active, "new": active}
            provider.active = active
    provider.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="provider.edit",
        entity_type="Provider",
        entity_id=str(provider.id),
        metadata={"name": provider.name, "changes": changes},
    )
    return provider


def delete_provider(s: "Session", provider: Provider, user: "User") -> None:
    provider.deleted_at = utcnow()
    provider.active = False
    record_event(s, actor=user, action="provider.delete", entity_type="Provider", entity_id=str(provider.id), metadata={"name": provider.name})


# ---------- CSV import ----------
def _read_csv_rows(raw: bytes) -> list[dict[str, str]]:
    text = raw.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames or "name" not in [f.strip().lower() for f in reader.fieldnames]:
        raise ValueError("CSV must have a header row with a 'name' column.")
    rows = []
    for row in reader:
        rows.append({(k or "").strip().lower(): (v or "").strip() for k, v in row.items()})
    return rows


def import_clients_csv(s: "Session", raw: bytes, user: "User") -> dict:
    """
    Import clients from CSV (columns: name, medicaid_id, address, phone, email, insurance).
    Existing active clients with the same name are skipped.
    """
    rows = _read_csv_rows(raw)
    insurers = {i.name.strip().lower(): i.id for i in s.query(Insurance).all()}
    existing = {c.name.strip().lower() for c in s.query(Client).filter(Client.deleted_at.is_(None)).all()}
    created, skipped, errors = 0, 0, []
    for line_no, row in enumerate(rows, start=2):
        name = row.get("name") or ""
        if not name:
            errors.append({"row": line_no, "error": "Name is required."})
            continue
        if name.lower() in existing:
            skipped += 1
            continue
        payload = dict(row)
        ins_name = (row.get("insurance") or "").lower()
        if ins_name:
            if ins_name not in insurers:
                errors.append({"row": line_no, "error": f"Unknown insurance '{row.get('insurance')}'."})
                continue
            payload["insurance_id"] = insurers[ins_name]
        row_errors = validate_client_payload(s, payload)
        if row_errors:
            errors.append({"row": line_no, "error": " ".join(row_errors)})
            continue
        create_client(s, payload, user)
        existing.add(name.lower())
        created += 1
    record_event(s, actor=user, action="client.import", entity_type="Client", metadata={"created": created, "skipped": skipped, "errors": len(errors)})
    return {"created": created, "skipped": skipped, "errors": errors}


def import_providers_csv(s: "Session", raw: bytes, user: "User") -> dict:
    """Import providers from CSV (columns: name, email, phone, kind)."""
    rows = _read_csv_rows(raw)
    existing = {p.name.strip().lower() for p in s.query(Provider).filter(Provider.deleted_at.is_(None)).all()}
    created, skipped, errors = 0, 0, []
    for line_no, row in enumerate(rows, start=2):
        name = row.get("name") or ""
        if not name:
            errors.append({"row": line_no, "error": "Name is required."})
            continue
        if name.lower() in existing:
            skipped += 1
            continue
        row_errors = validate_provider_payload(row)
        if row_errors:
            errors.append({"row": line_no, "error": " ".join(row_errors)})
            continue
        create_provider(s, row, user)
        existing.add(name.lower())
        created += 1
    record_event(s, actor=user, action="provider.import", entity_type="Provider", metadata={"created": created, "skipped": skipped, "errors": len(errors)})
    return {"created": created, "skipped": skipped, "errors": errors}
