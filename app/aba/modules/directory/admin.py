from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.aba.db import db_session
from app.aba.rbac import current_user, require_permission
from app.aba.utils import error_response, json_payload, page_args, paginate, parse_bool

from .models import Client, Insurance, Provider
from .service import (
    create_client,
    create_insurance,
    create_provider,
    delete_client,
    delete_provider,
    import_clients_csv,
    import_providers_csv,
    update_client,
    update_insurance,
    update_provider,
    validate_client_payload,
    validate_insurance_payload,
    validate_provider_payload,
)

bp = Blueprint("directory", __name__)


def _uploaded_csv() -> bytes:
    f = request.files.get("file")
    if not f or not f.filename:
        abort(400, description="CSV file is required.")
    return f.read()


# ---------- Clients ----------
@bp.get("/clients")
@require_permission("clients.view")
def clients_list():
    s = db_session()
    page, limit = page_args()
    search = (request.args.get("search") or "").strip()
    active = parse_bool(request.args.get("active"))

    q = s.query(Client).filter(Client.deleted_at.is_(None))
    if search:
        like = f"%{search}%"
        q = q.filter(Client.name.ilike(like) | Client.medicaid_id.ilike(like))
    if active is not None:
        q = q.filter(Client.active.is_(active))

    result = paginate(q.order_by(Client.name.asc()), page, limit)
    result["items"] = [c.to_dict() for c in result["items"]]
    return jsonify(result)


@bp.post("/clients")
@require_permission("clients.manage")
def clients_create():
    s = db_session()
    payload = json_payload()
    errors = validate_client_payload(s, payload)
    if errors:
        return error_response(" ".join(errors), errors=errors)
    client = create_client(s, payload, current_user())
    s.commit()
    return jsonify(client.to_dict()), 201


@bp.get("/clients/<int:client_id>")
@require_permission("clients.view")
def clients_detail(client_id: int):
    s = db_session()
    client = s.get(Client, client_id)
    if not client or client.deleted_at is not None:
        abort(404)
    return jsonify(client.to_dict())


@bp.put("/clients/<int:client_id>")
@require_permission("clients.manage")
def clients_update(client_id: int):
    s = db_session()
    client = s.get(Client, client_id)
    if not client or client.deleted_at is not None:
        abort(404)
    payload = json_payload()
    errors = validate_client_payload(s, payload, partial=True)
    if errors:
        return error_response(" ".join(errors), errors=errors)
    update_client(s, client, payload, current_user())
    s.commit()
    return jsonify(client.to_dict())


@bp.delete("/clients/<int:client_id>")
@require_permission("clients.manage")
def clients_delete(client_id: int):
    s = db_session()
    client = s.get(Client, client_id)
    if not client or client.deleted_at is not None:
        abort(404)
    delete_client(s, client, current_user())
    s.commit()
    return jsonify({"success": True})


@bp.post("/clients/import")
@require_permission("clients.manage")
def clients_import():
    s = db_session()
    raw = _uploaded_csv()
    try:
        result = import_clients_csv(s, raw, current_user())
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify(result)


# ---------- Providers ----------
@bp.get("/providers")
@require_permission("providers.view")
def providers_list():
    s = db_session()
    page, limit = page_args()
    search = (request.args.get("search") or "").strip()
    active = parse_bool(request.args.get("active"))
    kind = (request.args.get("kind") or "").strip().upper()

    q = s.query(Provider).filter(Provider.deleted_at.is_(None))
    if search:
        like = f"%{search}%"
        q = q.filter(Provider.name.ilike(like) | Provider.email.ilike(like))
    if active is not None:
        q = q.filter(Provider.active.is_(active))
    if kind:
        q = q.filter(Provider.kind == kind)

    result = paginate(q.order_by(Provider.name.asc()), page, limit)
    result["items"] = [p.to_dict() for p in result["items"]]
    return jsonify(result)


@bp.post("/providers")
@require_permission("providers.manage")
def providers_create():
    s = db_session()
    payload = json_payload()
    errors = validate_provider_payload(payload)
    if errors:
        return error_response(" ".join(errors), errors=errors)
    provider = create_provider(s, payload, current_user())
    s.commit()
    return jsonify(provider.to_dict()), 201


@bp.get("/providers/<int:provider_id>")
@require_permission("providers.view")
def providers_detail(provider_id: int):
    s = db_session()
    provider = s.get(Provider, provider_id)
    if not provider or provider.deleted_at is not None:
        abort(404)
    return jsonify(provider.to_dict())


@bp.put("/providers/<int:provider_id>")
@require_permission("providers.manage")
def providers_update(provider_id: int):
    s = db_session()
    provider = s.get(Provider, provider_id)
    if not provider or provider.deleted_at is not None:
        abort(404)
    payload = json_payload()
    errors = validate_provider_payload(payload, partial=True)
    if errors:
        return error_response(" ".join(errors), errors=errors)
    update_provider(s, provider, payload, current_user())
    s.commit()
    return jsonify(provider.to_dict())


@bp.delete("/providers/<int:provider_id>")
@require_permission("providers.manage")
def providers_delete(provider_id: int):
    s = db_session()
    provider = s.get(Provider, provider_id)
    if not provider or provider.deleted_at is not None:
        abort(404)
    delete_provider(s, provider, current_user())
    s.commit()
    return jsonify({"success": True})


@bp.post("/providers/import")
@require_permission("providers.manage")
def providers_import():
    s = db_session()
    raw = _uploaded_csv()
    try:
        result = import_providers_csv(s, raw, current_user())
    except ValueError as e:
        s.rollback()
        return error_response(str(e))
    s.commit()
    return jsonify(result)


# ---------- Insurance ----------
@bp.get("/insurance")
@require_permission("insurance.view")
def insurance_list():
    s = db_session()
    q = s.query(Insurance)
    active = parse_bool(request.args.get("active"))
    if active is not None:
        q = q.filter(Insurance.active.is_(active))
    items = q.order_by(Insurance.name.asc()).all()
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)})


@bp.post("/insurance")
@require_permission("insurance.manage")
def insurance_create():
    s = db_session()
    payload = json_payload()
    errors = validate_insurance_payload(s, payload)
    if errors:
        return error_response(" ".join(errors), errors=errors)
    ins = create_insurance(s, payload, current_user())
    s.commit()
    return jsonify(ins.to_dict()), 201


@bp.get("/insurance/<int:insurance_id>")
@require_permission("insurance.view")
def insurance_detail(insurance_id: int):
    s = db_session()
    ins = s.get(Insurance, insurance_id)
    if not ins:
        abort(404)
    return jsonify(ins.to_dict())


@bp.put("/insurance/<int:insurance_id>")
@require_permission("insurance.manage")
def insurance_update(insurance_id: int):
    s = db_session()
    ins = s.get(Insurance, insurance_id)
    if not ins:
        abort(404)
    payload = json_payload()
    errors = validate_insurance_payload(s, payload, existing=ins)
    if errors:
        return error_response(" ".join(errors), errors=errors)
    update_insurance(s, ins, payload, current_user())
    s.commit()
    return jsonify(ins.to_dict())


@bp.delete("/insurance/<int:insurance_id>")
@require_permission("insurance.manage")
def insurance_deactivate(insurance_id: int):
    s = db_session()
    ins = s.get(Insurance, insurance_id)
    if not ins:
        abort(404)
    update_insurance(s, ins, {"active": False}, current_user())
    s.commit()
    return jsonify(ins.to_dict())
