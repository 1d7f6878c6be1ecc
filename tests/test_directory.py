import io
import json

from app.aba.db import session_scope
from app.aba.models import AuditEvent

from conftest import login


def test_client_crud_and_audit(client, app, ids):
    headers = login(client)
    r = client.post(
        "/api/clients",
        json={"name": "Carla Client", "email": "carla@example.com", "insurance_id": ids["Medicaid"]},
        headers=headers,
    )
    assert r.status_code == 201, r.json
    client_id = r.json["id"]
    assert r.json["insurance_name"] == "Medicaid"

    r = client.post("/api/clients", json={"email": "bad"}, headers=headers)
    assert r.status_code == 400
    assert "Name is required." in r.json["errors"]
    assert "Invalid email format." in r.json["errors"]

    r = client.put(f"/api/clients/{client_id}", json={"phone": "555-0100"}, headers=headers)
    assert r.status_code == 200
    assert r.json["phone"] == "555-0100"

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "client.edit").one()
        assert json.loads(ev.metadata_json)["changes"]["phone"] == {"old": None, "new": "555-0100"}

    r = client.get("/api/clients?search=carla")
    assert [c["name"] for c in r.json["items"]] == ["Carla Client"]

    assert client.delete(f"/api/clients/{client_id}", headers=headers).status_code == 200
    assert client.get(f"/api/clients/{client_id}").status_code == 404


def test_provider_kind_filter_and_validation(client):
    headers = login(client)
    r = client.post("/api/providers", json={"name": "Pat", "kind": "nurse"}, headers=headers)
    assert r.status_code == 400

    r = client.post("/api/providers", json={"name": "Pat BCBA", "kind": "bcba"}, headers=headers)
    assert r.status_code == 201
    assert r.json["kind"] == "BCBA"

    r = client.get("/api/providers?kind=BCBA")
    assert sorted(p["name"] for p in r.json["items"]) == ["Dana BCBA", "Pat BCBA"]


def test_insurance_rates(client, ids):
    headers = login(client)
    r = client.post("/api/insurance", json={"name": "Aetna"}, headers=headers)
    assert r.status_code == 400
    assert "Rate per unit is required." in r.json["errors"]

    r = client.post("/api/insurance", json={"name": "Medicaid", "rate_per_unit": "10"}, headers=headers)
    assert r.status_code == 400

    r = client.post(
        "/api/insurance",
        json={"name": "Aetna", "rate_per_unit": "18.5", "bcba_rate_per_unit": "25"},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json["rate_per_unit"] == "18.50"
    assert r.json["regular_rate_per_unit"] is None

    r = client.put(f"/api/insurance/{r.json['id']}", json={"regular_rate_per_unit": "-1"}, headers=headers)
    assert r.status_code == 400

    r = client.delete(f"/api/insurance/{ids['Medicaid']}", headers=headers)
    assert r.status_code == 200
    assert r.json["active"] is False


def test_client_csv_import(client, ids):
    headers = login(client)
    csv_bytes = (
        "name,medicaid_id,insurance\n"
        "Dylan Client,MC-1,Medicaid\n"
        "Alice Client,MC-2,Medicaid\n"
        "Erin Client,MC-3,Unknown Plan\n"
        ",MC-4,\n"
    ).encode("utf-8")
    r = client.post(
        "/api/clients/import",
        data={"file": (io.BytesIO(csv_bytes), "clients.csv")},
        headers=headers,
        content_type="multipart/form-data",
    )
    assert r.status_code == 200, r.json
    assert r.json["created"] == 1
    assert r.json["skipped"] == 1
    assert [e["row"] for e in r.json["errors"]] == [4, 5]


def test_provider_csv_import_requires_name_column(client):
    headers = login(client)
    r = client.post(
        "/api/providers/import",
        data={"file": (io.BytesIO(b"full_name\nX\n"), "providers.csv")},
        headers=headers,
        content_type="multipart/form-data",
    )
    assert r.status_code == 400


def test_staff_can_view_but_not_manage(client):
    headers = login(client, "staff@example.com", "staff-pw-123")
    assert client.get("/api/clients").status_code == 200
    r = client.post("/api/clients", json={"name": "Nope"}, headers=headers)
    assert r.status_code == 403
