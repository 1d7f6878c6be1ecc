from app.aba.db import session_scope
from app.aba.models import Permission, Role, User
from app.aba.modules.email_queue.models import EmailQueueItem
from app.aba.modules.timesheets.models import TimesheetEntry

from conftest import login, timesheet_payload


def _create(client, headers, ids, **overrides):
    return client.post("/api/timesheets", json=timesheet_payload(ids, **overrides), headers=headers)


def test_create_timesheet_numbers_and_units(client, ids):
    headers = login(client)
    r = _create(client, headers, ids)
    assert r.status_code == 201, r.json
    ts = r.json
    assert ts["timesheet_number"] == "T-1001"
    assert ts["status"] == "DRAFT"
    assert ts["total_minutes"] == 90
    assert [e["units"] for e in ts["entries"]] == ["4.00", "2.00"]

    r = _create(
        client,
        headers,
        ids,
        is_bcba=True,
        provider_id=None,
        entries=[{"date": "2025-01-06", "start_time": "09:00", "end_time": "10:00", "notes": "SV"}],
    )
    assert r.status_code == 201, r.json
    assert r.json["timesheet_number"] == "BT-1001"
    assert r.json["is_bcba"] is True

    r = _create(
        client,
        headers,
        ids,
        start_date="2025-01-13",
        end_date="2025-01-19",
        entries=[{"date": "2025-01-13", "start_time": "09:00", "end_time": "10:00"}],
    )
    assert r.json["timesheet_number"] == "T-1002"


def test_entry_validation(client, ids):
    headers = login(client)
    saturday = [{"date": "2025-01-11", "start_time": "09:00", "end_time": "10:00"}]
    r = _create(client, headers, ids, entries=saturday)
    assert r.status_code == 400
    assert "Saturday" in r.json["error"]

    backwards = [{"date": "2025-01-06", "start_time": "10:00", "end_time": "09:00"}]
    r = _create(client, headers, ids, entries=backwards)
    assert r.status_code == 400

    mismatch = [{"date": "2025-01-06", "start_time": "09:00", "end_time": "10:00", "minutes": 45}]
    r = _create(client, headers, ids, entries=mismatch)
    assert r.status_code == 400

    outside = [{"date": "2025-02-03", "start_time": "09:00", "end_time": "10:00"}]
    r = _create(client, headers, ids, entries=outside)
    assert r.status_code == 400

    r = _create(client, headers, ids, bcba_id=ids["Riley RBT"])
    assert r.status_code == 400
    assert "BCBA" in r.json["error"]


def test_overlap_detection(client, ids):
    headers = login(client)
    assert _create(client, headers, ids).status_code == 201

    # Same provider, different client, overlapping time
    r = _create(
        client,
        headers,
        ids,
        client_id=ids["Bob Client"],
        entries=[{"date": "2025-01-06", "start_time": "09:30", "end_time": "10:30", "notes": "DR"}],
    )
    assert r.status_code == 400
    assert r.json["code"] == "OVERLAP_CONFLICT"
    assert r.json["conflicts"][0]["scope"] == "provider"
    assert r.json["conflicts"][0]["conflicting"]["timesheet_number"] == "T-1001"

    # Touching ranges are fine
    r = _create(
        client,
        headers,
        ids,
        client_id=ids["Bob Client"],
        entries=[{"date": "2025-01-06", "start_time": "10:00", "end_time": "11:00", "notes": "DR"}],
    )
    assert r.status_code == 201

    # Overlap inside the same submission
    r = client.post(
        "/api/timesheets/check-overlaps",
        json=timesheet_payload(
            ids,
            client_id=ids["Bob Client"],
            provider_id=ids["Casey RBT"],
            entries=[
                {"date": "2025-01-08", "start_time": "09:00", "end_time": "10:00"},
                {"date": "2025-01-08", "start_time": "09:45", "end_time": "10:15"},
            ],
        ),
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json["has_overlaps"] is True
    assert r.json["conflicts"][0]["scope"] == "internal"


def test_bcba_timesheets_skip_overlap_check(client, ids):
    headers = login(client)
    assert _create(client, headers, ids).status_code == 201
    r = _create(
        client,
        headers,
        ids,
        is_bcba=True,
        provider_id=None,
        entries=[{"date": "2025-01-06", "start_time": "09:00", "end_time": "10:00", "notes": "SV"}],
    )
    assert r.status_code == 201


def test_submit_approve_queues_email(client, app, ids):
    headers = login(client)
    ts_id = _create(client, headers, ids).json["id"]

    r = client.post(f"/api/timesheets/{ts_id}/submit", headers=headers)
    assert r.status_code == 200
    assert r.json["status"] == "SUBMITTED"

    r = client.post(f"/api/timesheets/{ts_id}/approve", headers=headers)
    assert r.status_code == 200, r.json
    assert r.json["timesheet"]["status"] == "APPROVED"
    assert r.json["email_queue_item"]["status"] == "QUEUED"
    assert r.json["email_queue_item"]["entity_type"] == "REGULAR"

    r = client.post(f"/api/timesheets/{ts_id}/approve", headers=headers)
    assert r.status_code == 400

    with session_scope(app) as s:
        assert s.query(EmailQueueItem).filter(EmailQueueItem.entity_id == ts_id).count() == 1

    # Approved timesheets are locked
    r = client.put(f"/api/timesheets/{ts_id}", json={"service_type": "97153"}, headers=headers)
    assert r.status_code == 400


def test_reject_then_edit_returns_to_draft(client, ids):
    headers = login(client)
    ts_id = _create(client, headers, ids).json["id"]

    r = client.post(f"/api/timesheets/{ts_id}/reject", json={}, headers=headers)
    assert r.status_code == 400

    r = client.post(f"/api/timesheets/{ts_id}/reject", json={"reason": "Missing notes"}, headers=headers)
    assert r.status_code == 200
    assert r.json["status"] == "REJECTED"
    assert r.json["rejection_reason"] == "Missing notes"

    r = client.put(
        f"/api/timesheets/{ts_id}",
        json={"entries": [{"date": "2025-01-06", "start_time": "09:00", "end_time": "11:00", "notes": "DR"}]},
        headers=headers,
    )
    assert r.status_code == 200, r.json
    assert r.json["status"] == "DRAFT"
    assert r.json["total_minutes"] == 120
    assert r.json["rejection_reason"] is None


def test_staff_cannot_approve(client, ids):
    headers = login(client, "staff@example.com", "staff-pw-123")
    r = _create(client, headers, ids)
    assert r.status_code == 201
    r = client.post(f"/api/timesheets/{r.json['id']}/approve", headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "timesheets.approve"


def test_visibility_scoping(client, app, ids):
    admin_headers = login(client)
    admin_ts = _create(client, admin_headers, ids).json["id"]
    client.post("/api/auth/logout", headers=admin_headers)

    headers = login(client, "staff@example.com", "staff-pw-123")
    own = _create(
        client,
        headers,
        ids,
        provider_id=ids["Casey RBT"],
        client_id=ids["Bob Client"],
        entries=[{"date": "2025-01-09", "start_time": "13:00", "end_time": "14:00"}],
    ).json["id"]

    r = client.get("/api/timesheets")
    assert [t["id"] for t in r.json["items"]] == [own]
    assert client.get(f"/api/timesheets/{admin_ts}").status_code == 404

    # Grant view_selected over the admin's timesheets
    with session_scope(app) as s:
        role = s.query(Role).filter(Role.key == "staff").one()
        role.permissions.append(s.query(Permission).filter(Permission.key == "timesheets.view_selected").one())
    client.post("/api/auth/logout", headers=headers)
    admin_headers = login(client)
    r = client.put(
        f"/api/roles/{_role_id(app, 'staff')}/timesheet-visibility",
        json={"user_ids": [ids["admin@example.com"]]},
        headers=admin_headers,
    )
    assert r.status_code == 200, r.json
    assert r.json["timesheet_visible_user_ids"] == [ids["admin@example.com"]]
    client.post("/api/auth/logout", headers=admin_headers)

    login(client, "staff@example.com", "staff-pw-123")
    r = client.get("/api/timesheets")
    assert {t["id"] for t in r.json["items"]} == {own, admin_ts}
    assert client.get(f"/api/timesheets/{admin_ts}").status_code == 200


def test_batch_archive(client, ids):
    headers = login(client)
    ts_id = _create(client, headers, ids).json["id"]
    draft_id = _create(
        client,
        headers,
        ids,
        client_id=ids["Bob Client"],
        provider_id=ids["Casey RBT"],
    ).json["id"]
    client.post(f"/api/timesheets/{ts_id}/approve", headers=headers)

    r = client.post("/api/timesheets/batch/archive", json={"timesheet_ids": [ts_id, draft_id]}, headers=headers)
    assert r.status_code == 200
    assert r.json["archived"] == [ts_id]
    assert r.json["skipped"][0]["id"] == draft_id

    active = client.get("/api/timesheets").json["items"]
    archived = client.get("/api/timesheets?archived=1").json["items"]
    assert [t["id"] for t in active] == [draft_id]
    assert [t["id"] for t in archived] == [ts_id]


def _role_id(app, key):
    with session_scope(app) as s:
        return s.query(Role).filter(Role.key == key).one().id


def test_delete_timesheet(client, ids):
    headers = login(client)
    ts_id = _create(client, headers, ids).json["id"]
    r = client.delete(f"/api/timesheets/{ts_id}", headers=headers)
    assert r.status_code == 200
    assert client.get(f"/api/timesheets/{ts_id}").status_code == 404


def test_invoiced_timesheet_cannot_be_changed(client, ids):
    headers = login(client)
    ts_id = _create(client, headers, ids).json["id"]
    assert client.post(f"/api/timesheets/{ts_id}/approve", headers=headers).status_code == 200
    r = client.post("/api/invoices/generate", json={"start_date": "2025-01-06", "end_date": "2025-01-13"}, headers=headers)
    assert r.json["invoices_created"] == 1

    r = client.put(f"/api/timesheets/{ts_id}", json={"service_type": "Parent training"}, headers=headers)
    assert r.status_code == 400
    assert "invoiced" in r.json["error"]
    r = client.delete(f"/api/timesheets/{ts_id}", headers=headers)
    assert r.status_code == 400
    assert "invoiced" in r.json["error"]
    r = client.post(f"/api/timesheets/{ts_id}/reject", json={"reason": "Late"}, headers=headers)
    assert r.status_code == 400
    assert "invoiced" in r.json["error"]


def test_billed_entries_lock_timesheet_without_invoice_link(client, app, ids):
    headers = login(client)
    ts_id = _create(client, headers, ids).json["id"]
    with session_scope(app) as s:
        entry = s.query(TimesheetEntry).filter(TimesheetEntry.timesheet_id == ts_id).first()
        entry.invoiced = True

    r = client.put(f"/api/timesheets/{ts_id}", json={"service_type": "Parent training"}, headers=headers)
    assert r.status_code == 400
    assert client.delete(f"/api/timesheets/{ts_id}", headers=headers).status_code == 400
    r = client.post(f"/api/timesheets/{ts_id}/reject", json={"reason": "Late"}, headers=headers)
    assert r.status_code == 400
    assert "invoiced" in r.json["error"]


def test_units_follow_configured_unit_length(client, app, ids):
    app.config["INVOICE_UNIT_MINUTES"] = 30
    headers = login(client)
    r = _create(client, headers, ids)
    assert r.status_code == 201, r.json
    assert [e["units"] for e in r.json["entries"]] == ["2.00", "1.00"]

    r = client.put(
        f"/api/timesheets/{r.json['id']}",
        json={"entries": [{"date": "2025-01-06", "start_time": "09:00", "end_time": "10:30", "notes": "DR"}]},
        headers=headers,
    )
    assert r.status_code == 200, r.json
    assert [e["units"] for e in r.json["entries"]] == ["3.00"]


def test_check_overlaps_rejects_non_numeric_exclude_id(client, ids):
    headers = login(client)
    r = client.post(
        "/api/timesheets/check-overlaps",
        json=timesheet_payload(ids, exclude_timesheet_id="abc"),
        headers=headers,
    )
    assert r.status_code == 400
    assert "exclude_timesheet_id" in r.json["error"]
