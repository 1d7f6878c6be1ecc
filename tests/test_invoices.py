import json

import pytest

from app.aba.db import session_scope
from app.aba.models import AuditEvent, User
from app.aba.modules.invoices import generation
from app.aba.modules.invoices.models import Invoice, InvoiceEntry, ScheduledJobRun
from app.aba.modules.timesheets.models import Timesheet, TimesheetEntry

from conftest import login, timesheet_payload

PERIOD = {"start_date": "2025-01-06", "end_date": "2025-01-13"}


def _approved_timesheet(client, headers, ids, **overrides) -> int:
    r = client.post("/api/timesheets", json=timesheet_payload(ids, **overrides), headers=headers)
    assert r.status_code == 201, r.json
    ts_id = r.json["id"]
    r = client.post(f"/api/timesheets/{ts_id}/approve", headers=headers)
    assert r.status_code == 200, r.json
    return ts_id


def _generate(client, headers) -> dict:
    r = client.post("/api/invoices/generate", json=PERIOD, headers=headers)
    assert r.status_code == 200, r.json
    return r.json


def test_generate_invoice_for_period(client, app, ids):
    headers = login(client)
    ts_id = _approved_timesheet(client, headers, ids)
    # Drafts are never invoiced
    client.post(
        "/api/timesheets",
        json=timesheet_payload(ids, client_id=ids["Bob Client"], provider_id=ids["Casey RBT"]),
        headers=headers,
    )

    result = _generate(client, headers)
    assert result["success"] is True
    assert result["invoices_created"] == 1
    assert result["clients_processed"] == 1
    assert result["total_amount"] == "80.00"
    assert result["period"]["label"] == "Mon 1/6/2025 - Mon 1/13/2025"

    invoice = client.get(f"/api/invoices/{result['invoice_ids'][0]}", headers=headers).json
    assert invoice["invoice_number"].startswith("INV-")
    assert invoice["client_name"] == "Alice Client"
    assert invoice["status"] == "DRAFT"
    assert invoice["total_amount"] == "80.00"
    assert invoice["outstanding"] == "80.00"
    assert [(e["notes"], e["units"], e["billable_units"], e["amount"]) for e in invoice["entries"]] == [
        ("DR", "4.00", "4.00", "80.00"),
        ("SV", "2.00", "0.00", "0.00"),
    ]

    with session_scope(app) as s:
        ts = s.get(Timesheet, ts_id)
        assert ts.invoice_id == invoice["id"]
        assert ts.invoiced_at is not None
        assert all(e.invoiced for e in s.query(TimesheetEntry).filter(TimesheetEntry.timesheet_id == ts_id))
        run = s.query(ScheduledJobRun).one()
        assert run.success is True
        assert run.invoices_created == 1
        assert run.finished_at is not None

    # Invoiced timesheets leave the active list
    active_ids = [t["id"] for t in client.get("/api/timesheets").json["items"]]
    assert ts_id not in active_ids

    # Re-running the same period creates nothing new
    again = _generate(client, headers)
    assert again["invoices_created"] == 0
    assert client.get("/api/invoices").json["total"] == 1


def test_generation_status(client, ids):
    headers = login(client)
    r = client.get("/api/invoices/generation-status")
    assert r.status_code == 200
    assert r.json["last_run"] is None
    assert r.json["next_period"]["label"]

    _generate(client, headers)
    r = client.get("/api/invoices/generation-status")
    assert r.json["last_run"]["period_label"] == "Mon 1/6/2025 - Mon 1/13/2025"


def test_generate_rejects_bad_custom_period(client):
    headers = login(client)
    r = client.post(
        "/api/invoices/generate", json={"start_date": "2025-01-13", "end_date": "2025-01-06"}, headers=headers
    )
    assert r.status_code == 400


def test_payments_adjustments_and_status(client, ids):
    headers = login(client)
    _approved_timesheet(client, headers, ids)
    invoice_id = _generate(client, headers)["invoice_ids"][0]

    r = client.post(f"/api/invoices/{invoice_id}/payments", json={"amount": "0", "payment_date": "2025-01-20"}, headers=headers)
    assert r.status_code == 400
    r = client.post(f"/api/invoices/{invoice_id}/payments", json={"amount": "30"}, headers=headers)
    assert r.status_code == 400

    r = client.post(
        f"/api/invoices/{invoice_id}/payments",
        json={"amount": "30", "payment_date": "2025-01-20", "reference_number": "CHK-1"},
        headers=headers,
    )
    assert r.status_code == 201, r.json
    assert r.json["invoice"]["status"] == "PARTIALLY_PAID"
    assert r.json["invoice"]["paid_amount"] == "30.00"
    assert r.json["invoice"]["outstanding"] == "50.00"

    r = client.post(f"/api/invoices/{invoice_id}/adjustments", json={"amount": "-50"}, headers=headers)
    assert r.status_code == 400

    r = client.post(
        f"/api/invoices/{invoice_id}/adjustments",
        json={"amount": "-50", "reason": "Contractual write-off"},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json["invoice"]["adjustments"] == "-50.00"
    assert r.json["invoice"]["outstanding"] == "0.00"
    assert r.json["invoice"]["status"] == "PAID"

    detail = client.get(f"/api/invoices/{invoice_id}").json
    assert len(detail["payments"]) == 1
    assert detail["adjustment_records"][0]["reason"] == "Contractual write-off"


def test_approve_and_public_view(client, ids):
    headers = login(client)
    _approved_timesheet(client, headers, ids)
    invoice_id = _generate(client, headers)["invoice_ids"][0]

    r = client.post(f"/api/invoices/{invoice_id}/approve", headers=headers)
    assert r.status_code == 200
    assert r.json["status"] == "SENT"
    token = r.json["view_token"]
    assert len(token) == 64

    r = client.post(f"/api/invoices/{invoice_id}/approve", headers=headers)
    assert r.status_code == 400

    anon = client.application.test_client()
    r = anon.get(f"/api/public/invoice/{invoice_id}?token={token}")
    assert r.status_code == 200
    assert r.json["total_amount"] == "80.00"
    assert "created_by" not in r.json
    assert anon.get(f"/api/public/invoice/{invoice_id}?token=wrong").status_code == 404
    assert anon.get(f"/api/public/invoice/{invoice_id}").status_code == 404


def test_void_releases_timesheets_for_rebilling(client, app, ids):
    headers = login(client)
    ts_id = _approved_timesheet(client, headers, ids)
    invoice_id = _generate(client, headers)["invoice_ids"][0]

    r = client.delete(f"/api/invoices/{invoice_id}", json={"reason": "Wrong client"}, headers=headers)
    assert r.status_code == 200
    assert r.json["released_timesheets"] == 1
    assert r.json["released_entries"] == 2
    assert client.get(f"/api/invoices/{invoice_id}").status_code == 404

    with session_scope(app) as s:
        ts = s.get(Timesheet, ts_id)
        assert ts.invoice_id is None
        ev = s.query(AuditEvent).filter(AuditEvent.action == "invoice.void").one()
        assert ev.reason == "Wrong client"
        assert json.loads(ev.metadata_json)["changes"]["status"]["new"] == "VOID"

    again = _generate(client, headers)
    assert again["invoices_created"] == 1


def test_void_keeps_paid_entries_linked(client, app, ids):
    headers = login(client)
    ts_id = _approved_timesheet(client, headers, ids)
    invoice_id = _generate(client, headers)["invoice_ids"][0]
    client.post(
        f"/api/invoices/{invoice_id}/payments", json={"amount": "10", "payment_date": "2025-01-20"}, headers=headers
    )

    r = client.delete(f"/api/invoices/{invoice_id}", headers=headers)
    assert r.status_code == 200
    assert r.json["released_timesheets"] == 0
    with session_scope(app) as s:
        assert s.get(Timesheet, ts_id).invoice_id == invoice_id


def test_batch_generate_from_selected_timesheets(client, ids):
    headers = login(client)
    ts_id = _approved_timesheet(client, headers, ids)

    r = client.post("/api/timesheets/batch/generate-invoice", json={"timesheet_ids": [ts_id]}, headers=headers)
    assert r.status_code == 201, r.json
    assert r.json["invoices_created"] == 1
    invoice = client.get(f"/api/invoices/{r.json['invoice_ids'][0]}").json
    assert (invoice["start_date"], invoice["end_date"]) == ("2025-01-06", "2025-01-12")
    assert invoice["total_amount"] == "80.00"

    r = client.post("/api/timesheets/batch/generate-invoice", json={"timesheet_ids": [ts_id]}, headers=headers)
    assert r.status_code == 400


def test_missing_rate_is_reported_per_client(client, app, ids):
    from decimal import Decimal

    from app.aba.modules.directory.models import Insurance

    headers = login(client)
    _approved_timesheet(client, headers, ids)
    with session_scope(app) as s:
        ins = s.get(Insurance, ids["Medicaid"])
        ins.regular_rate_per_unit = None
        ins.rate_per_unit = Decimal("0")

    r = client.post("/api/invoices/generate", json=PERIOD, headers=headers)
    assert r.status_code == 207
    assert r.json["invoices_created"] == 0
    assert "no rate per unit" in r.json["errors"][0]


def test_cron_requires_bearer_secret(client):
    r = client.post("/api/cron/invoice-generation")
    assert r.status_code == 401
    r = client.post("/api/cron/invoice-generation", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401

    r = client.post("/api/cron/invoice-generation", headers={"Authorization": "Bearer cron-secret"})
    assert r.status_code == 200
    assert r.json["success"] is True


def test_staff_cannot_generate(client):
    headers = login(client, "staff@example.com", "staff-pw-123")
    r = client.post("/api/invoices/generate", json=PERIOD, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "invoices.generate"


def test_run_overlapping_another_run_bills_each_entry_once(client, app, ids, monkeypatch):
    headers = login(client)
    _approved_timesheet(client, headers, ids)

    original = generation._candidate_timesheets
    interleaved = []

    def candidates_then_competing_run(s, period):
        found = original(s, period)
        if not interleaved:
            interleaved.append(True)
            # A second worker bills the same period after our candidate query ran.
            with session_scope(app) as other:
                competing = generation.generate_invoices_for_approved_timesheets(other, period)
                assert competing.invoices_created == 1
        return found

    monkeypatch.setattr(generation, "_candidate_timesheets", candidates_then_competing_run)

    result = _generate(client, headers)
    assert result["invoices_created"] == 0
    assert result["errors"] == []
    assert "already invoiced" in result["skipped"][0]

    with session_scope(app) as s:
        assert s.query(Invoice).count() == 1
        assert s.query(InvoiceEntry).count() == 2


def test_stale_entries_are_not_claimed_twice(client, app, ids):
    headers = login(client)
    ts_id = _approved_timesheet(client, headers, ids)

    with session_scope(app) as s:
        ts = s.get(Timesheet, ts_id)
        loaded = {ts.id: list(ts.entries)}
        assert not any(e.invoiced for e in loaded[ts.id])

        with session_scope(app) as other:
            other.query(TimesheetEntry).filter(TimesheetEntry.timesheet_id == ts_id).update({TimesheetEntry.invoiced: True})

        creator = s.get(User, ids["admin@example.com"])
        with pytest.raises(generation.EntriesAlreadyInvoicedError):
            with s.begin_nested():
                generation._create_invoice(
                    s,
                    client_id=ts.client_id,
                    start_date=ts.start_date,
                    end_date=ts.end_date,
                    timesheets=[ts],
                    entries_by_ts=loaded,
                    creator=creator,
                )
        assert s.query(Invoice).count() == 0


def test_batch_generation_skips_entries_billed_by_weekly_run(client, ids):
    headers = login(client)
    ts_id = _approved_timesheet(client, headers, ids)
    assert _generate(client, headers)["invoices_created"] == 1

    r = client.post("/api/timesheets/batch/generate-invoice", json={"timesheet_ids": [ts_id]}, headers=headers)
    assert r.status_code == 400
    assert client.get("/api/invoices").json["total"] == 1


SPLIT_ENTRIES = [
    {"date": "2025-01-13", "start_time": "09:00", "end_time": "10:00", "notes": "DR"},
    {"date": "2025-01-14", "start_time": "09:00", "end_time": "10:00", "notes": "DR"},
]


def test_timesheet_split_across_periods_stays_locked_until_both_invoices_void(client, app, ids):
    headers = login(client)
    ts_id = _approved_timesheet(
        client, headers, ids, start_date="2025-01-13", end_date="2025-01-19", entries=SPLIT_ENTRIES
    )

    first = _generate(client, headers)
    assert first["invoices_created"] == 1
    r = client.post("/api/invoices/generate", json={"start_date": "2025-01-13", "end_date": "2025-01-20"}, headers=headers)
    assert r.status_code == 200, r.json
    assert r.json["invoices_created"] == 1
    invoice_a, invoice_b = first["invoice_ids"][0], r.json["invoice_ids"][0]

    r = client.delete(f"/api/invoices/{invoice_b}", json={"reason": "Re-bill"}, headers=headers)
    assert r.status_code == 200
    assert r.json["released_entries"] == 1
    assert r.json["released_timesheets"] == 0

    with session_scope(app) as s:
        assert s.get(Timesheet, ts_id).invoice_id == invoice_a

    assert client.delete(f"/api/timesheets/{ts_id}", headers=headers).status_code == 400
    r = client.put(f"/api/timesheets/{ts_id}", json={"entries": SPLIT_ENTRIES[:1]}, headers=headers)
    assert r.status_code == 400
    r = client.post(f"/api/timesheets/{ts_id}/reject", json={"reason": "Wrong hours"}, headers=headers)
    assert r.status_code == 400

    r = client.delete(f"/api/invoices/{invoice_a}", headers=headers)
    assert r.json["released_timesheets"] == 1
    with session_scope(app) as s:
        ts = s.get(Timesheet, ts_id)
        assert ts.invoice_id is None
        assert not any(e.invoiced for e in ts.entries)
    assert client.delete(f"/api/timesheets/{ts_id}", headers=headers).status_code == 200
