from app.aba.db import session_scope
from app.aba.modules.email_queue import service as email_service
from app.aba.modules.email_queue.models import EmailQueueItem
from app.aba.modules.timesheets.models import Timesheet

from conftest import login, timesheet_payload


def _approve(client, headers, ids, **overrides) -> int:
    ts_id = client.post("/api/timesheets", json=timesheet_payload(ids, **overrides), headers=headers).json["id"]
    assert client.post(f"/api/timesheets/{ts_id}/approve", headers=headers).status_code == 200
    return ts_id


def test_queue_lists_items_with_timesheet(client, ids):
    headers = login(client)
    ts_id = _approve(client, headers, ids)
    r = client.get("/api/email-queue?status=queued")
    assert r.status_code == 200
    assert r.json["total"] == 1
    assert r.json["items"][0]["timesheet"]["id"] == ts_id


def test_send_batch_requires_recipient(client, ids):
    headers = login(client)
    _approve(client, headers, ids)
    r = client.post("/api/email-queue/send-batch", headers=headers)
    assert r.status_code == 400
    assert "EMAIL_BATCH_RECIPIENT" in r.json["error"]


def test_send_batch_marks_timesheets_emailed(client, app, ids, monkeypatch):
    app.config["EMAIL_BATCH_RECIPIENT"] = "billing@example.com"
    sent = []

    def fake_send(config, to, subject, body):
        sent.append((to, subject, body))
        return True, ""

    monkeypatch.setattr(email_service, "send_email", fake_send)
    headers = login(client)
    first = _approve(client, headers, ids)
    second = _approve(client, headers, ids, client_id=ids["Bob Client"], provider_id=ids["Casey RBT"])

    r = client.post("/api/email-queue/send-batch", headers=headers)
    assert r.status_code == 200, r.json
    assert r.json["sent"] == 2
    assert r.json["batch_id"].startswith("BATCH-")

    assert len(sent) == 1
    to, subject, body = sent[0]
    assert to == "billing@example.com"
    assert subject.startswith("Approved Timesheets")
    assert "T-1001" in body and "T-1002" in body

    with session_scope(app) as s:
        for ts_id in (first, second):
            assert s.get(Timesheet, ts_id).status == "EMAILED"
        assert {i.status for i in s.query(EmailQueueItem).all()} == {"SENT"}

    # Nothing left to send
    r = client.post("/api/email-queue/send-batch", headers=headers)
    assert r.json["sent"] == 0


def test_send_failure_marks_items_failed(client, app, ids, monkeypatch):
    app.config["EMAIL_BATCH_RECIPIENT"] = "billing@example.com"
    monkeypatch.setattr(email_service, "send_email", lambda *a, **k: (False, "SMTP down"))
    headers = login(client)
    ts_id = _approve(client, headers, ids)

    r = client.post("/api/email-queue/send-batch", headers=headers)
    assert r.status_code == 502
    assert r.json["error"] == "SMTP down"

    with session_scope(app) as s:
        item = s.query(EmailQueueItem).one()
        assert item.status == "FAILED"
        assert item.attempts == 1
        assert s.get(Timesheet, ts_id).status == "APPROVED"
        item_id = item.id

    # Failed items can be retried selectively
    monkeypatch.setattr(email_service, "send_email", lambda *a, **k: (True, ""))
    r = client.post("/api/email-queue/send-selected", json={"ids": [item_id]}, headers=headers)
    assert r.status_code == 200
    assert r.json["sent"] == 1


def test_delete_and_requeue(client, app, ids):
    headers = login(client)
    ts_id = _approve(client, headers, ids)
    item_id = client.get("/api/email-queue").json["items"][0]["id"]

    assert client.delete(f"/api/email-queue/{item_id}", headers=headers).status_code == 200
    assert client.get("/api/email-queue").json["total"] == 0

    r = client.post("/api/email-queue/bulk-delete", json={"ids": [item_id]}, headers=headers)
    assert r.json["deleted"] == 0

    # A deleted queue item is revived when the timesheet is approved again
    with session_scope(app) as s:
        s.get(Timesheet, ts_id).status = "SUBMITTED"
    r = client.post(f"/api/timesheets/{ts_id}/approve", headers=headers)
    assert r.status_code == 200
    assert r.json["email_queue_item"]["id"] == item_id
    assert client.get("/api/email-queue").json["total"] == 1
