from app.aba import admin

from conftest import login, timesheet_payload


def _role_id(client, key: str) -> int:
    roles = client.get("/api/roles").json["items"]
    return next(r["id"] for r in roles if r["key"] == key)


def test_user_lifecycle(client, ids):
    headers = login(client)
    staff_role = _role_id(client, "staff")

    r = client.post(
        "/api/users",
        json={"email": "New.Person@Example.com", "name": "New Person", "password": "short", "role_ids": [staff_role]},
        headers=headers,
    )
    assert r.status_code == 400
    assert "Password must be at least 8 characters." in r.json["errors"]

    r = client.post(
        "/api/users",
        json={"email": "New.Person@Example.com", "name": "New Person", "password": "long-enough-1", "role_ids": [staff_role]},
        headers=headers,
    )
    assert r.status_code == 201, r.json
    user_id = r.json["id"]
    assert r.json["email"] == "new.person@example.com"
    assert r.json["roles"] == ["staff"]

    r = client.post("/api/users", json={"email": "new.person@example.com", "password": "long-enough-1"}, headers=headers)
    assert r.status_code == 400

    r = client.put(f"/api/users/{user_id}", json={"is_active": False}, headers=headers)
    assert r.json["is_active"] is False

    r = client.post(f"/api/users/{user_id}/reset-password", json={"password": "another-pw-1"}, headers=headers)
    assert r.status_code == 200

    assert client.delete(f"/api/users/{user_id}", headers=headers).status_code == 200
    assert client.get(f"/api/users/{user_id}").status_code == 404
    assert "new.person@example.com" not in [u["email"] for u in client.get("/api/users").json["items"]]


def test_admin_cannot_modify_or_delete_self(client, ids):
    headers = login(client)
    me = ids["admin@example.com"]
    assert client.put(f"/api/users/{me}", json={"is_active": False}, headers=headers).status_code == 400
    assert client.delete(f"/api/users/{me}", headers=headers).status_code == 400


def test_reset_password_lets_user_log_in(client, ids):
    headers = login(client)
    r = client.post(
        f"/api/users/{ids['staff@example.com']}/reset-password",
        json={"password": "brand-new-pw"},
        headers=headers,
    )
    assert r.status_code == 200
    client.post("/api/auth/logout")
    login(client, "staff@example.com", "brand-new-pw")


def test_role_crud(client, ids):
    headers = login(client)
    r = client.post(
        "/api/roles",
        json={"key": "Billing", "name": "Billing", "permissions": ["invoices.view", "made.up"]},
        headers=headers,
    )
    assert r.status_code == 400
    assert "made.up" in r.json["error"]

    r = client.post(
        "/api/roles",
        json={"key": "Billing", "name": "Billing", "permissions": ["invoices.view", "invoices.generate"]},
        headers=headers,
    )
    assert r.status_code == 201
    role = r.json
    assert role["key"] == "billing"
    assert role["permissions"] == ["invoices.generate", "invoices.view"]

    r = client.post("/api/roles", json={"key": "billing", "name": "Dup"}, headers=headers)
    assert r.status_code == 409

    r = client.put(f"/api/roles/{role['id']}", json={"permissions": ["invoices.view"]}, headers=headers)
    assert r.json["permissions"] == ["invoices.view"]

    # Assigned roles cannot be deleted
    client.put(f"/api/users/{ids['staff@example.com']}", json={"role_ids": [role["id"]]}, headers=headers)
    assert client.delete(f"/api/roles/{role['id']}", headers=headers).status_code == 409

    client.put(f"/api/users/{ids['staff@example.com']}", json={"role_ids": []}, headers=headers)
    assert client.delete(f"/api/roles/{role['id']}", headers=headers).status_code == 200


def test_staff_permissions_payload(client):
    login(client, "staff@example.com", "staff-pw-123")
    r = client.get("/api/user/permissions")
    assert r.status_code == 200
    assert r.json["is_admin"] is False
    assert "timesheets.create" in r.json["permissions"]
    assert "timesheets.approve" not in r.json["permissions"]
    assert client.get("/api/admin/audit").status_code == 403


def test_audit_log_filters(client, ids):
    headers = login(client)
    client.post("/api/clients", json={"name": "Audit Client"}, headers=headers)

    r = client.get("/api/admin/audit?action=client.")
    assert r.status_code == 200
    actions = [e["action"] for e in r.json["items"]]
    assert actions == ["client.create"]
    assert r.json["items"][0]["actor_user_email"] == "admin@example.com"

    r = client.get("/api/admin/audit?entity_type=Client&date_from=2000-01-01&date_to=2100-01-01")
    assert r.json["total"] == 1

    r = client.get("/api/admin/audit?date_from=2000-01-01&date_to=2000-01-02")
    assert r.json["total"] == 0

    assert client.get("/api/admin/audit?date_from=yesterday").status_code == 400


def test_activity_feed_unread_count_and_mark_seen(client, ids):
    staff_headers = login(client, "staff@example.com", "staff-pw-123")
    assert client.get("/api/admin/activity").status_code == 403
    assert client.post("/api/timesheets", json=timesheet_payload(ids), headers=staff_headers).status_code == 201
    client.post("/api/auth/logout", headers=staff_headers)

    headers = login(client)
    # The admin's own changes and sign-ins are not feed items
    client.post("/api/clients", json={"name": "Own Change"}, headers=headers)
    assert client.get("/api/admin/activity/unread-count").json["count"] == 1

    r = client.get("/api/admin/activity?limit=5")
    assert r.status_code == 200
    assert [(e["action"], e["unread"]) for e in r.json["items"]] == [("timesheet.create", True)]
    assert client.get("/api/admin/activity?limit=many").status_code == 400

    r = client.post("/api/admin/activity/mark-seen", headers=headers)
    assert r.status_code == 200
    assert client.get("/api/admin/activity/unread-count").json["count"] == 0
    assert client.get("/api/admin/activity").json["items"][0]["unread"] is False


def _invoiced_timesheet(client, headers, ids) -> int:
    ts_id = client.post("/api/timesheets", json=timesheet_payload(ids), headers=headers).json["id"]
    client.post(f"/api/timesheets/{ts_id}/approve", headers=headers)
    r = client.post("/api/invoices/generate", json={"start_date": "2025-01-06", "end_date": "2025-01-13"}, headers=headers)
    assert r.json["invoices_created"] == 1
    return ts_id


def test_search_by_timesheet_or_invoice_number(client, ids):
    headers = login(client)
    _invoiced_timesheet(client, headers, ids)

    r = client.get("/api/search?q=t-1001")
    assert r.status_code == 200
    assert r.json["type"] == "timesheet"
    assert r.json["timesheet"]["timesheet_number"] == "T-1001"
    invoice_number = r.json["invoice"]["invoice_number"]

    r = client.get(f"/api/search?q={invoice_number}")
    assert r.status_code == 200
    assert r.json["type"] == "invoice"
    assert [t["timesheet_number"] for t in r.json["timesheets"]] == ["T-1001"]

    assert client.get("/api/search?q=BT-1001").status_code == 404
    assert client.get("/api/search?q=INV-2025-99999").status_code == 404
    r = client.get("/api/search?q=alice")
    assert r.status_code == 400
    assert r.json["error"] == "Invalid search format. Use T-1001, BT-1002, or INV-2026-00001"
    assert client.get("/api/search").status_code == 400


def test_search_respects_timesheet_visibility(client, ids):
    headers = login(client)
    _invoiced_timesheet(client, headers, ids)
    client.post("/api/auth/logout", headers=headers)

    login(client, "staff@example.com", "staff-pw-123")
    assert client.get("/api/search?q=T-1001").status_code == 404


def test_role_dashboard_visibility(client):
    headers = login(client)
    staff_role = _role_id(client, "staff")

    r = client.get(f"/api/roles/{staff_role}/dashboard-visibility")
    assert r.status_code == 200
    assert r.json["sections"] == {"timesheets": True, "invoices": False, "reports": False}

    r = client.put(
        f"/api/roles/{staff_role}/dashboard-visibility",
        json={"sections": {"invoices": True, "timesheets": False}},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json["sections"] == {"timesheets": False, "invoices": True, "reports": False}

    r = client.put(f"/api/roles/{staff_role}/dashboard-visibility", json={"sections": {"payroll": True}}, headers=headers)
    assert r.status_code == 400
    r = client.put(f"/api/roles/{staff_role}/dashboard-visibility", json={"sections": ["invoices"]}, headers=headers)
    assert r.status_code == 400

    client.post("/api/auth/logout", headers=headers)
    login(client, "staff@example.com", "staff-pw-123")
    perms = client.get("/api/user/permissions").json["permissions"]
    assert "dashboard.invoices" in perms
    assert "dashboard.timesheets" not in perms


def test_resend_invite_without_smtp_returns_temporary_password(client, ids):
    headers = login(client)
    r = client.post(f"/api/users/{ids['staff@example.com']}/resend-invite", headers=headers)
    assert r.status_code == 200
    assert r.json["email_sent"] is False
    temporary = r.json["temporary_password"]
    client.post("/api/auth/logout", headers=headers)

    staff_headers = login(client, "staff@example.com", temporary)
    assert client.get("/api/auth/me").json["must_change_password"] is True
    r = client.post("/api/auth/set-new-password", json={"new_password": "chosen-pw-123"}, headers=staff_headers)
    assert r.status_code == 200
    client.post("/api/auth/logout", headers=staff_headers)
    login(client, "staff@example.com", "chosen-pw-123")


def test_resend_invite_emails_login_details(client, ids, monkeypatch):
    sent = []
    monkeypatch.setattr(admin, "send_email", lambda config, to, subject, body: sent.append((to, body)) or (True, ""))

    headers = login(client)
    r = client.post(f"/api/users/{ids['staff@example.com']}/resend-invite", headers=headers)
    assert r.json == {"success": True, "email_sent": True}
    to, body = sent[0]
    assert to == "staff@example.com"
    assert "Temporary password:" in body
    assert "/reset-password?token=" in body

    assert client.post("/api/users/999999/resend-invite", headers=headers).status_code == 404
