from conftest import login


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_api_requires_login(client):
    r = client.get("/api/timesheets")
    assert r.status_code == 401
    assert r.json["error"] == "Unauthorized"


def test_login_me_and_logout(client):
    headers = login(client)
    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json["email"] == "admin@example.com"
    assert r.json["is_admin"] is True
    assert "invoices.generate" in r.json["permissions"]

    r = client.post("/api/auth/logout", headers=headers)
    assert r.status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_login_invalid_credentials(client):
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "Invalid credentials."


def test_login_rate_limited(client):
    for _ in range(5):
        client.post("/api/auth/login", json={"email": "admin@example.com", "password": "nope"})
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pw-123"})
    assert r.status_code == 429


def test_csrf_required_for_writes(client, ids):
    login(client)
    r = client.post("/api/clients", json={"name": "No Token"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_forbidden_reports_missing_permission(client):
    login(client, "staff@example.com", "staff-pw-123")
    r = client.get("/api/users")
    assert r.status_code == 403
    assert r.json["missing_permission"] == "users.view"


def test_unknown_route_is_json_404(client):
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert r.json["error"] == "Not found"


def test_change_password(client):
    headers = login(client, "staff@example.com", "staff-pw-123")
    r = client.post(
        "/api/auth/change-password",
        json={"current_password": "wrong", "new_password": "another-pw-1"},
        headers=headers,
    )
    assert r.status_code == 400

    r = client.post(
        "/api/auth/change-password",
        json={"current_password": "staff-pw-123", "new_password": "another-pw-1"},
        headers=headers,
    )
    assert r.status_code == 200
    client.post("/api/auth/logout", headers=headers)
    login(client, "staff@example.com", "another-pw-1")
