from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.aba import auth, create_app
from app.aba.db import session_scope
from app.aba.models import Base, Role, User
from app.aba.modules.directory.models import Client, Insurance, Provider
from scripts.init_db import seed


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("ADMIN_EMAIL", "admin@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "admin-pw-123")
    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    monkeypatch.setenv("BILLING_TIMEZONE", "America/New_York")
    for k in ("SMTP_SERVER", "SMTP_PORT", "SMTP_USERNAME", "SMTP_PASSWORD", "EMAIL_FROM", "EMAIL_BATCH_RECIPIENT"):
        monkeypatch.delenv(k, raising=False)
    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed(s)
        s.flush()
        staff_role = s.query(Role).filter(Role.key == "staff").one()
        staff = User(
            email="staff@example.com",
            name="Staff Member",
            password_hash=generate_password_hash("staff-pw-123"),
            is_active=True,
        )
        staff.roles.append(staff_role)
        ins = Insurance(
            name="Medicaid",
            rate_per_unit=Decimal("15.00"),
            regular_rate_per_unit=Decimal("20.00"),
            bcba_rate_per_unit=Decimal("30.00"),
            active=True,
        )
        s.add_all([staff, ins])
        s.flush()
        s.add_all(
            [
                Client(name="Alice Client", insurance_id=ins.id, active=True),
                Client(name="Bob Client", insurance_id=ins.id, active=True),
                Provider(name="Riley RBT", kind="RBT", active=True),
                Provider(name="Casey RBT", kind="RBT", active=True),
                Provider(name="Dana BCBA", kind="BCBA", active=True),
            ]
        )

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def ids(app):
    """Primary keys of the seeded directory rows, by name."""
    with session_scope(app) as s:
        out = {c.name: c.id for c in s.query(Client).all()}
        out.update({p.name: p.id for p in s.query(Provider).all()})
        out.update({i.name: i.id for i in s.query(Insurance).all()})
        out.update({u.email: u.id for u in s.query(User).all()})
    return out


def login(client, email="admin@example.com", password="admin-pw-123") -> dict:
    """Log in and return headers carrying the session CSRF token."""
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrf_token"]}


def timesheet_payload(ids, **overrides) -> dict:
    payload = {
        "client_id": ids["Alice Client"],
        "provider_id": ids["Riley RBT"],
        "bcba_id": ids["Dana BCBA"],
        "insurance_id": ids["Medicaid"],
        "start_date": "2025-01-06",
        "end_date": "2025-01-12",
        "entries": [
            {"date": "2025-01-06", "start_time": "09:00", "end_time": "10:00", "notes": "DR"},
            {"date": "2025-01-07", "start_time": "09:00", "end_time": "09:30", "notes": "SV"},
        ],
    }
    payload.update(overrides)
    return payload
