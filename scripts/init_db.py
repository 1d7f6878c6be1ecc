import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.aba.constants import PERMISSIONS, STAFF_PERMISSIONS  # noqa: E402
from app.aba.models import Permission, Role, User  # noqa: E402
from scripts._db_utils import database_url_from_env, script_session  # noqa: E402


def seed(s) -> User:
    """
    Idempotent seed on an open session: permission catalog, admin/staff roles and the admin user.
    Never overwrites an existing user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        elif p.name != name:
            p.name = name
        perms[key] = p

    role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
    if not role_admin:
        role_admin = Role(key="admin", name="Administrator", is_admin=True)
        s.add(role_admin)
    role_admin.is_admin = True
    for p in perms.values():
        if p not in role_admin.permissions:
            role_admin.permissions.append(p)

    role_staff = s.query(Role).filter(Role.key == "staff").one_or_none()
    if not role_staff:
        role_staff = Role(key="staff", name="Staff")
        s.add(role_staff)
        for key in STAFF_PERMISSIONS:
            role_staff.permissions.append(perms[key])

    user = s.query(User).filter(User.email == admin_email).one_or_none()
    if not user:
        user = User(email=admin_email, name="Administrator", password_hash=generate_password_hash(admin_password), is_active=True)
        s.add(user)
    if role_admin not in user.roles:
        user.roles.append(role_admin)
    return user


def seed_only(*, database_url: str | None = None) -> None:
    db_url = database_url_from_env(database_url)

    # Direct engine/session so the release phase never imports app.wsgi.
    with script_session(db_url) as s:
        user = seed(s)
        admin_email = user.email

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
