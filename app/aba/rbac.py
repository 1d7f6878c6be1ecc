from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.aba.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active or user.deleted_at is not None:
        return False
    for role in user.roles:
        if role.is_admin:
            return True
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def get_user_permissions(user: User | None) -> list[str]:
    """Sorted permission keys held by the user (the whole catalog for admins)."""
    from app.aba.constants import PERMISSIONS

    if not user or not user.is_active:
        return []
    if user.is_admin:
        return sorted(key for key, _name in PERMISSIONS)
    keys = {perm.key for role in user.roles for perm in role.permissions}
    return sorted(keys)


def can_see_dashboard_section(user: User | None, section: str) -> bool:
    return user_has_permission(user, f"dashboard.{section}")


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            abort(401)
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (the SPA redirects to its login screen).
            if not user or not user.is_active:
                abort(401)
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
