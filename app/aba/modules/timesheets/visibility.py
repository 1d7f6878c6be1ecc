"""
Timesheet visibility scoping.

Admins and holders of `timesheets.view_all` see everything. Everyone else sees
their own timesheets plus, for each of their roles carrying
`timesheets.view_selected`, the users configured for that role in
role_timesheet_visibility.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import false, select

from app.aba.models import RoleTimesheetVisibility
from app.aba.rbac import user_has_permission

from .models import Timesheet

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.aba.models import User


@dataclass(frozen=True)
class VisibilityScope:
    view_all: bool
    allowed_user_ids: frozenset[int] = field(default_factory=frozenset)

    def allows_user(self, user_id: int | None) -> bool:
        return self.view_all or (user_id is not None and user_id in self.allowed_user_ids)

    def to_dict(self) -> dict:
        return {"view_all": self.view_all, "allowed_user_ids": sorted(self.allowed_user_ids)}


def get_timesheet_visibility_scope(s: "Session", user: "User | None") -> VisibilityScope:
    if user is None or not user.is_active or user.deleted_at is not None:
        return VisibilityScope(view_all=False)
    if user.is_admin or user_has_permission(user, "timesheets.view_all"):
        return VisibilityScope(view_all=True)

    allowed = {user.id}
    selected_role_ids = [
        r.id for r in user.roles if any(p.key == "timesheets.view_selected" for p in r.permissions)
    ]
    if selected_role_ids:
        rows = s.execute(
            select(RoleTimesheetVisibility.user_id).where(RoleTimesheetVisibility.role_id.in_(selected_role_ids))
        ).scalars()
        allowed.update(rows)
    return VisibilityScope(view_all=False, allowed_user_ids=frozenset(allowed))


def apply_visibility(q: "Query", scope: VisibilityScope, user_id_filter: int | None = None) -> "Query":
    """Restrict a Timesheet query to the scope; an optional user filter narrows it further."""
    if scope.view_all:
        if user_id_filter is not None:
            q = q.filter(Timesheet.user_id == user_id_filter)
        return q
    if user_id_filter is not None:
        if user_id_filter not in scope.allowed_user_ids:
            return q.filter(false())
        return q.filter(Timesheet.user_id == user_id_filter)
    if not scope.allowed_user_ids:
        return q.filter(false())
    return q.filter(Timesheet.user_id.in_(sorted(scope.allowed_user_ids)))


def can_view_timesheet(scope: VisibilityScope, ts: Timesheet) -> bool:
    return scope.allows_user(ts.user_id)
