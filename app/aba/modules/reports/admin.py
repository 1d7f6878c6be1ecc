from __future__ import annotations

from datetime import date

from flask import Blueprint, Response, g, jsonify, request

from app.aba.audit import record_event
from app.aba.db import db_session
from app.aba.rbac import can_see_dashboard_section, current_user, require_login, require_permission, user_has_permission
from app.aba.utils import error_response, parse_date

from app.aba.modules.timesheets.visibility import get_timesheet_visibility_scope

from .exporters import XLSX_MIMETYPE, report_to_csv, report_to_xlsx
from .service import REPORT_TYPES, build_report, dashboard_stats

bp = Blueprint("reports", __name__)


@bp.get("/reports")
@require_permission("reports.view")
def reports_get():
    s = db_session()
    u = current_user()
    report_type = (request.args.get("type") or "").strip()
    fmt = (request.args.get("format") or "json").strip().lower()
    if report_type not in REPORT_TYPES:
        return error_response(f"Invalid report type. Must be one of: {', '.join(REPORT_TYPES)}")
    if fmt not in ("json", "csv", "xlsx"):
        return error_response("Invalid format. Must be one of: json, csv, xlsx")
    if fmt != "json" and not user_has_permission(u, "reports.export"):
        g.missing_permission = "reports.export"
        return error_response("Forbidden", 403, missing_permission="reports.export")

    try:
        start_date = parse_date(request.args.get("start_date"))
        end_date = parse_date(request.args.get("end_date"))
    except ValueError:
        return error_response("Invalid date filter.")
    if start_date and end_date and end_date < start_date:
        return error_response("End date must be on or after start date.")

    scope = get_timesheet_visibility_scope(s, u)
    report = build_report(s, report_type, scope, start_date, end_date)

    if fmt == "json":
        return jsonify(report.to_dict())

    record_event(
        s,
        actor=u,
        action="report.export",
        entity_type="Report",
        entity_id=report_type,
        metadata={"format": fmt, "rows": len(report.rows), "start_date": start_date, "end_date": end_date},
    )
    s.commit()

    stamp = date.today().isoformat()
    if fmt == "csv":
        return Response(
            report_to_csv(report),
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{report_type}_{stamp}.csv"'},
        )
    return Response(
        report_to_xlsx(report),
        mimetype=XLSX_MIMETYPE,
        headers={"Content-Disposition": f'attachment; filename="{report_type}_{stamp}.xlsx"'},
    )


@bp.get("/dashboard/stats")
@require_login
def dashboard_stats_get():
    s = db_session()
    u = current_user()
    sections = {name for name in ("timesheets", "invoices", "reports") if can_see_dashboard_section(u, name)}
    scope = get_timesheet_visibility_scope(s, u)
    return jsonify({"sections": sorted(sections), **dashboard_stats(s, scope, sections)})
