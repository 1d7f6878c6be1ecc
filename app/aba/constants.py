"""
Central constants for the practice manager.
"""
from __future__ import annotations

DEFAULT_TIMEZONE = "America/New_York"

# Billing: 1 unit = 15 minutes (1 hour = 4 units)
UNIT_MINUTES = 15

# Entry note codes: DR = direct session, SV = supervision (not charged on regular timesheets)
ENTRY_NOTE_DIRECT = "DR"
ENTRY_NOTE_SUPERVISION = "SV"

TIMESHEET_DRAFT = "DRAFT"
TIMESHEET_SUBMITTED = "SUBMITTED"
TIMESHEET_APPROVED = "APPROVED"
TIMESHEET_REJECTED = "REJECTED"
TIMESHEET_EMAILED = "EMAILED"
TIMESHEET_STATUSES = frozenset(
    {TIMESHEET_DRAFT, TIMESHEET_SUBMITTED, TIMESHEET_APPROVED, TIMESHEET_REJECTED, TIMESHEET_EMAILED}
)
# Statuses that count as approved for billing
BILLABLE_TIMESHEET_STATUSES = (TIMESHEET_APPROVED, TIMESHEET_EMAILED)

INVOICE_DRAFT = "DRAFT"
INVOICE_READY = "READY"
INVOICE_SENT = "SENT"
INVOICE_PARTIALLY_PAID = "PARTIALLY_PAID"
INVOICE_PAID = "PAID"
INVOICE_VOID = "VOID"
INVOICE_STATUSES = frozenset(
    {INVOICE_DRAFT, INVOICE_READY, INVOICE_SENT, INVOICE_PARTIALLY_PAID, INVOICE_PAID, INVOICE_VOID}
)

EMAIL_QUEUED = "QUEUED"
EMAIL_SENDING = "SENDING"
EMAIL_SENT = "SENT"
EMAIL_FAILED = "FAILED"

PROVIDER_KINDS = ("RBT", "BCBA")

# Permission catalog: (key, display name). Seeded by scripts/init_db.py.
PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: view audit trail"),
    ("users.view", "Users: view"),
    ("users.manage", "Users: create/edit/delete"),
    ("roles.view", "Roles: view"),
    ("roles.manage", "Roles: create/edit/delete"),
    ("clients.view", "Clients: view"),
    ("clients.manage", "Clients: create/edit/delete/import"),
    ("providers.view", "Providers: view"),
    ("providers.manage", "Providers: create/edit/delete/import"),
    ("insurance.view", "Insurance: view"),
    ("insurance.manage", "Insurance: create/edit"),
    ("timesheets.view", "Timesheets: view own"),
    ("timesheets.create", "Timesheets: create/edit own"),
    ("timesheets.delete", "Timesheets: delete"),
    ("timesheets.submit", "Timesheets: submit"),
    ("timesheets.approve", "Timesheets: approve/reject"),
    ("timesheets.archive", "Timesheets: archive"),
    ("timesheets.view_all", "Timesheets: view all users"),
    ("timesheets.view_selected", "Timesheets: view selected users"),
    ("bcba_timesheets.approve", "BCBA Timesheets: approve/reject"),
    ("invoices.view", "Invoices: view"),
    ("invoices.generate", "Invoices: generate"),
    ("invoices.approve", "Invoices: approve/send"),
    ("invoices.payments", "Invoices: record payments/adjustments"),
    ("invoices.void", "Invoices: void"),
    ("email_queue.view", "Email Queue: view"),
    ("email_queue.send", "Email Queue: send/delete"),
    ("reports.view", "Reports: view"),
    ("reports.export", "Reports: export CSV/Excel"),
    ("dashboard.timesheets", "Dashboard: timesheets section"),
    ("dashboard.invoices", "Dashboard: invoices section"),
    ("dashboard.reports", "Dashboard: reports section"),
)

# Default permissions for the non-admin "staff" role
STAFF_PERMISSIONS = (
    "clients.view",
    "providers.view",
    "insurance.view",
    "timesheets.view",
    "timesheets.create",
    "timesheets.submit",
    "invoices.view",
    "dashboard.timesheets",
)
