"""
Directory module: insurance payers, clients and providers (RBTs and BCBAs).

Clients and providers are soft-deleted so historical timesheets and invoices
keep their references.
"""
