"""Invoices: billing math, billing periods, weekly generation, payments and adjustments."""
