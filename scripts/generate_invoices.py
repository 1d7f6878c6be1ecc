#!/usr/bin/env python3
"""Weekly invoice generation for system cron.

Crontab (Tuesday 07:00, billing timezone):
  0 7 * * 2  cd /srv/app && python scripts/generate_invoices.py

Usage:
  python scripts/generate_invoices.py [--start-date YYYY-MM-DD --end-date YYYY-MM-DD]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.aba import create_app  # noqa: E402
from app.aba.db import session_scope  # noqa: E402
from app.aba.modules.invoices.billing_period import billing_period_from_dates  # noqa: E402
from app.aba.modules.invoices.generation import generate_invoices_for_approved_timesheets  # noqa: E402
from app.aba.utils import parse_date  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--start-date", help="Custom period start (YYYY-MM-DD)")
    parser.add_argument("--end-date", help="Custom period end (YYYY-MM-DD)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()

    period = None
    if args.start_date or args.end_date:
        if not (args.start_date and args.end_date):
            parser.error("--start-date and --end-date must be given together")
        period = billing_period_from_dates(
            parse_date(args.start_date), parse_date(args.end_date), app.config.get("BILLING_TIMEZONE")
        )

    with session_scope(app) as s:
        result = generate_invoices_for_approved_timesheets(s, period, config=app.config)

    if result.period is not None:
        print(f"Period: {result.period.label}")
    print(f"Invoices created: {result.invoices_created}")
    print(f"Clients processed: {result.clients_processed}")
    for err in result.errors:
        print(f"ERROR: {err}")
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
