from __future__ import annotations

import csv
import io

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from .service import Report

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def report_to_csv(report: Report) -> bytes:
    out = io.StringIO()
    w = csv.writer(out, quoting=csv.QUOTE_ALL)
    w.writerow(report.columns)
    for row in report.rows:
        w.writerow(["" if v is None else v for v in row])
    return out.getvalue().encode("utf-8")


def _autosize(ws) -> None:
    for idx, column in enumerate(ws.iter_cols(values_only=True), start=1):
        width = max((len(str(v)) for v in column if v is not None), default=8)
        ws.column_dimensions[get_column_letter(idx)].width = min(max(width + 2, 10), 60)


def report_to_xlsx(report: Report) -> bytes:
    """Workbook with a Summary sheet (when the report has one) followed by the data sheet."""
    wb = Workbook()
    bold = Font(bold=True)

    data_ws = wb.active
    if report.summary:
        summary_ws = data_ws
        summary_ws.title = "Summary"
        summary_ws.append([report.title])
        summary_ws["A1"].font = Font(bold=True, size=14)
        summary_ws.append([])
        for label, value in report.summary:
            summary_ws.append([label, value])
            summary_ws.cell(row=summary_ws.max_row, column=1).font = bold
        _autosize(summary_ws)
        data_ws = wb.create_sheet()

    data_ws.title = report.title[:31]
    data_ws.append(report.columns)
    for cell in data_ws[1]:
        cell.font = bold
    for row in report.rows:
        data_ws.append(row)
    data_ws.freeze_panes = "A2"
    _autosize(data_ws)

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()
