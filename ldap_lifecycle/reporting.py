"""
Report rendering: the audit workbook, the user info HTML table and the
single-user password status text.
"""

import html
import io
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, Side
from openpyxl.utils import get_column_letter

from ldap_lifecycle.audit import sort_report_rows
from ldap_lifecycle.models import AuditReportRow, PasswordStatus, ACTIVE, format_timestamp

logger = logging.getLogger(__name__)

MAIN_SHEET_TITLE = "AD Account Audit"
BLANK_NAME_SHEET_TITLE = "Blank Display Name"
AUDIT_HEADERS = ["Account", "Privileged", "Name", "Current Status", "Recommended Action"]

CHECKED = "■"
UNCHECKED = "□"

# 1-based columns holding check-box symbols
_SYMBOL_COLUMNS = (2, 4, 5)

_THIN = Side(style="thin")
_BORDER = Border(top=_THIN, bottom=_THIN, left=_THIN, right=_THIN)


def audit_report_filename(now: Optional[datetime] = None) -> str:
    return f"AD_Users_Audit_Report_{(now or datetime.now()).strftime('%Y%m%d_%H%M%S')}.xlsx"


def _status_cell(enabled: bool) -> str:
    if enabled:
        return f"{CHECKED}Enabled {UNCHECKED}Disabled"
    return f"{UNCHECKED}Enabled {CHECKED}Disabled"


def _audit_values(row: AuditReportRow) -> List[str]:
    return [
        row.sam_account_name,
        CHECKED if row.is_privileged else UNCHECKED,
        row.display_name,
        _status_cell(row.is_enabled),
        f"{CHECKED}Keep {UNCHECKED}Delete",
    ]


def _populate_sheet(sheet, rows: List[AuditReportRow]) -> None:
    sheet.append(AUDIT_HEADERS)
    for row in rows:
        sheet.append(_audit_values(row))

    widths = [len(header) for header in AUDIT_HEADERS]
    for cells in sheet.iter_rows(min_row=1, max_row=sheet.max_row, max_col=len(AUDIT_HEADERS)):
        for cell in cells:
            cell.border = _BORDER
            cell.font = Font(size=14 if cell.column in _SYMBOL_COLUMNS else 12)
            if cell.column in _SYMBOL_COLUMNS:
                cell.alignment = Alignment(horizontal="center")
            widths[cell.column - 1] = max(widths[cell.column - 1], len(str(cell.value or "")))

    for index, width in enumerate(widths, start=1):
        sheet.column_dimensions[get_column_letter(index)].width = width + 4


def create_audit_workbook(rows: Iterable[AuditReportRow]) -> bytes:
    """
    Render audit rows as an .xlsx workbook.

    Rows are sorted enabled first, privileged first, then by login. Rows
    with a blank display name go to a second sheet, created only when
    there are any.
    """
    ordered = sort_report_rows(rows)
    named = [row for row in ordered if row.display_name.strip()]
    unnamed = [row for row in ordered if not row.display_name.strip()]

    workbook = Workbook()
    main_sheet = workbook.active
    main_sheet.title = MAIN_SHEET_TITLE
    _populate_sheet(main_sheet, named)

    if unnamed:
        _populate_sheet(workbook.create_sheet(BLANK_NAME_SHEET_TITLE), unnamed)

    buffer = io.BytesIO()
    workbook.save(buffer)
    logger.info(f"Audit workbook generated: {len(named)} named rows, {len(unnamed)} blank-name rows")
    return buffer.getvalue()


_CELL_STYLE = "border: 1px solid black; padding: 5px;"
_ROW_STYLE = "border: 1px solid black; text-align: center;"


def render_user_info_html(statuses: Iterable[PasswordStatus]) -> str:
    """HTML table of every user's status and password expiry date, by department descending."""
    headers = ["Status", "Common Name", "Email", "Street Address", "Department", "Password Expires"]
    parts = [
        "<table style='border-collapse: collapse; width: 70%;'>",
        f"<thead><tr style='{_ROW_STYLE}'>",
    ]
    parts.extend(f"<th style='{_CELL_STYLE}'>{header}</th>" for header in headers)
    parts.append("</tr></thead><tbody>")

    ordered = sorted(statuses, key=lambda status: status.user.department, reverse=True)
    for status in ordered:
        user = status.user
        expires = status.expires_on.strftime('%Y-%m-%d') if status.expires_on else "N/A"
        values = [
            "Enabled" if user.is_active == ACTIVE else "Disabled",
            user.common_name,
            user.email,
            user.street_address,
            user.department,
            expires,
        ]
        parts.append(f"<tr style='{_ROW_STYLE}'>")
        parts.extend(f"<td style='{_CELL_STYLE}'>{html.escape(value or 'N/A')}</td>" for value in values)
        parts.append("</tr>")

    parts.append("</tbody></table>")
    return "".join(parts)


def format_password_status_text(status: PasswordStatus) -> str:
    def _or_na(value) -> str:
        return "N/A" if value is None else str(value)

    return "\n".join([
        f"• Name: {status.user.common_name}",
        f"• Account: {status.user.sam_account_name}",
        f"• Maximum password age: {_or_na(status.max_age_days)} days",
        f"• Password last set: {_or_na(format_timestamp(status.last_set))}",
        f"• Password expires: {_or_na(format_timestamp(status.expires_on))}",
        f"• Days until expiration: {_or_na(status.days_until_expiration)}",
    ])
