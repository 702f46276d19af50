"""
admin/export.py -- CSV export of the user directory.

Formula injection (CWE-1236): spreadsheet applications evaluate cells that
start with =, +, - or @. Usernames and emails are user-controlled, so every
cell is passed through _sanitize_csv_cell(), which prefixes dangerous values
with a tab -- the cell then opens as text.
"""

from __future__ import annotations

import csv
import io

from auth.models import User

CSV_HEADERS = ["username", "email", "role", "two_factor_enabled", "created_at", "last_login"]

_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _sanitize_csv_cell(value: object) -> str:
    text = "" if value is None else str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def users_to_csv(users: list[User]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_HEADERS)
    for u in users:
        writer.writerow(
            [
                _sanitize_csv_cell(u.username),
                _sanitize_csv_cell(u.email),
                _sanitize_csv_cell(u.role.value),
                _sanitize_csv_cell(u.two_factor_enabled),
                _sanitize_csv_cell(u.created_at),
                _sanitize_csv_cell(u.last_login),
            ]
        )
    return buf.getvalue()
