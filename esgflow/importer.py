"""Bulk indicator catalog import from XLSX workbooks.

The first sheet is read with one header row. Columns are matched by header
name, case-insensitively: ``code``, ``name``, ``category``, ``data_type``,
``unit``, ``guidance``, ``min``, ``max`` and ``choices`` (comma-separated).
Rows upsert by indicator code.
"""
from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from esgflow.models import CATEGORIES, DATA_TYPES, Indicator
from esgflow.schemas import ImportResult
from esgflow.utils import json_dump

log = logging.getLogger(__name__)

_COLUMNS = ("code", "name", "category", "data_type", "unit", "guidance", "min", "max", "choices")


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int | None) -> object:
    """Safely get a column value from a row tuple."""
    if idx is None:
        return None
    return row[idx] if idx < len(row) else None


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if missing."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _header_map(header: tuple) -> dict[str, int]:
    found = {_s(cell).casefold().replace(" ", "_"): idx for idx, cell in enumerate(header)}
    return {name: found[name] for name in _COLUMNS if name in found}


def _parse_row(row: tuple, cols: dict[str, int]) -> dict:
    data_type = _s(_col(row, cols.get("data_type"))).lower() or "numeric"
    rules = {}
    for key in ("min", "max"):
        bound = _f(_col(row, cols.get(key)))
        if bound is not None:
            rules[key] = bound
    choices = [c.strip() for c in _s(_col(row, cols.get("choices"))).split(",") if c.strip()]
    return {
        "code": _s(_col(row, cols.get("code"))),
        "name": _s(_col(row, cols.get("name"))),
        "category": _s(_col(row, cols.get("category"))).lower(),
        "data_type": data_type,
        "unit": _s(_col(row, cols.get("unit"))),
        "guidance": _s(_col(row, cols.get("guidance"))),
        "choices_json": json_dump(choices),
        "validation_rules_json": json_dump(rules),
    }


def _check(data: dict) -> str | None:
    if not data["code"] or not data["name"]:
        return "code and name are required"
    if data["category"] not in CATEGORIES:
        return f"unknown category '{data['category']}'"
    if data["data_type"] not in DATA_TYPES:
        return f"unknown data type '{data['data_type']}'"
    if data["data_type"] == "choice" and data["choices_json"] == "[]":
        return "choice indicators need at least one choice"
    return None


def import_indicators_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import indicators from the first sheet of an XLSX file. Upserts by code."""
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    try:
        ws = wb[wb.sheetnames[0]]
        rows = list(ws.iter_rows(values_only=True))
    finally:
        wb.close()

    if not rows:
        return ImportResult(total_rows=0, created=0, updated=0, skipped=0)
    cols = _header_map(rows[0])
    if "code" not in cols or "name" not in cols or "category" not in cols:
        return ImportResult(
            total_rows=len(rows) - 1, created=0, updated=0, skipped=len(rows) - 1,
            errors=["Header row must contain code, name and category columns"],
        )

    existing = {i.code: i for i in session.execute(select(Indicator)).scalars().all()}
    created = updated = skipped = 0
    errors: list[str] = []
    total = 0

    for line, row in enumerate(rows[1:], start=2):
        if not row or all(c is None for c in row):
            continue
        total += 1
        data = _parse_row(row, cols)
        problem = _check(data)
        if problem:
            skipped += 1
            errors.append(f"Row {line}: {problem}")
            continue
        indicator = existing.get(data["code"])
        if indicator is None:
            indicator = Indicator(**data)
            session.add(indicator)
            existing[data["code"]] = indicator
            created += 1
        else:
            for field, value in data.items():
                setattr(indicator, field, value)
            updated += 1

    session.commit()
    log.info("Indicator import from %s: %d created, %d updated, %d skipped", file_path.name, created, updated, skipped)
    return ImportResult(total_rows=total, created=created, updated=updated, skipped=skipped, errors=errors)
