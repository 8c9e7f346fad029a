"""Parse file-download responses (CSV or XLSX exports) into records."""

from __future__ import annotations

import csv
import io
import logging
from typing import Any

import openpyxl

from scripts.school_sync.http_client import FileResponse

logger = logging.getLogger("school_sync.exports")

XLSX_MAGIC = b"PK\x03\x04"
_WORKBOOK_TYPES = ("spreadsheet", "excel", "openxmlformats")


def is_workbook(response: FileResponse) -> bool:
    content_type = (response.content_type or "").lower()
    if any(t in content_type for t in _WORKBOOK_TYPES):
        return True
    return response.content[:4] == XLSX_MAGIC


def _clean_header(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _parse_csv(content: bytes) -> list[dict[str, Any]]:
    text = content.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    records = []
    for row in reader:
        record = {_clean_header(k): v for k, v in row.items() if k is not None}
        if any(v not in (None, "") for v in record.values()):
            records.append(record)
    return records


def _parse_workbook(content: bytes) -> list[dict[str, Any]]:
    workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0] if workbook.worksheets else None
        if sheet is None:
            return []
        rows = sheet.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return []
        columns = [_clean_header(h) for h in header]
        records = []
        for row in rows:
            if row is None or all(v in (None, "") for v in row):
                continue
            records.append({
                col: row[i] if i < len(row) else None
                for i, col in enumerate(columns) if col
            })
        return records
    finally:
        workbook.close()


def parse_export(response: FileResponse) -> list[dict[str, Any]]:
    """Records of an export file; the first row holds the column names."""
    if not response.content:
        return []
    if is_workbook(response):
        records = _parse_workbook(response.content)
        kind = "xlsx"
    else:
        records = _parse_csv(response.content)
        kind = "csv"
    logger.debug("Parsed %s export: %d row(s), %d byte(s)", kind, len(records), len(response.content))
    return records
