"""
sheets.py - Phát hiện sheet dữ liệu phù hợp
============================================
Một sheet phù hợp khi dòng header chứa ĐỦ các cột bắt buộc. Sheet lỗi khi
đọc bị bỏ qua, không làm hỏng việc quét các sheet khác.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from cpbq_import.schema import REQUIRED_COLS, SCHEMA_COLS
from cpbq_import.workbook import find_header_row, list_sheets

logger = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 20


@dataclass
class SheetCandidate:
    sheet_name: str
    header_row: Optional[int] = None
    matched_cols: List[str] = field(default_factory=list)
    extra_cols: List[str] = field(default_factory=list)
    missing_required: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def compatible(self) -> bool:
        return self.error is None and self.header_row is not None and not self.missing_required

    @property
    def total_cols(self) -> int:
        return len(self.matched_cols) + len(self.extra_cols)


def scan_sheets(xls, required_cols: list = REQUIRED_COLS,
                schema_cols: list = SCHEMA_COLS,
                scan_rows: int = HEADER_SCAN_ROWS) -> list:
    """Quét toàn bộ sheet, trả về SheetCandidate cho MỌI sheet (kể cả không phù hợp)."""
    scans = []
    schema_set = set(schema_cols)
    for sheet_name in list_sheets(xls):
        try:
            header_row, cells = find_header_row(xls, sheet_name, required_cols, scan_rows)
        except Exception as e:
            logger.warning("Bỏ qua sheet %r: %s", sheet_name, e)
            scans.append(SheetCandidate(sheet_name=sheet_name, error=str(e)))
            continue

        present = [c for c in cells if c]
        present_set = set(present)
        extra = []
        for c in present:
            if c not in schema_set and c not in extra:
                extra.append(c)

        scans.append(SheetCandidate(
            sheet_name=sheet_name,
            header_row=header_row,
            matched_cols=[c for c in schema_cols if c in present_set],
            extra_cols=extra,
            missing_required=[c for c in required_cols if c not in present_set],
        ))
    return scans


def detect_compatible_sheets(xls, required_cols: list = REQUIRED_COLS,
                             schema_cols: list = SCHEMA_COLS,
                             scan_rows: int = HEADER_SCAN_ROWS) -> list:
    """
    Scan all sheets in the Excel file, return list of compatible sheets.
    A sheet is compatible if its header row contains ALL required columns.
    """
    return [s for s in scan_sheets(xls, required_cols, schema_cols, scan_rows) if s.compatible]
