"""
workbook.py - Đọc file Excel
=============================
Mở workbook, liệt kê sheet, tách từng dòng thành record với tên cột đã
chuẩn hóa (lowercase + strip). Ô trống luôn là None, không bao giờ NaN.
"""

import io
import logging

import pandas as pd

from cpbq_import.errors import FormatError

logger = logging.getLogger(__name__)


def normalize_header(value) -> str:
    """'  MA_BN ' → 'ma_bn'. Ô header trống → ''."""
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    text = str(value).strip().lower()
    if text.startswith("unnamed:"):
        return ""
    return text


def read_workbook(data) -> pd.ExcelFile:
    """
    Mở workbook từ bytes, đường dẫn hoặc file-like object.
    Raise FormatError nếu không phải file Excel đọc được.
    """
    source = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
    try:
        return pd.ExcelFile(source)
    except Exception as e:
        raise FormatError(f"Không đọc được file Excel: {e}") from e


def list_sheets(xls: pd.ExcelFile) -> list:
    return list(xls.sheet_names)


def read_header_rows(xls: pd.ExcelFile, sheet_name: str, scan_rows: int) -> list:
    """Đọc `scan_rows` dòng đầu của sheet (không dùng header), đã chuẩn hóa."""
    head = pd.read_excel(
        xls, sheet_name=sheet_name, header=None, nrows=scan_rows, dtype=object,
    )
    return [[normalize_header(v) for v in row] for row in head.itertuples(index=False)]


def find_header_row(xls: pd.ExcelFile, sheet_name: str, required_cols: list,
                    scan_rows: int = 20):
    """
    Tìm dòng header: dòng đầu tiên chứa đủ các cột bắt buộc.
    Returns: (header_row_index | None, cells_of_best_row)
    """
    required = set(required_cols)
    best_idx, best_cells, best_hits = None, [], -1
    for idx, cells in enumerate(read_header_rows(xls, sheet_name, scan_rows)):
        present = set(c for c in cells if c)
        if required <= present:
            return idx, cells
        hits = len(required & present)
        if hits > best_hits:
            best_idx, best_cells, best_hits = idx, cells, hits
    logger.debug("Sheet %r: không có dòng header đủ cột (best row %s)", sheet_name, best_idx)
    return None, best_cells


def extract_rows(xls: pd.ExcelFile, sheet_name: str, header_row: int = 0) -> pd.DataFrame:
    """
    Đọc dữ liệu của sheet: dòng `header_row` là header, các dòng sau là record.

    - Tên cột lowercase + strip; cột không có tên bị bỏ.
    - Ô trống → None (cột vẫn có mặt trong mọi record).
    - Dòng trống hoàn toàn bị bỏ qua.
    - Index được đánh lại 0..n-1 theo thứ tự dòng trong sheet.
    """
    df = pd.read_excel(xls, sheet_name=sheet_name, header=header_row, dtype=object)

    df.columns = [normalize_header(c) for c in df.columns]
    df = df.loc[:, [c != "" for c in df.columns]]
    df = df.loc[:, ~df.columns.duplicated()]

    df = df.dropna(how="all").reset_index(drop=True)
    df = df.astype(object).where(df.notna(), None)

    logger.info("Sheet %r: %d dòng, %d cột", sheet_name, len(df), len(df.columns))
    return df
