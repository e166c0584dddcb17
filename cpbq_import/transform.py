"""
transform.py - Chuẩn hóa kiểu dữ liệu
======================================
File Excel xuất từ các phần mềm khác nhau biểu diễn cùng một giá trị theo
nhiều dạng: ngày kiểu số YYYYMMDD, chuỗi datetime có dấu ' ở đầu, số tiền
có dấu phẩy ngăn cách hàng nghìn... Sau bước này mọi cột đều có kiểu chuẩn:

  - Ngày      → 'YYYY-MM-DD'
  - Ngày giờ  → 'YYYY-MM-DDTHH:MM:SS' (không timezone)
  - Số tiền   → float64 (NaN nếu rỗng/lỗi)
  - Số nguyên → Int64 (pd.NA nếu rỗng/lỗi)
  - Mã, tên   → str đã strip, hoặc None
"""

import logging
import math
import numbers
import re
from datetime import date, datetime, timedelta, timezone

import pandas as pd

from cpbq_import.schema import (
    DATE_INT_COLS, DATETIME_COLS, FLOAT_COLS, INT_COLS, SCHEMA_COLS, STRING_COLS,
)
from cpbq_import.workbook import normalize_header

logger = logging.getLogger(__name__)

NULL_TOKENS = ("", "nan", "undefined")

EXCEL_EPOCH = datetime(1899, 12, 30)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_COMPACT_FORMATS = {
    12: "%Y%m%d%H%M",
    14: "%Y%m%d%H%M%S",
    8: "%Y%m%d",
}


# ─── Scalar helpers ───────────────────────────────────────────────────────────

def is_missing(val) -> bool:
    if val is None:
        return True
    try:
        return bool(pd.isna(val))
    except (TypeError, ValueError):
        return False


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _is_plain_number(val) -> bool:
    return isinstance(val, numbers.Real) and not isinstance(val, bool)


def parse_number(val):
    """'2,500.75' → 2500.75; 'abc' → None."""
    if is_missing(val) or isinstance(val, bool):
        return None
    if _is_plain_number(val):
        num = float(val)
    elif isinstance(val, str):
        cleaned = val.replace(",", "").strip()
        if not cleaned:
            return None
        try:
            num = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    return num if math.isfinite(num) else None


def parse_int(val):
    num = parse_number(val)
    return None if num is None else _round_half_up(num)


def clean_str(val):
    """Ép về chuỗi đã strip; '', 'nan', 'undefined' → None."""
    if is_missing(val):
        return None
    if isinstance(val, float) and val.is_integer():
        text = str(int(val))
    else:
        text = str(val).strip()
    return None if text in NULL_TOKENS else text


def parse_date_int(val):
    """Chuyển int YYYYMMDD → 'YYYY-MM-DD', trả None nếu lỗi."""
    if is_missing(val) or isinstance(val, bool):
        return None
    if isinstance(val, (datetime, date)):
        return val.strftime("%Y-%m-%d")

    raw = str(val).strip()
    if _ISO_DATE.match(raw):
        try:
            return datetime.strptime(raw, "%Y-%m-%d").strftime("%Y-%m-%d")
        except ValueError:
            return None
    try:
        num = float(raw)
    except ValueError:
        return None
    if not math.isfinite(num):
        return None

    # Số serial ngày của Excel (vd. 28370 = 1977-09-02)
    if 10000 < num < 100000:
        return (EXCEL_EPOCH + timedelta(days=int(num))).strftime("%Y-%m-%d")

    s = str(_round_half_up(num))
    if len(s) != 8:
        return None
    try:
        return datetime.strptime(s, "%Y%m%d").strftime("%Y-%m-%d")
    except ValueError:
        return None


def _format_timestamp(ts: pd.Timestamp) -> str:
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.strftime("%Y-%m-%dT%H:%M:%S")


def parse_datetime_str(val):
    """Chuyển string '202601020735' → '2026-01-02T07:35:00', trả None nếu lỗi."""
    if is_missing(val) or isinstance(val, bool):
        return None
    if isinstance(val, datetime):
        return _format_timestamp(pd.Timestamp(val))
    if isinstance(val, date):
        return f"{val.isoformat()}T00:00:00"

    if _is_plain_number(val):
        if not math.isfinite(float(val)):
            return None
        s = str(_round_half_up(float(val)))
    else:
        s = str(val).strip().lstrip("'").strip()
    if not s:
        return None

    fmt = _COMPACT_FORMATS.get(len(s))
    if fmt and s.isdigit():
        try:
            return datetime.strptime(s, fmt).strftime("%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return None

    ts = pd.to_datetime(s, errors="coerce")
    if pd.isna(ts):
        return None
    return _format_timestamp(ts)


# ─── DataFrame transform ──────────────────────────────────────────────────────

def transform_dataframe(df: pd.DataFrame, source_filename: str,
                        now: datetime = None,
                        schema_cols: list = SCHEMA_COLS) -> pd.DataFrame:
    """Chuẩn hóa kiểu dữ liệu cho tất cả các cột. Không sửa DataFrame đầu vào."""
    out = df.copy()
    out.columns = [normalize_header(c) for c in out.columns]

    for col in schema_cols:
        if col not in out.columns:
            out[col] = None

    for col in DATE_INT_COLS:
        if col in out.columns:
            out[col] = out[col].map(parse_date_int).astype(object)

    for col in DATETIME_COLS:
        if col in out.columns:
            out[col] = out[col].map(parse_datetime_str).astype(object)

    for col in STRING_COLS:
        if col in out.columns:
            out[col] = out[col].map(clean_str).astype(object)

    for col in FLOAT_COLS:
        if col in out.columns:
            values = [parse_number(v) for v in out[col]]
            out[col] = pd.Series(values, index=out.index, dtype="float64")

    for col in INT_COLS:
        if col in out.columns:
            values = [parse_int(v) for v in out[col]]
            out[col] = pd.Series(pd.array(values, dtype="Int64"), index=out.index)

    if now is None:
        now = datetime.now(timezone.utc)
    out["upload_timestamp"] = now.isoformat()
    out["source_file"] = source_filename

    logger.info("Chuẩn hóa xong: %d dòng", len(out))
    return out
