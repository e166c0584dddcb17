"""
duplicates.py - Kiểm tra trùng lặp row-level
=============================================
2-stage approach (không tải toàn bộ bảng về RAM):
  Stage 1: Lọc theo ma_bn → hỏi BigQuery theo từng batch mã bệnh nhân,
           lấy composite key của mọi lượt KCB đã có của các BN đó.
  Stage 2: So khớp chính xác theo composite key
           (ma_cskcb, ma_bn, ma_loaikcb, ngay_vao, ngay_ra).

Batch lookup lỗi (mất mạng, timeout...) được coi là "không tìm thấy key nào"
cho batch đó: dòng bị xếp vào "mới" chứ không bao giờ bị bỏ mất.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime

import pandas as pd

from cpbq_import.schema import PATIENT_COL, ROW_KEY_COLS
from cpbq_import.transform import is_missing

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_BATCH_SIZE = 5000

_ISO_DATETIME = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2})(:\d{2})?$")


# ─── Composite key ────────────────────────────────────────────────────────────

def key_part(value) -> str:
    """
    Chuẩn hóa 1 thành phần của key về chuỗi.
    None / NaN / '' → ''. Datetime (object hoặc chuỗi ISO, 'T' hay dấu cách)
    → 'YYYY-MM-DDTHH:MM:SS'. Số thực nguyên → '3' thay vì '3.0'.
    """
    if is_missing(value):
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).strip()
    m = _ISO_DATETIME.match(text)
    if m:
        return f"{m.group(1)}T{m.group(2)}{m.group(3) or ':00'}"
    return text


def row_key(values) -> str:
    return "|".join(key_part(v) for v in values)


def record_key(record, key_cols: list = ROW_KEY_COLS) -> str:
    """Key của 1 record (dict, bigquery.Row, pandas Series...)."""
    return row_key(record.get(c) for c in key_cols)


def frame_keys(df: pd.DataFrame, key_cols: list = ROW_KEY_COLS) -> pd.Series:
    """Composite key cho từng dòng của DataFrame (cùng index)."""
    keyed = df.reindex(columns=key_cols)
    keys = [row_key(vals) for vals in keyed.itertuples(index=False, name=None)]
    return pd.Series(keys, index=df.index, dtype=object)


# ─── Classification ───────────────────────────────────────────────────────────

@dataclass
class DuplicateClassification:
    new_index: pd.Index
    duplicate_index: pd.Index
    lookup_batches: int = 0
    failed_batches: int = 0

    @property
    def new_count(self) -> int:
        return len(self.new_index)

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicate_index)

    @property
    def degraded(self) -> bool:
        """True nếu có batch lookup lỗi (kết quả có thể bỏ sót dòng trùng)."""
        return self.failed_batches > 0

    def new_rows(self, df: pd.DataFrame) -> pd.DataFrame:
        return df.loc[self.new_index]

    def duplicate_rows(self, df: pd.DataFrame) -> pd.DataFrame:
        return df.loc[self.duplicate_index]


def distinct_patient_codes(df: pd.DataFrame, patient_col: str = PATIENT_COL) -> list:
    """Danh sách ma_bn không trùng, giữ thứ tự xuất hiện."""
    if patient_col not in df.columns:
        return []
    codes = []
    seen = set()
    for value in df[patient_col]:
        code = key_part(value)
        if code and code not in seen:
            seen.add(code)
            codes.append(code)
    return codes


def fetch_existing_keys(codes: list, lookup, key_cols: list = ROW_KEY_COLS,
                        batch_size: int = DEFAULT_LOOKUP_BATCH_SIZE):
    """
    Gọi `lookup(batch_codes)` theo từng batch, gộp composite key đã tồn tại.
    Returns: (existing_keys, n_batches, n_failed)
    """
    if batch_size < 1:
        raise ValueError("batch_size phải >= 1")

    existing = set()
    total_batches = (len(codes) + batch_size - 1) // batch_size
    failed = 0
    for batch_num, start in enumerate(range(0, len(codes), batch_size), start=1):
        batch = codes[start:start + batch_size]
        logger.info("Đang truy vấn BigQuery (batch %d/%d, %d mã BN)...",
                    batch_num, total_batches, len(batch))
        try:
            rows = lookup(batch)
        except Exception as e:
            failed += 1
            logger.warning("Batch %d/%d lỗi, coi như không có dòng trùng: %s",
                           batch_num, total_batches, e)
            continue
        for row in rows:
            existing.add(record_key(row, key_cols))
    return existing, total_batches, failed


def classify_duplicates(df: pd.DataFrame, lookup, key_cols: list = ROW_KEY_COLS,
                        patient_col: str = PATIENT_COL,
                        batch_size: int = DEFAULT_LOOKUP_BATCH_SIZE) -> DuplicateClassification:
    """
    Phân loại từng dòng hợp lệ thành mới / trùng.

    `lookup(codes) -> iterable[mapping]` trả về giá trị các cột key của mọi
    record đã lưu có ma_bn thuộc `codes`. Key của tất cả batch được gộp xong
    rồi mới so khớp với toàn bộ dòng đầu vào.
    """
    codes = distinct_patient_codes(df, patient_col)
    existing, n_batches, n_failed = fetch_existing_keys(codes, lookup, key_cols, batch_size)

    if existing:
        dup_mask = frame_keys(df, key_cols).isin(existing)
    else:
        dup_mask = pd.Series(False, index=df.index)

    result = DuplicateClassification(
        new_index=df.index[~dup_mask.to_numpy(dtype=bool)],
        duplicate_index=df.index[dup_mask.to_numpy(dtype=bool)],
        lookup_batches=n_batches,
        failed_batches=n_failed,
    )
    logger.info("Kiểm tra trùng: %d mới, %d trùng (%d/%d batch lỗi)",
                result.new_count, result.duplicate_count, n_failed, n_batches)
    return result
