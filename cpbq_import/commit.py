"""
commit.py - Tải dữ liệu đã chọn lên kho
========================================
Chia record thành batch, gọi `append(batch, mode)` lần lượt từng batch.
Batch lỗi không dừng các batch sau; số dòng lỗi được cộng dồn trung thực.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime

import numpy as np
import pandas as pd

from cpbq_import.schema import METADATA_COLS, SCHEMA_COLS
from cpbq_import.transform import is_missing

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_BATCH_SIZE = 1000

MODE_NEW = "new"
MODE_OVERWRITE = "overwrite"
MODES = (MODE_NEW, MODE_OVERWRITE)


@dataclass(frozen=True)
class AppendResult:
    inserted: int
    rejected: int = 0


@dataclass
class CommitResult:
    uploaded: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0

    @property
    def submitted(self) -> int:
        return self.uploaded + self.failed


# ─── Record conversion ────────────────────────────────────────────────────────

def to_json_value(value):
    """Giá trị pandas/numpy → kiểu JSON (None, int, float, str)."""
    if is_missing(value):
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def frame_to_records(rows, allowed_cols: list) -> list:
    """
    Chỉ giữ đúng các cột schema + metadata; cột thiếu → None, cột thừa bị bỏ.
    `rows` là DataFrame hoặc list các mapping.
    """
    if isinstance(rows, pd.DataFrame):
        clean = rows.reindex(columns=allowed_cols)
        return [
            {c: to_json_value(v) for c, v in zip(allowed_cols, values)}
            for values in clean.itertuples(index=False, name=None)
        ]
    return [{c: to_json_value(r.get(c)) for c in allowed_cols} for r in rows]


# ─── Commit ───────────────────────────────────────────────────────────────────

def commit_records(rows, mode: str, append, batch_size: int = DEFAULT_COMMIT_BATCH_SIZE,
                   allowed_cols: list = None) -> CommitResult:
    """
    Tải `rows` lên theo batch.

    `append(batch, mode) -> AppendResult`: với mode="overwrite", collaborator
    tự xóa các dòng cũ trùng key trước khi ghi batch đó.
    """
    if mode not in MODES:
        raise ValueError(f"mode không hợp lệ: {mode!r} (chỉ nhận {', '.join(MODES)})")
    if batch_size < 1:
        raise ValueError("batch_size phải >= 1")

    allowed = list(allowed_cols or (SCHEMA_COLS + METADATA_COLS))
    records = frame_to_records(rows, allowed)

    result = CommitResult()
    total_batches = (len(records) + batch_size - 1) // batch_size
    for batch_num, start in enumerate(range(0, len(records), batch_size), start=1):
        batch = records[start:start + batch_size]
        result.batches += 1
        try:
            outcome = append(batch, mode)
        except Exception as e:
            result.failed += len(batch)
            result.failed_batches += 1
            logger.warning("Batch %d/%d (%d dòng) lỗi: %s", batch_num, total_batches, len(batch), e)
            continue

        rejected = min(max(int(outcome.rejected), 0), len(batch))
        result.uploaded += len(batch) - rejected
        result.failed += rejected
        logger.info("Batch %d/%d: %d dòng OK, %d lỗi",
                    batch_num, total_batches, len(batch) - rejected, rejected)

    return result
