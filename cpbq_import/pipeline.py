"""
pipeline.py - Ghép các bước import thành luồng hoàn chỉnh
==========================================================
Dùng chung cho trang Streamlit (views/importer.py) và CLI
(upload_to_bigquery.py):

  open_workbook()     → đọc file + tìm sheet phù hợp
  select_candidate()  → chọn sheet (theo tên hoặc sheet đầu tiên)
  prepare_import()    → extract → transform → validate → check trùng
                        → cảnh báo danh mục → bảng đối soát
  commit_selection()  → kiểm tra trùng lại (mode "new") rồi tải lên

`store` là collaborator kiểu bq_store.BigQueryStore (hoặc fake trong test):
  lookup_existing_keys(codes), append_records(batch, mode),
  load_facilities(), load_departments(), load_kcb_types()
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

import pandas as pd

from cpbq_import.commit import DEFAULT_COMMIT_BATCH_SIZE, MODE_NEW, MODES, commit_records
from cpbq_import.duplicates import (
    DEFAULT_LOOKUP_BATCH_SIZE, DuplicateClassification, classify_duplicates,
)
from cpbq_import.errors import NoCompatibleSheetError, StoreError
from cpbq_import.lookups import LookupTables, check_lookup_codes
from cpbq_import.schema import PATIENT_COL, REQUIRED_COLS, ROW_KEY_COLS, SCHEMA_COLS
from cpbq_import.sheets import HEADER_SCAN_ROWS, SheetCandidate, scan_sheets
from cpbq_import.summary import ReconciliationPivot, build_reconciliation_pivot
from cpbq_import.transform import transform_dataframe
from cpbq_import.validate import ValidationOutcome, validate_rows
from cpbq_import.workbook import extract_rows, read_workbook

logger = logging.getLogger(__name__)

PERIOD_GROUP_COLS = ["nam_qt", "thang_qt", "ma_cskcb"]


# ─── Workbook & sheet selection ───────────────────────────────────────────────

def _no_sheet_message(scans: list) -> str:
    if not scans:
        return "File Excel không có sheet nào."
    err = NoCompatibleSheetError("", scans)
    top = err.most_missing()[:5]
    msg = "Không tìm thấy sheet nào có đủ các cột bắt buộc."
    if top:
        msg += " Cột thường thiếu: " + ", ".join(col for col, _ in top)
    return msg


def open_workbook(data, required_cols: list = REQUIRED_COLS,
                  schema_cols: list = SCHEMA_COLS,
                  scan_rows: int = HEADER_SCAN_ROWS):
    """
    Đọc workbook và phát hiện sheet phù hợp.
    Returns: (xls, candidates). Raise FormatError / NoCompatibleSheetError.
    """
    xls = read_workbook(data)
    scans = scan_sheets(xls, required_cols, schema_cols, scan_rows)
    candidates = [s for s in scans if s.compatible]
    if not candidates:
        raise NoCompatibleSheetError(_no_sheet_message(scans), scans)
    logger.info("Tìm thấy %d/%d sheet phù hợp: %s",
                len(candidates), len(scans), ", ".join(c.sheet_name for c in candidates))
    return xls, candidates


def select_candidate(candidates: list, sheet_name: str = None) -> SheetCandidate:
    """Chọn sheet theo tên; không truyền tên → sheet phù hợp đầu tiên."""
    if not candidates:
        raise NoCompatibleSheetError("Không có sheet phù hợp để chọn.")
    if sheet_name is None:
        return candidates[0]
    for cand in candidates:
        if cand.sheet_name == sheet_name:
            return cand
    names = ", ".join(c.sheet_name for c in candidates)
    raise NoCompatibleSheetError(
        f"Sheet '{sheet_name}' không tồn tại hoặc thiếu cột bắt buộc. Sheet phù hợp: {names}",
        candidates,
    )


# ─── Lookup tables (fail-open) ────────────────────────────────────────────────

def load_lookup_tables(store):
    """
    Tải 3 bảng danh mục. Bảng nào lỗi → để rỗng (bỏ qua kiểm tra tương ứng)
    và thêm 1 dòng cảnh báo.
    Returns: (LookupTables, warnings)
    """
    tables = LookupTables()
    warnings = []
    if store is None:
        return tables, warnings

    loaders = [
        ("facilities", store.load_facilities, "lookup_cskcb"),
        ("departments", store.load_departments, "lookup_khoa"),
        ("kcb_types", store.load_kcb_types, "lookup_loaikcb"),
    ]
    for attr, loader, table_name in loaders:
        try:
            setattr(tables, attr, loader())
        except StoreError as e:
            logger.warning("Không tải được bảng %s: %s", table_name, e)
            warnings.append(f"Không tải được bảng danh mục {table_name}, bỏ qua kiểm tra mã tương ứng.")
    return tables, warnings


def _no_existing_keys(codes):
    return []


# ─── Preview ──────────────────────────────────────────────────────────────────

@dataclass
class ImportPreview:
    filename: str
    sheet_name: str
    transformed: pd.DataFrame
    validation: ValidationOutcome
    classification: DuplicateClassification
    pivot: ReconciliationPivot
    lookups: LookupTables = field(default_factory=LookupTables)
    warnings: list = field(default_factory=list)

    @property
    def new_rows(self) -> pd.DataFrame:
        return self.classification.new_rows(self.validation.valid)

    @property
    def duplicate_rows(self) -> pd.DataFrame:
        return self.classification.duplicate_rows(self.validation.valid)

    def accounting(self) -> dict:
        """Mọi dòng đều thuộc đúng 1 nhóm: invalid, new hoặc duplicate."""
        return {
            "total": self.validation.total,
            "valid": len(self.validation.valid),
            "invalid": len(self.validation.invalid),
            "new": self.classification.new_count,
            "duplicate": self.classification.duplicate_count,
        }

    def period_summary(self) -> pd.DataFrame:
        """Tóm tắt dòng hợp lệ theo kỳ × CSKCB: số dòng, số dòng trùng, tổng chi."""
        out_cols = PERIOD_GROUP_COLS + ["so_dong", "so_dong_trung", "tong_chi"]
        valid = self.validation.valid
        if valid.empty:
            return pd.DataFrame(columns=out_cols)

        work = valid[PERIOD_GROUP_COLS + ["t_tongchi"]].copy()
        work["_dup"] = valid.index.isin(self.classification.duplicate_index)
        summary = (
            work.groupby(PERIOD_GROUP_COLS, dropna=False)
            .agg(
                so_dong=("_dup", "size"),
                so_dong_trung=("_dup", "sum"),
                tong_chi=("t_tongchi", "sum"),
            )
            .reset_index()
            .sort_values(PERIOD_GROUP_COLS, ignore_index=True)
        )
        summary["so_dong_trung"] = summary["so_dong_trung"].astype(int)
        return summary[out_cols]


def prepare_import(xls, candidate: SheetCandidate, filename: str, store=None,
                   lookup_batch_size: int = DEFAULT_LOOKUP_BATCH_SIZE,
                   now: datetime = None,
                   required_cols: list = REQUIRED_COLS,
                   schema_cols: list = SCHEMA_COLS,
                   key_cols: list = ROW_KEY_COLS,
                   metric: str = "count") -> ImportPreview:
    """
    Chạy toàn bộ các bước trước khi tải lên cho 1 sheet.
    `store=None` → không check trùng, không kiểm tra danh mục.
    """
    raw = extract_rows(xls, candidate.sheet_name, candidate.header_row or 0)
    df = transform_dataframe(raw, filename, now=now, schema_cols=schema_cols)
    outcome = validate_rows(df, required_cols)
    logger.info("Kiểm tra dữ liệu: %d hợp lệ, %d lỗi", len(outcome.valid), len(outcome.invalid))

    tables, warnings = load_lookup_tables(store)

    lookup = store.lookup_existing_keys if store is not None else _no_existing_keys
    classification = classify_duplicates(
        outcome.valid, lookup, key_cols=key_cols, patient_col=PATIENT_COL,
        batch_size=lookup_batch_size,
    )
    if classification.degraded:
        warnings.append(
            f"Không kiểm tra trùng được {classification.failed_batches}/"
            f"{classification.lookup_batches} nhóm mã bệnh nhân: các dòng này đang được coi là mới."
        )

    warnings.extend(check_lookup_codes(outcome.valid, tables))

    pivot = build_reconciliation_pivot(
        outcome.valid, classification.duplicate_index,
        facility_names=tables.facilities, kcb_types=tables.kcb_types, metric=metric,
    )

    return ImportPreview(
        filename=filename,
        sheet_name=candidate.sheet_name,
        transformed=df,
        validation=outcome,
        classification=classification,
        pivot=pivot,
        lookups=tables,
        warnings=warnings,
    )


# ─── Commit ───────────────────────────────────────────────────────────────────

@dataclass
class CommitReport:
    mode: str
    uploaded: int = 0
    failed: int = 0
    skipped_duplicates: int = 0
    batches: int = 0
    failed_batches: int = 0
    recheck_failed_batches: int = 0

    @property
    def submitted(self) -> int:
        return self.uploaded + self.failed


def commit_selection(store, rows: pd.DataFrame, mode: str,
                     batch_size: int = DEFAULT_COMMIT_BATCH_SIZE,
                     recheck: bool = True,
                     lookup_batch_size: int = DEFAULT_LOOKUP_BATCH_SIZE,
                     key_cols: list = ROW_KEY_COLS) -> CommitReport:
    """
    Tải các dòng đã chọn lên kho.

    mode="new": kết quả check trùng có thể đã cũ, nên nếu `recheck` thì kiểm
    tra lại ngay trước khi tải; dòng vừa thành trùng được bỏ qua và đếm vào
    `skipped_duplicates`.
    mode="overwrite": store xóa dòng cũ cùng key rồi mới ghi.
    """
    if mode not in MODES:
        raise ValueError(f"mode không hợp lệ: {mode!r}")

    report = CommitReport(mode=mode)
    if mode == MODE_NEW and recheck and len(rows):
        fresh = classify_duplicates(
            rows, store.lookup_existing_keys, key_cols=key_cols,
            patient_col=PATIENT_COL, batch_size=lookup_batch_size,
        )
        report.skipped_duplicates = fresh.duplicate_count
        report.recheck_failed_batches = fresh.failed_batches
        rows = fresh.new_rows(rows)
        if fresh.duplicate_count:
            logger.info("Bỏ qua %d dòng đã có trên BigQuery", fresh.duplicate_count)

    result = commit_records(rows, mode, store.append_records, batch_size=batch_size)
    report.uploaded = result.uploaded
    report.failed = result.failed
    report.batches = result.batches
    report.failed_batches = result.failed_batches
    logger.info("Tải lên (%s): %d thành công, %d lỗi, %d bỏ qua do trùng",
                mode, report.uploaded, report.failed, report.skipped_duplicates)
    return report
