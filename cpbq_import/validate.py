"""
validate.py - Kiểm tra từng dòng
=================================
Dòng hợp lệ khi mọi cột bắt buộc đều có giá trị và đúng miền giá trị.
Một dòng sai nhiều cột được đếm ở từng cột, nhưng chỉ vào `invalid` một lần.
"""

from dataclasses import dataclass, field

import pandas as pd

from cpbq_import.schema import GIOI_TINH_CODES, REQUIRED_COLS


@dataclass
class ValidationOutcome:
    valid: pd.DataFrame
    invalid: pd.DataFrame
    issues: dict = field(default_factory=dict)

    def issue_list(self) -> list:
        """[(col, so_dong), ...] sắp xếp giảm dần theo số dòng lỗi."""
        return sorted(self.issues.items(), key=lambda kv: (-kv[1], kv[0]))

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.invalid)


def _present_mask(series: pd.Series) -> pd.Series:
    as_text = series.astype(str).str.strip()
    return series.notna() & (as_text != "") & (as_text != "nan")


def _domain_ok_mask(col: str, series: pd.Series) -> pd.Series:
    """True nếu giá trị (đã có mặt) đúng miền. Cột không có ràng buộc → True."""
    numeric = pd.to_numeric(series, errors="coerce")
    if col == "gioi_tinh":
        ok = numeric.isin(GIOI_TINH_CODES)
    elif col == "thang_qt":
        ok = numeric.between(1, 12) & (numeric % 1 == 0)
    elif col in ("nam_qt", "t_tongchi", "t_bhtt"):
        ok = numeric.notna()
    else:
        return pd.Series(True, index=series.index)
    return ok.fillna(False).astype(bool)


def validate_rows(df: pd.DataFrame, required_cols: list = REQUIRED_COLS) -> ValidationOutcome:
    """
    Validate each row: required columns must be non-null and in correct format.
    Returns: ValidationOutcome(valid, invalid, issues)
    """
    issues = {}
    invalid_mask = pd.Series(False, index=df.index)

    for col in required_cols:
        if col not in df.columns:
            bad = pd.Series(True, index=df.index)
        else:
            present = _present_mask(df[col])
            bad = ~present | (present & ~_domain_ok_mask(col, df[col]))

        n_bad = int(bad.sum())
        if n_bad > 0:
            issues[col] = n_bad
        invalid_mask = invalid_mask | bad

    return ValidationOutcome(
        valid=df[~invalid_mask].copy(),
        invalid=df[invalid_mask].copy(),
        issues=issues,
    )
