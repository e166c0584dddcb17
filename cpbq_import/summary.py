"""
summary.py - Bảng đối soát trước khi tải lên
=============================================
Pivot kỳ quyết toán × CSKCB × (Ngoại trú / Nội trú) cho 2 phần:
  - valid:     toàn bộ dòng hợp lệ
  - duplicate: các dòng hợp lệ đã có trên BigQuery
kèm tổng Ngoại trú, tổng Nội trú, tổng cộng từng kỳ và dòng tổng của mọi kỳ.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd

from cpbq_import.duplicates import key_part
from cpbq_import.schema import DEFAULT_INPATIENT_CODES, ML2_NGOAI_TRU, ML2_NOI_TRU
from cpbq_import.transform import parse_int, parse_number

SECTIONS = ("valid", "duplicate")
SECTION_LABELS = {"valid": "Hợp lệ", "duplicate": "Trùng"}

TOTAL_LABEL = "TỔNG CỘNG"
GRAND_ROW_LABEL = "TỔNG"


@dataclass
class PivotRow:
    outpatient: Dict[str, float] = field(default_factory=dict)
    inpatient: Dict[str, float] = field(default_factory=dict)

    @property
    def outpatient_total(self) -> float:
        return sum(self.outpatient.values())

    @property
    def inpatient_total(self) -> float:
        return sum(self.inpatient.values())

    @property
    def total(self) -> float:
        return self.outpatient_total + self.inpatient_total


@dataclass
class ReconciliationPivot:
    periods: List[Tuple[int, int]]
    outpatient_facilities: List[str]
    inpatient_facilities: List[str]
    rows: Dict[tuple, PivotRow]
    grand_total: Dict[str, PivotRow]
    facility_names: Dict[str, str] = field(default_factory=dict)
    metric: str = "count"

    def row(self, period: tuple, section: str) -> PivotRow:
        return self.rows[(period, section)]

    def facility_label(self, code: str) -> str:
        return self.facility_names.get(code) or code or "?"

    @staticmethod
    def period_label(period: tuple) -> str:
        nam, thang = period
        if nam is None or thang is None:
            return "?"
        return f"{thang:02d}/{nam}"

    def to_frame(self, section: str = "valid") -> pd.DataFrame:
        """Bảng hiển thị: mỗi kỳ 1 dòng, dòng cuối là tổng."""
        def flatten(label: str, prow: PivotRow) -> dict:
            out = {"Kỳ": label}
            for code in self.outpatient_facilities:
                out[f"{ML2_NGOAI_TRU}|{self.facility_label(code)}"] = prow.outpatient.get(code, 0)
            out[f"{ML2_NGOAI_TRU}|Tổng"] = prow.outpatient_total
            for code in self.inpatient_facilities:
                out[f"{ML2_NOI_TRU}|{self.facility_label(code)}"] = prow.inpatient.get(code, 0)
            out[f"{ML2_NOI_TRU}|Tổng"] = prow.inpatient_total
            out[TOTAL_LABEL] = prow.total
            return out

        records = [flatten(self.period_label(p), self.row(p, section)) for p in self.periods]
        records.append(flatten(GRAND_ROW_LABEL, self.grand_total[section]))
        return pd.DataFrame(records)


# ─── Builders ─────────────────────────────────────────────────────────────────

def is_inpatient(ma_loaikcb, kcb_types: Optional[dict] = None,
                 inpatient_codes: tuple = DEFAULT_INPATIENT_CODES) -> bool:
    """Nội trú theo bảng lookup_loaikcb (ml2); mã không có trong bảng → heuristic."""
    code = parse_int(ma_loaikcb)
    if kcb_types and code in kcb_types:
        return kcb_types[code] == ML2_NOI_TRU
    return code in inpatient_codes


def _period_sort_key(period: tuple):
    nam, thang = period
    return (nam is None, nam or 0, thang is None, thang or 0)


def _empty_row(out_fac: list, in_fac: list) -> PivotRow:
    return PivotRow(
        outpatient={code: 0 for code in out_fac},
        inpatient={code: 0 for code in in_fac},
    )


def build_reconciliation_pivot(valid_df: pd.DataFrame, duplicate_index=(),
                               facility_names: Optional[dict] = None,
                               kcb_types: Optional[dict] = None,
                               metric: str = "count",
                               inpatient_codes: tuple = DEFAULT_INPATIENT_CODES) -> ReconciliationPivot:
    """
    Xây dựng bảng đối soát từ các dòng hợp lệ và index các dòng trùng.
    metric: "count" (số lượt) hoặc tên cột số để tính tổng (vd. "t_tongchi").
    """
    dup_set = set(duplicate_index)

    def col(name):
        if name in valid_df.columns:
            return list(valid_df[name])
        return [None] * len(valid_df)

    if metric == "count":
        values = [1] * len(valid_df)
    else:
        values = [parse_number(v) or 0 for v in col(metric)]

    # (period, section, inpatient, facility) → value
    cells: Dict[tuple, float] = {}
    periods, out_fac, in_fac = set(), set(), set()
    for idx, nam, thang, loai, cskcb, value in zip(
        valid_df.index, col("nam_qt"), col("thang_qt"), col("ma_loaikcb"), col("ma_cskcb"), values,
    ):
        period = (parse_int(nam), parse_int(thang))
        facility = key_part(cskcb)
        inpatient = is_inpatient(loai, kcb_types, inpatient_codes)
        periods.add(period)
        (in_fac if inpatient else out_fac).add(facility)

        sections = ("valid", "duplicate") if idx in dup_set else ("valid",)
        for section in sections:
            key = (period, section, inpatient, facility)
            cells[key] = cells.get(key, 0) + value

    periods = sorted(periods, key=_period_sort_key)
    out_fac, in_fac = sorted(out_fac), sorted(in_fac)

    rows = {}
    grand_total = {s: _empty_row(out_fac, in_fac) for s in SECTIONS}
    for period in periods:
        for section in SECTIONS:
            prow = _empty_row(out_fac, in_fac)
            for code in out_fac:
                prow.outpatient[code] = cells.get((period, section, False, code), 0)
                grand_total[section].outpatient[code] += prow.outpatient[code]
            for code in in_fac:
                prow.inpatient[code] = cells.get((period, section, True, code), 0)
                grand_total[section].inpatient[code] += prow.inpatient[code]
            rows[(period, section)] = prow

    return ReconciliationPivot(
        periods=periods,
        outpatient_facilities=out_fac,
        inpatient_facilities=in_fac,
        rows=rows,
        grand_total=grand_total,
        facility_names=dict(facility_names or {}),
        metric=metric,
    )
