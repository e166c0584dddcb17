"""
lookups.py - Đối chiếu mã với bảng danh mục
============================================
Kiểm tra ma_cskcb, (ma_cskcb, ma_khoa) và ma_loaikcb có trong danh mục hay
không. Kết quả chỉ là cảnh báo: không ảnh hưởng tính hợp lệ hay việc tải lên.
"""

from dataclasses import dataclass, field
from typing import Dict, Set, Tuple

import pandas as pd

from cpbq_import.duplicates import key_part
from cpbq_import.transform import parse_int


@dataclass
class LookupTables:
    # ma_cskcb → ten_cskcb
    facilities: Dict[str, str] = field(default_factory=dict)
    # {(ma_cskcb, makhoa_xml)}
    departments: Set[Tuple[str, str]] = field(default_factory=set)
    # ma_loaikcb → ml2 ("Nội trú" / "Ngoại trú")
    kcb_types: Dict[int, str] = field(default_factory=dict)


def _distinct(values) -> set:
    return set(v for v in values if v not in ("", None))


def check_lookup_codes(df: pd.DataFrame, tables: LookupTables) -> list:
    """
    Check ma_cskcb, (ma_cskcb, ma_khoa), and ma_loaikcb against lookup tables.
    Bảng danh mục rỗng → bỏ qua phần kiểm tra tương ứng.
    Returns list of warning strings.
    """
    warnings = []

    # ── Check ma_cskcb ──
    if tables.facilities and "ma_cskcb" in df.columns:
        upload_cskcb = _distinct(key_part(v) for v in df["ma_cskcb"])
        missing = upload_cskcb - set(tables.facilities)
        if missing:
            warnings.append(f"Mã cơ sở KCB chưa có trong danh mục: {', '.join(sorted(missing))}")

    # ── Check (ma_cskcb, ma_khoa) pairs ──
    if tables.departments and {"ma_cskcb", "ma_khoa"} <= set(df.columns):
        upload_pairs = set(
            (key_part(cs), key_part(kh))
            for cs, kh in zip(df["ma_cskcb"], df["ma_khoa"])
            if key_part(cs) and key_part(kh)
        )
        missing_pairs = upload_pairs - tables.departments
        if missing_pairs:
            details = ", ".join(f"{khoa} (CSKCB: {cskcb})" for cskcb, khoa in sorted(missing_pairs))
            warnings.append(f"Mã khoa chưa có trong danh mục: {details}")

    # ── Check ma_loaikcb ──
    if tables.kcb_types and "ma_loaikcb" in df.columns:
        upload_loaikcb = _distinct(parse_int(v) for v in df["ma_loaikcb"])
        missing_loai = upload_loaikcb - set(tables.kcb_types)
        if missing_loai:
            codes = ", ".join(str(c) for c in sorted(missing_loai))
            warnings.append(f"Mã loại KCB chưa có trong danh mục: {codes}")

    return warnings
