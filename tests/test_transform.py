from datetime import date, datetime, timezone

import numpy as np
import pandas as pd
import pytest

from cpbq_import.schema import SCHEMA_COLS
from cpbq_import.transform import (
    clean_str, parse_date_int, parse_datetime_str, parse_int, parse_number,
    transform_dataframe,
)
from cpbq_import.validate import validate_rows


# ─── parse_date_int ───────────────────────────────────────────────────────────

@pytest.mark.parametrize("value, expected", [
    (19770902, "1977-09-02"),
    (19770902.0, "1977-09-02"),
    ("19770902", "1977-09-02"),
    (" 19770902 ", "1977-09-02"),
    ("1977-09-02", "1977-09-02"),
    (datetime(1977, 9, 2, 8, 30), "1977-09-02"),
    (date(1977, 9, 2), "1977-09-02"),
    (28370, "1977-09-02"),        # số serial ngày của Excel
    (1977092, None),              # 7 chữ số
    (197709021, None),            # 9 chữ số
    (20240230, None),             # không có ngày 30/02
    ("abc", None),
    (None, None),
    (float("nan"), None),
    ("", None),
])
def test_parse_date_int(value, expected):
    assert parse_date_int(value) == expected


# ─── parse_datetime_str ───────────────────────────────────────────────────────

@pytest.mark.parametrize("value, expected", [
    ("'202401151030", "2024-01-15T10:30:00"),
    ("202401151030", "2024-01-15T10:30:00"),
    ("20240115103045", "2024-01-15T10:30:45"),
    ("20240115", "2024-01-15T00:00:00"),
    (202401151030, "2024-01-15T10:30:00"),
    (202401151030.0, "2024-01-15T10:30:00"),
    ("  '202401151030 ", "2024-01-15T10:30:00"),
    ("2024-01-15 10:30", "2024-01-15T10:30:00"),
    (datetime(2024, 1, 15, 10, 30), "2024-01-15T10:30:00"),
    (date(2024, 1, 15), "2024-01-15T00:00:00"),
    ("202413151030", None),       # tháng 13
    ("not a date", None),
    ("'", None),
    (None, None),
])
def test_parse_datetime_str(value, expected):
    assert parse_datetime_str(value) == expected


def test_parse_datetime_str_aware_value_converted_to_utc():
    ts = pd.Timestamp("2024-01-15T17:30:00+07:00")
    assert parse_datetime_str(ts.to_pydatetime()) == "2024-01-15T10:30:00"


# ─── Numbers & strings ────────────────────────────────────────────────────────

@pytest.mark.parametrize("value, expected", [
    ("2,500.75", 2500.75),
    (" 1,000 ", 1000.0),
    (12, 12.0),
    (np.float64(3.5), 3.5),
    ("abc", None),
    ("", None),
    ("inf", None),
    (float("nan"), None),
    (True, None),
])
def test_parse_number(value, expected):
    assert parse_number(value) == expected


def test_parse_int_rounds_half_up():
    assert parse_int("2.5") == 3
    assert parse_int(2.4) == 2
    assert parse_int("1,234.5") == 1235
    assert parse_int("x") is None


@pytest.mark.parametrize("value, expected", [
    ("  K01 ", "K01"),
    ("nan", None),
    ("undefined", None),
    ("", None),
    ("   ", None),
    (None, None),
    (31001.0, "31001"),
    (31001, "31001"),
])
def test_clean_str(value, expected):
    assert clean_str(value) == expected


# ─── transform_dataframe ──────────────────────────────────────────────────────

NOW = datetime(2024, 2, 1, 3, 0, tzinfo=timezone.utc)


def test_transform_dataframe_canonical_types(raw_frame):
    raw = raw_frame([{}, {"t_tongchi": "abc", "thang_qt": "2", "ma_the": "nan"}])
    raw["ghi_chu"] = ["x", "y"]
    out = transform_dataframe(raw, "CPBQ.xlsx", now=NOW)

    assert out.loc[0, "ngay_sinh"] == "1977-09-02"
    assert out.loc[0, "ngay_vao"] == "2024-01-01T00:00:00"
    assert out.loc[0, "t_tongchi"] == 2500.75
    assert pd.isna(out.loc[1, "t_tongchi"])
    assert out.loc[1, "thang_qt"] == 2
    assert out.loc[1, "ma_the"] is None
    assert str(out["t_tongchi"].dtype) == "float64"
    assert str(out["nam_qt"].dtype) == "Int64"
    assert out["ghi_chu"].tolist() == ["x", "y"]
    assert out["upload_timestamp"].unique().tolist() == [NOW.isoformat()]
    assert out["source_file"].unique().tolist() == ["CPBQ.xlsx"]
    assert list(out.columns[-2:]) == ["upload_timestamp", "source_file"]


def test_transform_dataframe_adds_missing_schema_columns(raw_frame):
    out = transform_dataframe(raw_frame([{}]), "f.xlsx", now=NOW)
    assert set(SCHEMA_COLS) <= set(out.columns)
    assert out.loc[0, "ma_benhkhac"] is None
    assert pd.isna(out.loc[0, "t_xn"])


def test_transform_dataframe_does_not_mutate_input(raw_frame):
    raw = raw_frame([{}, {"ma_bn": "P2"}])
    before = raw.copy()
    transform_dataframe(raw, "f.xlsx", now=NOW)
    pd.testing.assert_frame_equal(raw, before)


def test_transform_preserves_order_and_row_count(raw_frame):
    raw = raw_frame([{"ma_bn": f"P{i}"} for i in range(5)])
    out = transform_dataframe(raw, "f.xlsx", now=NOW)
    assert out["ma_bn"].tolist() == [f"P{i}" for i in range(5)]


def test_revalidation_is_idempotent(raw_frame):
    raw = raw_frame([{}, {"thang_qt": 13}, {"gioi_tinh": 3, "ho_ten": None}])
    first = validate_rows(transform_dataframe(raw, "f.xlsx", now=NOW))
    second = validate_rows(transform_dataframe(raw, "f.xlsx",
                                               now=datetime(2030, 1, 1, tzinfo=timezone.utc)))

    assert first.issues == second.issues
    for a, b in ((first.valid, second.valid), (first.invalid, second.invalid)):
        pd.testing.assert_frame_equal(a.drop(columns="upload_timestamp"),
                                      b.drop(columns="upload_timestamp"))
