# Shared pytest fixtures: workbook bytes, raw records, in-memory store
import io

import openpyxl
import pandas as pd
import pytest

from cpbq_import.commit import MODE_OVERWRITE, AppendResult
from cpbq_import.duplicates import record_key
from cpbq_import.errors import StoreError
from cpbq_import.schema import ROW_KEY_COLS


def build_workbook(sheets: dict) -> bytes:
    """{sheet_name: [row, row, ...]} → bytes của file .xlsx."""
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(list(row))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def records_to_rows(records: list, header: list = None) -> list:
    header = header or list(records[0].keys())
    return [header] + [[r.get(c) for c in header] for r in records]


BASE_RECORD = {
    "stt": 1,
    "ma_bn": "P1",
    "ho_ten": "Nguyễn Văn A",
    "ngay_sinh": 19770902,
    "gioi_tinh": 1,
    "ma_the": "GD4313120000001",
    "ma_dkbd": "31001",
    "ma_benh": "J06",
    "ngay_vao": "'202401010000",
    "ngay_ra": "'202401050000",
    "t_tongchi": "2,500.75",
    "t_bhtt": 2000,
    "ma_khoa": "K01",
    "nam_qt": 2024,
    "thang_qt": 1,
    "ma_loaikcb": 1,
    "ma_cskcb": "F1",
}


@pytest.fixture()
def raw_record():
    """Factory: raw_record(ma_bn="P2", thang_qt=13) → dict như 1 dòng Excel."""
    def _make(**overrides):
        rec = dict(BASE_RECORD)
        rec.update(overrides)
        return rec
    return _make


@pytest.fixture()
def raw_frame(raw_record):
    """Factory: raw_frame([{...overrides}, ...]) → DataFrame thô."""
    def _make(overrides_list):
        return pd.DataFrame([raw_record(**o) for o in overrides_list])
    return _make


@pytest.fixture()
def workbook_bytes():
    return build_workbook


class FakeStore:
    """Kho in-memory có cùng interface với bq_store.BigQueryStore."""

    def __init__(self, existing=None, fail_lookup_calls=(), fail_append_calls=(),
                 reject_per_batch=0, facilities=None, departments=None,
                 kcb_types=None, broken_lookup_tables=()):
        self.existing = [dict(r) for r in (existing or [])]
        self.fail_lookup_calls = set(fail_lookup_calls)
        self.fail_append_calls = set(fail_append_calls)
        self.reject_per_batch = reject_per_batch
        self.facilities = dict(facilities or {})
        self.departments = set(departments or ())
        self.kcb_types = dict(kcb_types or {})
        self.broken_lookup_tables = set(broken_lookup_tables)
        self.lookup_calls = []
        self.append_calls = []

    def lookup_existing_keys(self, codes):
        self.lookup_calls.append(list(codes))
        if len(self.lookup_calls) in self.fail_lookup_calls:
            raise StoreError("lookup timeout")
        wanted = set(codes)
        return [dict(r) for r in self.existing if str(r["ma_bn"]) in wanted]

    def append_records(self, records, mode):
        self.append_calls.append((list(records), mode))
        if len(self.append_calls) in self.fail_append_calls:
            raise StoreError("append failed")
        if mode == MODE_OVERWRITE:
            keys = set(record_key(r) for r in records)
            self.existing = [r for r in self.existing if record_key(r) not in keys]
        rejected = min(self.reject_per_batch, len(records))
        for r in records[rejected:]:
            self.existing.append({c: r.get(c) for c in ROW_KEY_COLS})
        return AppendResult(inserted=len(records) - rejected, rejected=rejected)

    def _lookup_table(self, name, value):
        if name in self.broken_lookup_tables:
            raise StoreError(f"{name} not reachable")
        return value

    def load_facilities(self):
        return self._lookup_table("lookup_cskcb", dict(self.facilities))

    def load_departments(self):
        return self._lookup_table("lookup_khoa", set(self.departments))

    def load_kcb_types(self):
        return self._lookup_table("lookup_loaikcb", dict(self.kcb_types))

    def ensure_dataset(self):
        return False

    def ensure_table(self):
        return False

    def count_rows(self):
        return len(self.existing)


@pytest.fixture()
def fake_store():
    """Factory: fake_store(existing=[...], fail_append_calls={2}) → FakeStore."""
    return FakeStore
