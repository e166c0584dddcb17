import concurrent.futures
import sqlite3
from unittest import mock

import pytest
import requests
from google.api_core.exceptions import BadRequest, NotFound
from google.auth.exceptions import RefreshError, TransportError
from google.cloud import bigquery
from google.cloud.bigquery.table import Row

import bq_store
import config
from bq_store import BigQueryStore, sql_condition
from cpbq_import.commit import MODE_NEW, MODE_OVERWRITE, AppendResult
from cpbq_import.errors import StoreError
from cpbq_import.pipeline import load_lookup_tables


def _row(**values):
    keys = list(values)
    return Row([values[k] for k in keys], {k: i for i, k in enumerate(keys)})


def _record(**overrides):
    rec = {
        "ma_cskcb": "F1", "ma_bn": "P1", "ma_loaikcb": 1,
        "ngay_vao": "2024-01-01T00:00:00", "ngay_ra": "2024-01-05T00:00:00",
        "nam_qt": 2024, "thang_qt": 1,
    }
    rec.update(overrides)
    return rec


@pytest.fixture()
def client():
    return mock.MagicMock()


@pytest.fixture()
def store(client):
    return BigQueryStore(client, table_id="proj.ds.thanh_toan_bhyt", dataset_id="proj.ds",
                         lookup_timeout=5, append_timeout=30)


# ─── sql_condition ────────────────────────────────────────────────────────────

def test_sql_condition_by_column_type():
    assert sql_condition("ma_loaikcb", None) == "ma_loaikcb IS NULL"
    assert sql_condition("thang_qt", "3") == "thang_qt = 3"
    assert sql_condition("ngay_vao", "2024-01-01T00:00:00") == "ngay_vao = DATETIME('2024-01-01T00:00:00')"
    assert sql_condition("ma_bn", "P1") == "ma_bn = 'P1'"


def test_sql_condition_escapes_quotes_and_backslashes():
    assert sql_condition("ma_bn", "a\\b'c") == "ma_bn = 'a\\\\b\\'c'"


# ─── lookup_existing_keys ─────────────────────────────────────────────────────

def test_lookup_existing_keys_uses_array_parameter(store, client):
    client.query.return_value.result.return_value = [
        _row(ma_cskcb="F1", ma_bn="P1", ma_loaikcb=1, ngay_vao="2024-01-01T00:00:00", ngay_ra=None),
    ]
    rows = store.lookup_existing_keys(["P1", "P2"])

    assert rows == [{"ma_cskcb": "F1", "ma_bn": "P1", "ma_loaikcb": 1,
                     "ngay_vao": "2024-01-01T00:00:00", "ngay_ra": None}]
    sql = client.query.call_args.args[0]
    assert "IN UNNEST(@codes)" in sql
    assert "`proj.ds.thanh_toan_bhyt`" in sql
    param = client.query.call_args.kwargs["job_config"].query_parameters[0]
    assert param.name == "codes"
    assert list(param.values) == ["P1", "P2"]
    assert client.query.call_args.kwargs["timeout"] == 5
    client.query.return_value.result.assert_called_once_with(timeout=5)


def test_lookup_existing_keys_empty_codes_skips_query(store, client):
    assert store.lookup_existing_keys([]) == []
    client.query.assert_not_called()


def test_lookup_missing_table_returns_nothing(store, client):
    client.query.side_effect = NotFound("table not found")
    assert store.lookup_existing_keys(["P1"]) == []


@pytest.mark.parametrize("error", [
    BadRequest("bad"),
    concurrent.futures.TimeoutError(),
    requests.exceptions.ConnectionError("connection reset"),
    RefreshError("invalid_grant"),
    TransportError("dns"),
])
def test_lookup_errors_wrapped(store, client, error):
    client.query.return_value.result.side_effect = error
    with pytest.raises(StoreError):
        store.lookup_existing_keys(["P1"])


# ─── delete_by_natural_keys ───────────────────────────────────────────────────

def test_delete_matches_key_columns_only(store, client):
    client.query.return_value.num_dml_affected_rows = 1
    deleted = store.delete_by_natural_keys([
        _record(ma_bn="P'1", ma_loaikcb=None),
        _record(ma_bn="P2"),
        _record(ma_bn="P3", thang_qt=2, nam_qt=2023),
        _record(ma_bn="P4", ma_cskcb="F2"),
    ])

    # 1 câu DELETE cho mỗi CSKCB
    assert deleted == 2
    assert client.query.call_count == 2
    first_sql = client.query.call_args_list[0].args[0]
    assert "ma_loaikcb IS NULL" in first_sql
    assert "ma_bn = 'P\\'1'" in first_sql
    assert "ma_bn = 'P2'" in first_sql
    assert "ma_bn = 'P3'" in first_sql
    assert "ngay_vao = DATETIME('2024-01-01T00:00:00')" in first_sql
    assert first_sql.count(" OR ") == 2
    assert "nam_qt" not in first_sql
    assert "thang_qt" not in first_sql
    assert "ma_cskcb = 'F2'" in client.query.call_args_list[1].args[0]
    assert client.query.call_args_list[0].kwargs["timeout"] == 30


def test_delete_chunks_large_groups(monkeypatch, store, client):
    monkeypatch.setattr(bq_store, "DELETE_CHUNK_SIZE", 2)
    client.query.return_value.num_dml_affected_rows = 0
    store.delete_by_natural_keys([_record(ma_bn=f"P{i}") for i in range(5)])
    assert client.query.call_count == 3


def _sqlite_delete(sql: str, stored: dict) -> int:
    """Chạy câu DELETE (cú pháp BigQuery) trên bảng sqlite, trả về số dòng còn lại."""
    conn = sqlite3.connect(":memory:")
    cols = list(stored)
    conn.execute(f"CREATE TABLE t ({', '.join(cols)})")
    conn.execute(f"INSERT INTO t VALUES ({', '.join('?' for _ in cols)})", [stored[c] for c in cols])
    sqlite_sql = (
        sql.replace("`proj.ds.thanh_toan_bhyt`", "t")
        .replace("DATETIME('", "('")
        .replace("\\'", "''")
    )
    conn.execute(sqlite_sql)
    return conn.execute("SELECT COUNT(*) FROM t").fetchone()[0]


@pytest.mark.parametrize("stored_month", [1, 2])
def test_overwrite_delete_removes_row_settled_in_other_period(store, client, stored_month):
    stored = _record(thang_qt=stored_month)
    client.query.return_value.num_dml_affected_rows = 1
    store.delete_by_natural_keys([_record(thang_qt=1)])

    sql = client.query.call_args.args[0]
    assert _sqlite_delete(sql, stored) == 0


def test_overwrite_delete_keeps_other_episodes(store, client):
    client.query.return_value.num_dml_affected_rows = 0
    store.delete_by_natural_keys([_record(ngay_ra="2024-01-06T00:00:00")])
    assert _sqlite_delete(client.query.call_args.args[0], _record()) == 1


# ─── append_records ───────────────────────────────────────────────────────────

def test_append_new_mode_loads_without_delete(store, client):
    client.load_table_from_json.return_value.output_rows = 2
    client.load_table_from_json.return_value.errors = None
    result = store.append_records([_record(), _record(ma_bn="P2")], MODE_NEW)

    assert result == AppendResult(inserted=2, rejected=0)
    client.query.assert_not_called()
    args, kwargs = client.load_table_from_json.call_args
    assert args[1] == "proj.ds.thanh_toan_bhyt"
    job_config = kwargs["job_config"]
    assert job_config.write_disposition == bigquery.WriteDisposition.WRITE_APPEND
    assert job_config.max_bad_records == 2


def test_append_overwrite_deletes_first(store, client):
    client.load_table_from_json.return_value.output_rows = 1
    client.load_table_from_json.return_value.errors = None
    store.append_records([_record()], MODE_OVERWRITE)

    names = [c[0] for c in client.mock_calls]
    assert names.index("query") < names.index("load_table_from_json")


def test_append_overwrite_failed_delete_skips_load(store, client):
    client.query.side_effect = BadRequest("DML over limit")
    with pytest.raises(StoreError):
        store.append_records([_record()], MODE_OVERWRITE)
    client.load_table_from_json.assert_not_called()


def test_append_reports_rejected_rows(store, client):
    job = client.load_table_from_json.return_value
    job.output_rows = 2
    job.errors = [{"reason": "invalid", "message": "bad ngay_vao"}]
    result = store.append_records([_record(), _record(ma_bn="P2"), _record(ma_bn="P3")], MODE_NEW)
    assert result == AppendResult(inserted=2, rejected=1)


def test_append_load_failure_wrapped(store, client):
    client.load_table_from_json.return_value.result.side_effect = BadRequest("schema mismatch")
    with pytest.raises(StoreError):
        store.append_records([_record()], MODE_NEW)


def test_append_empty_batch(store, client):
    assert store.append_records([], MODE_OVERWRITE) == AppendResult(inserted=0)
    assert client.mock_calls == []


# ─── Lookup tables ────────────────────────────────────────────────────────────

def test_load_facilities_latest_name_wins(store, client):
    client.query.return_value.result.return_value = [
        _row(ma_cskcb="F1", ten_cskcb="Tên cũ"),
        _row(ma_cskcb="F1", ten_cskcb="Tên mới"),
        _row(ma_cskcb="F2", ten_cskcb=None),
        _row(ma_cskcb=None, ten_cskcb="?"),
    ]
    assert store.load_facilities() == {"F1": "Tên mới", "F2": "F2"}
    assert f"proj.ds.{config.LOOKUP_CSKCB_TABLE}" in client.query.call_args.args[0]


def test_load_departments_and_kcb_types(store, client):
    client.query.return_value.result.return_value = [
        _row(ma_cskcb="F1", makhoa_xml="K01"),
        _row(ma_cskcb="F1", makhoa_xml=None),
    ]
    assert store.load_departments() == {("F1", "K01")}

    client.query.return_value.result.return_value = [
        _row(ma_loaikcb="1", ml2="Nội trú"),
        _row(ma_loaikcb=3, ml2="Ngoại trú"),
    ]
    assert store.load_kcb_types() == {1: "Nội trú", 3: "Ngoại trú"}


def test_lookup_table_error_wrapped(store, client):
    client.query.side_effect = NotFound("lookup_khoa")
    with pytest.raises(StoreError):
        store.load_departments()


def test_lookup_tables_network_failure_is_warning(store, client):
    def query(sql, **kwargs):
        if "lookup_khoa" in sql:
            raise requests.exceptions.ConnectionError("connection reset")
        job = mock.MagicMock()
        job.result.return_value = []
        return job

    client.query.side_effect = query
    tables, warnings = load_lookup_tables(store)
    assert tables.departments == set()
    assert warnings == ["Không tải được bảng danh mục lookup_khoa, bỏ qua kiểm tra mã tương ứng."]


# ─── Provisioning ─────────────────────────────────────────────────────────────

def test_ensure_table_creates_partitioned_table(store, client):
    client.get_table.side_effect = NotFound("missing")
    assert store.ensure_table() is True
    table = client.create_table.call_args.args[0]
    assert table.range_partitioning.field == "thang_qt"
    assert table.clustering_fields == ["ma_cskcb", "ma_bn"]


def test_ensure_dataset_existing(store, client):
    assert store.ensure_dataset() is False
    client.create_dataset.assert_not_called()


def test_count_rows(store, client):
    client.get_table.return_value.num_rows = 7
    assert store.count_rows() == 7


def test_connect_builds_client(monkeypatch):
    fake_client = mock.MagicMock()
    client_cls = mock.MagicMock(return_value=fake_client)
    monkeypatch.setattr(bq_store.bigquery, "Client", client_cls)
    creds = object()

    store = bq_store.connect(credentials=creds)
    client_cls.assert_called_once_with(project=config.PROJECT_ID, location=config.LOCATION,
                                       credentials=creds)
    assert store.client is fake_client
    assert store.table_id == config.FULL_TABLE_ID
