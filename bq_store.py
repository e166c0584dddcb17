"""
bq_store.py - Thao tác BigQuery cho pipeline import
====================================================
BigQueryStore được tạo 1 lần (st.cache_resource trong app, 1 lần trong main()
của CLI) rồi truyền vào pipeline. Mọi lời gọi đều có timeout; lỗi API và
timeout được gói thành StoreError để nơi gọi tự quyết định bỏ qua hay dừng.
"""

import concurrent.futures
import logging
from collections import defaultdict

import requests
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import bigquery

import config
from auth import get_credentials
from cpbq_import.commit import MODE_OVERWRITE, AppendResult
from cpbq_import.duplicates import key_part
from cpbq_import.errors import StoreError
from cpbq_import.lookups import LookupTables
from cpbq_import.schema import BQ_SCHEMA, ROW_KEY_COLS
from cpbq_import.transform import parse_int

logger = logging.getLogger(__name__)

_FIELD_TYPES = {f.name: f.field_type for f in BQ_SCHEMA}

# API error, timeout, lỗi xác thực/refresh token, lỗi mạng
_STORE_ERRORS = (
    GoogleAPIError,
    GoogleAuthError,
    requests.exceptions.RequestException,
    concurrent.futures.TimeoutError,
)

# Số key tối đa trong 1 câu DELETE (giới hạn độ dài query)
DELETE_CHUNK_SIZE = 500


def _escape(value) -> str:
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def sql_condition(col: str, value) -> str:
    """Điều kiện so khớp chính xác 1 cột key; None → IS NULL."""
    if value is None:
        return f"{col} IS NULL"
    field_type = _FIELD_TYPES.get(col, "STRING")
    if field_type in ("INT64", "INTEGER"):
        return f"{col} = {int(value)}"
    if field_type == "DATETIME":
        return f"{col} = DATETIME('{_escape(value)}')"
    return f"{col} = '{_escape(value)}'"


class BigQueryStore:
    """Kho thanh_toan_bhyt trên BigQuery."""

    def __init__(self, client: bigquery.Client,
                 table_id: str = config.FULL_TABLE_ID,
                 dataset_id: str = f"{config.PROJECT_ID}.{config.DATASET_ID}",
                 location: str = config.LOCATION,
                 lookup_timeout: float = config.LOOKUP_TIMEOUT_S,
                 append_timeout: float = config.APPEND_TIMEOUT_S,
                 key_cols: list = ROW_KEY_COLS):
        self.client = client
        self.table_id = table_id
        self.dataset_id = dataset_id
        self.location = location
        self.lookup_timeout = lookup_timeout
        self.append_timeout = append_timeout
        self.key_cols = list(key_cols)

    def lookup_table_id(self, table_name: str) -> str:
        return f"{self.dataset_id}.{table_name}"

    # ─── Query helper ─────────────────────────────────────────────────────────

    def _query(self, sql: str, job_config=None, timeout: float = None):
        """Chạy query, chờ kết quả. Returns (job, rows)."""
        timeout = self.lookup_timeout if timeout is None else timeout
        job = self.client.query(sql, job_config=job_config, timeout=timeout)
        rows = job.result(timeout=timeout)
        return job, rows

    # ─── Duplicate lookup ─────────────────────────────────────────────────────

    def lookup_existing_keys(self, patient_codes: list) -> list:
        """
        Giá trị các cột key của mọi record đã lưu có ma_bn thuộc `patient_codes`.
        Bảng chưa tồn tại → [].
        """
        codes = [str(c) for c in patient_codes]
        if not codes:
            return []
        sql = f"""
            SELECT {', '.join(self.key_cols)}
            FROM `{self.table_id}`
            WHERE ma_bn IN UNNEST(@codes)
        """
        job_config = bigquery.QueryJobConfig(
            query_parameters=[bigquery.ArrayQueryParameter("codes", "STRING", codes)],
        )
        try:
            _, rows = self._query(sql, job_config=job_config)
            return [dict(row.items()) for row in rows]
        except NotFound:
            return []
        except _STORE_ERRORS as e:
            raise StoreError(f"Lỗi truy vấn trùng lặp ({len(codes)} mã BN): {e}") from e

    # ─── Delete / append ──────────────────────────────────────────────────────

    def delete_by_natural_keys(self, records: list) -> int:
        """
        Xóa chính xác các dòng cũ cùng composite key với `records`, bất kể
        kỳ quyết toán (nam_qt, thang_qt) của dòng cũ.
        Gom theo ma_cskcb, mỗi câu DELETE tối đa DELETE_CHUNK_SIZE key.
        Returns: số dòng đã xóa.
        """
        groups = defaultdict(list)
        for r in records:
            groups[key_part(r.get("ma_cskcb"))].append(r)

        deleted = 0
        for cskcb, group in groups.items():
            for start in range(0, len(group), DELETE_CHUNK_SIZE):
                chunk = group[start:start + DELETE_CHUNK_SIZE]
                row_conditions = []
                for r in chunk:
                    parts = [sql_condition(col, r.get(col)) for col in self.key_cols]
                    row_conditions.append(f"({' AND '.join(parts)})")

                delete_query = f"""
                    DELETE FROM `{self.table_id}`
                    WHERE {' OR '.join(row_conditions)}
                """
                try:
                    job, _ = self._query(delete_query, timeout=self.append_timeout)
                except _STORE_ERRORS as e:
                    raise StoreError(f"Lỗi xóa dữ liệu cũ (CSKCB {cskcb}, {len(chunk)} key): {e}") from e
                affected = job.num_dml_affected_rows or 0
                deleted += affected
                logger.info("Đã xóa %d dòng cũ | CSKCB: %s", affected, cskcb)
        return deleted

    def append_records(self, records: list, mode: str) -> AppendResult:
        """
        Ghi 1 batch record (dict JSON-safe) bằng load job WRITE_APPEND.
        mode="overwrite": xóa dòng cũ cùng key trước; xóa lỗi → raise, không ghi.
        """
        if not records:
            return AppendResult(inserted=0)
        if mode == MODE_OVERWRITE:
            self.delete_by_natural_keys(records)

        job_config = bigquery.LoadJobConfig(
            schema=BQ_SCHEMA,
            write_disposition=bigquery.WriteDisposition.WRITE_APPEND,
            source_format=bigquery.SourceFormat.NEWLINE_DELIMITED_JSON,
            max_bad_records=len(records),
        )
        try:
            job = self.client.load_table_from_json(
                records, self.table_id, job_config=job_config, timeout=self.append_timeout,
            )
            job.result(timeout=self.append_timeout)
        except _STORE_ERRORS as e:
            raise StoreError(f"Lỗi upload {len(records)} dòng: {e}") from e

        inserted = min(int(job.output_rows or 0), len(records))
        if job.errors:
            logger.warning("Load job bỏ qua %d dòng lỗi: %s", len(records) - inserted, job.errors[:3])
        return AppendResult(inserted=inserted, rejected=len(records) - inserted)

    def count_rows(self) -> int:
        try:
            return self.client.get_table(self.table_id).num_rows
        except _STORE_ERRORS as e:
            raise StoreError(f"Không đọc được thông tin bảng: {e}") from e

    # ─── Lookup tables ────────────────────────────────────────────────────────

    def _lookup_rows(self, sql: str, table_name: str) -> list:
        try:
            _, rows = self._query(sql)
            return list(rows)
        except _STORE_ERRORS as e:
            raise StoreError(f"Lỗi đọc bảng {table_name}: {e}") from e

    def load_facilities(self) -> dict:
        """ma_cskcb → ten_cskcb (bản ghi hiệu lực mới nhất thắng)."""
        table = self.lookup_table_id(config.LOOKUP_CSKCB_TABLE)
        rows = self._lookup_rows(
            f"SELECT ma_cskcb, ten_cskcb FROM `{table}` ORDER BY valid_from",
            config.LOOKUP_CSKCB_TABLE,
        )
        facilities = {}
        for r in rows:
            code = key_part(r["ma_cskcb"])
            if code:
                facilities[code] = r["ten_cskcb"] or code
        return facilities

    def load_departments(self) -> set:
        table = self.lookup_table_id(config.LOOKUP_KHOA_TABLE)
        rows = self._lookup_rows(
            f"SELECT DISTINCT ma_cskcb, makhoa_xml FROM `{table}`",
            config.LOOKUP_KHOA_TABLE,
        )
        return set(
            (key_part(r["ma_cskcb"]), key_part(r["makhoa_xml"]))
            for r in rows
            if key_part(r["ma_cskcb"]) and key_part(r["makhoa_xml"])
        )

    def load_kcb_types(self) -> dict:
        """ma_loaikcb → ml2 ('Nội trú' / 'Ngoại trú')."""
        table = self.lookup_table_id(config.LOOKUP_LOAIKCB_TABLE)
        rows = self._lookup_rows(
            f"SELECT ma_loaikcb, ml2 FROM `{table}` ORDER BY valid_from",
            config.LOOKUP_LOAIKCB_TABLE,
        )
        kcb_types = {}
        for r in rows:
            code = parse_int(r["ma_loaikcb"])
            if code is not None:
                kcb_types[code] = r["ml2"]
        return kcb_types

    def load_lookup_tables(self) -> LookupTables:
        return LookupTables(
            facilities=self.load_facilities(),
            departments=self.load_departments(),
            kcb_types=self.load_kcb_types(),
        )

    # ─── Provisioning ─────────────────────────────────────────────────────────

    def ensure_dataset(self) -> bool:
        """Tạo dataset nếu chưa tồn tại. Returns True nếu vừa tạo."""
        try:
            self.client.get_dataset(self.dataset_id)
            return False
        except NotFound:
            dataset = bigquery.Dataset(self.dataset_id)
            dataset.location = self.location
            dataset.description = "Dữ liệu chi phí bảo quản BHYT - TTYT Thủy Nguyên"
            self.client.create_dataset(dataset)
            logger.info("Đã tạo dataset %s tại %s", self.dataset_id, self.location)
            return True

    def ensure_table(self) -> bool:
        """Tạo table nếu chưa tồn tại. Returns True nếu vừa tạo."""
        try:
            self.client.get_table(self.table_id)
            return False
        except NotFound:
            table = bigquery.Table(self.table_id, schema=BQ_SCHEMA)
            table.description = "Dữ liệu thanh toán BHYT hàng tháng"
            # Partition by thang_qt for efficient querying
            table.range_partitioning = bigquery.RangePartitioning(
                field="thang_qt",
                range_=bigquery.PartitionRange(start=1, end=13, interval=1),
            )
            table.clustering_fields = ["ma_cskcb", "ma_bn"]
            self.client.create_table(table)
            logger.info("Đã tạo table %s", self.table_id)
            return True


def connect(credentials=None) -> BigQueryStore:
    """Tạo BigQueryStore theo config.py; credentials None → auth.get_credentials()."""
    creds = credentials if credentials is not None else get_credentials()
    client = bigquery.Client(project=config.PROJECT_ID, location=config.LOCATION, credentials=creds)
    return BigQueryStore(client)
