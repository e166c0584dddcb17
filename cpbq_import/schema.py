"""
schema.py - Schema bảng thanh_toan_bhyt
========================================
Danh sách cột, nhóm kiểu dữ liệu và composite key dùng chung cho toàn bộ
pipeline import.
"""

from google.cloud import bigquery


# ─── BigQuery Schema ──────────────────────────────────────────────────────────

BQ_SCHEMA = [
    bigquery.SchemaField("stt", "INT64"),
    bigquery.SchemaField("ma_bn", "STRING"),
    bigquery.SchemaField("ho_ten", "STRING"),
    bigquery.SchemaField("ngay_sinh", "DATE"),
    bigquery.SchemaField("gioi_tinh", "INT64"),
    bigquery.SchemaField("dia_chi", "STRING"),
    bigquery.SchemaField("ma_the", "STRING"),
    bigquery.SchemaField("ma_dkbd", "STRING"),
    bigquery.SchemaField("gt_the_tu", "DATE"),
    bigquery.SchemaField("gt_the_den", "DATE"),
    bigquery.SchemaField("ma_benh", "STRING"),
    bigquery.SchemaField("ma_benhkhac", "STRING"),
    bigquery.SchemaField("ma_lydo_vvien", "INT64"),
    bigquery.SchemaField("ma_noi_chuyen", "STRING"),
    bigquery.SchemaField("ngay_vao", "DATETIME"),
    bigquery.SchemaField("ngay_ra", "DATETIME"),
    bigquery.SchemaField("so_ngay_dtri", "INT64"),
    bigquery.SchemaField("ket_qua_dtri", "INT64"),
    bigquery.SchemaField("tinh_trang_rv", "INT64"),
    bigquery.SchemaField("t_tongchi", "FLOAT64"),
    bigquery.SchemaField("t_xn", "FLOAT64"),
    bigquery.SchemaField("t_cdha", "FLOAT64"),
    bigquery.SchemaField("t_thuoc", "FLOAT64"),
    bigquery.SchemaField("t_mau", "FLOAT64"),
    bigquery.SchemaField("t_pttt", "FLOAT64"),
    bigquery.SchemaField("t_vtyt", "FLOAT64"),
    bigquery.SchemaField("t_dvkt_tyle", "FLOAT64"),
    bigquery.SchemaField("t_thuoc_tyle", "FLOAT64"),
    bigquery.SchemaField("t_vtyt_tyle", "FLOAT64"),
    bigquery.SchemaField("t_kham", "FLOAT64"),
    bigquery.SchemaField("t_giuong", "FLOAT64"),
    bigquery.SchemaField("t_vchuyen", "FLOAT64"),
    bigquery.SchemaField("t_bntt", "FLOAT64"),
    bigquery.SchemaField("t_bhtt", "FLOAT64"),
    bigquery.SchemaField("t_ngoaids", "FLOAT64"),
    bigquery.SchemaField("ma_khoa", "STRING"),
    bigquery.SchemaField("nam_qt", "INT64"),
    bigquery.SchemaField("thang_qt", "INT64"),
    bigquery.SchemaField("ma_khuvuc", "STRING"),
    bigquery.SchemaField("ma_loaikcb", "INT64"),
    bigquery.SchemaField("ma_cskcb", "STRING"),
    bigquery.SchemaField("noi_ttoan", "INT64"),
    bigquery.SchemaField("giam_dinh", "STRING"),
    bigquery.SchemaField("t_xuattoan", "FLOAT64"),
    bigquery.SchemaField("t_nguonkhac", "FLOAT64"),
    bigquery.SchemaField("t_datuyen", "FLOAT64"),
    bigquery.SchemaField("t_vuottran", "FLOAT64"),
    # Metadata columns
    bigquery.SchemaField("upload_timestamp", "TIMESTAMP"),
    bigquery.SchemaField("source_file", "STRING"),
]

METADATA_COLS = ["upload_timestamp", "source_file"]

# All expected schema columns (excluding metadata)
SCHEMA_COLS = [f.name for f in BQ_SCHEMA if f.name not in METADATA_COLS]

# 14 required columns that must be non-empty for a valid row
REQUIRED_COLS = [
    "ma_bn", "ho_ten", "ngay_sinh", "gioi_tinh", "ma_dkbd", "ma_benh",
    "ngay_vao", "ngay_ra", "t_tongchi", "t_bhtt", "ma_khoa",
    "nam_qt", "thang_qt", "ma_cskcb",
]

# Composite key xác định 1 đợt điều trị duy nhất của bệnh nhân
ROW_KEY_COLS = ["ma_cskcb", "ma_bn", "ma_loaikcb", "ngay_vao", "ngay_ra"]

PATIENT_COL = "ma_bn"


# ─── Column groups (Field Transformer) ────────────────────────────────────────

DATE_INT_COLS = ["ngay_sinh", "gt_the_tu", "gt_the_den"]

DATETIME_COLS = ["ngay_vao", "ngay_ra"]

STRING_COLS = [
    "ma_bn", "ma_the", "ma_dkbd", "ma_benh", "ma_benhkhac",
    "ma_noi_chuyen", "ma_khoa", "ma_khuvuc", "ma_cskcb",
    "giam_dinh", "ho_ten", "dia_chi",
]

FLOAT_COLS = [
    "t_tongchi", "t_xn", "t_cdha", "t_thuoc", "t_mau",
    "t_pttt", "t_vtyt", "t_dvkt_tyle", "t_thuoc_tyle",
    "t_vtyt_tyle", "t_kham", "t_giuong", "t_vchuyen",
    "t_bntt", "t_bhtt", "t_ngoaids", "t_xuattoan",
    "t_nguonkhac", "t_datuyen", "t_vuottran",
]

INT_COLS = [
    "stt", "gioi_tinh", "ma_lydo_vvien", "so_ngay_dtri",
    "ket_qua_dtri", "tinh_trang_rv", "nam_qt", "thang_qt",
    "ma_loaikcb", "noi_ttoan",
]


# ─── Domain codes ─────────────────────────────────────────────────────────────

GIOI_TINH_CODES = (1, 2)  # 1 = Nam, 2 = Nữ

ML2_NOI_TRU = "Nội trú"
ML2_NGOAI_TRU = "Ngoại trú"

# Khi không có bảng lookup_loaikcb: mã loại KCB 1 được xếp vào Nội trú
DEFAULT_INPATIENT_CODES = (1,)
