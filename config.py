# config.py - Cấu hình BigQuery cho dự án CPBQ
# ================================================
# Mọi hằng số có thể ghi đè bằng biến môi trường cùng tên, thêm tiền tố CPBQ_
# (vd. CPBQ_DATASET_ID=cpbq_test, CPBQ_COMMIT_BATCH_SIZE=500).
# Mặc định của batch size và số dòng quét header lấy từ package cpbq_import
# (package không đọc config.py, giá trị được truyền vào qua tham số).

import os

from cpbq_import.commit import DEFAULT_COMMIT_BATCH_SIZE
from cpbq_import.duplicates import DEFAULT_LOOKUP_BATCH_SIZE
from cpbq_import.sheets import HEADER_SCAN_ROWS as DEFAULT_HEADER_SCAN_ROWS


def _env(name: str, default, cast=str):
    raw = os.environ.get(f"CPBQ_{name}")
    if raw is None or raw.strip() == "":
        return default
    return cast(raw.strip())


# GCP Project
PROJECT_ID = _env("PROJECT_ID", "cpbq-487004")

# BigQuery Dataset & Table
DATASET_ID = _env("DATASET_ID", "cpbq_data")
TABLE_ID = _env("TABLE_ID", "thanh_toan_bhyt")
FULL_TABLE_ID = f"{PROJECT_ID}.{DATASET_ID}.{TABLE_ID}"

# Lookup tables
LOOKUP_LOAIKCB_TABLE = _env("LOOKUP_LOAIKCB_TABLE", "lookup_loaikcb")
LOOKUP_CSKCB_TABLE = _env("LOOKUP_CSKCB_TABLE", "lookup_cskcb")
LOOKUP_KHOA_TABLE = _env("LOOKUP_KHOA_TABLE", "lookup_khoa")

# Dataset location (asia-southeast1 = Singapore, gần Việt Nam nhất)
LOCATION = _env("LOCATION", "asia-southeast1")

# Import pipeline
LOOKUP_BATCH_SIZE = _env("LOOKUP_BATCH_SIZE", DEFAULT_LOOKUP_BATCH_SIZE, int)     # số mã BN mỗi query check trùng
COMMIT_BATCH_SIZE = _env("COMMIT_BATCH_SIZE", DEFAULT_COMMIT_BATCH_SIZE, int)     # số dòng mỗi load job
HEADER_SCAN_ROWS = _env("HEADER_SCAN_ROWS", DEFAULT_HEADER_SCAN_ROWS, int)  # số dòng đầu sheet để tìm header

# Timeout (giây) cho mỗi lần gọi BigQuery
LOOKUP_TIMEOUT_S = _env("LOOKUP_TIMEOUT_S", 60.0, float)
APPEND_TIMEOUT_S = _env("APPEND_TIMEOUT_S", 300.0, float)

# Log level cho CLI
LOG_LEVEL = _env("LOG_LEVEL", "WARNING")
