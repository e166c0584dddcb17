"""
cpbq_import - Pipeline import dữ liệu thanh toán BHYT
======================================================
Đọc file Excel → phát hiện sheet → chuẩn hóa → kiểm tra → check trùng
→ bảng đối soát → tải lên BigQuery.

Package này không phụ thuộc Streamlit hay kết nối mạng: mọi thao tác với
kho dữ liệu đi qua collaborator được truyền vào (xem bq_store.BigQueryStore).
"""

from cpbq_import.errors import (
    FormatError,
    ImportPipelineError,
    NoCompatibleSheetError,
    StoreError,
)

__all__ = [
    "FormatError",
    "ImportPipelineError",
    "NoCompatibleSheetError",
    "StoreError",
]

__version__ = "1.0.0"
