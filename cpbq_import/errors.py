"""Exception types raised by the import pipeline."""

from collections import Counter


class ImportPipelineError(Exception):
    """Base class for fatal import errors."""


class FormatError(ImportPipelineError):
    """File không phải workbook Excel đọc được."""


class NoCompatibleSheetError(ImportPipelineError):
    """Workbook đọc được nhưng không có sheet nào đủ cột bắt buộc."""

    def __init__(self, message: str, scans: list = None):
        super().__init__(message)
        self.scans = list(scans or [])

    def most_missing(self) -> list:
        """Các cột bắt buộc hay thiếu nhất, dạng [(col, so_sheet_thieu), ...]."""
        counter = Counter()
        for scan in self.scans:
            if scan.error is None:
                counter.update(scan.missing_required)
        return counter.most_common()


class StoreError(Exception):
    """Lỗi khi gọi BigQuery (API error, timeout, ...)."""
