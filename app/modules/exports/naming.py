"""
Filename and storage path allocation for export artifacts

Layout inside the bucket:
    exports/{pdf|excel}/{yyyy}/{mm}/{filename}
    exports/zip/{yyyy}/{mm}/{zipname}
    exports/batch/{batch_id}/{filename}
"""

import re
import secrets
import threading
from datetime import date, datetime
from typing import Optional

from app.modules.exports.schemas import ExportFormat
from app.modules.reports.schemas import Report, ReportType

EXPORTS_ROOT = "exports"
ZIP_DIR = "zip"
BATCH_DIR = "batch"
MANAGED_DIRS = ("pdf", "excel", ZIP_DIR, BATCH_DIR)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

_UNSAFE = re.compile(r"[^A-Za-z0-9_\-]")


def cooperative_slug(name: str) -> str:
    """Cooperative name made safe for object keys ("Koperasi Maju" -> "Koperasi-Maju")"""
    slug = _UNSAFE.sub("", re.sub(r"\s+", "-", name.strip()))
    return slug or "koperasi"


def report_type_slug(report_type: ReportType) -> str:
    return report_type.value.replace("_", "-")


def timestamp(now: datetime) -> str:
    return now.strftime(TIMESTAMP_FORMAT)


class FilenameAllocator:
    """Builds artifact file names and the directories they are stored in"""

    def __init__(self, unique_suffix: bool = False):
        self.unique_suffix = unique_suffix

    def _finish(self, stem: str, extension: str, unique: bool = False) -> str:
        if unique or self.unique_suffix:
            stem = f"{stem}_{secrets.token_hex(4)}"
        return f"{stem}.{extension}"

    def report_filename(
        self,
        report: Report,
        export_format: ExportFormat,
        now: datetime,
        unique: bool = False
    ) -> str:
        """``unique`` forces the random suffix, for directories shared by concurrent jobs"""
        stem = (
            f"{cooperative_slug(report.cooperative_name)}_{report_type_slug(report.report_type)}"
            f"_{report.reporting_year}_{timestamp(now)}"
        )
        return self._finish(stem, export_format.extension, unique)

    def combined_filename(self, report: Report, now: datetime) -> str:
        stem = f"{cooperative_slug(report.cooperative_name)}_combined_reports_{report.reporting_year}_{timestamp(now)}"
        return self._finish(stem, ExportFormat.DOCUMENT.extension)

    def cooperative_year_zip(self, cooperative_name: str, year: int, now: datetime) -> str:
        return self._finish(f"{cooperative_slug(cooperative_name)}_laporan_keuangan_{year}_{timestamp(now)}", "zip")

    def date_range_zip(self, start: date, end: date, now: datetime) -> str:
        return self._finish(f"laporan_keuangan_{start.isoformat()}_to_{end.isoformat()}_{timestamp(now)}", "zip")

    def batch_zip(self, export_format: ExportFormat, now: datetime) -> str:
        return self._finish(f"batch_export_{export_format.storage_dir}_{timestamp(now)}", "zip")

    @staticmethod
    def directory(export_format: ExportFormat, now: datetime, batch_id: Optional[str] = None) -> str:
        if batch_id:
            return FilenameAllocator.batch_directory(batch_id)
        return f"{EXPORTS_ROOT}/{export_format.storage_dir}/{now:%Y}/{now:%m}"

    @staticmethod
    def zip_directory(now: datetime) -> str:
        return f"{EXPORTS_ROOT}/{ZIP_DIR}/{now:%Y}/{now:%m}"

    @staticmethod
    def batch_directory(batch_id: str) -> str:
        return f"{EXPORTS_ROOT}/{BATCH_DIR}/{batch_id}"

    @staticmethod
    def managed_directory(name: str) -> str:
        return f"{EXPORTS_ROOT}/{name}"


def join(directory: str, filename: str) -> str:
    return f"{directory.rstrip('/')}/{filename}"


class IssuedNames:
    """File names already handed out within one batch; repeats get a counter"""

    def __init__(self):
        self._names: set = set()
        self._lock = threading.Lock()

    def claim(self, filename: str) -> str:
        stem, dot, extension = filename.rpartition(".")
        with self._lock:
            name = filename
            counter = 2
            while name in self._names:
                name = f"{stem}_{counter}{dot}{extension}"
                counter += 1
            self._names.add(name)
            return name
