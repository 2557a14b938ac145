"""
Pydantic schemas for the exports module

Options accepted by every export operation and the result shapes returned
by the single-report pipeline, the batch orchestrator, the scheduler and
the retention sweeper.
"""

import enum
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from app.core.config import settings


PAPER_SIZES = ("a3", "a4", "a5", "letter", "legal")


class ExportFormat(str, enum.Enum):
    DOCUMENT = "document"        # PDF
    SPREADSHEET = "spreadsheet"  # XLSX

    @property
    def storage_dir(self) -> str:
        return "pdf" if self is ExportFormat.DOCUMENT else "excel"

    @property
    def extension(self) -> str:
        return "pdf" if self is ExportFormat.DOCUMENT else "xlsx"

    @property
    def content_type(self) -> str:
        if self is ExportFormat.DOCUMENT:
            return "application/pdf"
        return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


_FORMAT_ALIASES = {"pdf": "document", "excel": "spreadsheet", "xlsx": "spreadsheet"}


class Orientation(str, enum.Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"


class ExportOptions(BaseModel):
    """Options for single, batch and scheduled exports"""
    format: ExportFormat = Field(ExportFormat.DOCUMENT, description="document (PDF) or spreadsheet (XLSX)")
    create_zip: bool = Field(False, description="Bundle successful batch artifacts into a zip archive")
    zip_name: Optional[str] = Field(None, description="Archive file name, generated when omitted")
    paper_size: str = Field(default_factory=lambda: settings.EXPORT_DEFAULT_PAPER_SIZE)
    orientation: Orientation = Field(default_factory=lambda: Orientation(settings.EXPORT_DEFAULT_ORIENTATION))
    font: str = Field(default_factory=lambda: settings.EXPORT_DEFAULT_FONT)
    include_comparison: bool = False
    comparison_years: int = Field(default_factory=lambda: settings.EXPORT_COMPARISON_YEARS, ge=0)
    include_charts: bool = False
    batch_id: Optional[str] = Field(None, description="Set by the scheduler for deferred batches")

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v):
        if isinstance(v, str):
            v = v.lower()
            return _FORMAT_ALIASES.get(v, v)
        return v

    @field_validator("paper_size")
    @classmethod
    def validate_paper_size(cls, v):
        v = v.lower()
        if v not in PAPER_SIZES:
            raise ValueError(f"paper_size must be one of {', '.join(PAPER_SIZES)}")
        return v

    @field_validator("zip_name")
    @classmethod
    def validate_zip_name(cls, v):
        if v is None:
            return v
        if "/" in v or "\\" in v:
            raise ValueError("zip_name must be a bare file name")
        if not v.lower().endswith(".zip"):
            v = f"{v}.zip"
        return v


class ExportArtifact(BaseModel):
    """A rendered export file persisted to the artifact store"""
    model_config = ConfigDict(frozen=True)

    filename: str
    storage_path: str
    size: int
    created_at: datetime
    format: ExportFormat
    download_url: Optional[str] = None


class ExportOutcome(BaseModel):
    """Result of one export attempt inside a batch"""
    model_config = ConfigDict(frozen=True)

    report_id: UUID
    success: bool
    artifact: Optional[ExportArtifact] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def succeeded(cls, report_id: UUID, artifact: ExportArtifact) -> "ExportOutcome":
        return cls(report_id=report_id, success=True, artifact=artifact)

    @classmethod
    def failed(cls, report_id: UUID, error: Exception) -> "ExportOutcome":
        kind = getattr(error, "kind", "render_failure")
        return cls(report_id=report_id, success=False, error=str(error) or type(error).__name__, error_kind=kind)


class ArchiveMetadata(BaseModel):
    """A zip archive bundling already exported artifacts"""
    model_config = ConfigDict(frozen=True)

    filename: str
    storage_path: str
    size: int
    file_count: int
    entries: Tuple[str, ...] = ()
    created_at: datetime
    download_url: Optional[str] = None


class BatchResult(BaseModel):
    """Summary of a finished batch, outcomes in input order"""
    model_config = ConfigDict(frozen=True)

    outcomes: Tuple[ExportOutcome, ...] = ()
    exported_count: int = 0
    error_count: int = 0
    archive: Optional[ArchiveMetadata] = None
    archive_error: Optional[str] = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.exported_count > 0

    @property
    def exported_artifacts(self) -> List[ExportArtifact]:
        return [outcome.artifact for outcome in self.outcomes if outcome.success and outcome.artifact]

    @property
    def errors(self) -> List[ExportOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]


class ScheduledBatch(BaseModel):
    batch_id: str
    scheduled_count: int
    rejected_count: int = Field(0, description="Reports the queue refused; recorded as failed in the batch")
    message: str = "Batch export has been scheduled."


class BatchManifest(BaseModel):
    """Persisted when a batch is scheduled so completion can be detected"""
    batch_id: str
    expected_count: int
    report_ids: List[UUID]
    options: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    actor_id: Optional[str] = None


class BatchStatusValue(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class BatchFile(BaseModel):
    filename: str
    filepath: str
    file_size: int
    download_url: Optional[str] = None


class BatchStatus(BaseModel):
    batch_id: str
    status: BatchStatusValue
    completed_files: int = 0
    failed_files: int = 0
    expected_files: int = 0
    files: List[BatchFile] = Field(default_factory=list)
    error: Optional[str] = None


class CleanupResult(BaseModel):
    success: bool
    deleted_files: int = 0
    deleted_size: int = 0
    cutoff_date: date
    error: Optional[str] = None


class DirectoryStatistics(BaseModel):
    file_count: int = 0
    total_size: int = 0


class ExportStatistics(BaseModel):
    total_files: int = 0
    total_size: int = 0
    by_type: Dict[str, DirectoryStatistics] = Field(default_factory=dict)


# Request bodies

class BatchExportRequest(BaseModel):
    report_ids: List[UUID] = Field(..., min_length=1)
    options: ExportOptions = Field(default_factory=ExportOptions)


class DateRangeExportRequest(BaseModel):
    start_date: date
    end_date: date
    options: ExportOptions = Field(default_factory=ExportOptions)

    @model_validator(mode="after")
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be greater than or equal to start_date")
        return self
