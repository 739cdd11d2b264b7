from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImportSettingsPayload(BaseModel):
    """Optional per-upload settings sent as a JSON form field."""
    column_mapping: Dict[str, str] = Field(default_factory=dict)
    default_advisor_id: Optional[str] = None
    batch_size: Optional[int] = Field(default=None, ge=1, le=5000)

    @field_validator("column_mapping")
    @classmethod
    def strip_mapping(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {k.strip(): v.strip() for k, v in value.items() if k.strip() and v.strip()}


class ImportSummary(BaseModel):
    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    rejected_rows: int = 0


class ImportJobInfo(BaseModel):
    """Status and counters of one import job."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    import_kind: str
    status: str
    user_id: str
    dealership_id: Optional[str] = None
    original_filename: str
    file_size: int
    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    rejected_rows: int = 0
    error_summary: Optional[Dict[str, Any]] = None
    queue_job_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportErrorInfo(BaseModel):
    id: int
    row_number: int
    error_type: str
    error_message: str
    raw_row: Optional[Dict[str, Any]] = None
    field_errors: Optional[Dict[str, str]] = None
    created_at: Optional[datetime] = None


class ImportUploadResponse(BaseModel):
    """Response for a submitted import file."""
    success: bool
    message: str
    import_id: str
    queue_job_id: Optional[str] = None
    status: str
    summary: ImportSummary


class ImportPreviewError(BaseModel):
    row_number: int
    field: str
    value: Optional[str] = None
    message: str
    error_type: str


class ImportPreviewSummary(BaseModel):
    valid_rows: int
    error_rows: int
    success_rate: int


class ImportPreviewResponse(BaseModel):
    success: bool
    total_rows: int
    preview_rows: List[Dict[str, Any]]
    errors: List[ImportPreviewError]
    has_more_errors: bool
    summary: ImportPreviewSummary


class ImportJobDetailResponse(BaseModel):
    """Response wrapper for a single import job with a page of its errors."""
    success: bool
    job: ImportJobInfo
    errors: List[ImportErrorInfo]
    total_errors: int
    error_limit: int
    error_offset: int


class ImportJobListResponse(BaseModel):
    """Response wrapper for a page of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    page: int
    limit: int
    pages: int


class QueueJobInfo(BaseModel):
    id: str
    state: str
    progress: int
    attempts_made: int
    created_at: datetime
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    return_value: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    import_id: Optional[str] = None


class QueueStatsResponse(BaseModel):
    success: bool
    waiting: int
    active: int
    completed: int
    failed: int
