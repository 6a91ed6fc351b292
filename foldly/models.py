"""
Pydantic models for the Foldly upload service.
"""

import io
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, BinaryIO, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadStatus(str, Enum):
    """Lifecycle status of a single file."""

    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED})

# Allowed status edges. FAILED -> PENDING is the retry edge.
TRANSITIONS: Dict[UploadStatus, frozenset] = {
    UploadStatus.PENDING: frozenset({UploadStatus.UPLOADING, UploadStatus.FAILED, UploadStatus.CANCELLED}),
    UploadStatus.UPLOADING: frozenset({UploadStatus.PROCESSING, UploadStatus.FAILED, UploadStatus.CANCELLED}),
    UploadStatus.PROCESSING: frozenset({UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED}),
    UploadStatus.FAILED: frozenset({UploadStatus.PENDING}),
    UploadStatus.COMPLETED: frozenset(),
    UploadStatus.CANCELLED: frozenset(),
}


class BatchStatus(str, Enum):
    """Aggregate status of a batch, derived from its files."""

    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED_PARTIAL = "failed_partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Upload contexts
# =============================================================================


class WorkspaceUploadContext(BaseModel):
    """Upload into the owner's private workspace."""

    model_config = ConfigDict(frozen=True)

    type: Literal["workspace"] = "workspace"
    workspace_id: str
    folder_id: Optional[str] = None
    user_id: str


class LinkUploadContext(BaseModel):
    """Upload by an anonymous recipient through a public upload link."""

    model_config = ConfigDict(frozen=True)

    type: Literal["link"] = "link"
    link_id: str
    folder_id: Optional[str] = None
    uploader_name: str = ""
    uploader_email: Optional[str] = None
    message: Optional[str] = None
    password: Optional[str] = None


UploadContext = Annotated[Union[WorkspaceUploadContext, LinkUploadContext], Field(discriminator="type")]


# =============================================================================
# Files handed to the manager
# =============================================================================


class IncomingFile(BaseModel):
    """A file submitted for upload, either in memory or spooled to disk."""

    name: str
    size: int
    content_type: str = "application/octet-stream"
    path: Optional[str] = Field(default=None, description="Local path of a spooled file")
    data: Optional[bytes] = Field(default=None, description="File contents held in memory")
    delete_after: bool = Field(default=False, description="Remove the spooled file once it is no longer needed")

    def open(self) -> BinaryIO:
        if self.data is not None:
            return io.BytesIO(self.data)
        if self.path is None:
            raise ValueError(f"File {self.name} has no content")
        return open(self.path, "rb")


# =============================================================================
# Validation and quota
# =============================================================================


class ValidationIssue(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ValidationWarning(BaseModel):
    code: str
    message: str
    suggestion: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)


class QuotaCheckResult(BaseModel):
    can_upload: bool
    reason: Optional[str] = None
    current_usage: int = 0
    limit: int = 0
    remaining: int = 0
    percentage_used: float = 0
    near_limit: bool = False


# =============================================================================
# Storage
# =============================================================================


class UploadSession(BaseModel):
    """Resumable upload handle issued by a storage provider. Never persisted."""

    session_id: str
    session_url: str
    chunk_size: int
    expires_at: datetime
    final_path: str
    bucket: str
    provider: str
    content_type: str = "application/octet-stream"
    upload_headers: Dict[str, str] = Field(default_factory=dict)
    upload_metadata: Dict[str, str] = Field(default_factory=dict)
    upload_url: Optional[str] = Field(
        default=None, description="Backend URL of the in-progress upload once bytes have been sent"
    )
    committed_bytes: int = Field(default=0, description="Bytes the backend acknowledged so far")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class StoredObject(BaseModel):
    url: str
    storage_path: str


class VerificationResult(BaseModel):
    success: bool
    url: str = ""


# =============================================================================
# Pipeline state
# =============================================================================


class UploadFile(BaseModel):
    """One file moving through the upload pipeline."""

    id: str
    batch_id: str
    original_name: str
    storage_name: str
    size: int
    content_type: str
    category: str
    status: UploadStatus = UploadStatus.PENDING
    progress: float = 0
    uploaded_bytes: int = 0
    retry_count: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    error_code: Optional[str] = None
    storage_path: Optional[str] = None
    url: Optional[str] = None
    session_id: Optional[str] = None
    record_id: Optional[str] = None
    validation: Optional[ValidationResult] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.status == UploadStatus.FAILED and self.retry_count < self.max_retries


class UploadBatch(BaseModel):
    """Files submitted together. Counters are recomputed from the files on every change."""

    id: str
    user_id: Optional[str] = None
    context_type: str
    status: BatchStatus = BatchStatus.UPLOADING
    file_ids: List[str] = Field(default_factory=list)
    total_files: int = 0
    completed_files: int = 0
    failed_files: int = 0
    cancelled_files: int = 0
    total_bytes: int = 0
    uploaded_bytes: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class StorageInfo(BaseModel):
    usage_percentage: float
    remaining_bytes: int
    should_show_warning: bool


class UploadResult(BaseModel):
    success: bool
    file_id: Optional[str] = None
    record_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    storage_path: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    storage_info: Optional[StorageInfo] = None


# =============================================================================
# Events and options
# =============================================================================


class ProgressEvent(BaseModel):
    file_id: str
    batch_id: str
    file_name: str
    progress: float
    uploaded_bytes: int
    total_bytes: int


class StateChangeEvent(BaseModel):
    file_id: str
    batch_id: str
    previous_status: UploadStatus
    new_status: UploadStatus
    error: Optional[str] = None


class BatchProgressEvent(BaseModel):
    batch_id: str
    completed_files: int
    failed_files: int
    total_files: int


class UploadOptions(BaseModel):
    """Per-call callbacks and overrides of the manager defaults."""

    on_progress: Optional[Callable[[ProgressEvent], Any]] = None
    on_state_change: Optional[Callable[[StateChangeEvent], Any]] = None
    on_batch_progress: Optional[Callable[[BatchProgressEvent], Any]] = None
    on_complete: Optional[Callable[[UploadResult], Any]] = None
    on_error: Optional[Callable[[Exception], Any]] = None

    max_retries: Optional[int] = None
    retry_delays: Optional[List[float]] = None
    max_file_size: Optional[int] = None
    allowed_types: Optional[List[str]] = None
    parallel_uploads: Optional[int] = None


# =============================================================================
# Read-only snapshots
# =============================================================================


class FileProgress(BaseModel):
    file_id: str
    batch_id: str
    status: UploadStatus
    progress: float
    uploaded_bytes: int
    total_bytes: int
    retry_count: int
    can_retry: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


class BatchProgress(BaseModel):
    batch_id: str
    status: BatchStatus
    total_files: int
    completed_files: int
    failed_files: int
    cancelled_files: int
    total_bytes: int
    uploaded_bytes: int
    progress: float


class UploadStatistics(BaseModel):
    total_uploads: int = 0
    success_count: int = 0
    failure_count: int = 0
    cancelled_count: int = 0
    active_uploads: int = 0
    total_bytes: int = 0
    average_duration: float = 0


# =============================================================================
# API responses
# =============================================================================


class UploadResponse(BaseModel):
    """Model for a single-file upload response."""

    upload_id: str
    batch_id: str
    status: UploadStatus
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)


class BatchResponse(BaseModel):
    """Model for a batch upload response."""

    batch_id: str
    file_ids: List[str]
    status: BatchStatus


class OrphanReport(BaseModel):
    """Storage-vs-database diff for one bucket prefix."""

    bucket: str
    prefix: str
    orphaned: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    cancelled: List[str] = Field(
        default_factory=list, description="Rows committed after their upload was cancelled"
    )


class ResumableSession(BaseModel):
    """A failed upload whose storage session is still live and can be resumed."""

    file_id: str
    batch_id: str
    file_name: str
    session_id: str
    committed_bytes: int
    total_bytes: int
    expires_at: datetime
