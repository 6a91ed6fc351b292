"""
Upload orchestration for the Foldly upload service.

The manager owns the in-memory state of every file and batch: status
transitions, per-batch parallelism, automatic retries with backoff and the
events reported to callers. Context-specific work is delegated to handlers.
"""

import asyncio
import logging
import os
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from foldly.config import config
from foldly.errors import InvalidTransitionError, QuotaExceededError, UploadError, ValidationError
from foldly.handlers import UploadHandle, get_handler
from foldly.models import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    BatchProgress,
    BatchProgressEvent,
    BatchStatus,
    FileProgress,
    IncomingFile,
    ProgressEvent,
    ResumableSession,
    StateChangeEvent,
    UploadBatch,
    UploadContext,
    UploadFile,
    UploadOptions,
    UploadResult,
    UploadSession,
    UploadStatistics,
    UploadStatus,
    ValidationResult,
    utcnow,
)
from foldly.validation import generate_unique_filename, get_file_category, validate_file

logger = logging.getLogger(__name__)


def derive_batch_status(statuses: List[UploadStatus]) -> BatchStatus:
    """Aggregate file statuses into a batch status. Cancelled files are never failures."""
    if any(status not in TERMINAL_STATUSES for status in statuses):
        return BatchStatus.UPLOADING
    if statuses and all(status == UploadStatus.CANCELLED for status in statuses):
        return BatchStatus.CANCELLED

    completed = statuses.count(UploadStatus.COMPLETED)
    failed = statuses.count(UploadStatus.FAILED)
    if failed == 0:
        return BatchStatus.COMPLETED
    if completed == 0:
        return BatchStatus.FAILED
    return BatchStatus.FAILED_PARTIAL


def validation_error(result: ValidationResult) -> UploadError:
    """Exception for the first error of a failed validation."""
    issue = result.errors[0]
    if issue.code == "QUOTA_EXCEEDED":
        return QuotaExceededError(issue.message, details=issue.details)
    return ValidationError(issue.message, code=issue.code, details=issue.details)


class UploadManager:
    """
    Orchestrates uploads across batches.

    Handles:
    - Validation before any transfer
    - Per-batch concurrency limits
    - Automatic retries with backoff for storage failures
    - Cancellation, manual retry and progress reporting
    """

    def __init__(
        self,
        handlers,
        quota_checker,
        max_retries: int = None,
        retry_delays: List[float] = None,
        parallel_uploads: int = None,
        max_file_size: int = None,
        cleanup_interval: float = None,
        completed_retention: float = None,
    ):
        """
        Initialize the upload manager.

        Args:
            handlers: Context handlers keyed by context type (see create_handlers)
            quota_checker: QuotaChecker used while validating workspace uploads
            max_retries: Retry cap shared by automatic and manual retries (defaults to AppConfig value)
            retry_delays: Seconds to wait before each automatic retry (defaults to AppConfig value)
            parallel_uploads: Maximum in-flight transfers per batch (defaults to AppConfig value)
            max_file_size: Size ceiling in bytes (defaults to AppConfig value)
            cleanup_interval: Seconds between sweeps of finished batches; 0 disables the sweep (defaults to AppConfig value)
            completed_retention: Seconds a finished batch stays queryable before a sweep drops it (defaults to AppConfig value)
        """
        self.handlers = handlers
        self.quota_checker = quota_checker
        self.max_retries = max_retries if max_retries is not None else config.upload_retry_attempts
        self.retry_delays = list(retry_delays if retry_delays is not None else config.retry_delays)
        self.parallel_uploads = parallel_uploads or config.parallel_uploads
        self.max_file_size = max_file_size or config.max_file_size
        self.cleanup_interval = cleanup_interval if cleanup_interval is not None else config.cleanup_interval
        self.completed_retention = (
            completed_retention if completed_retention is not None else config.completed_retention
        )

        self._files: Dict[str, UploadFile] = {}
        self._batches: Dict[str, UploadBatch] = {}
        self._handles: Dict[str, UploadHandle] = {}
        self._options: Dict[str, UploadOptions] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

        self._submitted = 0
        self._succeeded = 0
        self._failed = 0
        self._cancelled = 0
        self._uploaded_bytes = 0
        self._durations: List[float] = []

        self._running = False
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start accepting uploads."""
        if self._running:
            logger.warning("Upload manager already running")
            return
        self._running = True
        if self.cleanup_interval > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Upload manager started")

    async def stop(self):
        """Stop accepting uploads and cancel everything in flight."""
        if not self._running:
            logger.warning("Upload manager not running")
            return

        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        for file_id, file in list(self._files.items()):
            if not file.is_terminal:
                self.cancel(file_id)

        tasks = [handle.task for handle in self._handles.values() if handle.task and not handle.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Upload manager stopped")

    # =========================================================================
    # Submission
    # =========================================================================

    async def upload(self, file: IncomingFile, context: UploadContext, options: Optional[UploadOptions] = None) -> str:
        """
        Submit a single file. The file gets a batch of its own.

        Returns:
            The file id; a file that fails validation is returned already failed
        """
        batch_id = await self.upload_batch([file], context, options)
        return self._batches[batch_id].file_ids[0]

    async def upload_batch(
        self, files: List[IncomingFile], context: UploadContext, options: Optional[UploadOptions] = None
    ) -> str:
        """
        Submit files that share a context.

        Every file is validated before it is admitted; files that fail
        validation are marked failed and never reach the handler. Valid files
        are admitted in submission order and at most parallel_uploads of them
        transfer at once.

        Args:
            files: Files to upload
            context: Destination shared by every file
            options: Callbacks and overrides for this batch

        Returns:
            The batch id
        """
        if not self._running:
            raise RuntimeError("Upload manager is not running")
        if not files:
            raise ValidationError("No files to upload", code="VALIDATION_ERROR")

        options = options or UploadOptions()
        max_retries = options.max_retries if options.max_retries is not None else self.max_retries

        batch = UploadBatch(
            id=str(uuid.uuid4()),
            user_id=getattr(context, "user_id", None),
            context_type=context.type,
        )
        self._batches[batch.id] = batch
        self._options[batch.id] = options
        self._semaphores[batch.id] = asyncio.Semaphore(options.parallel_uploads or self.parallel_uploads)

        for incoming in files:
            file = UploadFile(
                id=str(uuid.uuid4()),
                batch_id=batch.id,
                original_name=incoming.name,
                storage_name=generate_unique_filename(incoming.name),
                size=incoming.size,
                content_type=incoming.content_type,
                category=get_file_category(incoming.content_type, incoming.name),
                max_retries=max_retries,
            )
            self._files[file.id] = file
            self._handles[file.id] = UploadHandle(
                file,
                context,
                incoming,
                report_progress=lambda uploaded, file_id=file.id: self._on_bytes(file_id, uploaded),
                begin_processing=lambda file_id=file.id: self._begin_processing(file_id),
            )
            batch.file_ids.append(file.id)
            self._submitted += 1

        self._update_batch(batch.id)
        logger.info(f"Batch {batch.id} submitted with {len(files)} file(s) for {context.type} upload")

        for file_id in batch.file_ids:
            handle = self._handles[file_id]
            if handle.is_cancelled():
                continue
            result = await self._validate(handle)
            if handle.is_cancelled():
                continue
            if result.valid:
                self._schedule(handle)
            else:
                self._fail(handle, validation_error(result))

        return batch.id

    def _schedule(self, handle: UploadHandle) -> None:
        handle.task = asyncio.create_task(self._run(handle))

    async def _validate(self, handle: UploadHandle) -> ValidationResult:
        options = self._options[handle.file.batch_id]
        result = await validate_file(
            handle.source,
            handle.context,
            max_file_size=options.max_file_size or self.max_file_size,
            allowed_types=options.allowed_types,
            quota_checker=self.quota_checker,
        )
        handle.file.validation = result
        for warning in result.warnings:
            logger.info(f"Upload {handle.file.id} ({handle.file.original_name}): {warning.code} {warning.message}")
        return result

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run(self, handle: UploadHandle):
        """Drive one file until it completes, is cancelled or fails terminally."""
        file = handle.file
        semaphore = self._semaphores[file.batch_id]
        try:
            while True:
                async with semaphore:
                    retry = await self._attempt(handle)
                if not retry:
                    return
                delay = self._retry_delay(file)
                logger.warning(
                    f"Retrying upload {file.id} ({file.original_name}) in {delay}s "
                    f"(attempt {file.retry_count}/{file.max_retries})"
                )
                await asyncio.sleep(delay)
        finally:
            if file.status in (UploadStatus.COMPLETED, UploadStatus.CANCELLED):
                self._release_source(handle)

    async def _attempt(self, handle: UploadHandle) -> bool:
        """
        Run one attempt for a file.

        Returns:
            True when the file was sent back to pending for an automatic retry
        """
        file = handle.file
        if handle.is_cancelled():
            return False

        try:
            if file.validation is None:
                result = await self._validate(handle)
                if not result.valid:
                    raise validation_error(result)
                handle.raise_if_cancelled()

            self._transition(file, UploadStatus.UPLOADING)
            file.started_at = utcnow()
            logger.info(f"Starting upload {file.id}: {file.original_name} ({file.size} bytes)")

            handler = get_handler(self.handlers, handle.context)
            result = await handler.process(handle)
        except UploadError as e:
            if handle.is_cancelled():
                return False
            return self._fail(handle, e)
        except Exception as e:
            if handle.is_cancelled():
                return False
            logger.exception(f"Unexpected error uploading {file.id}: {e}")
            return self._fail(handle, UploadError(str(e)))

        self._complete(handle, result)
        return False

    def _complete(self, handle: UploadHandle, result: UploadResult) -> None:
        file = handle.file
        if file.status == UploadStatus.CANCELLED:
            logger.warning(f"Upload {file.id} was committed as {result.record_id} after it was cancelled")
            return

        file.record_id = result.record_id
        file.url = result.url
        file.storage_path = result.storage_path
        file.uploaded_bytes = file.size
        file.progress = 100
        file.completed_at = utcnow()
        self._transition(file, UploadStatus.COMPLETED)

        self._succeeded += 1
        self._uploaded_bytes += file.size
        if file.started_at:
            self._durations.append((file.completed_at - file.started_at).total_seconds())

        logger.info(f"Upload {file.id} completed: {file.original_name}")
        options = self._options[file.batch_id]
        self._emit(options.on_complete, result)
        self._update_batch(file.batch_id)

    def _fail(self, handle: UploadHandle, error: UploadError) -> bool:
        """Mark a file failed. Returns True when it was sent back to pending for an automatic retry."""
        file = handle.file
        file.error = error.user_message
        file.error_code = error.code
        self._transition(file, UploadStatus.FAILED, error=file.error)

        if error.retryable and file.retry_count < file.max_retries:
            self._reset_for_retry(handle)
            self._update_batch(file.batch_id)
            return True

        self._failed += 1
        file.completed_at = utcnow()
        logger.error(f"Upload {file.id} ({file.original_name}) failed with {error.code}: {error.message}")
        self._emit(self._options[file.batch_id].on_error, error)
        self._update_batch(file.batch_id)
        return False

    def _reset_for_retry(self, handle: UploadHandle, counted: bool = True) -> None:
        """
        failed -> pending for another attempt. A resume continues the earlier
        attempt and is not counted against the retry cap.

        A file whose backend session is still live keeps its storage name and
        path so the next attempt resumes the session from its committed offset.
        Otherwise it gets a fresh storage name, so the retry never collides
        with the earlier attempt.
        """
        file = handle.file
        self._transition(file, UploadStatus.PENDING)
        if counted:
            file.retry_count += 1
        session = self._resumable_session(handle)
        if session is not None:
            file.uploaded_bytes = session.committed_bytes
            file.progress = session.committed_bytes / file.size * 100 if file.size else 0
        else:
            file.storage_name = generate_unique_filename(file.original_name)
            file.session_id = None
            file.storage_path = None
            file.uploaded_bytes = 0
            file.progress = 0
        file.error = None
        file.error_code = None
        file.validation = None
        file.started_at = None
        file.completed_at = None

    def _resumable_session(self, handle: UploadHandle) -> Optional[UploadSession]:
        if handle.session is None:
            return None
        return get_handler(self.handlers, handle.context).resumable_session(handle)

    def _discard_session(self, handle: UploadHandle) -> None:
        if handle.session is not None:
            get_handler(self.handlers, handle.context).discard_session(handle)

    def _retry_delay(self, file: UploadFile) -> float:
        delays = self._options[file.batch_id].retry_delays
        if delays is None:
            delays = self.retry_delays
        if not delays:
            return 0
        return delays[min(file.retry_count, len(delays)) - 1]

    def _on_bytes(self, file_id: str, uploaded_bytes: int) -> None:
        file = self._files.get(file_id)
        if file is None or file.status != UploadStatus.UPLOADING:
            return
        file.uploaded_bytes = min(uploaded_bytes, file.size)
        file.progress = file.uploaded_bytes / file.size * 100 if file.size else 100
        batch = self._batches[file.batch_id]
        batch.uploaded_bytes = sum(self._files[other].uploaded_bytes for other in batch.file_ids)

        options = self._options[file.batch_id]
        self._emit(
            options.on_progress,
            ProgressEvent(
                file_id=file.id,
                batch_id=file.batch_id,
                file_name=file.original_name,
                progress=file.progress,
                uploaded_bytes=file.uploaded_bytes,
                total_bytes=file.size,
            ),
        )

    def _begin_processing(self, file_id: str) -> None:
        file = self._files[file_id]
        if file.status != UploadStatus.UPLOADING:
            return
        file.uploaded_bytes = file.size
        file.progress = 100
        self._transition(file, UploadStatus.PROCESSING)

    def _release_source(self, handle: UploadHandle) -> None:
        source = handle.source
        if source.delete_after and source.path:
            try:
                os.remove(source.path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Failed to remove spooled file {source.path}: {e}")

    # =========================================================================
    # State
    # =========================================================================

    def _transition(self, file: UploadFile, new_status: UploadStatus, error: Optional[str] = None) -> None:
        if new_status not in TRANSITIONS[file.status]:
            raise InvalidTransitionError(f"Upload {file.id} cannot move from {file.status.value} to {new_status.value}")

        previous = file.status
        file.status = new_status
        logger.debug(f"Upload {file.id}: {previous.value} -> {new_status.value}")
        self._emit(
            self._options[file.batch_id].on_state_change,
            StateChangeEvent(
                file_id=file.id,
                batch_id=file.batch_id,
                previous_status=previous,
                new_status=new_status,
                error=error,
            ),
        )

    def _update_batch(self, batch_id: str) -> None:
        batch = self._batches.get(batch_id)
        if batch is None:
            return

        files = [self._files[file_id] for file_id in batch.file_ids]
        statuses = [file.status for file in files]
        previous = batch.status

        batch.total_files = len(files)
        batch.completed_files = statuses.count(UploadStatus.COMPLETED)
        batch.failed_files = statuses.count(UploadStatus.FAILED)
        batch.cancelled_files = statuses.count(UploadStatus.CANCELLED)
        batch.total_bytes = sum(file.size for file in files)
        batch.uploaded_bytes = sum(file.uploaded_bytes for file in files)
        batch.status = derive_batch_status(statuses)

        if batch.status == BatchStatus.UPLOADING:
            batch.completed_at = None
        elif previous == BatchStatus.UPLOADING or batch.completed_at is None:
            batch.completed_at = utcnow()
            logger.info(
                f"Batch {batch.id} finished as {batch.status.value}: {batch.completed_files} completed, "
                f"{batch.failed_files} failed, {batch.cancelled_files} cancelled"
            )

        self._emit(
            self._options[batch_id].on_batch_progress,
            BatchProgressEvent(
                batch_id=batch.id,
                completed_files=batch.completed_files,
                failed_files=batch.failed_files,
                total_files=batch.total_files,
            ),
        )

    @staticmethod
    def _emit(callback, event) -> None:
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.exception(f"Upload callback {getattr(callback, '__name__', callback)!r} raised: {e}")

    # =========================================================================
    # Control
    # =========================================================================

    def cancel(self, upload_id: str) -> bool:
        """
        Cancel a file or every unfinished file of a batch.

        A file that is already processing is not interrupted mid-commit; it is
        marked cancelled and its handler stops before writing metadata.

        Returns:
            True if anything was cancelled
        """
        batch = self._batches.get(upload_id)
        if batch is not None:
            results = [self._cancel_file(file_id) for file_id in batch.file_ids]
            return any(results)
        return self._cancel_file(upload_id)

    def _cancel_file(self, file_id: str) -> bool:
        file = self._files.get(file_id)
        if file is None or file.is_terminal:
            return False

        handle = self._handles[file_id]
        previous = file.status
        handle.cancel_event.set()
        self._transition(file, UploadStatus.CANCELLED)
        file.completed_at = utcnow()
        self._cancelled += 1

        # A processing file finishes its run and is cleaned up there
        if previous != UploadStatus.PROCESSING:
            if handle.task is not None and not handle.task.done():
                handle.task.cancel()
            self._discard_session(handle)
            self._release_source(handle)

        logger.info(f"Upload {file_id} cancelled")
        self._update_batch(file.batch_id)
        return True

    def retry(self, file_id: str) -> bool:
        """
        Manually retry a failed file. Shares the retry cap with automatic retries.

        Returns:
            False if the file is unknown

        Raises:
            InvalidTransitionError: the file is not failed
            UploadError: the retry cap has been reached (RETRY_LIMIT_EXCEEDED)
        """
        if not self._running:
            raise RuntimeError("Upload manager is not running")
        file = self._files.get(file_id)
        if file is None:
            return False
        if file.status != UploadStatus.FAILED:
            raise InvalidTransitionError(f"Upload {file_id} is {file.status.value}; only failed uploads can be retried")
        if file.retry_count >= file.max_retries:
            raise UploadError(
                f"Upload {file_id} already retried {file.retry_count} times", code="RETRY_LIMIT_EXCEEDED"
            )

        self._failed -= 1
        self._reset_for_retry(self._handles[file_id])
        self._update_batch(file.batch_id)
        self._schedule(self._handles[file_id])
        logger.info(f"Upload {file_id} queued for manual retry ({file.retry_count}/{file.max_retries})")
        return True

    def resume(self, file_id: str) -> bool:
        """
        Continue a failed file through its still-live backend session.

        The transfer picks up from the offset the backend committed. A resume
        continues the interrupted attempt, so it works after the retry cap
        is reached and does not count as a retry.

        Returns:
            False if the file is unknown

        Raises:
            InvalidTransitionError: the file is not failed
            UploadError: no live session is left (SESSION_EXPIRED)
        """
        if not self._running:
            raise RuntimeError("Upload manager is not running")
        handle = self._handles.get(file_id)
        if handle is None:
            return False
        file = handle.file
        if file.status != UploadStatus.FAILED:
            raise InvalidTransitionError(f"Upload {file_id} is {file.status.value}; only failed uploads can be resumed")
        session = self._resumable_session(handle)
        if session is None:
            raise UploadError(f"Upload {file_id} has no live session to resume", code="SESSION_EXPIRED")

        self._failed -= 1
        self._reset_for_retry(handle, counted=False)
        self._update_batch(file.batch_id)
        self._schedule(handle)
        logger.info(f"Upload {file_id} resuming from byte {session.committed_bytes}")
        return True

    def get_resumable_sessions(self) -> List[ResumableSession]:
        """Failed files whose backend session can still be resumed."""
        sessions = []
        for file_id, handle in self._handles.items():
            if handle.file.status != UploadStatus.FAILED:
                continue
            session = self._resumable_session(handle)
            if session is None:
                continue
            sessions.append(
                ResumableSession(
                    file_id=file_id,
                    batch_id=handle.file.batch_id,
                    file_name=handle.file.original_name,
                    session_id=session.session_id,
                    committed_bytes=session.committed_bytes,
                    total_bytes=handle.file.size,
                    expires_at=session.expires_at,
                )
            )
        return sessions

    async def wait(self, file_id: str) -> Optional[UploadFile]:
        """Wait until the file's current run finishes. Never raises for cancelled uploads."""
        handle = self._handles.get(file_id)
        if handle is None:
            return None
        if handle.task is not None:
            await asyncio.wait({handle.task})
        return handle.file

    async def wait_for_batch(self, batch_id: str) -> Optional[UploadBatch]:
        batch = self._batches.get(batch_id)
        if batch is None:
            return None
        tasks = {self._handles[file_id].task for file_id in batch.file_ids if self._handles[file_id].task}
        if tasks:
            await asyncio.wait(tasks)
        return batch

    def clear_completed(self, older_than: Optional[float] = None) -> int:
        """
        Forget batches whose files have all reached a terminal status.

        Spooled sources and kept sessions of the dropped files are released.

        Args:
            older_than: Only drop batches that finished at least this many seconds ago

        Returns:
            The number of files dropped
        """
        cutoff = utcnow() - timedelta(seconds=older_than) if older_than is not None else None
        dropped = 0
        for batch_id, batch in list(self._batches.items()):
            if batch.status == BatchStatus.UPLOADING:
                continue
            if cutoff is not None and batch.completed_at is not None and batch.completed_at > cutoff:
                continue
            for file_id in batch.file_ids:
                handle = self._handles.pop(file_id)
                self._discard_session(handle)
                self._release_source(handle)
                del self._files[file_id]
                dropped += 1
            del self._batches[batch_id]
            del self._options[batch_id]
            del self._semaphores[batch_id]
        if dropped:
            logger.info(f"Cleared {dropped} finished upload(s)")
        return dropped

    async def _cleanup_loop(self):
        """Periodically drop finished batches older than the retention window."""
        while self._running:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.clear_completed(older_than=self.completed_retention)
            except Exception as e:
                logger.exception(f"Error clearing finished uploads: {e}")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_file(self, file_id: str) -> Optional[UploadFile]:
        return self._files.get(file_id)

    def get_batch(self, batch_id: str) -> Optional[UploadBatch]:
        return self._batches.get(batch_id)

    def get_progress(self, file_id: str) -> Optional[FileProgress]:
        file = self._files.get(file_id)
        if file is None:
            return None
        return FileProgress(
            file_id=file.id,
            batch_id=file.batch_id,
            status=file.status,
            progress=file.progress,
            uploaded_bytes=file.uploaded_bytes,
            total_bytes=file.size,
            retry_count=file.retry_count,
            can_retry=file.can_retry,
            error=file.error,
            error_code=file.error_code,
        )

    def get_batch_progress(self, batch_id: str) -> Optional[BatchProgress]:
        batch = self._batches.get(batch_id)
        if batch is None:
            return None
        return BatchProgress(
            batch_id=batch.id,
            status=batch.status,
            total_files=batch.total_files,
            completed_files=batch.completed_files,
            failed_files=batch.failed_files,
            cancelled_files=batch.cancelled_files,
            total_bytes=batch.total_bytes,
            uploaded_bytes=batch.uploaded_bytes,
            progress=batch.uploaded_bytes / batch.total_bytes * 100 if batch.total_bytes else 0,
        )

    def get_statistics(self) -> UploadStatistics:
        return UploadStatistics(
            total_uploads=self._submitted,
            success_count=self._succeeded,
            failure_count=self._failed,
            cancelled_count=self._cancelled,
            active_uploads=sum(1 for file in self._files.values() if not file.is_terminal),
            total_bytes=self._uploaded_bytes,
            average_duration=sum(self._durations) / len(self._durations) if self._durations else 0,
        )
