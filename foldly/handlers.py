"""
Context handlers.

A handler owns the per-context part of an upload: it checks the context's
preconditions, decides where the object lives, drives the storage provider
through initiate/transfer/verify and writes the metadata row. The manager
owns status, retries and events.
"""

import asyncio
import logging
import re
from datetime import timezone
from typing import Any, Callable, Dict, Optional

from foldly.errors import MetadataCommitError, QuotaExceededError, StorageError, UploadCancelledError, ValidationError
from foldly.models import (
    IncomingFile,
    LinkUploadContext,
    UploadContext,
    UploadFile,
    UploadResult,
    UploadSession,
    WorkspaceUploadContext,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 50

# Log code for rows written after their upload was cancelled
COMMITTED_AFTER_CANCEL = "COMMITTED_AFTER_CANCEL"


def sanitize_path_segment(value: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    """Lowercase, hyphenated slug safe for use as one storage path segment."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "anonymous"


class UploadHandle:
    """
    Runtime state for one file shared between the manager and a handler.

    The handle lives for the whole life of the file, across retries. The
    manager supplies the progress and processing hooks; the handler only
    reports through them.
    """

    def __init__(
        self,
        file: UploadFile,
        context: UploadContext,
        source: IncomingFile,
        report_progress: Optional[Callable[[int], None]] = None,
        begin_processing: Optional[Callable[[], None]] = None,
    ):
        self.file = file
        self.context = context
        self.source = source
        self.cancel_event = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        # Live backend session kept across attempts so a retry can resume it
        self.session: Optional[UploadSession] = None
        self._report_progress = report_progress
        self._begin_processing = begin_processing

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise UploadCancelledError()

    def report_progress(self, uploaded_bytes: int) -> None:
        if self._report_progress:
            self._report_progress(uploaded_bytes)

    def begin_processing(self) -> None:
        if self._begin_processing:
            self._begin_processing()


class BaseUploadHandler:
    """Shared initiate/transfer/verify/commit flow."""

    context_class = None

    def __init__(self, provider, database, quota_checker, bucket: str):
        self.provider = provider
        self.db = database
        self.quota_checker = quota_checker
        self.bucket = bucket

    async def prepare(self, handle: UploadHandle) -> Dict[str, Any]:
        """Check the context's preconditions. Returns the destination record."""
        raise NotImplementedError

    def build_path(self, handle: UploadHandle, target: Dict[str, Any]) -> str:
        """Directory inside the bucket that receives the object."""
        raise NotImplementedError

    def build_row(self, handle: UploadHandle, target: Dict[str, Any], storage_path: str) -> Dict[str, Any]:
        """Column values for the files table."""
        raise NotImplementedError

    def charged_user(self, handle: UploadHandle, target: Dict[str, Any]) -> str:
        """The user whose storage usage grows with this file."""
        raise NotImplementedError

    def object_metadata(self, handle: UploadHandle) -> Dict[str, str]:
        return {"originalName": handle.file.original_name, "batchId": handle.file.batch_id}

    def resumable_session(self, handle: UploadHandle) -> Optional[UploadSession]:
        """The handle's session when it can still take bytes, otherwise None."""
        session = handle.session
        if session is None:
            return None
        live = self.provider.get_session(session.session_id)
        if live is None or live.is_expired():
            self.provider.release_session(session.session_id)
            logger.info(f"Session {session.session_id} for upload {handle.file.id} expired and cannot be resumed")
            handle.session = None
            return None
        return session

    def discard_session(self, handle: UploadHandle) -> None:
        """Forget the handle's session so the next attempt starts a new one."""
        if handle.session is not None:
            self.provider.release_session(handle.session.session_id)
            handle.session = None

    async def process(self, handle: UploadHandle) -> UploadResult:
        """
        Run one upload attempt for a file.

        Args:
            handle: Runtime state of the file being uploaded

        Returns:
            UploadResult for the committed file

        Raises:
            ValidationError: the context is wrong or a precondition does not hold
            QuotaExceededError: the charged user has no room for the file
            StorageError: initiate, transfer or verification failed. After a transfer failure
                the session stays on the handle so the next attempt resumes it
            UploadCancelledError: the user cancelled before the metadata commit
            MetadataCommitError: the object is stored but its row was not written
        """
        if not isinstance(handle.context, self.context_class):
            raise ValidationError(
                f"{type(self).__name__} cannot handle a {handle.context.type!r} upload", code="INVALID_CONTEXT"
            )

        file = handle.file
        target = await self.prepare(handle)
        handle.raise_if_cancelled()

        session = self.resumable_session(handle)
        if session is not None:
            logger.info(
                f"Resuming upload {file.id} at {self.bucket}/{session.final_path} from byte {session.committed_bytes}"
            )
        else:
            session = await self.provider.initiate_resumable_upload(
                file.storage_name,
                file.size,
                file.content_type,
                self.bucket,
                self.build_path(handle, target),
                metadata=self.object_metadata(handle),
            )
            handle.session = session
        file.session_id = session.session_id
        file.storage_path = session.final_path

        verified = False
        resumable = False
        try:
            handle.raise_if_cancelled()
            try:
                with handle.source.open() as stream:
                    await self.provider.transfer(session, stream, file.size, handle.report_progress)
            except StorageError:
                resumable = not handle.is_cancelled()
                raise

            handle.begin_processing()
            verification = await self.provider.verify_upload(session.session_id, self.bucket, session.final_path)
            if not verification.success:
                raise StorageError(
                    f"Uploaded object {self.bucket}/{session.final_path} was not found",
                    code="VERIFICATION_FAILED",
                )
            verified = True
        finally:
            if not verified and not resumable:
                self.discard_session(handle)
        handle.session = None

        if handle.is_cancelled():
            logger.warning(
                f"Upload {file.id} cancelled after transfer; {self.bucket}/{session.final_path} is left unreferenced"
            )
            raise UploadCancelledError()

        charged_user = self.charged_user(handle, target)
        row = self.build_row(handle, target, session.final_path)
        try:
            record_id = await self.db.record_upload(row, charged_user)
        except Exception as e:
            logger.error(
                f"Metadata commit failed for {self.bucket}/{session.final_path}; object kept as orphan: {e}"
            )
            raise MetadataCommitError(
                f"Failed to save metadata for {file.original_name}",
                storage_path=session.final_path,
                bucket=self.bucket,
            ) from e

        if handle.is_cancelled():
            # The row is kept; the reconciler reports it under its cancelled paths
            logger.warning(
                f"[{COMMITTED_AFTER_CANCEL}] Upload {file.id} was cancelled during its metadata commit; "
                f"row {record_id} for {self.bucket}/{session.final_path} is flagged"
            )
            await self.db.mark_file_cancelled(record_id)

        storage_info = await self.quota_checker.get_storage_info(charged_user)
        logger.info(f"Upload {file.id} committed as {record_id} at {self.bucket}/{session.final_path}")
        return UploadResult(
            success=True,
            file_id=file.id,
            record_id=record_id,
            file_name=file.original_name,
            file_size=file.size,
            storage_path=session.final_path,
            url=verification.url,
            storage_info=storage_info,
        )


class WorkspaceUploadHandler(BaseUploadHandler):
    """Uploads by a signed-in user into a workspace they own."""

    context_class = WorkspaceUploadContext

    async def prepare(self, handle: UploadHandle) -> Dict[str, Any]:
        context = handle.context
        workspace = await self.db.get_workspace(context.workspace_id)
        if not workspace or workspace["user_id"] != context.user_id:
            raise ValidationError(f"Workspace {context.workspace_id} not found", code="WORKSPACE_NOT_FOUND")

        if context.folder_id:
            folder = await self.db.get_folder(context.folder_id)
            if not folder or folder["workspace_id"] != context.workspace_id:
                raise ValidationError(
                    f"Folder {context.folder_id} is not in workspace {context.workspace_id}",
                    code="WORKSPACE_NOT_FOUND",
                )
        return workspace

    def build_path(self, handle: UploadHandle, target: Dict[str, Any]) -> str:
        context = handle.context
        base = f"workspaces/{context.user_id}/{context.workspace_id}"
        if context.folder_id:
            return f"{base}/folders/{context.folder_id}"
        return f"{base}/files"

    def charged_user(self, handle: UploadHandle, target: Dict[str, Any]) -> str:
        return handle.context.user_id

    def build_row(self, handle: UploadHandle, target: Dict[str, Any], storage_path: str) -> Dict[str, Any]:
        file = handle.file
        context = handle.context
        return {
            "batch_id": file.batch_id,
            "user_id": context.user_id,
            "workspace_id": context.workspace_id,
            "folder_id": context.folder_id,
            "file_name": file.storage_name,
            "original_name": file.original_name,
            "file_size": file.size,
            "mime_type": file.content_type,
            "category": file.category,
            "storage_path": storage_path,
            "bucket": self.bucket,
            "storage_provider": self.provider.name,
        }


class LinkUploadHandler(BaseUploadHandler):
    """Uploads by anonymous recipients of a public link. Usage is charged to the link owner."""

    context_class = LinkUploadContext

    async def prepare(self, handle: UploadHandle) -> Dict[str, Any]:
        context = handle.context
        if not context.uploader_name.strip():
            raise ValidationError("Uploader name is required for link uploads", code="MISSING_UPLOADER_NAME")

        link = await self.db.get_link(context.link_id)
        if not link or not link["is_active"]:
            raise ValidationError(f"Link {context.link_id} is not accepting uploads", code="LINK_UNAVAILABLE")

        expires_at = link["expires_at"]
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= utcnow():
                raise ValidationError(f"Link {context.link_id} expired at {expires_at}", code="LINK_UNAVAILABLE")

        quota = await self.quota_checker.check_user_quota(link["user_id"], handle.file.size)
        if not quota.can_upload:
            raise QuotaExceededError(
                quota.reason,
                details={"current_usage": quota.current_usage, "limit": quota.limit, "file_size": handle.file.size},
            )
        return link

    def build_path(self, handle: UploadHandle, target: Dict[str, Any]) -> str:
        context = handle.context
        day = utcnow().strftime("%Y-%m-%d")
        return f"links/{target['user_id']}/{context.link_id}/{day}/{sanitize_path_segment(context.uploader_name)}"

    def charged_user(self, handle: UploadHandle, target: Dict[str, Any]) -> str:
        return target["user_id"]

    def object_metadata(self, handle: UploadHandle) -> Dict[str, str]:
        metadata = super().object_metadata(handle)
        metadata["uploaderName"] = handle.context.uploader_name
        return metadata

    def build_row(self, handle: UploadHandle, target: Dict[str, Any], storage_path: str) -> Dict[str, Any]:
        file = handle.file
        context = handle.context
        return {
            "batch_id": file.batch_id,
            "user_id": target["user_id"],
            "workspace_id": target.get("workspace_id"),
            "folder_id": context.folder_id,
            "link_id": context.link_id,
            "file_name": file.storage_name,
            "original_name": file.original_name,
            "file_size": file.size,
            "mime_type": file.content_type,
            "category": file.category,
            "storage_path": storage_path,
            "bucket": self.bucket,
            "storage_provider": self.provider.name,
            "uploader_name": context.uploader_name.strip(),
            "uploader_email": context.uploader_email,
            "uploader_message": context.message,
        }


def create_handlers(provider, database, quota_checker, app_config) -> Dict[str, BaseUploadHandler]:
    """One handler per context type, keyed by the context's type tag."""
    return {
        "workspace": WorkspaceUploadHandler(provider, database, quota_checker, app_config.workspace_bucket),
        "link": LinkUploadHandler(provider, database, quota_checker, app_config.link_bucket),
    }


def get_handler(handlers: Dict[str, BaseUploadHandler], context: UploadContext) -> BaseUploadHandler:
    handler = handlers.get(getattr(context, "type", None))
    if handler is None:
        raise ValidationError(f"No handler for upload context {context!r}", code="INVALID_CONTEXT")
    return handler
