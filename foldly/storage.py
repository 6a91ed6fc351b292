"""
Storage provider abstraction.

A single provider is chosen from configuration at startup; the rest of the
service talks to it only through StorageProvider. Providers do not retry:
retrying is left to the upload manager, which knows about the batch.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple

from foldly.errors import StorageError
from foldly.models import StoredObject, UploadSession, VerificationResult, utcnow

logger = logging.getLogger(__name__)

SESSION_LIFETIME = timedelta(hours=24)
DEFAULT_SIGNED_URL_EXPIRY = 3600

ProgressCallback = Callable[[int], None]


class StorageProvider(ABC):
    """
    Uniform contract over the storage backends.

    Subclasses implement the backend calls; this base keeps the registry of
    live resumable sessions, which allows at most one session per object and
    invalidates a session once it has been verified.
    """

    name = "base"
    chunk_size = 5 * 1024 * 1024

    def __init__(self, signed_url_expiry: int = DEFAULT_SIGNED_URL_EXPIRY):
        self.signed_url_expiry = signed_url_expiry
        self._sessions: Dict[str, UploadSession] = {}
        self._sessions_by_path: Dict[Tuple[str, str], str] = {}

    # =========================================================================
    # Backend operations
    # =========================================================================

    @abstractmethod
    async def upload_file(
        self,
        data: bytes,
        file_name: str,
        path: str,
        bucket: str,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StoredObject:
        """Single-shot upload for small files."""

    @abstractmethod
    async def _create_session(
        self,
        final_path: str,
        file_size: int,
        content_type: str,
        bucket: str,
        metadata: Dict[str, str],
    ) -> Tuple[str, Dict[str, str], Dict[str, str]]:
        """Allocate a backend session. Returns (session_url, upload_headers, upload_metadata)."""

    @abstractmethod
    async def transfer(
        self,
        session: UploadSession,
        stream: BinaryIO,
        file_size: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Send the file's bytes through the session using the backend's resumable protocol.

        A session that already received bytes is resumed from the offset the
        backend has committed. The adapter records that offset and the
        backend's upload URL on the session as it goes.
        """

    @abstractmethod
    async def delete_file(self, path: str, bucket: str) -> None:
        """Delete an object. Deleting a missing object is not an error."""

    @abstractmethod
    async def get_signed_url(self, path: str, bucket: str, expires_in: Optional[int] = None) -> str:
        """Time-limited read URL. expires_in defaults to the configured signed URL lifetime."""

    @abstractmethod
    async def file_exists(self, path: str, bucket: str) -> bool:
        """Whether the object exists. Backend failures raise StorageError."""

    @abstractmethod
    async def list_files(self, prefix: str, bucket: str) -> List[str]:
        """Object paths under a prefix."""

    @abstractmethod
    def public_url(self, path: str, bucket: str) -> str:
        """Durable URL recorded for a verified object."""

    # =========================================================================
    # Resumable sessions
    # =========================================================================

    async def initiate_resumable_upload(
        self,
        file_name: str,
        file_size: int,
        content_type: str,
        bucket: str,
        path: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> UploadSession:
        """
        Allocate a resumable upload session. No file bytes are written.

        Args:
            file_name: Storage name of the object
            file_size: Declared size in bytes
            content_type: MIME type of the file
            bucket: Destination bucket
            path: Destination directory inside the bucket
            metadata: Extra object metadata

        Returns:
            The UploadSession the bytes are sent through
        """
        final_path = f"{path.rstrip('/')}/{file_name}" if path else file_name
        self._expire_sessions()

        key = (bucket, final_path)
        if key in self._sessions_by_path:
            raise StorageError(
                f"An upload session for {bucket}/{final_path} is already active",
                code="SESSION_CONFLICT",
                details={"bucket": bucket, "path": final_path},
            )

        session_url, headers, upload_metadata = await self._create_session(
            final_path, file_size, content_type, bucket, dict(metadata or {})
        )
        session = UploadSession(
            session_id=str(uuid.uuid4()),
            session_url=session_url,
            chunk_size=self.chunk_size,
            expires_at=utcnow() + SESSION_LIFETIME,
            final_path=final_path,
            bucket=bucket,
            provider=self.name,
            content_type=content_type,
            upload_headers=headers,
            upload_metadata=upload_metadata,
        )
        self._sessions[session.session_id] = session
        self._sessions_by_path[key] = session.session_id

        logger.info(
            f"Initiated {self.name} resumable upload session {session.session_id} "
            f"for {bucket}/{final_path} ({file_size} bytes, chunk size {self.chunk_size})"
        )
        return session

    async def verify_upload(self, session_id: str, bucket: str, final_path: str) -> VerificationResult:
        """
        Confirm that the object for a finished transfer exists at the backend.

        The client's claim is never trusted on its own. The session is
        invalidated when verification succeeds.

        Returns:
            VerificationResult with success False when the object is absent

        Raises:
            StorageError: unknown or expired session, path mismatch, or backend failure
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise StorageError(f"Unknown upload session {session_id}", code="SESSION_EXPIRED")
        if session.is_expired():
            self.release_session(session_id)
            raise StorageError(f"Upload session {session_id} has expired", code="SESSION_EXPIRED")
        if session.bucket != bucket or session.final_path != final_path:
            raise StorageError(
                f"Session {session_id} was issued for {session.bucket}/{session.final_path}",
                code="VERIFICATION_FAILED",
            )

        if not await self.file_exists(final_path, bucket):
            logger.warning(f"Upload verification failed: {bucket}/{final_path} not found")
            return VerificationResult(success=False)

        self.release_session(session_id)
        url = self.public_url(final_path, bucket)
        logger.info(f"Upload verified: {bucket}/{final_path}")
        return VerificationResult(success=True, url=url)

    def release_session(self, session_id: str) -> None:
        """Forget a session that will not be verified."""
        session = self._sessions.pop(session_id, None)
        if session:
            self._sessions_by_path.pop((session.bucket, session.final_path), None)

    def get_session(self, session_id: str) -> Optional[UploadSession]:
        return self._sessions.get(session_id)

    def has_active_session(self, path: str, bucket: str) -> bool:
        self._expire_sessions()
        return (bucket, path) in self._sessions_by_path

    def _expire_sessions(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        for session_id in [s.session_id for s in self._sessions.values() if s.is_expired(now)]:
            logger.debug(f"Dropping expired upload session {session_id}")
            self.release_session(session_id)


def get_storage_provider(app_config) -> StorageProvider:
    """Build the provider named by app_config.storage_provider."""
    provider = (app_config.storage_provider or "").lower()

    if provider == "gcs":
        from foldly.gcs_storage import GCSStorageProvider

        return GCSStorageProvider(app_config)

    if provider != "supabase":
        raise ValueError(f"Invalid STORAGE_PROVIDER: {app_config.storage_provider!r}. Must be 'supabase' or 'gcs'.")

    from foldly.supabase_storage import SupabaseStorageProvider

    return SupabaseStorageProvider(app_config)
