"""
Google Cloud Storage provider.

Sessions and object operations use google-cloud-storage, whose blocking calls
run in a worker thread. Bytes are sent to the session URI chunk by chunk with
google-resumable-media over an authorized requests session, and an interrupted
session is resumed from the offset GCS reports for it.
"""

import asyncio
import base64
import logging
from datetime import timedelta
from typing import BinaryIO, Dict, List, Optional, Tuple

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.cloud import storage as gcs
from google.oauth2 import service_account
from google.resumable_media import common
from google.resumable_media.requests import ResumableUpload

from foldly.errors import StorageError
from foldly.models import StoredObject, UploadSession
from foldly.storage import ProgressCallback, StorageProvider

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"


def decode_private_key(private_key: str) -> str:
    """Accept a PEM key with escaped newlines, a raw PEM key, or a base64-encoded PEM key."""
    if "\\n" in private_key:
        return private_key.replace("\\n", "\n")
    if "-----BEGIN" in private_key:
        return private_key
    return base64.b64decode(private_key).decode("utf-8")


class GCSStorageProvider(StorageProvider):
    """GCS backend with resumable upload sessions."""

    name = "gcs"
    # Chunks must be multiples of 256 KiB
    chunk_size = 8 * 1024 * 1024

    def __init__(self, app_config):
        super().__init__(app_config.signed_url_expiry)
        self.project_id = app_config.gcs_project_id
        self.client_email = app_config.gcs_client_email
        self.private_key = app_config.gcs_private_key
        self.upload_origin = app_config.gcs_upload_origin
        self._credentials = None
        self._client = None

    def _get_credentials(self) -> service_account.Credentials:
        if self._credentials is None:
            missing = [
                name
                for name, value in (
                    ("GCS_PROJECT_ID", self.project_id),
                    ("GCS_CLIENT_EMAIL", self.client_email),
                    ("GCS_PRIVATE_KEY", self.private_key),
                )
                if not value
            ]
            if missing:
                raise StorageError(f"{', '.join(missing)} must be set for the gcs storage provider")

            self._credentials = service_account.Credentials.from_service_account_info(
                {
                    "type": "service_account",
                    "project_id": self.project_id,
                    "client_email": self.client_email,
                    "private_key": decode_private_key(self.private_key),
                    "token_uri": TOKEN_URI,
                }
            )
        return self._credentials

    def _get_client(self) -> gcs.Client:
        if self._client is None:
            self._client = gcs.Client(project=self.project_id, credentials=self._get_credentials())
        return self._client

    def _transport(self) -> AuthorizedSession:
        return AuthorizedSession(self._get_credentials())

    def _blob(self, path: str, bucket: str) -> gcs.Blob:
        return self._get_client().bucket(bucket).blob(path)

    def public_url(self, path: str, bucket: str) -> str:
        return f"https://storage.googleapis.com/{bucket}/{path}"

    async def upload_file(
        self,
        data: bytes,
        file_name: str,
        path: str,
        bucket: str,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StoredObject:
        storage_path = f"{path.rstrip('/')}/{file_name}" if path else file_name
        blob = self._blob(storage_path, bucket)
        blob.metadata = metadata or None
        try:
            await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        except GoogleAPIError as e:
            logger.error(f"Failed to upload {bucket}/{storage_path} to GCS: {e}")
            raise StorageError("Failed to upload file to cloud storage.", details={"path": storage_path}) from e

        logger.info(f"File uploaded to GCS: {bucket}/{storage_path} ({len(data)} bytes)")
        return StoredObject(url=self.public_url(storage_path, bucket), storage_path=storage_path)

    async def _create_session(
        self,
        final_path: str,
        file_size: int,
        content_type: str,
        bucket: str,
        metadata: Dict[str, str],
    ) -> Tuple[str, Dict[str, str], Dict[str, str]]:
        blob = self._blob(final_path, bucket)
        blob.metadata = metadata or None
        try:
            session_url = await asyncio.to_thread(
                blob.create_resumable_upload_session,
                content_type=content_type,
                size=file_size,
                origin=self.upload_origin,
            )
        except GoogleAPIError as e:
            logger.error(f"Failed to initiate GCS resumable upload for {bucket}/{final_path}: {e}")
            raise StorageError("Failed to initiate file upload.", details={"path": final_path}) from e
        return session_url, {}, dict(metadata)

    async def transfer(
        self,
        session: UploadSession,
        stream: BinaryIO,
        file_size: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        upload = ResumableUpload(session.session_url, session.chunk_size)
        # Retries are owned by the upload manager
        upload._retry_strategy = common.RetryStrategy(max_retries=0)
        # ResumableUpload only initiates its own sessions; attach it to ours
        upload._resumable_url = session.session_url
        upload._stream = stream
        upload._total_bytes = file_size
        upload._content_type = session.content_type

        transport = self._transport()
        try:
            if session.upload_url:
                try:
                    await asyncio.to_thread(upload.recover, transport)
                except common.InvalidResponse as e:
                    if e.response is None or e.response.status_code not in (200, 201):
                        raise
                    # The final chunk landed before the previous attempt failed
                    session.committed_bytes = file_size
                    if on_progress:
                        on_progress(file_size)
                    return
                logger.info(
                    f"Resuming GCS upload {session.bucket}/{session.final_path} at byte {upload.bytes_uploaded}"
                )
                session.committed_bytes = upload.bytes_uploaded
                if on_progress:
                    on_progress(upload.bytes_uploaded)
            else:
                stream.seek(0)
                session.upload_url = session.session_url

            while not upload.finished:
                sent = upload.bytes_uploaded
                await asyncio.to_thread(upload.transmit_next_chunk, transport)
                if not upload.finished and upload.bytes_uploaded <= sent:
                    raise StorageError(
                        f"Resumable session made no progress at byte {sent}",
                        details={"path": session.final_path, "offset": sent},
                    )
                session.committed_bytes = upload.bytes_uploaded
                if on_progress:
                    on_progress(upload.bytes_uploaded)
        except (common.InvalidResponse, common.DataCorruption, GoogleAuthError, OSError, ValueError) as e:
            logger.error(
                f"GCS transfer for {session.bucket}/{session.final_path} failed at byte {upload.bytes_uploaded}: {e}"
            )
            raise StorageError(
                "Transfer to cloud storage failed.",
                details={"path": session.final_path, "offset": upload.bytes_uploaded},
            ) from e
        finally:
            transport.close()

    async def delete_file(self, path: str, bucket: str) -> None:
        blob = self._blob(path, bucket)
        try:
            await asyncio.to_thread(blob.delete)
        except NotFound:
            return
        except GoogleAPIError as e:
            logger.error(f"Failed to delete {bucket}/{path} from GCS: {e}")
            raise StorageError("Failed to delete file from cloud storage.") from e
        logger.info(f"File deleted from GCS: {bucket}/{path}")

    async def get_signed_url(self, path: str, bucket: str, expires_in: Optional[int] = None) -> str:
        blob = self._blob(path, bucket)
        expires_in = expires_in or self.signed_url_expiry
        try:
            return await asyncio.to_thread(
                blob.generate_signed_url,
                version="v4",
                expiration=timedelta(seconds=expires_in),
                method="GET",
            )
        except (GoogleAPIError, ValueError) as e:
            logger.error(f"Failed to generate signed URL for {bucket}/{path}: {e}")
            raise StorageError("Failed to generate file access URL.") from e

    async def file_exists(self, path: str, bucket: str) -> bool:
        blob = self._blob(path, bucket)
        try:
            return await asyncio.to_thread(blob.exists)
        except GoogleAPIError as e:
            logger.error(f"Failed to check existence of {bucket}/{path}: {e}")
            raise StorageError("Failed to reach cloud storage.") from e

    async def list_files(self, prefix: str, bucket: str) -> List[str]:
        def _list() -> List[str]:
            return [blob.name for blob in self._get_client().list_blobs(bucket, prefix=prefix)]

        try:
            return await asyncio.to_thread(_list)
        except GoogleAPIError as e:
            logger.error(f"Failed to list {bucket}/{prefix}: {e}")
            raise StorageError("Failed to list files in cloud storage.") from e
