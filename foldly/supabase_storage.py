"""
Supabase Storage provider.

Object operations go through Supabase's S3-compatible endpoint with aioboto3.
Resumable transfers use the TUS endpoint through the tuspy client; Supabase
requires TUS chunks of exactly 6 MiB. A transfer that already created its TUS
upload continues from the offset the server reports for it.
"""

import asyncio
import logging
from typing import BinaryIO, Dict, List, Optional, Tuple

import aioboto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from tusclient import client as tus_client
from tusclient.exceptions import TusCommunicationError

from foldly.errors import StorageError
from foldly.models import StoredObject, UploadSession
from foldly.storage import ProgressCallback, StorageProvider

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class SupabaseStorageProvider(StorageProvider):
    """Supabase Storage backend with TUS resumable sessions."""

    name = "supabase"
    chunk_size = 6 * 1024 * 1024

    def __init__(self, app_config):
        super().__init__(app_config.signed_url_expiry)
        self.base_url = (app_config.supabase_url or "").rstrip("/")
        self.service_key = app_config.supabase_service_role_key
        self.session = aioboto3.Session(
            aws_access_key_id=app_config.supabase_s3_access_key_id or None,
            aws_secret_access_key=app_config.supabase_s3_secret_access_key or None,
            region_name=app_config.supabase_s3_region,
        )

    def _require_configured(self) -> None:
        if not self.base_url or not self.service_key:
            raise StorageError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for the supabase storage provider"
            )

    def _s3(self):
        self._require_configured()
        return self.session.client(
            "s3",
            endpoint_url=f"{self.base_url}/storage/v1/s3",
            config=Config(s3={"addressing_style": "path"}),
        )

    def public_url(self, path: str, bucket: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"

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
        try:
            async with self._s3() as s3:
                await s3.put_object(
                    Bucket=bucket,
                    Key=storage_path,
                    Body=data,
                    ContentType=content_type,
                    Metadata=metadata or {},
                    CacheControl="max-age=3600",
                )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {bucket}/{storage_path} to Supabase Storage: {e}")
            raise StorageError("Failed to upload file to cloud storage.", details={"path": storage_path}) from e

        logger.info(f"File uploaded to Supabase Storage: {bucket}/{storage_path} ({len(data)} bytes)")
        return StoredObject(url=self.public_url(storage_path, bucket), storage_path=storage_path)

    async def _create_session(
        self,
        final_path: str,
        file_size: int,
        content_type: str,
        bucket: str,
        metadata: Dict[str, str],
    ) -> Tuple[str, Dict[str, str], Dict[str, str]]:
        # The TUS creation request is made by the transferring client; issuing
        # the session only fixes the endpoint, credentials and object metadata.
        self._require_configured()
        headers = {
            "authorization": f"Bearer {self.service_key}",
            "x-upsert": "false",
        }
        upload_metadata = {
            "bucketName": bucket,
            "objectName": final_path,
            "contentType": content_type,
            "cacheControl": "3600",
        }
        upload_metadata.update(metadata)
        return f"{self.base_url}/storage/v1/upload/resumable", headers, upload_metadata

    async def transfer(
        self,
        session: UploadSession,
        stream: BinaryIO,
        file_size: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        client = tus_client.TusClient(session.session_url, headers=dict(session.upload_headers))
        uploader = None
        try:
            if session.upload_url:
                # Given a url, the uploader asks the server for its offset while being built
                uploader = await asyncio.to_thread(
                    client.async_uploader,
                    file_stream=stream,
                    url=session.upload_url,
                    chunk_size=session.chunk_size,
                    metadata=dict(session.upload_metadata),
                )
                logger.info(
                    f"Resuming TUS upload {session.bucket}/{session.final_path} at offset {uploader.offset}"
                )
                session.committed_bytes = uploader.offset
                if on_progress:
                    on_progress(uploader.offset)
            else:
                uploader = client.async_uploader(
                    file_stream=stream,
                    chunk_size=session.chunk_size,
                    metadata=dict(session.upload_metadata),
                )

            while uploader.offset < file_size:
                await uploader.upload(stop_at=min(uploader.offset + session.chunk_size, file_size))
                session.upload_url = uploader.url
                session.committed_bytes = uploader.offset
                if on_progress:
                    on_progress(uploader.offset)
        except (TusCommunicationError, OSError, asyncio.TimeoutError) as e:
            offset = uploader.offset if uploader is not None else session.committed_bytes
            if uploader is not None and uploader.url:
                session.upload_url = uploader.url
            logger.error(f"TUS transfer for {session.bucket}/{session.final_path} failed at offset {offset}: {e}")
            raise StorageError(
                "Transfer to cloud storage failed.",
                details={"path": session.final_path, "offset": offset},
            ) from e

    async def delete_file(self, path: str, bucket: str) -> None:
        try:
            async with self._s3() as s3:
                await s3.delete_object(Bucket=bucket, Key=path)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return
            logger.error(f"Failed to delete {bucket}/{path} from Supabase Storage: {e}")
            raise StorageError("Failed to delete file from cloud storage.") from e
        except BotoCoreError as e:
            logger.error(f"Failed to delete {bucket}/{path} from Supabase Storage: {e}")
            raise StorageError("Failed to delete file from cloud storage.") from e
        logger.info(f"File deleted from Supabase Storage: {bucket}/{path}")

    async def get_signed_url(self, path: str, bucket: str, expires_in: Optional[int] = None) -> str:
        self._require_configured()
        expires_in = expires_in or self.signed_url_expiry
        headers = {"authorization": f"Bearer {self.service_key}", "apikey": self.service_key}
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.post(
                    f"{self.base_url}/storage/v1/object/sign/{bucket}/{path}",
                    json={"expiresIn": expires_in},
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Failed to generate signed URL for {bucket}/{path}: {e}")
            raise StorageError("Failed to generate file access URL.") from e

        signed = data.get("signedURL") or data.get("signedUrl")
        if not signed:
            raise StorageError("Failed to generate file access URL.")
        return f"{self.base_url}/storage/v1{signed}"

    async def file_exists(self, path: str, bucket: str) -> bool:
        try:
            async with self._s3() as s3:
                await s3.head_object(Bucket=bucket, Key=path)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return False
            logger.error(f"Failed to check existence of {bucket}/{path}: {e}")
            raise StorageError("Failed to reach cloud storage.") from e
        except BotoCoreError as e:
            logger.error(f"Failed to check existence of {bucket}/{path}: {e}")
            raise StorageError("Failed to reach cloud storage.") from e

    async def list_files(self, prefix: str, bucket: str) -> List[str]:
        paths = []
        try:
            async with self._s3() as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                    paths.extend(item["Key"] for item in page.get("Contents", []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list {bucket}/{prefix}: {e}")
            raise StorageError("Failed to list files in cloud storage.") from e
        return paths
