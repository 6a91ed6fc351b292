"""Pytest configuration and fixtures for the Foldly upload service tests."""

import asyncio
from typing import BinaryIO, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from foldly.config import AppConfig
from foldly.db import Database
from foldly.errors import StorageError
from foldly.handlers import create_handlers
from foldly.manager import UploadManager
from foldly.models import IncomingFile, LinkUploadContext, StoredObject, UploadSession, WorkspaceUploadContext
from foldly.quota import QuotaChecker
from foldly.storage import StorageProvider

MB = 1024 * 1024


class FakeStorageProvider(StorageProvider):
    """In-memory provider with hooks for blocking and failing transfers."""

    name = "fake"
    chunk_size = 1 * MB

    def __init__(self):
        super().__init__()
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.initiated: List[str] = []
        self.transfers: List[str] = []
        # Committed offsets that resumed transfers started from
        self.resumed_from: List[int] = []
        # Number of upcoming transfers that raise StorageError
        self.fail_transfers = 0
        # When set, transfers finish without storing anything
        self.drop_objects = False
        # When not None, transfers block until the event is set
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    def public_url(self, path: str, bucket: str) -> str:
        return f"https://storage.test/{bucket}/{path}"

    async def upload_file(self, data, file_name, path, bucket, content_type, metadata=None) -> StoredObject:
        storage_path = f"{path.rstrip('/')}/{file_name}" if path else file_name
        self.objects[(bucket, storage_path)] = data
        return StoredObject(url=self.public_url(storage_path, bucket), storage_path=storage_path)

    async def _create_session(self, final_path, file_size, content_type, bucket, metadata):
        self.initiated.append(final_path)
        return f"https://storage.test/sessions/{len(self.initiated)}", {}, metadata

    async def transfer(self, session: UploadSession, stream: BinaryIO, file_size: int, on_progress=None) -> None:
        self.transfers.append(session.final_path)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)

            if session.upload_url:
                self.resumed_from.append(session.committed_bytes)

            if self.fail_transfers > 0:
                self.fail_transfers -= 1
                # Half of the file reached the backend before the outage
                session.upload_url = session.session_url
                session.committed_bytes = file_size // 2
                raise StorageError("Simulated storage outage")

            data = b""
            while True:
                chunk = stream.read(self.chunk_size)
                if not chunk:
                    break
                data += chunk
                if on_progress:
                    on_progress(len(data))

            if not self.drop_objects:
                self.objects[(session.bucket, session.final_path)] = data
        finally:
            self.active -= 1

    async def delete_file(self, path: str, bucket: str) -> None:
        self.objects.pop((bucket, path), None)

    async def get_signed_url(self, path: str, bucket: str, expires_in: Optional[int] = None) -> str:
        expires_in = expires_in or self.signed_url_expiry
        return f"https://storage.test/signed/{bucket}/{path}?expires={expires_in}"

    async def file_exists(self, path: str, bucket: str) -> bool:
        return (bucket, path) in self.objects

    async def list_files(self, prefix: str, bucket: str) -> List[str]:
        return [path for (b, path) in self.objects if b == bucket and path.startswith(prefix)]


def make_file(name: str = "photo.png", size: int = 1024, content_type: str = "image/png") -> IncomingFile:
    return IncomingFile(name=name, size=size, content_type=content_type, data=b"x" * size)


async def wait_until(predicate, attempts: int = 500):
    """Poll until predicate() holds; database calls complete on aiosqlite's thread."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("Condition was not reached")


@pytest.fixture
def app_config():
    return AppConfig(workspace_bucket="workspaces-test", link_bucket="links-test")


@pytest.fixture
def provider():
    return FakeStorageProvider()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "foldly-test.db"))
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def quota_checker(db):
    return QuotaChecker(db, near_limit_threshold=80)


@pytest.fixture
def handlers(provider, db, quota_checker, app_config):
    return create_handlers(provider, db, quota_checker, app_config)


@pytest_asyncio.fixture
async def manager(handlers, quota_checker):
    upload_manager = UploadManager(handlers, quota_checker, max_retries=3, retry_delays=[0], parallel_uploads=3)
    await upload_manager.start()
    yield upload_manager
    await upload_manager.stop()


@pytest_asyncio.fixture
async def workspace_context(db):
    await db.create_user("user-1", storage_limit=500 * MB)
    await db.create_workspace("user-1", "Main", workspace_id="ws-1")
    return WorkspaceUploadContext(workspace_id="ws-1", user_id="user-1")


@pytest_asyncio.fixture
async def link_context(db):
    await db.create_user("owner-1", storage_limit=500 * MB)
    await db.create_workspace("owner-1", "Owner", workspace_id="ws-owner")
    await db.create_link("owner-1", "Client files", workspace_id="ws-owner", link_id="link-1")
    return LinkUploadContext(link_id="link-1", uploader_name="Jane Doe", uploader_email="jane@example.com")
