"""
Database operations for the Foldly upload service.
Uses aiosqlite for async database operations.
"""

import asyncio
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import aiosqlite

from foldly.config import config

logger = logging.getLogger(__name__)

# Database schema definitions
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        storage_used INTEGER NOT NULL DEFAULT 0,
        storage_limit INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspaces (
        workspace_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users (user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS folders (
        folder_id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (workspace_id) REFERENCES workspaces (workspace_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS links (
        link_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        workspace_id TEXT,
        title TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        expires_at TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users (user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        file_id TEXT PRIMARY KEY,
        batch_id TEXT,
        user_id TEXT NOT NULL,
        workspace_id TEXT,
        folder_id TEXT,
        link_id TEXT,
        file_name TEXT NOT NULL,
        original_name TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        mime_type TEXT NOT NULL,
        category TEXT NOT NULL,
        storage_path TEXT NOT NULL,
        bucket TEXT NOT NULL,
        storage_provider TEXT NOT NULL,
        uploader_name TEXT,
        uploader_email TEXT,
        uploader_message TEXT,
        uploaded_at TEXT NOT NULL,
        cancelled_at TEXT,
        UNIQUE (bucket, storage_path)
    )
    """,
]

FILE_COLUMNS = (
    "file_id", "batch_id", "user_id", "workspace_id", "folder_id", "link_id",
    "file_name", "original_name", "file_size", "mime_type", "category",
    "storage_path", "bucket", "storage_provider",
    "uploader_name", "uploader_email", "uploader_message", "uploaded_at",
    "cancelled_at",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Database manager for async SQLite operations."""

    def __init__(self, db_path: str = None):
        """Initialize database connection."""
        self.db_path = db_path or config.db_path
        self.connection = None
        # Serializes multi-statement transactions on the shared connection
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Establish connection to the database."""
        logger.info(f"Connecting to database at {self.db_path}")
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
            self.connection = await aiosqlite.connect(self.db_path)
            self.connection.row_factory = aiosqlite.Row
            await self.connection.execute("PRAGMA foreign_keys = ON")
            await self._initialize_schema()
            logger.info("Database connection established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self) -> None:
        """Close the database connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info("Database connection closed")

    async def _initialize_schema(self) -> None:
        """Initialize database schema if it doesn't exist."""
        async with self.connection.cursor() as cursor:
            for statement in SCHEMA:
                await cursor.execute(statement)
            await self.connection.commit()

    async def _fetchone(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        async with self.connection.cursor() as cursor:
            await cursor.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    # =========================================================================
    # Users, workspaces, folders, links
    # =========================================================================

    async def create_user(self, user_id: str, storage_limit: int = None, storage_used: int = 0) -> str:
        now = _now()
        limit = storage_limit if storage_limit is not None else config.default_storage_limit
        async with self._write_lock:
            try:
                await self.connection.execute(
                    """
                    INSERT INTO users (user_id, storage_used, storage_limit, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, storage_used, limit, now, now),
                )
                await self.connection.commit()
            except sqlite3.IntegrityError:
                logger.error(f"User {user_id} already exists")
                await self.connection.rollback()
                raise ValueError(f"User {user_id} already exists")
        return user_id

    async def create_workspace(self, user_id: str, name: str = "My Workspace", workspace_id: str = None) -> str:
        workspace_id = workspace_id or str(uuid.uuid4())
        async with self._write_lock:
            await self.connection.execute(
                "INSERT INTO workspaces (workspace_id, user_id, name, created_at) VALUES (?, ?, ?, ?)",
                (workspace_id, user_id, name, _now()),
            )
            await self.connection.commit()
        return workspace_id

    async def get_workspace(self, workspace_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM workspaces WHERE workspace_id = ?", (workspace_id,))

    async def create_folder(self, workspace_id: str, name: str, folder_id: str = None) -> str:
        folder_id = folder_id or str(uuid.uuid4())
        async with self._write_lock:
            await self.connection.execute(
                "INSERT INTO folders (folder_id, workspace_id, name, created_at) VALUES (?, ?, ?, ?)",
                (folder_id, workspace_id, name, _now()),
            )
            await self.connection.commit()
        return folder_id

    async def get_folder(self, folder_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM folders WHERE folder_id = ?", (folder_id,))

    async def create_link(
        self,
        user_id: str,
        title: str,
        workspace_id: str = None,
        link_id: str = None,
        is_active: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> str:
        link_id = link_id or str(uuid.uuid4())
        async with self._write_lock:
            await self.connection.execute(
                """
                INSERT INTO links (link_id, user_id, workspace_id, title, is_active, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    link_id,
                    user_id,
                    workspace_id,
                    title,
                    1 if is_active else 0,
                    expires_at.isoformat() if expires_at else None,
                    _now(),
                ),
            )
            await self.connection.commit()
        return link_id

    async def get_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        link = await self._fetchone("SELECT * FROM links WHERE link_id = ?", (link_id,))
        if link:
            link["is_active"] = bool(link["is_active"])
            if link["expires_at"]:
                link["expires_at"] = datetime.fromisoformat(link["expires_at"])
        return link

    # =========================================================================
    # Quota
    # =========================================================================

    async def get_user_quota(self, user_id: str) -> Optional[Dict[str, int]]:
        """
        Get a user's storage usage.

        Args:
            user_id: The user ID

        Returns:
            A dict with 'used' and 'limit' in bytes, or None if the user does not exist
        """
        try:
            row = await self._fetchone(
                "SELECT storage_used, storage_limit FROM users WHERE user_id = ?", (user_id,)
            )
        except Exception as e:
            logger.error(f"Failed to get quota for user {user_id}: {e}")
            raise
        if not row:
            return None
        return {"used": row["storage_used"], "limit": row["storage_limit"]}

    async def increment_user_storage(self, user_id: str, delta: int) -> None:
        """Add delta bytes (negative to release) to a user's storage usage."""
        async with self._write_lock:
            try:
                await self._increment(user_id, delta)
                await self.connection.commit()
            except Exception as e:
                logger.error(f"Failed to update storage usage for user {user_id}: {e}")
                await self.connection.rollback()
                raise

    async def _increment(self, user_id: str, delta: int) -> None:
        async with self.connection.cursor() as cursor:
            await cursor.execute(
                """
                UPDATE users
                SET storage_used = MAX(COALESCE(storage_used, 0) + ?, 0), updated_at = ?
                WHERE user_id = ?
                """,
                (delta, _now(), user_id),
            )
            if cursor.rowcount == 0:
                raise LookupError(f"User {user_id} not found")

    # =========================================================================
    # File metadata
    # =========================================================================

    async def _insert_file(self, row: Dict[str, Any]) -> str:
        values = dict(row)
        values.setdefault("file_id", str(uuid.uuid4()))
        values.setdefault("uploaded_at", _now())
        placeholders = ", ".join("?" for _ in FILE_COLUMNS)
        async with self.connection.cursor() as cursor:
            await cursor.execute(
                f"INSERT INTO files ({', '.join(FILE_COLUMNS)}) VALUES ({placeholders})",
                tuple(values.get(column) for column in FILE_COLUMNS),
            )
        return values["file_id"]

    async def insert_file_metadata(self, row: Dict[str, Any]) -> str:
        """
        Insert a file metadata row without touching storage usage.

        Args:
            row: Column values; file_id and uploaded_at are generated when missing

        Returns:
            The file_id of the inserted row
        """
        async with self._write_lock:
            try:
                file_id = await self._insert_file(row)
                await self.connection.commit()
            except Exception as e:
                logger.error(f"Failed to insert file metadata for {row.get('storage_path')}: {e}")
                await self.connection.rollback()
                raise
        return file_id

    async def record_upload(self, row: Dict[str, Any], charge_user_id: str) -> str:
        """
        Insert a file row and charge its size to a user in one transaction.

        Either both writes land or neither does, so a file is charged exactly
        once and a failed commit never charges quota.

        Args:
            row: Column values for the files table
            charge_user_id: The user whose storage usage grows by file_size

        Returns:
            The file_id of the inserted row
        """
        async with self._write_lock:
            try:
                file_id = await self._insert_file(row)
                await self._increment(charge_user_id, row["file_size"])
                await self.connection.commit()
            except Exception as e:
                logger.error(f"Failed to record upload {row.get('storage_path')}: {e}")
                await self.connection.rollback()
                raise
        logger.info(f"Recorded file {file_id} ({row['file_size']} bytes) for user {charge_user_id}")
        return file_id

    async def mark_file_cancelled(self, file_id: str) -> None:
        """Flag a row that was committed after its upload had been cancelled."""
        async with self._write_lock:
            try:
                await self.connection.execute(
                    "UPDATE files SET cancelled_at = ? WHERE file_id = ?",
                    (_now(), file_id),
                )
                await self.connection.commit()
            except Exception as e:
                logger.error(f"Failed to flag file {file_id} as cancelled: {e}")
                await self.connection.rollback()
                raise

    async def get_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM files WHERE file_id = ?", (file_id,))

    async def get_files_for_batch(self, batch_id: str) -> List[Dict[str, Any]]:
        async with self.connection.cursor() as cursor:
            await cursor.execute("SELECT * FROM files WHERE batch_id = ? ORDER BY uploaded_at", (batch_id,))
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def get_storage_paths(self, bucket: str, prefix: str = "") -> Set[str]:
        """Storage paths of committed files in a bucket under a prefix."""
        async with self.connection.cursor() as cursor:
            await cursor.execute(
                "SELECT storage_path FROM files WHERE bucket = ? AND storage_path LIKE ? ESCAPE '\\'",
                (bucket, _like_prefix(prefix)),
            )
            rows = await cursor.fetchall()
            return {row[0] for row in rows}

    async def get_cancelled_paths(self, bucket: str, prefix: str = "") -> Set[str]:
        """Storage paths of rows flagged as committed after their upload was cancelled."""
        async with self.connection.cursor() as cursor:
            await cursor.execute(
                "SELECT storage_path FROM files "
                "WHERE bucket = ? AND storage_path LIKE ? ESCAPE '\\' AND cancelled_at IS NOT NULL",
                (bucket, _like_prefix(prefix)),
            )
            rows = await cursor.fetchall()
            return {row[0] for row in rows}


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"
