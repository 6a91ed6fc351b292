"""
Orphaned object reconciliation.

An object whose metadata commit failed stays in storage with no row
pointing at it. The reconciler compares what a bucket holds with what the
files table references and reports the difference. Periodic scans only log;
objects are deleted only through resolve_orphan. Rows committed after their
upload was cancelled are reported as well so they can be reviewed.
"""

import asyncio
import logging
from typing import List, Set, Tuple

from foldly.config import config
from foldly.models import OrphanReport

logger = logging.getLogger(__name__)


class OrphanReconciler:
    """Diff storage listings against committed metadata."""

    def __init__(self, provider, database, buckets: List[str], scan_interval: int = None):
        """
        Initialize the reconciler.

        Args:
            provider: StorageProvider whose buckets are scanned
            database: Database holding the files table
            buckets: Buckets covered by the periodic scan
            scan_interval: Seconds between periodic scans; 0 disables them (defaults to AppConfig value)
        """
        self.provider = provider
        self.db = database
        self.buckets = buckets
        self.scan_interval = scan_interval if scan_interval is not None else config.reconcile_interval
        self._running = False
        self._task = None

    async def start(self):
        """Start the periodic scan if an interval is configured."""
        if self._running:
            logger.warning("Orphan reconciler already running")
            return
        if self.scan_interval <= 0:
            logger.info("Periodic orphan scan disabled")
            return

        self._running = True
        self._task = asyncio.create_task(self._reconcile_loop())
        logger.info(f"Orphan reconciler started (every {self.scan_interval}s)")

    async def stop(self):
        """Stop the periodic scan."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Orphan reconciler stopped")

    async def _reconcile_loop(self):
        while self._running:
            for bucket in self.buckets:
                try:
                    report = await self.find_orphans(bucket)
                except Exception as e:
                    logger.error(f"Error scanning bucket {bucket} for orphans: {e}")
                    continue

                for path in report.orphaned:
                    logger.warning(f"Orphaned object without metadata: {bucket}/{path}")
                for path in report.missing:
                    logger.warning(f"File record without stored object: {bucket}/{path}")
                for path in report.cancelled:
                    logger.warning(f"File record committed after its upload was cancelled: {bucket}/{path}")

            await asyncio.sleep(self.scan_interval)

    @staticmethod
    def _diff(stored: Set[str], recorded: Set[str]) -> Tuple[Set[str], Set[str]]:
        """
        Returns:
            A tuple of (orphaned, missing): objects with no row, and rows with no object
        """
        return stored - recorded, recorded - stored

    async def find_orphans(self, bucket: str, prefix: str = "") -> OrphanReport:
        """
        Compare a bucket prefix with the files table.

        Objects belonging to a live upload session are not reported; their
        commit may still be in progress.
        """
        stored = set(await self.provider.list_files(prefix, bucket))
        recorded = await self.db.get_storage_paths(bucket, prefix)
        orphaned, missing = self._diff(stored, recorded)
        orphaned = {path for path in orphaned if not self.provider.has_active_session(path, bucket)}
        cancelled = await self.db.get_cancelled_paths(bucket, prefix)

        if orphaned or missing or cancelled:
            logger.info(
                f"Reconciled {bucket}/{prefix}: {len(orphaned)} orphaned object(s), {len(missing)} missing object(s), "
                f"{len(cancelled)} row(s) committed after cancel"
            )
        return OrphanReport(
            bucket=bucket,
            prefix=prefix,
            orphaned=sorted(orphaned),
            missing=sorted(missing),
            cancelled=sorted(cancelled),
        )

    async def resolve_orphan(self, path: str, bucket: str) -> bool:
        """
        Delete an orphaned object.

        Returns:
            False if the object is referenced by a file row or has a live session, True once deleted
        """
        if path in await self.db.get_storage_paths(bucket, path):
            logger.warning(f"Refusing to delete {bucket}/{path}: it has a file record")
            return False
        if self.provider.has_active_session(path, bucket):
            logger.warning(f"Refusing to delete {bucket}/{path}: an upload session is active")
            return False

        await self.provider.delete_file(path, bucket)
        logger.info(f"Deleted orphaned object {bucket}/{path}")
        return True
