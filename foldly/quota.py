"""
Storage quota checks.

The checker fails closed: when the lookup cannot be completed the upload is
denied rather than allowed through.
"""

import logging

from foldly.config import config
from foldly.models import QuotaCheckResult, StorageInfo
from foldly.validation import format_file_size

logger = logging.getLogger(__name__)


def _denied(reason: str) -> QuotaCheckResult:
    return QuotaCheckResult(
        can_upload=False,
        reason=reason,
        current_usage=0,
        limit=0,
        remaining=0,
        percentage_used=100,
        near_limit=True,
    )


class QuotaChecker:
    """Advisory per-user storage check. Nothing is reserved; the metadata commit is what charges usage."""

    def __init__(self, database, near_limit_threshold: float = None):
        self.db = database
        self.near_limit_threshold = near_limit_threshold or config.near_limit_threshold

    async def check_user_quota(self, user_id: str, file_size: int) -> QuotaCheckResult:
        """
        Check whether a file of file_size bytes fits in the user's allotment.

        Args:
            user_id: The user whose storage is charged
            file_size: Size of the candidate file in bytes

        Returns:
            A QuotaCheckResult; can_upload is False whenever the lookup fails
        """
        try:
            quota = await self.db.get_user_quota(user_id)
        except Exception as e:
            logger.error(f"Failed to check quota for user {user_id}, denying upload: {e}")
            return _denied("Unable to verify storage quota. Please try again later.")

        if quota is None:
            logger.warning(f"Quota lookup for unknown user {user_id}, denying upload")
            return _denied("Unable to verify storage quota. Please try again later.")

        used = quota["used"]
        limit = quota["limit"]
        if limit <= 0 or file_size < 0:
            return _denied("Invalid upload request.")

        percentage = used * 100 / limit
        allowed = used + file_size <= limit
        reason = None
        if not allowed:
            reason = f"Storage limit reached. You've used {format_file_size(used)} of {format_file_size(limit)}."
            logger.info(f"Quota denied for user {user_id}: {used} + {file_size} > {limit}")

        return QuotaCheckResult(
            can_upload=allowed,
            reason=reason,
            current_usage=used,
            limit=limit,
            remaining=max(limit - used, 0),
            percentage_used=percentage,
            near_limit=percentage > self.near_limit_threshold,
        )

    async def get_storage_info(self, user_id: str) -> StorageInfo:
        """Usage summary returned with a completed upload. Missing data reads as full."""
        result = await self.check_user_quota(user_id, 0)
        return StorageInfo(
            usage_percentage=result.percentage_used,
            remaining_bytes=result.remaining,
            should_show_warning=result.near_limit,
        )
