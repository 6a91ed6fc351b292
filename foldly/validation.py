"""
File validation run before any network transfer.

All checks run on every call so a single result can report every problem
with a file at once.
"""

import logging
import mimetypes
import os
import re
import secrets
import time
from typing import List, Optional

from foldly.config import config
from foldly.models import (
    IncomingFile,
    UploadContext,
    ValidationIssue,
    ValidationResult,
    ValidationWarning,
    WorkspaceUploadContext,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024 * 1024  # 5 GiB
MAX_FILENAME_LENGTH = 255

BLOCKED_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".msi", ".scr", ".vbs", ".js", ".jar",
    ".app", ".deb", ".dmg", ".pkg", ".run", ".sh", ".bash", ".pif",
})

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

CATEGORY_EXTENSIONS = {
    "images": {".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp", ".tiff", ".heic"},
    "videos": {".mp4", ".webm", ".mov", ".avi", ".mkv", ".ogv"},
    "audio": {".mp3", ".wav", ".ogg", ".flac", ".m4a", ".aac"},
    "documents": {".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt", ".csv", ".md", ".rtf", ".odt"},
    "archives": {".zip", ".rar", ".7z", ".tar", ".gz", ".bz2"},
    "code": {".py", ".ts", ".tsx", ".jsx", ".html", ".css", ".json", ".xml", ".yaml", ".yml", ".sql", ".go", ".rs"},
}

DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "text/csv",
}

ARCHIVE_MIME_TYPES = {
    "application/zip",
    "application/x-7z-compressed",
    "application/x-rar-compressed",
    "application/x-tar",
    "application/gzip",
}


def get_file_extension(filename: str) -> str:
    """Return the extension including the dot, or an empty string."""
    _, ext = os.path.splitext(filename)
    return ext


def format_file_size(size: float) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_index = 0
    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1
    return f"{size:.2f} {units[unit_index]}"


def get_file_category(content_type: Optional[str], filename: str) -> str:
    """Derive a display category from the MIME type, falling back to the extension."""
    content_type = (content_type or "").lower()
    if content_type.startswith("image/"):
        return "images"
    if content_type.startswith("video/"):
        return "videos"
    if content_type.startswith("audio/"):
        return "audio"
    if content_type in DOCUMENT_MIME_TYPES:
        return "documents"
    if content_type in ARCHIVE_MIME_TYPES:
        return "archives"

    ext = get_file_extension(filename).lower()
    for category, extensions in CATEGORY_EXTENSIONS.items():
        if ext in extensions:
            return category
    return "other"


def guess_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or "application/octet-stream"


def sanitize_filename(filename: str) -> str:
    """Strip path components and replace characters unsafe for object keys."""
    basename = re.split(r"[/\\]", filename)[-1] or filename
    cleaned = _UNSAFE_CHARS.sub("_", basename)
    cleaned = re.sub(r"_{2,}", "_", cleaned)
    return cleaned[:MAX_FILENAME_LENGTH]


def generate_unique_filename(original_name: str) -> str:
    """Build a collision-resistant storage name that keeps the original extension."""
    ext = get_file_extension(original_name)
    base = original_name[: -len(ext)] if ext else original_name
    timestamp = int(time.time() * 1000)
    suffix = secrets.token_hex(5)
    safe_ext = sanitize_filename(ext) if ext else ""
    safe_base = sanitize_filename(base)[: MAX_FILENAME_LENGTH - len(safe_ext) - 30] or "file"
    return f"{safe_base}_{timestamp}_{suffix}{safe_ext}"


def contains_suspicious_pattern(filename: str) -> List[str]:
    """Return the reasons a filename looks unsafe; empty when it is clean."""
    reasons = []
    if "../" in filename or "..\\" in filename:
        reasons.append("path_traversal")
    if _CONTROL_CHARS.search(filename):
        reasons.append("control_characters")
    if len(filename) > MAX_FILENAME_LENGTH:
        reasons.append("too_long")
    return reasons


async def validate_file(
    file: IncomingFile,
    context: UploadContext,
    max_file_size: Optional[int] = None,
    allowed_types: Optional[List[str]] = None,
    quota_checker=None,
) -> ValidationResult:
    """
    Validate a file before upload.

    Args:
        file: The file to validate
        context: Destination of the upload; quota is checked for workspace uploads only
        max_file_size: Tighter size ceiling supplied by the caller
        allowed_types: MIME allow-list; when empty every type not blocked by extension is accepted
        quota_checker: QuotaChecker used for workspace uploads

    Returns:
        A ValidationResult; valid is True when no errors were found
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationWarning] = []

    ceiling = min(config.max_file_size or DEFAULT_MAX_FILE_SIZE, DEFAULT_MAX_FILE_SIZE)
    # A caller may only tighten the ceiling
    max_size = min(max_file_size, ceiling) if max_file_size else ceiling
    if file.size > max_size:
        errors.append(
            ValidationIssue(
                code="FILE_TOO_LARGE",
                message=f"File size ({format_file_size(file.size)}) exceeds maximum allowed ({format_file_size(max_size)})",
                field="size",
                details={"file_size": file.size, "max_size": max_size},
            )
        )
    elif file.size <= 0:
        errors.append(
            ValidationIssue(code="EMPTY_FILE", message="File is empty", field="size", details={"file_size": file.size})
        )

    extension = get_file_extension(file.name)
    if extension.lower() in BLOCKED_EXTENSIONS:
        errors.append(
            ValidationIssue(
                code="BLOCKED_FILE_TYPE",
                message=f"File type {extension} is not allowed for security reasons",
                field="type",
                details={"extension": extension},
            )
        )

    if allowed_types and file.content_type not in allowed_types:
        errors.append(
            ValidationIssue(
                code="INVALID_FILE_TYPE",
                message=f"File type {file.content_type} is not in the allowed list",
                field="type",
                details={"type": file.content_type, "allowed": list(allowed_types)},
            )
        )

    if isinstance(context, WorkspaceUploadContext) and quota_checker is not None:
        quota = await quota_checker.check_user_quota(context.user_id, file.size)
        if not quota.can_upload:
            errors.append(
                ValidationIssue(
                    code="QUOTA_EXCEEDED",
                    message=quota.reason or "Storage quota exceeded",
                    field="quota",
                    details={"current_usage": quota.current_usage, "limit": quota.limit, "file_size": file.size},
                )
            )
        elif quota.near_limit:
            warnings.append(
                ValidationWarning(
                    code="QUOTA_WARNING",
                    message=f"You're approaching your storage limit ({round(quota.percentage_used)}% used)",
                    suggestion="Consider upgrading your plan or removing old files",
                )
            )

    reasons = contains_suspicious_pattern(file.name)
    if reasons:
        warnings.append(
            ValidationWarning(
                code="SUSPICIOUS_FILENAME",
                message=f"File name contains unusual characters ({', '.join(reasons)})",
                suggestion="Consider renaming the file with standard characters",
            )
        )

    if errors:
        logger.debug(f"Validation failed for {file.name!r}: {[e.code for e in errors]}")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
