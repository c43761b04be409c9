from __future__ import annotations

import sqlite3
import subprocess
from typing import Literal

ErrorCode = Literal[
    "ARCHIVE_NOT_FOUND",
    "ARCHIVER_MISSING",
    "ARCHIVE_FAILED",
    "ARCHIVE_MEMBER_NOT_FOUND",
    "CATALOG_MISSING",
    "CATALOG_ERROR",
    "MANIFEST_INVALID",
    "STAGING_ERROR",
    "TRANSFER_FAILED",
    "RESTORE_FS_ERROR",
    "BACKUP_NOT_FOUND",
    "UNKNOWN_ERROR",
]

ERROR_FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    "ARCHIVE_NOT_FOUND": "Backup archive file was not found at its recorded location.",
    "ARCHIVER_MISSING": (
        "Archiving utility is not available. Install 7-Zip or switch to the zip "
        "archiver."
    ),
    "ARCHIVE_FAILED": "Archiving utility reported an error.",
    "ARCHIVE_MEMBER_NOT_FOUND": "Requested item is not present inside the archive.",
    "CATALOG_MISSING": "Backup history database was not found.",
    "CATALOG_ERROR": "Backup history database operation failed.",
    "MANIFEST_INVALID": "Backup manifest is missing or has an unexpected shape.",
    "STAGING_ERROR": "Failed to prepare files for archiving.",
    "TRANSFER_FAILED": "Failed to deliver the archive to its destination.",
    "RESTORE_FS_ERROR": "Restore failed due to filesystem access error.",
    "BACKUP_NOT_FOUND": "Backup was not found in history.",
    "UNKNOWN_ERROR": "Unexpected error occurred.",
}


class ArchivistError(RuntimeError):
    """Base for run-aborting failures that carry an error code."""

    code: ErrorCode = "UNKNOWN_ERROR"

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ArchiveNotFoundError(ArchivistError):
    code: ErrorCode = "ARCHIVE_NOT_FOUND"


class ArchiverMissingError(ArchivistError):
    code: ErrorCode = "ARCHIVER_MISSING"


class CatalogMissingError(ArchivistError):
    code: ErrorCode = "CATALOG_MISSING"


class ManifestInvalidError(ArchivistError):
    """Raised when a file is not a readable manifest of this tool.

    ``reason`` is ``"unreadable"`` (I/O or JSON syntax), ``"foreign"`` (valid
    JSON without the ``info``/``entries`` sections) or ``"invalid"`` (right
    shape, wrong field types).
    """

    code: ErrorCode = "MANIFEST_INVALID"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class StagingError(ArchivistError):
    code: ErrorCode = "STAGING_ERROR"


class TransferError(ArchivistError):
    code: ErrorCode = "TRANSFER_FAILED"


def classify_error(error: Exception) -> ErrorCode:
    if isinstance(error, ArchivistError):
        return error.code
    if isinstance(error, sqlite3.Error):
        return "CATALOG_ERROR"
    if isinstance(error, subprocess.SubprocessError):
        return "ARCHIVE_FAILED"
    if isinstance(error, FileNotFoundError):
        return "ARCHIVE_NOT_FOUND"
    if isinstance(error, OSError):
        return "RESTORE_FS_ERROR"
    return "UNKNOWN_ERROR"


def friendly_message(code: ErrorCode) -> str:
    return ERROR_FRIENDLY_MESSAGES.get(code, ERROR_FRIENDLY_MESSAGES["UNKNOWN_ERROR"])


def build_error_details(error: Exception) -> str:
    details: list[str] = [f"{error.__class__.__name__}: {error}"]

    returncode = getattr(error, "returncode", None)
    if returncode is not None:
        details.append(f"exit_code={returncode}")

    for field_name in ("stderr", "output", "filename"):
        value = getattr(error, field_name, None)
        if value is None or value == "":
            continue
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        details.append(f"{field_name}={value}")
    return "\n".join(details)
