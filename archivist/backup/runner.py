from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from archivist.archive.adapter import ArchiveAdapter, ArchiveResult
from archivist.backup.differential import resolve_chain
from archivist.backup.staging import StagingReport, stage_categories
from archivist.backup.transfer import deliver_archive
from archivist.config.profile import BackupProfile
from archivist.manifest.builder import ManifestBuilder
from archivist.manifest.models import MANIFEST_FILE_NAME
from archivist.notify.notifier import PRIORITY_HIGH, PRIORITY_NORMAL, Notifier
from archivist.storage.catalog import CatalogRepo
from archivist.storage.models import BackupRecord
from archivist.utils.error_taxonomy import (
    ArchiverMissingError,
    ArchivistError,
    StagingError,
    build_error_details,
    classify_error,
)
from archivist.utils.logging import clear_log_context, set_log_context

logger = logging.getLogger(__name__)

BackupRunStatus = Literal["completed", "failed"]


@dataclass(frozen=True, slots=True)
class BackupOptions:
    temp_dir: Path
    compression_level: int = 5
    differential_per_file: bool = False
    ssh_binary: str = "scp"
    transfer_max_retries: int = 2


@dataclass(frozen=True, slots=True)
class BackupRunResult:
    status: BackupRunStatus
    name: str
    backup_id: int | None = None
    archive_path: str | None = None
    strategy: str = "Full"
    parent_backup_id: int | None = None
    file_count: int = 0
    size_bytes: int = 0
    duration_seconds: float = 0.0
    manifest_written: bool = False
    staged_items: int = 0
    failed_items: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None

    def summary_lines(self) -> list[str]:
        lines = [f"Backup {self.name}: {self.status}"]
        if self.backup_id is not None:
            lines.append(f"  id: {self.backup_id} ({self.strategy})")
        if self.archive_path:
            lines.append(f"  archive: {self.archive_path}")
        lines.append(
            f"  items staged: {self.staged_items}, failed: {len(self.failed_items)}, "
            f"files archived: {self.file_count}"
        )
        for item, message in self.failed_items:
            lines.append(f"  FAILED {item}: {message}")
        for warning in self.warnings:
            lines.append(f"  warning: {warning}")
        if self.error_message:
            lines.append(f"  error [{self.error_code}]: {self.error_message}")
        return lines


def build_backup_name(backup_type: str, started_at: datetime) -> str:
    safe_type = "".join(char if char.isalnum() or char in "-_" else "_" for char in backup_type)
    return f"{safe_type}_{started_at.strftime('%Y%m%d_%H%M%S')}"


def run_backup(
    profile: BackupProfile,
    *,
    catalog: CatalogRepo,
    adapter: ArchiveAdapter,
    options: BackupOptions,
    categories: list[str] | None = None,
    strategy: str | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> BackupRunResult:
    started_at = now or datetime.now(tz=timezone.utc)
    started_clock = time.monotonic()
    name = build_backup_name(profile.backup_type, started_at)
    staging_root = options.temp_dir / f"backup_{name}"
    outgoing_dir = options.temp_dir / f"outgoing_{name}"
    set_log_context(backup_name=name, stage="resolve")

    selected = profile.select_categories(categories)
    source_items = [category.name for category in selected]
    resolution = resolve_chain(catalog, profile.backup_type, strategy or profile.strategy)
    warnings: list[str] = []
    if (strategy or profile.strategy) == "Differential" and not resolution.is_differential:
        warnings.append("No full backup to base a differential on; ran a full backup.")

    report = StagingReport()
    try:
        _reset_dir(staging_root)
        _reset_dir(outgoing_dir)

        set_log_context(stage="stage")
        builder = ManifestBuilder()
        builder.begin(
            profile.backup_type,
            name,
            started_at.isoformat(),
            strategy=resolution.strategy,
        )
        report = stage_categories(
            selected,
            staging_root,
            builder,
            resolution,
            per_file=options.differential_per_file,
        )
        if not builder.entries and not resolution.is_differential:
            raise StagingError("Nothing was staged; check the configured sources.")

        manifest_path = builder.finalize(staging_root, source_items)
        if manifest_path is None:
            warnings.append(
                "Manifest could not be written; this backup supports only full restore."
            )

        set_log_context(stage="compress")
        level = (
            profile.compression_level
            if profile.compression_level is not None
            else options.compression_level
        )
        compressed = adapter.compress(
            sorted(staging_root.iterdir()),
            outgoing_dir,
            name,
            level,
            root=staging_root,
        )
        _raise_for_archive_result(compressed, "compress")
        archive_path = compressed.archive_path
        if archive_path is None:
            raise ArchivistError(
                "Archiver reported success without an archive path",
                code="ARCHIVE_FAILED",
            )

        set_log_context(stage="verify")
        file_count = _verify_archive(adapter, archive_path, manifest_path is not None)
        size_bytes = archive_path.stat().st_size

        set_log_context(stage="deliver")
        destination_path = deliver_archive(
            archive_path,
            profile.destination,
            ssh_binary=options.ssh_binary,
            max_retries=options.transfer_max_retries,
        )

        set_log_context(stage="catalog")
        duration = round(time.monotonic() - started_clock, 3)
        backup_id = catalog.insert_backup(
            BackupRecord(
                name=name,
                backup_type=profile.backup_type,
                destination_kind=profile.destination.kind,
                destination_path=destination_path,
                timestamp=started_at.isoformat(),
                size_bytes=size_bytes,
                compression_method=adapter.compression_method,
                source_items=source_items,
                strategy=resolution.strategy,
                parent_backup_id=resolution.parent_backup_id,
                success=True,
                duration_seconds=duration,
                file_count=file_count,
            )
        )
        set_log_context(backup_id=backup_id)
        result = BackupRunResult(
            status="completed",
            name=name,
            backup_id=backup_id,
            archive_path=destination_path,
            strategy=resolution.strategy,
            parent_backup_id=resolution.parent_backup_id,
            file_count=file_count,
            size_bytes=size_bytes,
            duration_seconds=duration,
            manifest_written=manifest_path is not None,
            staged_items=report.staged_items,
            failed_items=list(report.failed_items),
            warnings=warnings,
        )
        logger.info(
            "Backup completed",
            extra={"duration_ms": int(duration * 1000), "metrics": _metrics(result)},
        )
    except (ArchivistError, OSError) as error:
        logger.error("Backup failed: %s", build_error_details(error))
        result = BackupRunResult(
            status="failed",
            name=name,
            strategy=resolution.strategy,
            parent_backup_id=resolution.parent_backup_id,
            duration_seconds=round(time.monotonic() - started_clock, 3),
            staged_items=report.staged_items,
            failed_items=list(report.failed_items),
            warnings=warnings,
            error_code=classify_error(error),
            error_message=str(error),
        )
    finally:
        shutil.rmtree(staging_root, ignore_errors=True)
        shutil.rmtree(outgoing_dir, ignore_errors=True)
        clear_log_context()

    _notify(notifier, result)
    return result


def _verify_archive(adapter: ArchiveAdapter, archive_path: Path, expect_manifest: bool) -> int:
    listing = adapter.list_members(archive_path)
    _raise_for_archive_result(listing, "verify")
    names = {member.path for member in listing.members}
    if expect_manifest and MANIFEST_FILE_NAME not in names:
        raise ArchivistError(
            f"Archive verification failed: {MANIFEST_FILE_NAME} missing from {archive_path}",
            code="ARCHIVE_FAILED",
        )
    return sum(
        1
        for member in listing.members
        if not member.is_dir and member.path != MANIFEST_FILE_NAME
    )


def _raise_for_archive_result(result: ArchiveResult, step: str) -> None:
    if result.ok:
        return
    message = f"Archive {step} failed: {result.diagnostics or result.code}"
    if result.code == "ARCHIVER_MISSING":
        raise ArchiverMissingError(message)
    raise ArchivistError(message, code=result.code or "ARCHIVE_FAILED")


def _reset_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def _metrics(result: BackupRunResult) -> dict[str, object]:
    return {
        "file_count": result.file_count,
        "size_bytes": result.size_bytes,
        "failed_items": len(result.failed_items),
        "strategy": result.strategy,
    }


def _notify(notifier: Notifier | None, result: BackupRunResult) -> None:
    if notifier is None:
        return
    if result.status == "completed":
        title = f"Backup completed: {result.name}"
        message = (
            f"{result.file_count} files, {result.size_bytes} bytes, "
            f"{len(result.failed_items)} failed items"
        )
        priority = PRIORITY_HIGH if result.failed_items else PRIORITY_NORMAL
    else:
        title = f"Backup failed: {result.name}"
        message = result.error_message or "Unknown error"
        priority = PRIORITY_HIGH
    notifier.notify(title, message, priority)
