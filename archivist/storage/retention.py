from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from archivist.storage.catalog import CatalogRepo
from archivist.storage.models import BackupRecord, RetentionCleanupResult

logger = logging.getLogger(__name__)


def purge_backups_older_than_days(
    *,
    catalog: CatalogRepo,
    days: int,
    now: datetime | None = None,
    dry_run: bool = False,
    backup_type: str | None = None,
    report_path: Path | str | None = None,
    report_dir: Path | str | None = None,
) -> RetentionCleanupResult:
    """Delete backups recorded before ``now - days`` and write a JSON report.

    A Full backup that is still the parent of a retained differential is
    kept, so every surviving differential can still be restored on top of
    its base.
    """
    if days < 0:
        raise ValueError("days must be >= 0")

    reference_time = now or datetime.now(tz=timezone.utc)
    cutoff_iso = (reference_time - timedelta(days=days)).isoformat()

    expired = sorted(
        catalog.list_backups(backup_type=backup_type, date_to=cutoff_iso),
        key=lambda record: (record.timestamp, record.id or 0),
    )
    expired_ids = {record.id for record in expired}

    audit_entries: list[dict[str, Any]] = []
    deleted_ids: list[int] = []
    errors: list[str] = []

    for record in expired:
        backup_id = int(record.id or 0)
        retained_children = [
            child.id
            for child in catalog.list_children(backup_id)
            if child.id not in expired_ids
        ]
        if retained_children:
            logger.info(
                "Keeping backup %s: parent of retained backups %s",
                backup_id,
                retained_children,
            )
            audit_entries.append(
                _audit_entry(record, "keep", "parent_of_retained", children=retained_children)
            )
            continue

        if dry_run:
            audit_entries.append(_audit_entry(record, "dry_run_candidate", "candidate"))
            continue

        outcome = catalog.delete_backup(backup_id)
        if outcome.deleted:
            deleted_ids.append(backup_id)
            audit_entries.append(
                _audit_entry(
                    record,
                    "delete",
                    "deleted",
                    artifact_missing=outcome.artifact_missing,
                )
            )
            continue

        details = outcome.technical_details or outcome.error_message or "Unknown error"
        errors.append(
            f"backup_id={backup_id} code={outcome.error_code or 'UNKNOWN_ERROR'} "
            f"details={details}"
        )
        audit_entries.append(_audit_entry(record, "delete", "failed", error=details))

    target = _report_target(catalog, reference_time, report_path, report_dir)
    result = RetentionCleanupResult(
        cutoff_timestamp=cutoff_iso,
        dry_run=dry_run,
        report_path=str(target),
        scanned_backups=len(expired),
        deleted_backups=len(deleted_ids),
        failed_backups=len(errors),
        deleted_backup_ids=deleted_ids,
        audit_entries=audit_entries,
        errors=errors,
    )
    target.write_text(
        json.dumps(asdict(result), ensure_ascii=False, indent=2, sort_keys=True),
        encoding="utf-8",
    )
    logger.info(
        "Retention purge finished: %d deleted, %d failed (dry_run=%s)",
        result.deleted_backups,
        result.failed_backups,
        dry_run,
    )
    return result


def _audit_entry(
    record: BackupRecord, action: str, status: str, **extra: Any
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "backup_id": record.id,
        "name": record.name,
        "timestamp": record.timestamp,
        "strategy": record.strategy,
        "action": action,
        "status": status,
        "error": extra.pop("error", None),
    }
    entry.update(extra)
    return entry


def _report_target(
    catalog: CatalogRepo,
    reference_time: datetime,
    report_path: Path | str | None,
    report_dir: Path | str | None,
) -> Path:
    if report_path is not None:
        target = Path(report_path)
    else:
        directory = (
            Path(report_dir)
            if report_dir is not None
            else catalog.db_path.parent / "retention_reports"
        )
        stamp = reference_time.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = directory / f"{stamp}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    return target
