from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from archivist.storage.db import connection, init_db
from archivist.storage.models import BackupRecord, BackupStrategy, DeleteBackupResult
from archivist.utils.error_taxonomy import CatalogMissingError

if TYPE_CHECKING:
    from archivist.archive.adapter import ArchiveAdapter

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = """
    id,
    name,
    backup_type,
    destination_type,
    destination_path,
    timestamp,
    size_bytes,
    compression_method,
    source_items,
    backup_strategy,
    parent_backup_id,
    success,
    duration_seconds,
    file_count
"""


class CatalogRepo:
    """Backup history stored in SQLite, one row per backup run.

    Every method opens its own connection and commits before returning, so
    history readers in other processes never hold the file between calls.
    """

    def __init__(self, db_path: Path | str, *, create_if_missing: bool = True) -> None:
        self.db_path = Path(db_path)
        if not self.db_path.exists() and not create_if_missing:
            raise CatalogMissingError(f"Backup catalog not found: {self.db_path}")
        init_db(self.db_path)

    def insert_backup(self, record: BackupRecord) -> int:
        strategy, parent_id = self._validated_chain(record)

        with connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO backups (
                    name,
                    backup_type,
                    destination_type,
                    destination_path,
                    timestamp,
                    size_bytes,
                    compression_method,
                    source_items,
                    backup_strategy,
                    parent_backup_id,
                    success,
                    duration_seconds,
                    file_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.name,
                    record.backup_type,
                    record.destination_kind,
                    record.destination_path,
                    record.timestamp or _utc_now(),
                    int(record.size_bytes),
                    record.compression_method,
                    json.dumps(list(record.source_items), ensure_ascii=False),
                    strategy,
                    parent_id,
                    1 if record.success else 0,
                    float(record.duration_seconds),
                    int(record.file_count),
                ),
            )
            backup_id = cursor.lastrowid

        if backup_id is None:
            raise RuntimeError("Failed to insert backup record")
        logger.info(
            "Recorded backup %s (id=%s, strategy=%s)", record.name, backup_id, strategy
        )
        return int(backup_id)

    def get_backup(self, backup_id: int) -> BackupRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM backups WHERE id = ?",
                (int(backup_id),),
            ).fetchone()

        if row is None:
            return None
        return _row_to_backup_record(row)

    def list_backups(
        self,
        *,
        backup_type: str | None = None,
        strategy: BackupStrategy | None = None,
        only_successful: bool = False,
        date_to: str | None = None,
        limit: int | None = None,
    ) -> list[BackupRecord]:
        filters: list[str] = []
        params: list[object] = []

        if backup_type is not None and backup_type.strip():
            filters.append("backup_type = ?")
            params.append(backup_type.strip())

        if strategy is not None:
            filters.append("backup_strategy = ?")
            params.append(strategy)

        if only_successful:
            filters.append("success = 1")

        if date_to is not None and date_to.strip():
            filters.append("timestamp <= ?")
            params.append(date_to.strip())

        query = f"SELECT {_SELECT_COLUMNS} FROM backups"
        if filters:
            query += f" WHERE {' AND '.join(filters)}"
        query += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(int(limit), 1))

        with connection(self.db_path) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        return [_row_to_backup_record(row) for row in rows]

    def latest_full_backup(self, backup_type: str) -> BackupRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM backups
                WHERE backup_type = ? AND backup_strategy = 'Full' AND success = 1
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
                """,
                (backup_type,),
            ).fetchone()

        if row is None:
            return None
        return _row_to_backup_record(row)

    def list_children(self, backup_id: int) -> list[BackupRecord]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM backups
                WHERE parent_backup_id = ?
                ORDER BY timestamp DESC, id DESC
                """,
                (int(backup_id),),
            ).fetchall()
        return [_row_to_backup_record(row) for row in rows]

    def delete(self, backup_id: int) -> int:
        with connection(self.db_path) as conn:
            result = conn.execute("DELETE FROM backups WHERE id = ?", (int(backup_id),))
        return int(result.rowcount)

    def delete_backup(self, backup_id: int) -> DeleteBackupResult:
        """Remove the archive file (when reachable) and then the catalog row.

        A missing archive does not block the row removal. Remote (SSH)
        archives are left untouched and only the row is removed.
        """
        try:
            record = self.get_backup(backup_id)
        except sqlite3.Error as error:
            return _delete_error(
                backup_id,
                error_code="DELETE_DB_ERROR",
                error_message="Failed to read backup metadata from catalog.",
                technical_details=f"{error.__class__.__name__}: {error}",
            )

        if record is None:
            return _delete_error(
                backup_id,
                error_code="BACKUP_NOT_FOUND",
                error_message=f"Backup not found: {backup_id}",
            )

        artifact_deleted = False
        artifact_missing = False
        if record.is_local:
            archive_path = Path(record.destination_path)
            try:
                if archive_path.is_file():
                    archive_path.unlink()
                    artifact_deleted = True
                elif archive_path.exists():
                    raise OSError(f"Backup artifact is not a file: {archive_path}")
                else:
                    artifact_missing = True
                    logger.warning(
                        "Archive for backup %s already missing: %s",
                        backup_id,
                        archive_path,
                    )
            except OSError as error:
                return _delete_error(
                    backup_id,
                    error_code="DELETE_FS_ERROR",
                    error_message="Failed to delete backup archive from filesystem.",
                    technical_details=f"{error.__class__.__name__}: {error}",
                )

        try:
            children = [child.id for child in self.list_children(backup_id)]
            rows = self.delete(backup_id)
        except sqlite3.Error as error:
            return _delete_error(
                backup_id,
                error_code="DELETE_DB_ERROR",
                error_message="Failed to delete backup metadata from catalog.",
                technical_details=f"{error.__class__.__name__}: {error}",
                artifact_deleted=artifact_deleted,
                artifact_missing=artifact_missing,
            )

        if rows == 0:
            return _delete_error(
                backup_id,
                error_code="BACKUP_NOT_FOUND",
                error_message=f"Backup not found: {backup_id}",
                technical_details="Catalog row disappeared before delete.",
                artifact_deleted=artifact_deleted,
                artifact_missing=artifact_missing,
            )

        orphaned = [child_id for child_id in children if child_id is not None]
        if orphaned:
            logger.warning(
                "Deleted full backup %s still referenced by differential backups %s",
                backup_id,
                orphaned,
            )
        return DeleteBackupResult(
            backup_id=int(backup_id),
            deleted=True,
            error_code=None,
            error_message=None,
            technical_details=None,
            artifact_deleted=artifact_deleted,
            artifact_missing=artifact_missing,
            orphaned_children=orphaned,
        )

    def backfill_statistics(self, adapter: "ArchiveAdapter") -> int:
        """Fill ``file_count``/``size_bytes`` for rows recorded without them."""
        with connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM backups
                WHERE file_count = 0 AND destination_type != 'SSH'
                """
            ).fetchall()

        updated = 0
        for row in rows:
            record = _row_to_backup_record(row)
            archive_path = Path(record.destination_path)
            if not archive_path.is_file():
                continue
            listing = adapter.list_members(archive_path)
            if not listing.ok:
                logger.warning(
                    "Cannot list archive for backup %s: %s",
                    record.id,
                    listing.diagnostics,
                )
                continue

            file_count = sum(1 for member in listing.members if not member.is_dir)
            size_bytes = record.size_bytes or archive_path.stat().st_size
            with connection(self.db_path) as conn:
                conn.execute(
                    "UPDATE backups SET file_count = ?, size_bytes = ? WHERE id = ?",
                    (file_count, size_bytes, record.id),
                )
            updated += 1
        return updated

    def _validated_chain(self, record: BackupRecord) -> tuple[BackupStrategy, int | None]:
        if record.strategy != "Differential":
            return "Full", None

        parent = (
            self.get_backup(record.parent_backup_id)
            if record.parent_backup_id is not None
            else None
        )
        if parent is None or parent.strategy != "Full":
            logger.warning(
                "Backup %s has no valid full parent (parent_backup_id=%s); "
                "recording it as Full",
                record.name,
                record.parent_backup_id,
            )
            return "Full", None
        return "Differential", parent.id


def _delete_error(
    backup_id: int,
    *,
    error_code: str,
    error_message: str,
    technical_details: str | None = None,
    artifact_deleted: bool = False,
    artifact_missing: bool = False,
) -> DeleteBackupResult:
    return DeleteBackupResult(
        backup_id=int(backup_id),
        deleted=False,
        error_code=error_code,
        error_message=error_message,
        technical_details=technical_details,
        artifact_deleted=artifact_deleted,
        artifact_missing=artifact_missing,
    )


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _to_optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)


def _source_items_from_text(value: object) -> list[str]:
    if value is None:
        return []
    try:
        parsed = json.loads(str(value))
    except json.JSONDecodeError:
        return [item.strip() for item in str(value).split(",") if item.strip()]
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _row_to_backup_record(row: sqlite3.Row) -> BackupRecord:
    return BackupRecord(
        id=int(row["id"]),
        name=str(row["name"]),
        backup_type=str(row["backup_type"]),
        destination_kind=str(row["destination_type"]),
        destination_path=str(row["destination_path"]),
        timestamp=str(row["timestamp"]),
        size_bytes=int(row["size_bytes"] or 0),
        compression_method=(
            None if row["compression_method"] is None else str(row["compression_method"])
        ),
        source_items=_source_items_from_text(row["source_items"]),
        strategy="Differential" if row["backup_strategy"] == "Differential" else "Full",
        parent_backup_id=_to_optional_int(row["parent_backup_id"]),
        success=bool(row["success"]),
        duration_seconds=float(row["duration_seconds"] or 0.0),
        file_count=int(row["file_count"] or 0),
    )
