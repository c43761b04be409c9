from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

DestinationKind = Literal["Local", "NetworkShare", "SSH"]
BackupStrategy = Literal["Full", "Differential"]


@dataclass(frozen=True, slots=True)
class BackupRecord:
    name: str
    backup_type: str
    destination_kind: DestinationKind
    destination_path: str
    timestamp: str
    size_bytes: int = 0
    compression_method: str | None = None
    source_items: list[str] = field(default_factory=list)
    strategy: BackupStrategy = "Full"
    parent_backup_id: int | None = None
    success: bool = True
    duration_seconds: float = 0.0
    file_count: int = 0
    id: int | None = None

    @property
    def is_local(self) -> bool:
        return self.destination_kind in ("Local", "NetworkShare")


@dataclass(frozen=True, slots=True)
class DeleteBackupResult:
    backup_id: int
    deleted: bool
    error_code: str | None
    error_message: str | None
    technical_details: str | None
    artifact_deleted: bool
    artifact_missing: bool
    orphaned_children: list[int] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RetentionCleanupResult:
    cutoff_timestamp: str
    dry_run: bool
    report_path: str | None
    scanned_backups: int
    deleted_backups: int
    failed_backups: int
    deleted_backup_ids: list[int]
    audit_entries: list[dict[str, Any]]
    errors: list[str]
