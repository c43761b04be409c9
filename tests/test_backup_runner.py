from __future__ import annotations

import json
import os
from datetime import timedelta
from pathlib import Path
from zipfile import ZipFile

from archivist.archive.adapter import ArchiveResult
from archivist.archive.zip_adapter import ZipFileAdapter
from archivist.backup.runner import BackupOptions, build_backup_name, run_backup
from archivist.config.profile import BackupProfile
from archivist.manifest.models import MANIFEST_FILE_NAME
from archivist.storage.catalog import CatalogRepo
from tests.helpers import FIXED_NOW, two_category_profile


class _RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, int]] = []

    def notify(self, title: str, message: str, priority: int = 0) -> None:
        self.messages.append((title, message, priority))


class _BrokenArchiver(ZipFileAdapter):
    def compress(self, *args: object, **kwargs: object) -> ArchiveResult:
        return ArchiveResult(
            ok=False,
            code="ARCHIVER_MISSING",
            message="Archiving utility not found: 7z",
        )


def _options(tmp_path: Path) -> BackupOptions:
    return BackupOptions(temp_dir=tmp_path / "tmp")


def test_backup_name_uses_type_and_timestamp() -> None:
    assert build_backup_name("Full", FIXED_NOW) == "Full_20260301_123000"
    assert build_backup_name("Windows Settings", FIXED_NOW) == "Windows_Settings_20260301_123000"


def test_full_backup_end_to_end(tmp_path: Path) -> None:
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")
    notifier = _RecordingNotifier()

    result = run_backup(
        two_category_profile(tmp_path),
        catalog=catalog,
        adapter=ZipFileAdapter(),
        options=_options(tmp_path),
        notifier=notifier,  # type: ignore[arg-type]
        now=FIXED_NOW,
    )

    assert result.status == "completed"
    assert result.manifest_written is True
    assert result.file_count == 2
    archive_path = tmp_path / "backups" / "Full_20260301_123000.zip"
    assert result.archive_path == str(archive_path)
    with ZipFile(archive_path) as archive:
        manifest = json.loads(archive.read(MANIFEST_FILE_NAME))
        names = set(archive.namelist())
    assert set(manifest["entries"]) == {"Files/A/a.txt", "Files/B/b.txt"}
    assert manifest["info"]["total_files"] == 2
    assert manifest["info"]["source_items"] == ["A", "B"]
    assert {"Files/A/a.txt", "Files/B/b.txt"} <= names

    record = catalog.get_backup(result.backup_id or 0)
    assert record is not None
    assert record.name == "Full_20260301_123000"
    assert record.source_items == ["A", "B"]
    assert record.compression_method == "zip"
    assert record.size_bytes == archive_path.stat().st_size
    assert record.file_count == 2
    assert not (tmp_path / "tmp" / "backup_Full_20260301_123000").exists()
    assert notifier.messages[0][0] == "Backup completed: Full_20260301_123000"


def test_missing_source_is_staged_as_placeholder(tmp_path: Path) -> None:
    profile = BackupProfile(
        destination={"kind": "Local", "path": str(tmp_path / "backups")},
        categories=[{"name": "Gone", "paths": [str(tmp_path / "nowhere.txt")]}],
    )

    result = run_backup(
        profile,
        catalog=CatalogRepo(tmp_path / "catalog.sqlite3"),
        adapter=ZipFileAdapter(),
        options=_options(tmp_path),
        now=FIXED_NOW,
    )

    assert result.status == "completed"
    with ZipFile(tmp_path / "backups" / "Full_20260301_123000.zip") as archive:
        assert archive.getinfo("Files/Gone/nowhere.txt").file_size == 0


def test_differential_backup_only_includes_changed_paths(tmp_path: Path) -> None:
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")
    profile = two_category_profile(tmp_path)
    first = run_backup(
        profile,
        catalog=catalog,
        adapter=ZipFileAdapter(),
        options=_options(tmp_path),
        now=FIXED_NOW,
    )
    changed = (FIXED_NOW + timedelta(days=1)).timestamp()
    unchanged = (FIXED_NOW - timedelta(days=1)).timestamp()
    os.utime(tmp_path / "source" / "A" / "a.txt", (changed, changed))
    os.utime(tmp_path / "source" / "B" / "b.txt", (unchanged, unchanged))

    second = run_backup(
        profile,
        catalog=catalog,
        adapter=ZipFileAdapter(),
        options=_options(tmp_path),
        strategy="Differential",
        now=FIXED_NOW + timedelta(days=2),
    )

    assert second.status == "completed"
    assert second.strategy == "Differential"
    assert second.parent_backup_id == first.backup_id
    assert second.staged_items == 1
    record = catalog.get_backup(second.backup_id or 0)
    assert record is not None
    assert record.strategy == "Differential"
    assert record.parent_backup_id == first.backup_id


def test_differential_without_full_runs_as_full(tmp_path: Path) -> None:
    result = run_backup(
        two_category_profile(tmp_path),
        catalog=CatalogRepo(tmp_path / "catalog.sqlite3"),
        adapter=ZipFileAdapter(),
        options=_options(tmp_path),
        strategy="Differential",
        now=FIXED_NOW,
    )

    assert result.status == "completed"
    assert result.strategy == "Full"
    assert result.parent_backup_id is None
    assert result.warnings


def test_archiver_failure_records_nothing_and_cleans_up(tmp_path: Path) -> None:
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")
    notifier = _RecordingNotifier()

    result = run_backup(
        two_category_profile(tmp_path),
        catalog=catalog,
        adapter=_BrokenArchiver(),
        options=_options(tmp_path),
        notifier=notifier,  # type: ignore[arg-type]
        now=FIXED_NOW,
    )

    assert result.status == "failed"
    assert result.error_code == "ARCHIVER_MISSING"
    assert catalog.list_backups() == []
    assert list((tmp_path / "tmp").iterdir()) == []
    assert notifier.messages[0][0] == "Backup failed: Full_20260301_123000"


def test_category_selection_limits_staging(tmp_path: Path) -> None:
    result = run_backup(
        two_category_profile(tmp_path),
        catalog=CatalogRepo(tmp_path / "catalog.sqlite3"),
        adapter=ZipFileAdapter(),
        options=_options(tmp_path),
        categories=["A"],
        now=FIXED_NOW,
    )

    with ZipFile(tmp_path / "backups" / "Full_20260301_123000.zip") as archive:
        manifest = json.loads(archive.read(MANIFEST_FILE_NAME))
    assert result.file_count == 1
    assert list(manifest["entries"]) == ["Files/A/a.txt"]


class _PathlessArchiver(ZipFileAdapter):
    def compress(self, *args: object, **kwargs: object) -> ArchiveResult:
        return ArchiveResult(ok=True, exit_code=0)


def test_archiver_success_without_path_fails_the_run(tmp_path: Path) -> None:
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")

    result = run_backup(
        two_category_profile(tmp_path),
        catalog=catalog,
        adapter=_PathlessArchiver(),
        options=_options(tmp_path),
        now=FIXED_NOW,
    )

    assert result.status == "failed"
    assert result.error_code == "ARCHIVE_FAILED"
    assert catalog.list_backups() == []


def test_source_dated_before_1980_is_archived(tmp_path: Path) -> None:
    profile = two_category_profile(tmp_path)
    os.utime(tmp_path / "source" / "A" / "a.txt", (0, 0))

    result = run_backup(
        profile,
        catalog=CatalogRepo(tmp_path / "catalog.sqlite3"),
        adapter=ZipFileAdapter(),
        options=_options(tmp_path),
        now=FIXED_NOW,
    )

    assert result.status == "completed"
    with ZipFile(tmp_path / "backups" / "Full_20260301_123000.zip") as archive:
        assert archive.read("Files/A/a.txt") == b"0123456789"
