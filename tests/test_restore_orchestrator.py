from __future__ import annotations

from pathlib import Path

import pytest

from archivist.archive.zip_adapter import ZipFileAdapter
from archivist.backup.runner import BackupOptions, run_backup
from archivist.manifest.builder import ManifestBuilder
from archivist.restore.orchestrator import (
    RestoreOrchestrator,
    parse_category_selection,
)
from archivist.storage.catalog import CatalogRepo
from archivist.storage.models import BackupRecord
from archivist.utils.error_taxonomy import ArchiveNotFoundError
from tests.helpers import FIXED_NOW, ScriptedPrompter, two_category_profile, write_file

_MODE_SELECTIVE = 1
_DEST_CUSTOM = 1


def _seed_backup(tmp_path: Path) -> tuple[CatalogRepo, int]:
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")
    result = run_backup(
        two_category_profile(tmp_path),
        catalog=catalog,
        adapter=ZipFileAdapter(),
        options=BackupOptions(temp_dir=tmp_path / "tmp"),
        now=FIXED_NOW,
    )
    assert result.backup_id is not None
    return catalog, result.backup_id


def _orchestrator(
    tmp_path: Path, catalog: CatalogRepo, prompter: ScriptedPrompter
) -> RestoreOrchestrator:
    return RestoreOrchestrator(
        catalog=catalog,
        adapter=ZipFileAdapter(),
        prompter=prompter,
        temp_dir=tmp_path / "tmp",
        registry_restore_dir=tmp_path / "registry",
        special_restore_dir=tmp_path / "special",
        conflict_policy="rename",
    )


def _files_under(root: Path) -> list[str]:
    return sorted(
        path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file()
    )


def test_selective_restore_of_category_a(tmp_path: Path) -> None:
    catalog, backup_id = _seed_backup(tmp_path)
    restored = tmp_path / "restored"
    prompter = ScriptedPrompter(
        choices=[_MODE_SELECTIVE, _DEST_CUSTOM], answers=["1", str(restored)]
    )

    summary = _orchestrator(tmp_path, catalog, prompter).run(backup_id)

    assert summary.state == "Completed"
    assert summary.mode == "Selective"
    assert [item.outcome for item in summary.items] == ["Success"]
    assert summary.counts == {"Success": 1, "Skipped": 0, "Failed": 0}
    assert _files_under(restored) == ["Files/A/a.txt"]
    assert (restored / "Files" / "A" / "a.txt").read_bytes() == b"0123456789"
    assert not (tmp_path / "tmp" / "restore_Full_20260301_123000").exists()


def test_selective_restore_of_placeholder_category_is_skipped(tmp_path: Path) -> None:
    catalog, backup_id = _seed_backup(tmp_path)
    prompter = ScriptedPrompter(
        choices=[_MODE_SELECTIVE, _DEST_CUSTOM],
        answers=["2", str(tmp_path / "restored")],
    )

    summary = _orchestrator(tmp_path, catalog, prompter).run(backup_id)

    assert [item.outcome for item in summary.items] == ["Skipped"]
    assert summary.items[0].archive_path == "Files/B/b.txt"


def test_backup_chosen_from_history_and_complete_restore(tmp_path: Path) -> None:
    catalog, _ = _seed_backup(tmp_path)
    restored = tmp_path / "restored"
    prompter = ScriptedPrompter(choices=[0, 0, _DEST_CUSTOM], answers=[str(restored)])

    summary = _orchestrator(tmp_path, catalog, prompter).run()

    assert summary.state == "Completed"
    assert summary.mode == "Complete"
    assert summary.counts == {"Success": 1, "Skipped": 1, "Failed": 0}
    assert prompter.titles[0] == "Select a backup to restore"
    assert prompter.titles[-1] == "Restore destination"


def test_destination_is_asked_after_category_selection(tmp_path: Path) -> None:
    catalog, backup_id = _seed_backup(tmp_path)
    prompter = ScriptedPrompter(
        choices=[_MODE_SELECTIVE, _DEST_CUSTOM],
        answers=["1", str(tmp_path / "restored")],
    )

    _orchestrator(tmp_path, catalog, prompter).run(backup_id)

    assert prompter.titles == ["Restore mode", "Restore destination"]
    assert prompter.prompts[0].startswith("Categories:")
    assert prompter.prompts[1] == "Destination directory: "


def test_cancel_during_selection_cleans_up(tmp_path: Path) -> None:
    catalog, backup_id = _seed_backup(tmp_path)
    prompter = ScriptedPrompter(choices=[_MODE_SELECTIVE], answers=[None])
    orchestrator = _orchestrator(tmp_path, catalog, prompter)

    summary = orchestrator.run(backup_id)

    assert summary.state == "Cancelled"
    assert orchestrator.state == "Cancelled"
    assert summary.items == []
    assert not (tmp_path / "tmp" / "restore_Full_20260301_123000").exists()
    assert not (tmp_path / "restored").exists()


def test_cancel_at_destination_prompt(tmp_path: Path) -> None:
    catalog, backup_id = _seed_backup(tmp_path)
    prompter = ScriptedPrompter(choices=[0, None])

    summary = _orchestrator(tmp_path, catalog, prompter).run(backup_id)

    assert summary.state == "Cancelled"


def test_missing_manifest_falls_back_to_full_extraction(tmp_path: Path) -> None:
    staging = tmp_path / "legacy"
    write_file(staging / "Files" / "Scripts" / "run.ps1", b"Write-Host 1")
    write_file(staging / "Files" / "Docs" / "notes.txt", b"some notes")
    compressed = ZipFileAdapter().compress(
        sorted(staging.iterdir()), tmp_path / "backups", "legacy", 5, root=staging
    )
    assert compressed.archive_path is not None
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")
    backup_id = catalog.insert_backup(
        BackupRecord(
            name="legacy",
            backup_type="Full",
            destination_kind="Local",
            destination_path=str(compressed.archive_path),
            timestamp="2024-01-01T00:00:00+00:00",
        )
    )
    restored = tmp_path / "restored"
    prompter = ScriptedPrompter(choices=[_DEST_CUSTOM], answers=[str(restored)])

    summary = _orchestrator(tmp_path, catalog, prompter).run(backup_id)

    assert summary.state == "Completed"
    assert summary.mode == "Complete"
    assert prompter.titles == ["Restore destination"]
    assert summary.counts["Success"] == 2
    assert {item.category for item in summary.items} == {"Scripts", "Docs"}
    assert _files_under(restored) == ["Files/Docs/notes.txt", "Files/Scripts/run.ps1"]


def test_missing_archive_aborts_and_cleans_up(tmp_path: Path) -> None:
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")
    backup_id = catalog.insert_backup(
        BackupRecord(
            name="vanished",
            backup_type="Full",
            destination_kind="Local",
            destination_path=str(tmp_path / "backups" / "vanished.zip"),
            timestamp="2026-01-01T00:00:00+00:00",
        )
    )
    orchestrator = _orchestrator(tmp_path, catalog, ScriptedPrompter())

    with pytest.raises(ArchiveNotFoundError):
        orchestrator.run(backup_id)

    assert orchestrator.state == "Failed"
    assert not (tmp_path / "tmp" / "restore_vanished").exists()


def test_empty_history_reports_failure(tmp_path: Path) -> None:
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")

    summary = _orchestrator(tmp_path, catalog, ScriptedPrompter()).run()

    assert summary.state == "Failed"
    assert summary.error_code == "BACKUP_NOT_FOUND"


def test_manifest_entry_missing_from_archive_is_reported(tmp_path: Path) -> None:
    staging = tmp_path / "staging"
    write_file(staging / "Files" / "A" / "a.txt", b"0123456789")
    builder = ManifestBuilder()
    builder.begin("Full", "partial", "2026-03-01T12:30:00+00:00")
    builder.add_entry("/src/a.txt", "Files/A/a.txt", "A", "file", size_bytes=10)
    builder.add_entry("/src/ghost.txt", "Files/A/ghost.txt", "A", "file", size_bytes=5)
    builder.finalize(staging, ["A"])
    compressed = ZipFileAdapter().compress(
        sorted(staging.iterdir()), tmp_path / "backups", "partial", 5, root=staging
    )
    assert compressed.archive_path is not None
    catalog = CatalogRepo(tmp_path / "catalog.sqlite3")
    backup_id = catalog.insert_backup(
        BackupRecord(
            name="partial",
            backup_type="Full",
            destination_kind="Local",
            destination_path=str(compressed.archive_path),
            timestamp="2026-03-01T12:30:00+00:00",
        )
    )
    prompter = ScriptedPrompter(
        choices=[0, _DEST_CUSTOM], answers=[str(tmp_path / "restored")]
    )

    summary = _orchestrator(tmp_path, catalog, prompter).run(backup_id)
    lines = summary.render_lines()

    assert summary.state == "Completed"
    assert summary.counts == {"Success": 1, "Skipped": 0, "Failed": 1}
    assert lines[0] == "Restore of partial: Completed"
    assert lines[1] == "  succeeded: 1, skipped: 0, failed: 1"
    assert any(line.startswith("  FAILED /src/ghost.txt:") for line in lines)



def test_parse_category_selection() -> None:
    names = ["A", "B", "C"]

    assert parse_category_selection("all", names) == names
    assert parse_category_selection("3, 1", names) == ["C", "A"]
    assert parse_category_selection("1,1", names) == ["A"]
    assert parse_category_selection("4", names) == []
    assert parse_category_selection("x", names) == []
