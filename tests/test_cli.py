from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from archivist.cli import format_history_line, main
from archivist.config.settings import get_settings
from archivist.storage.catalog import CatalogRepo
from archivist.storage.models import BackupRecord
from archivist.utils.logging import LOGGER_NAME


@pytest.fixture()
def catalog_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    path = tmp_path / "catalog.sqlite3"
    monkeypatch.setenv("ARCHIVIST_CATALOG_PATH", str(path))
    monkeypatch.delenv("ARCHIVIST_LOG_FILE", raising=False)
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True


def _env_args(tmp_path: Path) -> list[str]:
    return ["--env-file", str(tmp_path / "missing.env"), "--log-level", "ERROR"]


def _seed(path: Path, archive: Path) -> int:
    return CatalogRepo(path).insert_backup(
        BackupRecord(
            name="Full_20260301_123000",
            backup_type="Full",
            destination_kind="Local",
            destination_path=str(archive),
            timestamp="2026-03-01T12:30:00+00:00",
            size_bytes=3,
            file_count=2,
        )
    )


def test_history_lists_backups_as_json(tmp_path: Path, catalog_path: Path, capsys) -> None:
    backup_id = _seed(catalog_path, tmp_path / "Full.zip")

    code = main([*_env_args(tmp_path), "history", "--json"])

    assert code == 0
    rows = json.loads(capsys.readouterr().out)
    assert rows[0]["id"] == backup_id
    assert rows[0]["file_count"] == 2


def test_history_without_catalog_reports_friendly_error(
    tmp_path: Path, catalog_path: Path, capsys
) -> None:
    code = main([*_env_args(tmp_path), "history"])

    assert code == 2
    assert "Backup history database was not found." in capsys.readouterr().err
    assert not catalog_path.exists()


def test_delete_removes_archive_and_row(tmp_path: Path, catalog_path: Path, capsys) -> None:
    archive = tmp_path / "Full.zip"
    archive.write_bytes(b"zip")
    backup_id = _seed(catalog_path, archive)

    code = main([*_env_args(tmp_path), "delete", str(backup_id)])

    assert code == 0
    assert f"Deleted backup #{backup_id}" in capsys.readouterr().out
    assert not archive.exists()
    assert CatalogRepo(catalog_path).get_backup(backup_id) is None


def test_delete_unknown_backup_fails(tmp_path: Path, catalog_path: Path, capsys) -> None:
    CatalogRepo(catalog_path)

    code = main([*_env_args(tmp_path), "delete", "42"])

    assert code == 1
    assert "BACKUP_NOT_FOUND" in capsys.readouterr().err


def test_format_history_line_marks_parent() -> None:
    line = format_history_line(
        BackupRecord(
            id=5,
            name="Full_x",
            backup_type="Full",
            destination_kind="Local",
            destination_path="/b/Full_x.7z",
            timestamp="2026-03-02T00:00:00+00:00",
            strategy="Differential",
            parent_backup_id=4,
        )
    )

    assert "<- #4" in line
    assert line.startswith("#5 ")
