from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from archivist.manifest.builder import ManifestBuilder
from archivist.manifest.models import MANIFEST_FILE_NAME, PlatformSettingEntry, SpecialEntry
from archivist.manifest.reader import (
    find_manifest_in_tree,
    load_manifest,
    parse_manifest_payload,
    read_manifest,
)
from archivist.utils.error_taxonomy import ManifestInvalidError
from tests.helpers import write_file


def _builder() -> ManifestBuilder:
    builder = ManifestBuilder()
    builder.begin("Full", "Full_20260301_123000", "2026-03-01T12:30:00+00:00")
    return builder


def test_same_archive_key_keeps_only_last_entry(tmp_path: Path) -> None:
    builder = _builder()
    builder.add_entry("C:/Users/me/a.txt", "Files/A/a.txt", "A", "file", size_bytes=1)
    builder.add_entry("D:/other/a.txt", "Files\\A//a.txt", "A2", "file", size_bytes=2)

    path = builder.finalize(tmp_path, ["A", "A2"])

    assert path is not None
    document = load_manifest(path)
    assert list(document.entries) == ["Files/A/a.txt"]
    entry = document.entries["Files/A/a.txt"]
    assert entry.category == "A2"
    assert entry.size_bytes == 2
    assert entry.original_path == "D:/other/a.txt".replace("/", os.sep)


def test_round_trip_preserves_keys_and_counts(tmp_path: Path) -> None:
    builder = _builder()
    builder.add_entry("/src/a.txt", "Files/A/a.txt", "A", "file", size_bytes=10)
    builder.add_entry("/src/b.txt", "Files/B/b.txt", "B", "file", size_bytes=0)
    builder.add_entry("/src/docs", "Files/Docs/docs", "Docs", "folder", size_bytes=5)
    builder.add_entry(
        "",
        "WindowsSettings/Explorer/explorer.reg",
        "Explorer",
        "platform-setting",
        {"export_type": "registry-export", "display_name": "Explorer"},
        size_bytes=30,
    )
    builder.add_entry(
        "",
        "Special/Certs/certs.txt",
        "Certs",
        "special",
        {"handler": "certificate-store", "export_method": "certutil"},
        size_bytes=40,
    )
    keys_before = set(builder.entries)

    path = builder.finalize(tmp_path, ["A", "B", "Docs", "Explorer", "Certs"])

    assert path == tmp_path / MANIFEST_FILE_NAME
    document = load_manifest(path)
    assert set(document.entries) == keys_before
    assert document.info.total_files == 2
    assert document.info.total_folders == 1
    assert document.categories() == ["A", "B", "Docs", "Explorer", "Certs"]
    setting = document.entries["WindowsSettings/Explorer/explorer.reg"]
    assert isinstance(setting, PlatformSettingEntry)
    assert setting.setting.export_type == "registry-export"
    special = document.entries["Special/Certs/certs.txt"]
    assert isinstance(special, SpecialEntry)
    assert special.special.handler == "certificate-store"
    assert special.special.metadata == {"export_method": "certutil"}


def test_two_category_scenario_counts(tmp_path: Path) -> None:
    builder = _builder()
    builder.add_entry("/src/A/a.txt", "Files/A/a.txt", "A", "file", size_bytes=10)
    builder.add_entry("/src/B/b.txt", "Files/B/b.txt", "B", "file", size_bytes=0)

    document = load_manifest(builder.finalize(tmp_path, ["A", "B"]))  # type: ignore[arg-type]

    assert len(document.entries) == 2
    assert document.info.total_files == 2


def test_add_entry_requires_begin_and_rejects_after_finalize(tmp_path: Path) -> None:
    builder = ManifestBuilder()
    with pytest.raises(RuntimeError):
        builder.add_entry("/a", "Files/a", "A", "file")

    builder.begin("Full", "x")
    builder.finalize(tmp_path, [])
    with pytest.raises(RuntimeError):
        builder.add_entry("/a", "Files/a", "A", "file")


def test_special_entry_requires_handler() -> None:
    builder = _builder()

    with pytest.raises(ValueError):
        builder.add_entry("", "Special/x.txt", "X", "special", {"export_method": "y"})


def test_begin_resets_previous_run() -> None:
    builder = _builder()
    builder.add_entry("/a", "Files/A/a", "A", "file", size_bytes=1)

    builder.begin("Full", "second")

    assert builder.entries == {}


def test_finalize_failure_is_a_warning(tmp_path: Path) -> None:
    builder = _builder()
    blocker = write_file(tmp_path / "not_a_dir", b"x")

    assert builder.finalize(blocker, []) is None
    assert builder.finalized is False


def test_add_entry_stats_source_when_size_unknown(tmp_path: Path) -> None:
    source = write_file(tmp_path / "data.bin", b"12345")
    builder = _builder()

    entry = builder.add_entry(source, "Files/A/data.bin", "A", "file")

    assert entry.size_bytes == 5
    assert entry.last_modified is not None


def test_reader_rejects_foreign_json(tmp_path: Path) -> None:
    foreign = write_file(tmp_path / "package.json", b'{"name": "x", "version": "1"}')

    with pytest.raises(ManifestInvalidError) as excinfo:
        load_manifest(foreign)

    assert excinfo.value.reason == "foreign"
    assert read_manifest(foreign) is None


def test_reader_distinguishes_bad_json_and_bad_fields(tmp_path: Path) -> None:
    broken = write_file(tmp_path / "broken.json", b"{not json")
    with pytest.raises(ManifestInvalidError) as broken_info:
        load_manifest(broken)
    with pytest.raises(ManifestInvalidError) as invalid_info:
        parse_manifest_payload({"info": {"name": "x"}, "entries": {}})

    assert broken_info.value.reason == "unreadable"
    assert invalid_info.value.reason == "invalid"


def test_reader_accepts_legacy_entries_without_kind() -> None:
    document = parse_manifest_payload(
        {
            "info": {
                "backup_type": "Full",
                "name": "old",
                "created": "2024-05-01T10:00:00",
                "version": "1.0",
            },
            "entries": {
                "Files\\Scripts\\run.ps1": {
                    "original_path": "C:\\Scripts\\run.ps1",
                    "category": "Scripts",
                    "size_bytes": 12,
                },
                "WindowsSettings/Explorer.reg": {
                    "category": "WinInterface",
                    "setting": {"export_type": "registry-export", "display_name": "E"},
                },
                "Files/Docs": {"category": "Docs", "type": "folder", "extra": 1},
            },
        }
    )

    assert set(document.entries) == {
        "Files/Scripts/run.ps1",
        "WindowsSettings/Explorer.reg",
        "Files/Docs",
    }
    assert document.entries["Files/Scripts/run.ps1"].kind == "file"
    assert document.entries["Files/Scripts/run.ps1"].archive_path == "Files/Scripts/run.ps1"
    assert document.entries["WindowsSettings/Explorer.reg"].kind == "platform-setting"
    assert document.entries["Files/Docs"].kind == "folder"


def test_find_manifest_in_tree_prefers_shallow_real_manifest(tmp_path: Path) -> None:
    write_file(tmp_path / "Files" / "A" / "package.json", b'{"name": "foreign"}')
    nested = tmp_path / "Full_20240101" / MANIFEST_FILE_NAME
    nested.parent.mkdir(parents=True)
    nested.write_text(
        json.dumps(
            {
                "info": {"backup_type": "Full", "name": "n", "created": "2024-01-01"},
                "entries": {},
            }
        ),
        encoding="utf-8",
    )

    found = find_manifest_in_tree(tmp_path)

    assert found is not None
    assert found[0] == nested
    assert found[1].info.name == "n"


def test_find_manifest_in_tree_without_candidates(tmp_path: Path) -> None:
    write_file(tmp_path / "Files" / "data.json", b"[1, 2, 3]")

    assert find_manifest_in_tree(tmp_path) is None
