from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from archivist.archive.adapter import normalize_member_path
from archivist.manifest.models import (
    MANIFEST_FILE_NAME,
    MANIFEST_SCHEMA_VERSION,
    AnyEntry,
    EntryKind,
    FileEntry,
    FolderEntry,
    ManifestDocument,
    ManifestInfo,
    PlatformSettingEntry,
    SettingInfo,
    SpecialEntry,
    SpecialInfo,
)

logger = logging.getLogger(__name__)


class ManifestBuilder:
    """Collects the entries of one backup run and writes the manifest.

    One instance belongs to one run: construct it when the run starts, pass
    it to whatever stages content, and call :meth:`finalize` once right
    before archiving. Entries are keyed by archive path; adding an entry
    under a key that already exists replaces the earlier entry (last write
    wins), so re-staging an item never produces duplicates.
    """

    def __init__(self) -> None:
        self._info: ManifestInfo | None = None
        self._entries: dict[str, AnyEntry] = {}
        self._finalized = False

    def begin(
        self,
        backup_type: str,
        name: str,
        timestamp: str | None = None,
        *,
        strategy: str = "Full",
    ) -> None:
        self._info = ManifestInfo(
            backup_type=backup_type,
            name=name,
            created=timestamp or datetime.now(tz=timezone.utc).isoformat(),
            version=MANIFEST_SCHEMA_VERSION,
            strategy=strategy,
        )
        self._entries = {}
        self._finalized = False

    @property
    def entries(self) -> dict[str, AnyEntry]:
        return dict(self._entries)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def add_entry(
        self,
        original_path: str | Path,
        archive_path: str,
        category: str,
        kind: EntryKind,
        extra_metadata: dict[str, Any] | None = None,
        *,
        size_bytes: int | None = None,
        last_modified: str | None = None,
    ) -> AnyEntry:
        if self._info is None:
            raise RuntimeError("ManifestBuilder.begin() must be called before add_entry()")
        if self._finalized:
            raise RuntimeError("Manifest is already finalized")

        key = normalize_member_path(archive_path)
        if not key:
            raise ValueError("Archive path must not be empty")

        native_original = _native_path(str(original_path)) if original_path else ""
        if size_bytes is None or last_modified is None:
            stat_size, stat_mtime = _stat_source(native_original, kind)
            size_bytes = stat_size if size_bytes is None else size_bytes
            last_modified = last_modified or stat_mtime

        entry = _build_entry(
            kind=kind,
            original_path=native_original,
            archive_path=key,
            category=category,
            size_bytes=int(size_bytes or 0),
            last_modified=last_modified,
            extra_metadata=dict(extra_metadata or {}),
        )
        if key in self._entries:
            logger.debug("Manifest entry replaced: %s", key)
        self._entries[key] = entry
        return entry

    def document(self, source_items: list[str] | None = None) -> ManifestDocument:
        if self._info is None:
            raise RuntimeError("ManifestBuilder.begin() was never called")
        info = self._info.model_copy(
            update={
                "total_files": sum(
                    1 for entry in self._entries.values() if entry.kind == "file"
                ),
                "total_folders": sum(
                    1 for entry in self._entries.values() if entry.kind == "folder"
                ),
                "source_items": list(
                    source_items if source_items is not None else self._info.source_items
                ),
            }
        )
        return ManifestDocument(info=info, entries=dict(self._entries))

    def finalize(self, backup_root_dir: Path | str, source_items: list[str]) -> Path | None:
        """Write the manifest into ``backup_root_dir``.

        Returns ``None`` (and logs a warning) when the manifest cannot be
        written; the backup itself may still go ahead without it.
        """
        try:
            document = self.document(source_items)
            self._info = document.info
            path = Path(backup_root_dir) / MANIFEST_FILE_NAME
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = document.model_dump(mode="json", exclude_none=True)
            path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8"
            )
        except (OSError, RuntimeError, TypeError, ValueError) as error:
            logger.warning("Failed to write backup manifest: %s", error)
            return None

        self._finalized = True
        logger.info(
            "Manifest written with %d entries (%d files, %d folders)",
            len(document.entries),
            document.info.total_files,
            document.info.total_folders,
        )
        return path


def _build_entry(
    *,
    kind: EntryKind,
    original_path: str,
    archive_path: str,
    category: str,
    size_bytes: int,
    last_modified: str | None,
    extra_metadata: dict[str, Any],
) -> AnyEntry:
    common: dict[str, Any] = {
        "original_path": original_path,
        "archive_path": archive_path,
        "category": category,
        "size_bytes": size_bytes,
        "last_modified": last_modified,
    }
    try:
        if kind == "file":
            return FileEntry(**common)
        if kind == "folder":
            return FolderEntry(**common)
        if kind == "platform-setting":
            setting = SettingInfo(
                export_type=extra_metadata.get("export_type", ""),
                display_name=str(extra_metadata.get("display_name") or ""),
                category=str(extra_metadata.get("setting_category") or category),
            )
            return PlatformSettingEntry(**common, setting=setting)
        if kind == "special":
            handler = str(extra_metadata.pop("handler", "") or "")
            if not handler:
                raise ValueError("Special entries require a handler name")
            return SpecialEntry(
                **common, special=SpecialInfo(handler=handler, metadata=extra_metadata)
            )
    except ValidationError as error:
        raise ValueError(f"Invalid manifest entry for {archive_path}: {error}") from error
    raise ValueError(f"Unknown manifest entry kind: {kind}")


def _native_path(value: str) -> str:
    return value.replace("/", os.sep)


def _stat_source(original_path: str, kind: EntryKind) -> tuple[int, str | None]:
    if not original_path:
        return 0, None
    path = Path(original_path)
    try:
        stat_result = path.stat()
    except OSError:
        return 0, None

    modified = datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc).isoformat()
    if kind == "folder" and path.is_dir():
        total = 0
        for child in path.rglob("*"):
            try:
                if child.is_file():
                    total += child.stat().st_size
            except OSError:
                continue
        return total, modified
    return int(stat_result.st_size), modified
