"""Per-entry restore handlers.

Handlers are looked up by entry kind, and special entries additionally by
their recorded handler name. Both tables are plain dictionaries so new kinds
and special handlers are added with a registration call.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable

from archivist.manifest.models import (
    AnyEntry,
    FileEntry,
    FolderEntry,
    PlatformSettingEntry,
    SpecialEntry,
)
from archivist.restore.models import (
    ConflictPolicy,
    DestinationMode,
    ItemOutcome,
    RegistryImportMode,
    RestoreItemResult,
)
from archivist.restore.prompts import Prompter

logger = logging.getLogger(__name__)

RegistryImporter = Callable[[Path], int]


def run_registry_import(reg_file: Path) -> int:
    """Import a ``.reg`` file with the platform utility and return its exit code."""
    try:
        completed = subprocess.run(
            ["reg", "import", str(reg_file)],
            capture_output=True,
            timeout=300,
            check=False,
        )
    except FileNotFoundError:
        logger.warning("Registry import utility is not available on this host")
        return 127
    except subprocess.TimeoutExpired:
        logger.warning("Registry import timed out for %s", reg_file)
        return 124
    if completed.returncode != 0:
        stderr = completed.stderr.decode("utf-8", errors="replace").strip()
        logger.warning(
            "Registry import of %s exited with %s: %s",
            reg_file,
            completed.returncode,
            stderr,
        )
    return completed.returncode


@dataclass(slots=True)
class RestoreContext:
    extract_root: Path
    destination_mode: DestinationMode
    custom_root: Path | None
    conflict_policy: ConflictPolicy
    registry_mode: RegistryImportMode
    registry_restore_dir: Path
    special_restore_dir: Path
    placeholder_max_bytes: int = 1
    prompter: Prompter | None = None
    registry_importer: RegistryImporter = run_registry_import
    now: Callable[[], datetime] = field(default=datetime.now)

    def source_for(self, entry: AnyEntry) -> Path:
        return self.extract_root / PurePosixPath(entry.archive_path)

    def destination_for(self, entry: AnyEntry) -> Path:
        if self.destination_mode == "Custom" and self.custom_root is not None:
            return self.custom_root / PurePosixPath(entry.archive_path)
        if entry.original_path:
            return Path(entry.original_path)
        # Nothing recorded to go back to; keep the archive layout somewhere visible.
        return self.special_restore_dir / PurePosixPath(entry.archive_path)


EntryHandler = Callable[[AnyEntry, RestoreContext], RestoreItemResult]
SpecialHandler = Callable[[SpecialEntry, RestoreContext], RestoreItemResult]


def restore_entry(entry: AnyEntry, context: RestoreContext) -> RestoreItemResult:
    source = context.source_for(entry)
    if not source.exists():
        return _result(entry, "Failed", message="Item not found in archive")
    handler = KIND_HANDLERS.get(entry.kind)
    if handler is None:
        return _result(entry, "Failed", message=f"No restore handler for kind {entry.kind}")
    try:
        return handler(entry, context)
    except (OSError, shutil.Error) as error:
        logger.warning("Failed to restore %s: %s", entry.display_path, error)
        return _result(entry, "Failed", message=f"{error.__class__.__name__}: {error}")


def restore_file(entry: FileEntry, context: RestoreContext) -> RestoreItemResult:
    source = context.source_for(entry)
    if source.is_file() and source.stat().st_size <= context.placeholder_max_bytes:
        logger.info("Placeholder skipped: %s", entry.display_path)
        return _result(
            entry, "Skipped", message="Placeholder for data absent at backup time"
        )
    return place_item(source, context.destination_for(entry), entry, context)


def restore_folder(entry: FolderEntry, context: RestoreContext) -> RestoreItemResult:
    return place_item(
        context.source_for(entry), context.destination_for(entry), entry, context
    )


def restore_platform_setting(
    entry: PlatformSettingEntry, context: RestoreContext
) -> RestoreItemResult:
    export_type = entry.setting.export_type
    source = context.source_for(entry)
    if export_type == "registry-export":
        return _restore_registry_export(entry, source, context)
    if export_type == "command-export":
        target = context.special_restore_dir / entry.category / source.name
        return _copy_to_staging(entry, source, target)
    return place_item(source, context.destination_for(entry), entry, context)


def restore_special(entry: SpecialEntry, context: RestoreContext) -> RestoreItemResult:
    handler = SPECIAL_HANDLERS.get(entry.special.handler)
    if handler is None:
        logger.warning(
            "No restore handler registered for %s; copying %s as a plain file",
            entry.special.handler,
            entry.archive_path,
        )
        return place_item(
            context.source_for(entry), context.destination_for(entry), entry, context
        )
    return handler(entry, context)


def stage_special_export(entry: SpecialEntry, context: RestoreContext) -> RestoreItemResult:
    """Copy an exported store to the special restore dir for manual import."""
    source = context.source_for(entry)
    target = context.special_restore_dir / entry.category / source.name
    return _copy_to_staging(entry, source, target)


KIND_HANDLERS: dict[str, EntryHandler] = {
    "file": restore_file,  # type: ignore[dict-item]
    "folder": restore_folder,  # type: ignore[dict-item]
    "platform-setting": restore_platform_setting,  # type: ignore[dict-item]
    "special": restore_special,  # type: ignore[dict-item]
}

SPECIAL_HANDLERS: dict[str, SpecialHandler] = {
    "certificate-store": stage_special_export,
    "credential-manager": stage_special_export,
}


def register_kind_handler(kind: str, handler: EntryHandler) -> None:
    KIND_HANDLERS[kind] = handler


def register_special_handler(name: str, handler: SpecialHandler) -> None:
    SPECIAL_HANDLERS[name] = handler


def place_item(
    source: Path,
    target: Path,
    entry: AnyEntry,
    context: RestoreContext,
) -> RestoreItemResult:
    """Copy ``source`` to ``target`` honoring the session's conflict policy."""
    if target.exists():
        policy = context.conflict_policy
        if policy == "skip":
            return _result(
                entry, "Skipped", destination=target, message="Destination already exists"
            )
        if policy == "rename":
            target = renamed_target(target, context.now())
        elif target.is_dir() != source.is_dir():
            _replace_item(source, target)
            return _result(entry, "Success", destination=target)

    target.parent.mkdir(parents=True, exist_ok=True)
    _copy_item(source, target)
    return _result(entry, "Success", destination=target)


def _copy_item(source: Path, target: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, target, dirs_exist_ok=True)
    else:
        shutil.copy2(source, target)


def _remove_item(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _replace_item(source: Path, target: Path) -> None:
    """Swap ``target`` for a copy of ``source`` of a different type.

    The copy is completed next to ``target`` first, so a failed copy leaves
    the existing item untouched.
    """
    pending = target.with_name(f".{target.name}.restoring")
    _remove_item(pending)
    try:
        _copy_item(source, pending)
    except (OSError, shutil.Error):
        if pending.is_dir():
            shutil.rmtree(pending, ignore_errors=True)
        else:
            pending.unlink(missing_ok=True)
        raise
    _remove_item(target)
    pending.rename(target)


def renamed_target(target: Path, moment: datetime) -> Path:
    stamp = moment.strftime("%Y%m%d_%H%M%S")
    candidate = target.with_name(f"{target.stem}_{stamp}{target.suffix}")
    counter = 2
    while candidate.exists():
        candidate = target.with_name(f"{target.stem}_{stamp}_{counter}{target.suffix}")
        counter += 1
    return candidate


def _restore_registry_export(
    entry: PlatformSettingEntry, source: Path, context: RestoreContext
) -> RestoreItemResult:
    # Export file names are only unique within their category.
    target = context.registry_restore_dir / entry.category / source.name
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)

    if not _should_import_registry(entry, target, context):
        return _result(entry, "Success", destination=target, message="Extracted only")

    exit_code = context.registry_importer(target)
    if exit_code != 0:
        # The file is in place; the import itself is best-effort.
        logger.warning(
            "Registry import for %s exited with %s", entry.display_path, exit_code
        )
        return _result(
            entry,
            "Success",
            destination=target,
            message=f"Extracted; registry import exited with {exit_code}",
        )
    return _result(entry, "Success", destination=target, message="Imported")


def _should_import_registry(
    entry: PlatformSettingEntry, target: Path, context: RestoreContext
) -> bool:
    if context.registry_mode == "import-all":
        return True
    if context.registry_mode == "extract-only" or context.prompter is None:
        return False
    label = entry.setting.display_name or target.name
    choice = context.prompter.choose(
        f"Import registry export '{label}'?", ["Import now", "Extract only"]
    )
    return choice == 0


def _copy_to_staging(entry: AnyEntry, source: Path, target: Path) -> RestoreItemResult:
    target.parent.mkdir(parents=True, exist_ok=True)
    _copy_item(source, target)
    return _result(
        entry,
        "Success",
        destination=target,
        message="Staged for manual import",
    )


def _result(
    entry: AnyEntry,
    outcome: ItemOutcome,
    *,
    destination: Path | None = None,
    message: str | None = None,
) -> RestoreItemResult:
    return RestoreItemResult(
        archive_path=entry.archive_path,
        original_path=entry.original_path,
        category=entry.category,
        kind=entry.kind,
        outcome=outcome,
        destination=str(destination) if destination is not None else None,
        message=message,
    )
