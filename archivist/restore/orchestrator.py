from __future__ import annotations

import logging
import shutil
from pathlib import Path, PurePosixPath

from archivist.archive.adapter import ArchiveAdapter, ArchiveResult, adapter_for_archive
from archivist.backup.transfer import fetch_archive
from archivist.config.profile import DestinationConfig
from archivist.config.settings import Settings
from archivist.manifest.models import (
    MANIFEST_FILE_NAME,
    AnyEntry,
    FileEntry,
    ManifestDocument,
    PlatformSettingEntry,
)
from archivist.manifest.reader import find_manifest_in_tree, read_manifest
from archivist.restore.handlers import (
    RegistryImporter,
    RestoreContext,
    restore_entry,
    run_registry_import,
)
from archivist.restore.models import (
    ConflictPolicy,
    DestinationMode,
    RegistryImportMode,
    RestoreItemResult,
    RestoreMode,
    RestoreRequest,
    RestoreState,
    RestoreSummary,
)
from archivist.restore.prompts import Prompter
from archivist.storage.catalog import CatalogRepo
from archivist.storage.models import BackupRecord
from archivist.utils.error_taxonomy import (
    ArchiveNotFoundError,
    ArchiverMissingError,
    ArchivistError,
    CatalogMissingError,
    TransferError,
    build_error_details,
    classify_error,
)
from archivist.utils.logging import clear_log_context, set_log_context

logger = logging.getLogger(__name__)

_RUN_ABORTING_ERRORS = (
    ArchiveNotFoundError,
    ArchiverMissingError,
    CatalogMissingError,
    TransferError,
)
_CONFLICT_OPTIONS: list[tuple[ConflictPolicy, str]] = [
    ("overwrite", "Overwrite existing files"),
    ("skip", "Skip existing files"),
    ("rename", "Keep both (rename restored copy with a timestamp suffix)"),
]
_REGISTRY_OPTIONS: list[tuple[RegistryImportMode, str]] = [
    ("import-all", "Import all registry exports"),
    ("extract-only", "Extract only, import nothing"),
    ("ask-per-item", "Ask for each registry export"),
]


class RestoreCancelled(Exception):
    pass


class RestoreOrchestrator:
    """Drives one interactive restore session.

    SelectBackup -> PreviewManifest -> ChooseMode -> ChooseDestination ->
    Extract -> RestoreItems -> Summarize. Every selection step may cancel;
    the per-session work directory is removed on every exit path.
    """

    def __init__(
        self,
        *,
        catalog: CatalogRepo,
        adapter: ArchiveAdapter,
        prompter: Prompter,
        temp_dir: Path,
        registry_restore_dir: Path,
        special_restore_dir: Path,
        conflict_policy: ConflictPolicy | None = None,
        registry_mode: RegistryImportMode | None = None,
        placeholder_max_bytes: int = 1,
        registry_importer: RegistryImporter = run_registry_import,
        ssh_destination: DestinationConfig | None = None,
        ssh_binary: str = "scp",
        transfer_max_retries: int = 2,
        seven_zip_binary: str = "7z",
        archive_timeout_seconds: float = 3600.0,
    ) -> None:
        self.catalog = catalog
        self.adapter = adapter
        self.prompter = prompter
        self.temp_dir = temp_dir
        self.registry_restore_dir = registry_restore_dir
        self.special_restore_dir = special_restore_dir
        self.conflict_policy = conflict_policy
        self.registry_mode = registry_mode
        self.placeholder_max_bytes = placeholder_max_bytes
        self.registry_importer = registry_importer
        self.ssh_destination = ssh_destination
        self.ssh_binary = ssh_binary
        self.transfer_max_retries = transfer_max_retries
        self.seven_zip_binary = seven_zip_binary
        self.archive_timeout_seconds = archive_timeout_seconds
        self.state: RestoreState = "SelectBackup"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        catalog: CatalogRepo,
        adapter: ArchiveAdapter,
        prompter: Prompter,
        conflict_policy: ConflictPolicy | None = None,
        ask_conflict_policy: bool = False,
        registry_mode: RegistryImportMode | None = None,
        ssh_destination: DestinationConfig | None = None,
    ) -> "RestoreOrchestrator":
        if conflict_policy is None and not ask_conflict_policy:
            conflict_policy = settings.default_conflict_policy
        return cls(
            catalog=catalog,
            adapter=adapter,
            prompter=prompter,
            temp_dir=settings.resolved_temp_dir,
            registry_restore_dir=settings.resolved_registry_restore_dir,
            special_restore_dir=settings.resolved_special_restore_dir,
            conflict_policy=conflict_policy,
            registry_mode=registry_mode,
            placeholder_max_bytes=settings.placeholder_max_bytes,
            ssh_destination=ssh_destination,
            ssh_binary=settings.ssh_binary,
            transfer_max_retries=settings.transfer_max_retries,
            seven_zip_binary=settings.seven_zip_binary,
            archive_timeout_seconds=settings.archive_timeout_seconds,
        )

    def run(self, backup_id: int | None = None) -> RestoreSummary:
        self._transition("SelectBackup")
        try:
            record = self._select_backup(backup_id)
        except RestoreCancelled:
            self._transition("Cancelled")
            return RestoreSummary(state="Cancelled", backup_id=backup_id)
        if record is None:
            self._transition("Failed")
            return RestoreSummary(
                state="Failed",
                error_code="BACKUP_NOT_FOUND",
                error_message="No successful backups recorded in history.",
            )

        summary = RestoreSummary(
            state="SelectBackup", backup_id=record.id, backup_name=record.name
        )
        if record.strategy == "Differential" and record.parent_backup_id is not None:
            summary.warnings.append(
                f"Differential backup: restore full backup #{record.parent_backup_id} "
                "first for a complete state."
            )

        work_dir = self.temp_dir / f"restore_{record.name}"
        set_log_context(backup_id=record.id, backup_name=record.name)
        try:
            _reset_dir(work_dir)
            archive_path = self._locate_archive(record, work_dir)
            adapter = adapter_for_archive(
                archive_path,
                self.adapter,
                seven_zip_binary=self.seven_zip_binary,
                timeout_seconds=self.archive_timeout_seconds,
            )

            self._transition("PreviewManifest")
            manifest = self._preview_manifest(adapter, archive_path, work_dir / "preview")

            request = self._gather_request(manifest)
            summary.mode = request.mode

            self._transition("Extract")
            extract_root, entries = self._extract(
                adapter, archive_path, work_dir / "extracted", manifest, request, summary
            )

            self._transition("RestoreItems")
            context = RestoreContext(
                extract_root=extract_root,
                destination_mode=request.destination_mode,
                custom_root=request.custom_root,
                conflict_policy=request.conflict_policy,
                registry_mode=request.registry_mode,
                registry_restore_dir=self.registry_restore_dir,
                special_restore_dir=self.special_restore_dir,
                placeholder_max_bytes=self.placeholder_max_bytes,
                prompter=self.prompter,
                registry_importer=self.registry_importer,
            )
            summary.items = self._restore_items(entries, context)

            self._transition("Summarize")
            self._transition("Completed")
            summary.state = "Completed"
            counts = summary.counts
            logger.info(
                "Restore completed: %d succeeded, %d skipped, %d failed",
                counts["Success"],
                counts["Skipped"],
                counts["Failed"],
                extra={"metrics": dict(counts)},
            )
        except RestoreCancelled:
            self._transition("Cancelled")
            summary.state = "Cancelled"
            logger.info("Restore cancelled by user")
        except _RUN_ABORTING_ERRORS:
            self._transition("Failed")
            raise
        except (ArchivistError, OSError) as error:
            self._transition("Failed")
            logger.error("Restore failed: %s", build_error_details(error))
            summary.state = "Failed"
            summary.error_code = classify_error(error)
            summary.error_message = str(error)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            clear_log_context()
        return summary

    def _select_backup(self, backup_id: int | None) -> BackupRecord | None:
        if backup_id is not None:
            record = self.catalog.get_backup(backup_id)
            if record is None:
                raise ArchivistError(
                    f"Backup #{backup_id} not found in history", code="BACKUP_NOT_FOUND"
                )
            return record

        records = self.catalog.list_backups(only_successful=True, limit=50)
        if not records:
            return None
        options = [_describe_record(record) for record in records]
        choice = self.prompter.choose("Select a backup to restore", options)
        if choice is None:
            raise RestoreCancelled()
        return records[choice]

    def _locate_archive(self, record: BackupRecord, work_dir: Path) -> Path:
        if record.destination_kind == "SSH":
            return fetch_archive(
                record.destination_path,
                self.ssh_destination,
                work_dir / "download",
                ssh_binary=self.ssh_binary,
                max_retries=self.transfer_max_retries,
            )
        archive_path = Path(record.destination_path)
        if not archive_path.is_file():
            raise ArchiveNotFoundError(f"Archive file not found: {archive_path}")
        return archive_path

    def _preview_manifest(
        self, adapter: ArchiveAdapter, archive_path: Path, preview_dir: Path
    ) -> ManifestDocument | None:
        result = adapter.extract_member(archive_path, preview_dir, MANIFEST_FILE_NAME)
        if not result.ok:
            _raise_if_run_aborting(result)
            if result.code == "ARCHIVE_MEMBER_NOT_FOUND":
                logger.info("Archive has no manifest; falling back to full restore")
            else:
                logger.warning(
                    "Could not read manifest from archive: %s", result.diagnostics
                )
            return None
        return read_manifest(preview_dir / MANIFEST_FILE_NAME)

    def _gather_request(self, manifest: ManifestDocument | None) -> RestoreRequest:
        self._transition("ChooseMode")
        mode: RestoreMode = "Complete"
        categories: list[str] = manifest.categories() if manifest else []
        if manifest is not None and categories:
            choice = self._choose(
                "Restore mode",
                ["Complete restore (everything)", "Selective restore (by category)"],
            )
            if choice == 1:
                mode = "Selective"
                categories = self._choose_categories(manifest)

        # Destination is asked only once the item set is known.
        self._transition("ChooseDestination")
        destination_mode: DestinationMode = "Original"
        custom_root: Path | None = None
        choice = self._choose(
            "Restore destination", ["Original locations", "Custom directory"]
        )
        if choice == 1:
            destination_mode = "Custom"
            answer = self.prompter.ask("Destination directory: ")
            if answer is None:
                raise RestoreCancelled()
            custom_root = Path(answer).expanduser()

        conflict_policy = self.conflict_policy
        if conflict_policy is None:
            index = self._choose(
                "When a destination already exists",
                [label for _, label in _CONFLICT_OPTIONS],
            )
            conflict_policy = _CONFLICT_OPTIONS[index][0]

        registry_mode: RegistryImportMode = self.registry_mode or "extract-only"
        if self.registry_mode is None and manifest is not None:
            selected = manifest.entries_for(categories)
            if any(_is_registry_export(entry) for entry in selected):
                index = self._choose(
                    "Registry exports found", [label for _, label in _REGISTRY_OPTIONS]
                )
                registry_mode = _REGISTRY_OPTIONS[index][0]

        return RestoreRequest(
            mode=mode,
            categories=categories,
            destination_mode=destination_mode,
            custom_root=custom_root,
            conflict_policy=conflict_policy,
            registry_mode=registry_mode,
        )

    def _choose_categories(self, manifest: ManifestDocument) -> list[str]:
        grouped = manifest.by_category()
        names = list(grouped)
        listing = "\n".join(
            f"  {index}. {name} ({len(grouped[name])} items)"
            for index, name in enumerate(names, start=1)
        )
        while True:
            answer = self.prompter.ask(
                f"Categories:\n{listing}\n"
                "Select categories (comma-separated numbers or 'all'): "
            )
            if answer is None:
                raise RestoreCancelled()
            selected = parse_category_selection(answer, names)
            if selected:
                return selected
            logger.info("Invalid category selection: %s", answer)

    def _extract(
        self,
        adapter: ArchiveAdapter,
        archive_path: Path,
        extract_root: Path,
        manifest: ManifestDocument | None,
        request: RestoreRequest,
        summary: RestoreSummary,
    ) -> tuple[Path, list[AnyEntry]]:
        extract_root.mkdir(parents=True, exist_ok=True)
        if manifest is not None and request.mode == "Selective":
            entries = manifest.entries_for(request.categories)
            result = adapter.extract_members(
                archive_path, extract_root, [entry.archive_path for entry in entries]
            )
            if not result.ok and result.code == "ARCHIVE_MEMBER_NOT_FOUND":
                summary.warnings.append(
                    "Some manifest entries were not found inside the archive."
                )
            elif not result.ok:
                _raise_for_result(result)
            return extract_root, entries

        result = adapter.extract_all(archive_path, extract_root)
        if not result.ok:
            _raise_for_result(result)
        if manifest is not None:
            return extract_root, manifest.entries_for(manifest.categories())

        found = find_manifest_in_tree(extract_root)
        if found is not None:
            manifest_path, document = found
            summary.warnings.append(
                f"Manifest found at {manifest_path.relative_to(extract_root).as_posix()}"
            )
            return manifest_path.parent, document.entries_for(document.categories())

        summary.warnings.append("No manifest in archive; restored the raw archive tree.")
        return extract_root, synthesize_entries(extract_root)

    def _restore_items(
        self, entries: list[AnyEntry], context: RestoreContext
    ) -> list[RestoreItemResult]:
        results: list[RestoreItemResult] = []
        for entry in entries:
            result = restore_entry(entry, context)
            logger.info(
                "%s %s",
                result.outcome,
                result.display_path,
                extra={"item_path": result.display_path, "outcome": result.outcome},
            )
            results.append(result)
        return results

    def _choose(self, title: str, options: list[str]) -> int:
        choice = self.prompter.choose(title, options)
        if choice is None:
            raise RestoreCancelled()
        return choice

    def _transition(self, state: RestoreState) -> None:
        self.state = state
        set_log_context(stage=state)
        logger.debug("Restore state: %s", state)


def parse_category_selection(answer: str, names: list[str]) -> list[str]:
    """Map ``"1,3"`` or ``"all"`` to category names; empty list when invalid."""
    text = answer.strip().lower()
    if text == "all":
        return list(names)
    selected: list[str] = []
    for raw in text.split(","):
        token = raw.strip()
        if not token:
            continue
        if not token.isdigit() or not 1 <= int(token) <= len(names):
            return []
        name = names[int(token) - 1]
        if name not in selected:
            selected.append(name)
    return selected


def synthesize_entries(extract_root: Path) -> list[AnyEntry]:
    """Describe every extracted file of a manifest-less archive."""
    entries: list[AnyEntry] = []
    for path in sorted(extract_root.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(extract_root).as_posix()
        parts = PurePosixPath(relative).parts
        category = parts[1] if len(parts) > 2 else parts[0]
        entries.append(
            FileEntry(
                archive_path=relative,
                category=category,
                size_bytes=path.stat().st_size,
            )
        )
    return entries


def _is_registry_export(entry: AnyEntry) -> bool:
    return (
        isinstance(entry, PlatformSettingEntry)
        and entry.setting.export_type == "registry-export"
    )


def _describe_record(record: BackupRecord) -> str:
    size_mb = record.size_bytes / (1024 * 1024)
    return (
        f"#{record.id} {record.name} [{record.strategy}] "
        f"{record.timestamp} {size_mb:.1f} MB -> {record.destination_kind}"
    )


def _raise_if_run_aborting(result: ArchiveResult) -> None:
    if result.code == "ARCHIVER_MISSING":
        raise ArchiverMissingError(result.diagnostics or "Archiver not available")
    if result.code == "ARCHIVE_NOT_FOUND":
        raise ArchiveNotFoundError(result.diagnostics or "Archive not found")


def _raise_for_result(result: ArchiveResult) -> None:
    _raise_if_run_aborting(result)
    raise ArchivistError(
        f"Extraction failed: {result.diagnostics or result.code}",
        code=result.code or "ARCHIVE_FAILED",
    )


def _reset_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
