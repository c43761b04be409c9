from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from archivist.backup.differential import (
    ChainResolution,
    filter_changed_files,
    filter_changed_paths,
)
from archivist.config.profile import CategoryConfig, SettingExportConfig
from archivist.manifest.builder import ManifestBuilder

logger = logging.getLogger(__name__)

FILES_ROOT = "Files"
SETTINGS_ROOT = "WindowsSettings"
SPECIAL_ROOT = "Special"

SettingExporter = Callable[[SettingExportConfig, Path], None]
SpecialExporter = Callable[[CategoryConfig, Path], list[Path]]


@dataclass(slots=True)
class StagingReport:
    staged_items: int = 0
    failed_items: list[tuple[str, str]] = field(default_factory=list)
    skipped_unchanged: int = 0
    placeholders: list[str] = field(default_factory=list)

    def record_failure(self, item: str, error: Exception | str) -> None:
        message = error if isinstance(error, str) else f"{error.__class__.__name__}: {error}"
        self.failed_items.append((item, message))
        logger.warning("Failed to stage %s: %s", item, message)


def export_registry_key(setting: SettingExportConfig, target: Path) -> None:
    _run_export_command(["reg", "export", setting.source, str(target), "/y"])


def export_command_output(setting: SettingExportConfig, target: Path) -> None:
    completed = _run_export_command(shlex.split(setting.source, posix=True))
    target.write_bytes(completed.stdout)


def export_file(setting: SettingExportConfig, target: Path) -> None:
    shutil.copy2(setting.source, target)


def export_folder(setting: SettingExportConfig, target: Path) -> None:
    shutil.copytree(setting.source, target, dirs_exist_ok=True)


SETTING_EXPORTERS: dict[str, SettingExporter] = {
    "registry-export": export_registry_key,
    "command-export": export_command_output,
    "file-export": export_file,
    "folder-export": export_folder,
}


def export_special_command(category: CategoryConfig, target_dir: Path) -> list[Path]:
    """Run ``metadata.command`` and keep its output as one export file."""
    command = str(category.metadata.get("command") or "").strip()
    if not command:
        raise ValueError(f"Special category {category.name} has no export command")
    file_name = str(category.metadata.get("file_name") or f"{category.handler}.txt")
    target = target_dir / file_name
    completed = _run_export_command(shlex.split(command, posix=True))
    target.write_bytes(completed.stdout)
    return [target]


SPECIAL_EXPORTERS: dict[str, SpecialExporter] = {
    "certificate-store": export_special_command,
    "credential-manager": export_special_command,
}


def register_special_exporter(name: str, exporter: SpecialExporter) -> None:
    SPECIAL_EXPORTERS[name] = exporter


def stage_categories(
    categories: list[CategoryConfig],
    staging_root: Path,
    builder: ManifestBuilder,
    resolution: ChainResolution,
    *,
    per_file: bool = False,
) -> StagingReport:
    """Copy configured sources into ``staging_root`` and record them.

    Every staged item is handed to ``builder`` with its archive path, which
    mirrors its location below ``staging_root``.
    """
    report = StagingReport()
    for category in categories:
        if category.kind == "files":
            _stage_file_category(category, staging_root, builder, resolution, per_file, report)
        elif category.kind == "platform-setting":
            _stage_setting_category(category, staging_root, builder, report)
        else:
            _stage_special_category(category, staging_root, builder, report)
    return report


def _stage_file_category(
    category: CategoryConfig,
    staging_root: Path,
    builder: ManifestBuilder,
    resolution: ChainResolution,
    per_file: bool,
    report: StagingReport,
) -> None:
    category_dir = staging_root / FILES_ROOT / category.name
    category_dir.mkdir(parents=True, exist_ok=True)

    sources = [Path(raw).expanduser() for raw in category.paths]
    existing = [path for path in sources if path.exists()]
    for missing in (path for path in sources if not path.exists()):
        # Keep a zero-byte marker so restore can tell the item was configured.
        target = _unique_target(category_dir / missing.name)
        target.touch()
        archive_path = target.relative_to(staging_root).as_posix()
        builder.add_entry(str(missing), archive_path, category.name, "file", size_bytes=0)
        report.placeholders.append(str(missing))
        logger.warning("Source missing, placeholder staged: %s", missing)

    selected = existing if per_file else filter_changed_paths(existing, resolution)
    report.skipped_unchanged += len(existing) - len(selected)

    for source in selected:
        target = _unique_target(category_dir / source.name)
        archive_path = target.relative_to(staging_root).as_posix()
        try:
            if source.is_dir():
                files = filter_changed_files(source, resolution) if per_file else None
                if files is not None and not files:
                    report.skipped_unchanged += 1
                    continue
                _copy_tree(source, target, files)
                builder.add_entry(str(source), archive_path, category.name, "folder")
            else:
                if per_file and not filter_changed_files(source, resolution):
                    report.skipped_unchanged += 1
                    continue
                shutil.copy2(source, target)
                builder.add_entry(str(source), archive_path, category.name, "file")
        except (OSError, shutil.Error) as error:
            report.record_failure(str(source), error)
            continue
        report.staged_items += 1


def _stage_setting_category(
    category: CategoryConfig,
    staging_root: Path,
    builder: ManifestBuilder,
    report: StagingReport,
) -> None:
    category_dir = staging_root / SETTINGS_ROOT / category.name
    category_dir.mkdir(parents=True, exist_ok=True)

    for setting in category.settings:
        exporter = SETTING_EXPORTERS[setting.export_type]
        target = _unique_target(category_dir / _setting_file_name(setting))
        try:
            exporter(setting, target)
        except (OSError, ValueError, shutil.Error, subprocess.SubprocessError) as error:
            report.record_failure(setting.display_name or setting.source, error)
            continue

        original = setting.source
        if setting.export_type in ("registry-export", "command-export"):
            original = ""
        builder.add_entry(
            original,
            target.relative_to(staging_root).as_posix(),
            category.name,
            "platform-setting",
            {
                "export_type": setting.export_type,
                "display_name": setting.display_name,
                "setting_category": category.name,
            },
            size_bytes=_tree_size(target),
        )
        report.staged_items += 1


def _stage_special_category(
    category: CategoryConfig,
    staging_root: Path,
    builder: ManifestBuilder,
    report: StagingReport,
) -> None:
    handler = category.handler or ""
    exporter = SPECIAL_EXPORTERS.get(handler)
    if exporter is None:
        report.record_failure(category.name, f"No exporter registered for {handler}")
        return

    category_dir = staging_root / SPECIAL_ROOT / category.name
    category_dir.mkdir(parents=True, exist_ok=True)
    try:
        produced = exporter(category, category_dir)
    except (OSError, ValueError, subprocess.SubprocessError) as error:
        report.record_failure(category.name, error)
        return

    for path in produced:
        metadata = {key: value for key, value in category.metadata.items() if key != "command"}
        metadata["handler"] = handler
        metadata.setdefault("export_method", exporter.__name__)
        builder.add_entry(
            "",
            path.relative_to(staging_root).as_posix(),
            category.name,
            "special",
            metadata,
            size_bytes=_tree_size(path),
        )
        report.staged_items += 1


def _run_export_command(command: list[str]) -> subprocess.CompletedProcess[bytes]:
    completed = subprocess.run(command, capture_output=True, timeout=600, check=False)
    if completed.returncode != 0:
        raise subprocess.CalledProcessError(
            completed.returncode, command, output=completed.stdout, stderr=completed.stderr
        )
    return completed


def _copy_tree(source: Path, target: Path, files: list[Path] | None) -> None:
    if files is None:
        shutil.copytree(source, target, dirs_exist_ok=True)
        return
    target.mkdir(parents=True, exist_ok=True)
    for file_path in files:
        destination = target / file_path.relative_to(source)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(file_path, destination)


def _setting_file_name(setting: SettingExportConfig) -> str:
    if setting.file_name:
        return setting.file_name
    if setting.export_type in ("file-export", "folder-export"):
        return Path(setting.source).name
    stem = "".join(char if char.isalnum() else "_" for char in setting.display_name)
    suffix = ".reg" if setting.export_type == "registry-export" else ".txt"
    return f"{stem.strip('_') or 'export'}{suffix}"


def _unique_target(target: Path) -> Path:
    if not target.exists():
        return target
    counter = 2
    while True:
        candidate = target.with_name(f"{target.stem}_{counter}{target.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1


def _tree_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(child.stat().st_size for child in path.rglob("*") if child.is_file())
