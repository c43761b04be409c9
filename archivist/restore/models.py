from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

RestoreState = Literal[
    "SelectBackup",
    "PreviewManifest",
    "ChooseMode",
    "ChooseDestination",
    "Extract",
    "RestoreItems",
    "Summarize",
    "Completed",
    "Cancelled",
    "Failed",
]
RestoreMode = Literal["Complete", "Selective"]
DestinationMode = Literal["Original", "Custom"]
ConflictPolicy = Literal["overwrite", "skip", "rename"]
RegistryImportMode = Literal["import-all", "extract-only", "ask-per-item"]
ItemOutcome = Literal["Success", "Skipped", "Failed"]


@dataclass(frozen=True, slots=True)
class RestoreItemResult:
    archive_path: str
    original_path: str
    category: str
    kind: str
    outcome: ItemOutcome
    destination: str | None = None
    message: str | None = None

    @property
    def display_path(self) -> str:
        return self.original_path or self.archive_path


@dataclass(frozen=True, slots=True)
class RestoreRequest:
    """Choices gathered before extraction starts."""

    mode: RestoreMode
    categories: list[str]
    destination_mode: DestinationMode
    custom_root: Path | None
    conflict_policy: ConflictPolicy
    registry_mode: RegistryImportMode


@dataclass(slots=True)
class RestoreSummary:
    state: RestoreState
    backup_id: int | None = None
    backup_name: str | None = None
    mode: RestoreMode | None = None
    items: list[RestoreItemResult] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def counts(self) -> dict[ItemOutcome, int]:
        tally = Counter(item.outcome for item in self.items)
        return {
            "Success": tally.get("Success", 0),
            "Skipped": tally.get("Skipped", 0),
            "Failed": tally.get("Failed", 0),
        }

    @property
    def failed_items(self) -> list[RestoreItemResult]:
        return [item for item in self.items if item.outcome == "Failed"]

    def render_lines(self) -> list[str]:
        label = self.backup_name or (
            f"#{self.backup_id}" if self.backup_id is not None else "-"
        )
        counts = self.counts
        lines = [
            f"Restore of {label}: {self.state}",
            (
                f"  succeeded: {counts['Success']}, skipped: {counts['Skipped']}, "
                f"failed: {counts['Failed']}"
            ),
        ]
        for item in self.failed_items:
            lines.append(f"  FAILED {item.display_path}: {item.message or 'unknown error'}")
        for warning in self.warnings:
            lines.append(f"  warning: {warning}")
        if self.error_message:
            lines.append(f"  error [{self.error_code}]: {self.error_message}")
        return lines
