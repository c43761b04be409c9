"""Differential backup chain resolution and change detection.

A differential backup always points at the most recent successful full
backup of the same type and includes what changed since that backup's
timestamp. Change detection works on whole configured paths by default: if
anything below a path changed, the whole path is included again. Per-file
filtering is available through ``filter_changed_files`` but is opt-in.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from archivist.storage.catalog import CatalogRepo
from archivist.storage.models import BackupStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChainResolution:
    strategy: BackupStrategy
    parent_backup_id: int | None
    cutoff_timestamp: str | None

    @property
    def is_differential(self) -> bool:
        return self.strategy == "Differential"

    @property
    def cutoff(self) -> datetime | None:
        if self.cutoff_timestamp is None:
            return None
        return parse_timestamp(self.cutoff_timestamp)


FULL_RESOLUTION = ChainResolution(strategy="Full", parent_backup_id=None, cutoff_timestamp=None)


def resolve_chain(
    catalog: CatalogRepo,
    backup_type: str,
    requested_strategy: str,
) -> ChainResolution:
    if requested_strategy != "Differential":
        return FULL_RESOLUTION

    parent = catalog.latest_full_backup(backup_type)
    if parent is None or parent.id is None:
        logger.warning(
            "No full backup of type %s found; running a full backup instead of "
            "a differential one",
            backup_type,
        )
        return FULL_RESOLUTION

    logger.info(
        "Differential backup based on full backup %s (%s)", parent.id, parent.timestamp
    )
    return ChainResolution(
        strategy="Differential",
        parent_backup_id=parent.id,
        cutoff_timestamp=parent.timestamp,
    )


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def path_changed_since(path: Path, cutoff: datetime) -> bool:
    """True when ``path`` or anything beneath it was modified after ``cutoff``."""
    cutoff_epoch = cutoff.timestamp()
    try:
        if path.stat().st_mtime > cutoff_epoch:
            return True
    except OSError:
        return False
    if not path.is_dir():
        return False
    for candidate in _walk_files(path):
        try:
            if candidate.stat().st_mtime > cutoff_epoch:
                return True
        except OSError:
            continue
    return False


def filter_changed_paths(paths: list[Path], resolution: ChainResolution) -> list[Path]:
    cutoff = resolution.cutoff
    if not resolution.is_differential or cutoff is None:
        return list(paths)

    changed: list[Path] = []
    for path in paths:
        if path_changed_since(path, cutoff):
            changed.append(path)
        else:
            logger.debug("Unchanged since %s, skipped: %s", resolution.cutoff_timestamp, path)
    return changed


def filter_changed_files(root: Path, resolution: ChainResolution) -> list[Path]:
    """Files below ``root`` modified after the cutoff (per-file granularity)."""
    cutoff = resolution.cutoff
    if root.is_file():
        candidates = [root]
    else:
        candidates = list(_walk_files(root))
    if not resolution.is_differential or cutoff is None:
        return candidates

    cutoff_epoch = cutoff.timestamp()
    selected: list[Path] = []
    for candidate in candidates:
        try:
            if candidate.stat().st_mtime > cutoff_epoch:
                selected.append(candidate)
        except OSError:
            continue
    return selected


def _walk_files(root: Path) -> Iterator[Path]:
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            yield Path(dirpath) / filename
