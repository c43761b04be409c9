from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from archivist.manifest.models import MANIFEST_FILE_NAME, ManifestDocument
from archivist.utils.error_taxonomy import ManifestInvalidError

logger = logging.getLogger(__name__)

_REQUIRED_SECTIONS = ("info", "entries")


def load_manifest(path: Path | str) -> ManifestDocument:
    manifest_path = Path(path)
    try:
        raw = manifest_path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as error:
        raise ManifestInvalidError(
            f"Cannot read manifest {manifest_path}: {error}", reason="unreadable"
        ) from error
    return parse_manifest_text(raw, source=str(manifest_path))


def parse_manifest_text(raw: str, *, source: str = "<memory>") -> ManifestDocument:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ManifestInvalidError(
            f"Manifest {source} is not valid JSON: {error}", reason="unreadable"
        ) from error
    return parse_manifest_payload(payload, source=source)


def parse_manifest_payload(payload: Any, *, source: str = "<memory>") -> ManifestDocument:
    if not has_manifest_shape(payload):
        raise ManifestInvalidError(
            f"{source} does not look like a backup manifest "
            f"(object with {' and '.join(_REQUIRED_SECTIONS)} sections expected)",
            reason="foreign",
        )
    try:
        return ManifestDocument.model_validate(payload)
    except ValidationError as error:
        raise ManifestInvalidError(
            f"Manifest {source} failed validation: {error}", reason="invalid"
        ) from error


def has_manifest_shape(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    return isinstance(payload.get("info"), dict) and isinstance(
        payload.get("entries"), dict
    )


def read_manifest(path: Path | str) -> ManifestDocument | None:
    """Return the parsed manifest, or ``None`` when it is missing or not ours."""
    manifest_path = Path(path)
    if not manifest_path.is_file():
        return None
    try:
        return load_manifest(manifest_path)
    except ManifestInvalidError as error:
        logger.warning("Ignoring manifest %s (%s): %s", path, error.reason, error)
        return None


def find_manifest_in_tree(root: Path) -> tuple[Path, ManifestDocument] | None:
    """Search an extracted tree for a manifest, shallowest match first.

    Files named like the current manifest are tried before any other JSON
    file, and every candidate is shape-checked before it is trusted.
    """
    if not root.is_dir():
        return None

    named = sorted(root.rglob(MANIFEST_FILE_NAME), key=_search_order)
    others = sorted(
        (path for path in root.rglob("*.json") if path.name != MANIFEST_FILE_NAME),
        key=_search_order,
    )
    for candidate in [*named, *others]:
        if not candidate.is_file():
            continue
        try:
            document = load_manifest(candidate)
        except ManifestInvalidError:
            continue
        logger.info("Found manifest inside extracted tree: %s", candidate)
        return candidate, document
    return None


def _search_order(path: Path) -> tuple[int, str]:
    return len(path.parts), path.as_posix()
