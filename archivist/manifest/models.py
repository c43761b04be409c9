from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from archivist.archive.adapter import normalize_member_path

MANIFEST_FILE_NAME = "backup_manifest.json"
MANIFEST_SCHEMA_VERSION = "2.0"

EntryKind = Literal["file", "folder", "platform-setting", "special"]
ExportType = Literal["registry-export", "file-export", "folder-export", "command-export"]


class _EntryBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    original_path: str = ""
    category: str
    archive_path: str = ""
    size_bytes: int = 0
    last_modified: str | None = None

    @field_validator("archive_path")
    @classmethod
    def _normalize_archive_path(cls, value: str) -> str:
        return normalize_member_path(value)

    @property
    def display_path(self) -> str:
        return self.original_path or self.archive_path


class FileEntry(_EntryBase):
    kind: Literal["file"] = "file"


class FolderEntry(_EntryBase):
    kind: Literal["folder"] = "folder"


class SettingInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    export_type: ExportType
    display_name: str = ""
    category: str = ""


class PlatformSettingEntry(_EntryBase):
    kind: Literal["platform-setting"] = "platform-setting"
    setting: SettingInfo


class SpecialInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    handler: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class SpecialEntry(_EntryBase):
    kind: Literal["special"] = "special"
    special: SpecialInfo


AnyEntry = Union[FileEntry, FolderEntry, PlatformSettingEntry, SpecialEntry]
ManifestEntry = Annotated[AnyEntry, Field(discriminator="kind")]


class ManifestInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    backup_type: str
    name: str
    created: str
    version: str = MANIFEST_SCHEMA_VERSION
    strategy: str = "Full"
    total_files: int = 0
    total_folders: int = 0
    source_items: list[str] = Field(default_factory=list)


class ManifestDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    info: ManifestInfo
    entries: dict[str, ManifestEntry]

    @model_validator(mode="before")
    @classmethod
    def _infer_legacy_kinds(cls, data: Any) -> Any:
        # Manifests written before ``kind`` existed carry only the metadata block.
        if not isinstance(data, dict) or not isinstance(data.get("entries"), dict):
            return data
        entries: dict[str, Any] = {}
        for key, payload in data["entries"].items():
            if isinstance(payload, dict):
                payload = dict(payload)
                if "kind" not in payload:
                    payload["kind"] = _legacy_kind(payload)
                if not payload.get("archive_path"):
                    payload["archive_path"] = key
            entries[key] = payload
        return {**data, "entries": entries}

    @model_validator(mode="after")
    def _normalize_keys(self) -> "ManifestDocument":
        normalized: dict[str, Any] = {}
        for key, entry in self.entries.items():
            normalized_key = normalize_member_path(key)
            if entry.archive_path != normalized_key:
                entry = entry.model_copy(update={"archive_path": normalized_key})
            normalized[normalized_key] = entry
        self.entries = normalized
        return self

    def categories(self) -> list[str]:
        names = {entry.category for entry in self.entries.values()}
        ordered = [name for name in self.info.source_items if name in names]
        ordered.extend(sorted(names - set(ordered)))
        return ordered

    def by_category(self) -> dict[str, list[AnyEntry]]:
        grouped: dict[str, list[AnyEntry]] = {name: [] for name in self.categories()}
        for key in sorted(self.entries):
            entry = self.entries[key]
            grouped[entry.category].append(entry)
        return grouped

    def entries_for(self, categories: list[str]) -> list[AnyEntry]:
        wanted = set(categories)
        return [
            self.entries[key]
            for key in sorted(self.entries)
            if self.entries[key].category in wanted
        ]


def _legacy_kind(payload: dict[str, Any]) -> str:
    if "special" in payload:
        return "special"
    if "setting" in payload:
        return "platform-setting"
    if str(payload.get("type") or "").lower() == "folder":
        return "folder"
    return "file"
