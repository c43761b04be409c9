from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

DestinationKind = Literal["Local", "NetworkShare", "SSH"]
CategoryKind = Literal["files", "platform-setting", "special"]
ExportType = Literal["registry-export", "file-export", "folder-export", "command-export"]
BackupStrategy = Literal["Full", "Differential"]


class DestinationConfig(BaseModel):
    kind: DestinationKind = "Local"
    path: str
    host: str | None = None
    user: str | None = None
    port: int = Field(default=22, ge=1, le=65535)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _require_host_for_ssh(self) -> "DestinationConfig":
        if self.kind == "SSH" and not self.host:
            raise ValueError("SSH destination requires host")
        return self


class SettingExportConfig(BaseModel):
    export_type: ExportType
    display_name: str
    source: str
    file_name: str | None = None
    model_config = ConfigDict(extra="forbid")


class CategoryConfig(BaseModel):
    name: str
    kind: CategoryKind = "files"
    paths: list[str] = Field(default_factory=list)
    settings: list[SettingExportConfig] = Field(default_factory=list)
    handler: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "CategoryConfig":
        if self.kind == "special" and not self.handler:
            raise ValueError(f"Special category '{self.name}' requires handler")
        if "/" in self.name or "\\" in self.name:
            raise ValueError(f"Category name must not contain separators: {self.name}")
        return self


class BackupProfile(BaseModel):
    backup_type: str = "Full"
    strategy: BackupStrategy = "Full"
    compression_level: int | None = Field(default=None, ge=0, le=9)
    destination: DestinationConfig
    categories: list[CategoryConfig]
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _unique_category_names(self) -> "BackupProfile":
        names = [category.name for category in self.categories]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate category names: {duplicates}")
        return self

    def select_categories(self, names: list[str] | None) -> list[CategoryConfig]:
        if not names:
            return list(self.categories)
        wanted = set(names)
        unknown = wanted - {category.name for category in self.categories}
        if unknown:
            raise ValueError(f"Unknown categories requested: {sorted(unknown)}")
        return [category for category in self.categories if category.name in wanted]


def expand_env_vars(content: str) -> str:
    pattern = re.compile(r"\$\{([^}]+)\}")

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        if var_name not in os.environ:
            raise ValueError(
                f"Environment variable '{var_name}' is required but not set."
            )
        return os.environ[var_name]

    return pattern.sub(replacer, content)


def load_profile(path: Path | str) -> BackupProfile:
    profile_path = Path(path)
    if not profile_path.exists():
        raise FileNotFoundError(f"Backup profile not found: {profile_path}")

    expanded = expand_env_vars(profile_path.read_text(encoding="utf-8"))
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Backup profile must contain object root: {profile_path}")
    return BackupProfile(**data)
