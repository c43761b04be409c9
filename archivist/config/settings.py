from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

ArchiverName = Literal["7z", "zip"]
ConflictPolicyName = Literal["overwrite", "skip", "rename"]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ARCHIVIST_",
        extra="ignore",
    )

    environment: str = "local"
    data_dir: Path = Path("data")
    catalog_path: Path = Path("data/backup_history.sqlite3")
    temp_dir: Path = Path("data/tmp")
    profile_path: Path = Path("backup_profile.yaml")

    archiver: ArchiverName = "7z"
    seven_zip_binary: str = "7z"
    compression_level: int = Field(default=5, ge=0, le=9)
    archive_timeout_seconds: float = Field(default=3600.0, gt=0)

    registry_restore_dir: Path = Path("data/restore/registry")
    special_restore_dir: Path = Path("data/restore/special")
    default_conflict_policy: ConflictPolicyName = "rename"
    placeholder_max_bytes: int = Field(default=1, ge=0)
    differential_per_file: bool = False

    ssh_binary: str = "scp"
    transfer_max_retries: int = Field(default=2, ge=0)

    notify_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ARCHIVIST_NOTIFY_URL", "NOTIFY_URL"),
    )
    notify_token: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("ARCHIVIST_NOTIFY_TOKEN", "NOTIFY_TOKEN"),
    )
    notify_timeout_seconds: float = Field(default=10.0, gt=0)

    log_level: str = "INFO"
    log_file: Path | None = None

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_data_dir(self) -> Path:
        return self._resolve_path(self.data_dir)

    @property
    def resolved_catalog_path(self) -> Path:
        return self._resolve_path(self.catalog_path)

    @property
    def resolved_temp_dir(self) -> Path:
        return self._resolve_path(self.temp_dir)

    @property
    def resolved_profile_path(self) -> Path:
        return self._resolve_path(self.profile_path)

    @property
    def resolved_registry_restore_dir(self) -> Path:
        return self._resolve_path(self.registry_restore_dir)

    @property
    def resolved_special_restore_dir(self) -> Path:
        return self._resolve_path(self.special_restore_dir)

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
