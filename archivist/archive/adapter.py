from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Iterable, Protocol

from archivist.utils.error_taxonomy import ErrorCode

if TYPE_CHECKING:
    from archivist.config.settings import Settings


@dataclass(frozen=True, slots=True)
class ArchiveMember:
    path: str
    size_bytes: int
    is_dir: bool = False


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    """Outcome of one archiver call.

    ``code`` is ``None`` on success. ``exit_code`` is the external tool's
    exit status when a subprocess was involved; ``stdout``/``stderr`` keep
    the captured diagnostics for the caller to log or show.
    """

    ok: bool
    code: ErrorCode | None = None
    archive_path: Path | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    message: str | None = None
    members: tuple[ArchiveMember, ...] = field(default_factory=tuple)
    extracted: tuple[str, ...] = field(default_factory=tuple)

    @property
    def diagnostics(self) -> str:
        parts = [self.message or "", self.stderr.strip(), self.stdout.strip()]
        return "\n".join(part for part in parts if part)


class ArchiveAdapter(Protocol):
    compression_method: str
    extension: str

    def compress(
        self,
        source_paths: list[Path],
        destination_dir: Path,
        archive_name: str,
        compression_level: int,
        *,
        root: Path | None = None,
    ) -> ArchiveResult: ...

    def extract_all(self, archive_path: Path, dest_dir: Path) -> ArchiveResult: ...

    def extract_member(
        self, archive_path: Path, dest_dir: Path, member_glob: str
    ) -> ArchiveResult: ...

    def extract_members(
        self, archive_path: Path, dest_dir: Path, member_globs: list[str]
    ) -> ArchiveResult: ...

    def list_members(self, archive_path: Path) -> ArchiveResult: ...


def normalize_member_path(value: str) -> str:
    """Archive-internal form: forward slashes, no duplicate or edge slashes."""
    text = value.replace("\\", "/")
    while "//" in text:
        text = text.replace("//", "/")
    while text.startswith("./"):
        text = text[2:]
    return text.strip("/")


def member_matches(member_path: str, member_globs: Iterable[str]) -> bool:
    """True when ``member_path`` is selected by any glob.

    A glob selects a member when it matches the member path, names the
    member exactly, or names one of its parent directories.
    """
    member = normalize_member_path(member_path)
    for raw_glob in member_globs:
        pattern = normalize_member_path(raw_glob)
        if not pattern:
            continue
        if member == pattern or member.startswith(pattern + "/"):
            return True
        if fnmatchcase(member, pattern):
            return True
    return False


def select_members(
    members: Iterable[ArchiveMember], member_globs: Iterable[str]
) -> list[ArchiveMember]:
    globs = list(member_globs)
    return [member for member in members if member_matches(member.path, globs)]


def archive_file_name(archive_name: str, extension: str) -> str:
    if archive_name.lower().endswith(extension.lower()):
        return archive_name
    return f"{archive_name}{extension}"


def safe_member_target(dest_dir: Path, member_path: str) -> Path:
    """Resolve a member path below ``dest_dir`` or raise ``ValueError``."""
    relative = PurePosixPath(normalize_member_path(member_path))
    if not relative.parts or relative.is_absolute():
        raise ValueError(f"Archive member has invalid path: {member_path}")
    if any(part in {"", ".", ".."} for part in relative.parts):
        raise ValueError(f"Archive member has invalid path: {member_path}")
    if ":" in relative.parts[0]:
        raise ValueError(f"Archive member has drive-style path: {member_path}")

    resolved_root = dest_dir.resolve()
    target = (dest_dir / relative.as_posix()).resolve()
    try:
        target.relative_to(resolved_root)
    except ValueError as error:
        raise ValueError(f"Path traversal detected: {member_path}") from error
    return target


def missing_archive_result(archive_path: Path) -> ArchiveResult:
    return ArchiveResult(
        ok=False,
        code="ARCHIVE_NOT_FOUND",
        archive_path=archive_path,
        message=f"Archive file not found: {archive_path}",
    )


def build_archive_adapter(settings: "Settings") -> ArchiveAdapter:
    if settings.archiver == "zip":
        from archivist.archive.zip_adapter import ZipFileAdapter

        return ZipFileAdapter()

    from archivist.archive.seven_zip import SevenZipAdapter

    return SevenZipAdapter(
        binary=settings.seven_zip_binary,
        timeout_seconds=settings.archive_timeout_seconds,
    )


def adapter_for_archive(
    archive_path: Path,
    default: ArchiveAdapter,
    *,
    seven_zip_binary: str = "7z",
    timeout_seconds: float = 3600.0,
) -> ArchiveAdapter:
    """Pick the back-end able to read ``archive_path`` based on its suffix."""
    suffix = archive_path.suffix.lower()
    if suffix == default.extension:
        return default
    if suffix == ".zip":
        from archivist.archive.zip_adapter import ZipFileAdapter

        return ZipFileAdapter()
    if suffix == ".7z":
        from archivist.archive.seven_zip import SevenZipAdapter

        return SevenZipAdapter(binary=seven_zip_binary, timeout_seconds=timeout_seconds)
    return default
