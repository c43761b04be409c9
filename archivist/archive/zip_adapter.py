from __future__ import annotations

import shutil
from pathlib import Path
from zipfile import ZIP_DEFLATED, BadZipFile, ZipFile, ZipInfo

from archivist.archive.adapter import (
    ArchiveMember,
    ArchiveResult,
    archive_file_name,
    member_matches,
    missing_archive_result,
    normalize_member_path,
    safe_member_target,
)


class ZipFileAdapter:
    """In-process archiver with the same contract as the 7-Zip adapter."""

    compression_method = "zip"
    extension = ".zip"

    def compress(
        self,
        source_paths: list[Path],
        destination_dir: Path,
        archive_name: str,
        compression_level: int,
        *,
        root: Path | None = None,
    ) -> ArchiveResult:
        destination_dir.mkdir(parents=True, exist_ok=True)
        archive_path = destination_dir / archive_file_name(archive_name, self.extension)
        level = min(max(int(compression_level), 0), 9)

        try:
            entries = _collect_entries(source_paths, root)
            if not entries:
                return ArchiveResult(
                    ok=False,
                    code="ARCHIVE_FAILED",
                    archive_path=archive_path,
                    message="No source paths given for compression.",
                )
            # Pre-1980 mtimes are clamped instead of failing the whole archive.
            with ZipFile(
                archive_path,
                mode="w",
                compression=ZIP_DEFLATED,
                compresslevel=level,
                strict_timestamps=False,
            ) as archive:
                for arcname, path in entries:
                    if path.is_dir():
                        archive.writestr(ZipInfo(arcname + "/"), b"")
                    else:
                        archive.write(path, arcname=arcname)
        except (OSError, ValueError) as error:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_FAILED",
                archive_path=archive_path,
                message=f"{error.__class__.__name__}: {error}",
            )

        return ArchiveResult(ok=True, archive_path=archive_path, exit_code=0)

    def extract_all(self, archive_path: Path, dest_dir: Path) -> ArchiveResult:
        return self._extract(archive_path, dest_dir, member_globs=None)

    def extract_member(
        self, archive_path: Path, dest_dir: Path, member_glob: str
    ) -> ArchiveResult:
        return self._extract(archive_path, dest_dir, member_globs=[member_glob])

    def extract_members(
        self, archive_path: Path, dest_dir: Path, member_globs: list[str]
    ) -> ArchiveResult:
        return self._extract(archive_path, dest_dir, member_globs=list(member_globs))

    def list_members(self, archive_path: Path) -> ArchiveResult:
        if not archive_path.is_file():
            return missing_archive_result(archive_path)
        try:
            with ZipFile(archive_path, "r") as archive:
                members = tuple(
                    ArchiveMember(
                        path=normalize_member_path(info.filename),
                        size_bytes=info.file_size,
                        is_dir=info.is_dir(),
                    )
                    for info in archive.infolist()
                )
        except (BadZipFile, OSError) as error:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_FAILED",
                archive_path=archive_path,
                message=f"Invalid ZIP archive: {error}",
            )
        return ArchiveResult(ok=True, archive_path=archive_path, members=members)

    def _extract(
        self,
        archive_path: Path,
        dest_dir: Path,
        *,
        member_globs: list[str] | None,
    ) -> ArchiveResult:
        if not archive_path.is_file():
            return missing_archive_result(archive_path)

        extracted: list[str] = []
        try:
            with ZipFile(archive_path, "r") as archive:
                for info in archive.infolist():
                    name = normalize_member_path(info.filename)
                    if member_globs is not None and not member_matches(
                        name, member_globs
                    ):
                        continue
                    target = safe_member_target(dest_dir, name)
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                    else:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        with archive.open(info, "r") as source, target.open(
                            "wb"
                        ) as destination:
                            shutil.copyfileobj(source, destination)
                    extracted.append(name)
        except (BadZipFile, OSError, ValueError) as error:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_FAILED",
                archive_path=archive_path,
                message=f"{error.__class__.__name__}: {error}",
                extracted=tuple(extracted),
            )

        if member_globs is not None and not extracted:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_MEMBER_NOT_FOUND",
                archive_path=archive_path,
                message=f"No archive members match: {', '.join(member_globs)}",
            )
        return ArchiveResult(
            ok=True,
            archive_path=archive_path,
            exit_code=0,
            extracted=tuple(extracted),
        )


def _collect_entries(
    source_paths: list[Path], root: Path | None
) -> list[tuple[str, Path]]:
    entries: list[tuple[str, Path]] = []
    seen: set[str] = set()
    for source in source_paths:
        if not source.exists():
            raise FileNotFoundError(f"Source path not found: {source}")
        base = root if root is not None else source.parent
        candidates = [source]
        if source.is_dir():
            candidates.extend(sorted(source.rglob("*"), key=lambda item: item.as_posix()))
        for candidate in candidates:
            arcname = normalize_member_path(
                candidate.resolve().relative_to(base.resolve()).as_posix()
            )
            if not arcname or arcname in seen:
                continue
            seen.add(arcname)
            entries.append((arcname, candidate))
    return entries
