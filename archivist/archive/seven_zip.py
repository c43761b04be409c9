from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from pathlib import Path

from archivist.archive.adapter import (
    ArchiveMember,
    ArchiveResult,
    archive_file_name,
    missing_archive_result,
    normalize_member_path,
    safe_member_target,
    select_members,
)
from archivist.utils.error_taxonomy import ErrorCode

logger = logging.getLogger(__name__)

# 7-Zip exit codes: 0 ok, 1 warning (e.g. locked files), 2 fatal, 7 bad command
# line, 8 out of memory, 255 user stop.
_WARNING_EXIT_CODE = 1

_FAILURE_PATTERNS: list[tuple[re.Pattern[str], ErrorCode]] = [
    (re.compile(r"no files to process", re.IGNORECASE), "ARCHIVE_MEMBER_NOT_FOUND"),
    (
        re.compile(r"cannot find (archive|the file specified)", re.IGNORECASE),
        "ARCHIVE_NOT_FOUND",
    ),
    (
        re.compile(r"can ?not open the file as archive", re.IGNORECASE),
        "ARCHIVE_FAILED",
    ),
]


class SevenZipAdapter:
    compression_method = "7z"
    extension = ".7z"

    def __init__(self, *, binary: str = "7z", timeout_seconds: float = 3600.0) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds

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
        if archive_path.exists():
            archive_path.unlink()

        level = min(max(int(compression_level), 0), 9)
        sources = [_source_argument(path, root) for path in source_paths]
        if not sources:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_FAILED",
                archive_path=archive_path,
                message="No source paths given for compression.",
            )

        args = [
            "a",
            "-t7z",
            f"-mx={level}",
            "-y",
            "-ssw",
            str(archive_path.resolve()),
            *sources,
        ]
        result = self._run(args, cwd=root, archive_path=archive_path)
        if result.ok and not archive_path.is_file():
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_FAILED",
                archive_path=archive_path,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                message="7-Zip reported success but produced no archive file.",
            )
        return result

    def extract_all(self, archive_path: Path, dest_dir: Path) -> ArchiveResult:
        if not archive_path.is_file():
            return missing_archive_result(archive_path)

        dest_dir.mkdir(parents=True, exist_ok=True)
        return self._run(
            ["x", str(archive_path), f"-o{dest_dir}", "-y", "-aoa"],
            archive_path=archive_path,
        )

    def extract_member(
        self, archive_path: Path, dest_dir: Path, member_glob: str
    ) -> ArchiveResult:
        return self.extract_members(archive_path, dest_dir, [member_glob])

    def extract_members(
        self, archive_path: Path, dest_dir: Path, member_globs: list[str]
    ) -> ArchiveResult:
        """Extract only members selected by ``member_globs``.

        The selection is resolved against the archive listing first and the
        exact member names are handed to 7-Zip through a list file, so 7-Zip
        never matches (or decompresses) anything outside the set.
        """
        if not archive_path.is_file():
            return missing_archive_result(archive_path)

        listing = self.list_members(archive_path)
        if not listing.ok:
            return listing

        selected = select_members(listing.members, member_globs)
        if not selected:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_MEMBER_NOT_FOUND",
                archive_path=archive_path,
                message=f"No archive members match: {', '.join(member_globs)}",
            )

        try:
            for member in selected:
                safe_member_target(dest_dir, member.path)
        except ValueError as error:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_FAILED",
                archive_path=archive_path,
                message=str(error),
            )

        dest_dir.mkdir(parents=True, exist_ok=True)
        files = [member.path for member in selected if not member.is_dir]
        for member in selected:
            if member.is_dir:
                safe_member_target(dest_dir, member.path).mkdir(
                    parents=True, exist_ok=True
                )

        if not files:
            return ArchiveResult(
                ok=True,
                archive_path=archive_path,
                extracted=tuple(member.path for member in selected),
            )

        with tempfile.TemporaryDirectory(prefix="archivist_7z_") as temp_dir:
            list_file = Path(temp_dir) / "members.txt"
            list_file.write_text("\n".join(files) + "\n", encoding="utf-8")
            result = self._run(
                [
                    "x",
                    str(archive_path),
                    f"-o{dest_dir}",
                    "-y",
                    "-aoa",
                    "-spd",
                    "-scsUTF-8",
                    f"@{list_file}",
                ],
                archive_path=archive_path,
            )

        if not result.ok:
            return result
        return ArchiveResult(
            ok=True,
            archive_path=archive_path,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            extracted=tuple(member.path for member in selected),
        )

    def list_members(self, archive_path: Path) -> ArchiveResult:
        if not archive_path.is_file():
            return missing_archive_result(archive_path)

        result = self._run(["l", "-slt", str(archive_path)], archive_path=archive_path)
        if not result.ok:
            return result
        return ArchiveResult(
            ok=True,
            archive_path=archive_path,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            members=tuple(parse_slt_listing(result.stdout)),
        )

    def _run(
        self,
        args: list[str],
        *,
        archive_path: Path,
        cwd: Path | None = None,
    ) -> ArchiveResult:
        command = [self.binary, args[0], "-sccUTF-8", *args[1:]]
        logger.debug("Running archiver: %s", " ".join(command))
        try:
            completed = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            return ArchiveResult(
                ok=False,
                code="ARCHIVER_MISSING",
                archive_path=archive_path,
                message=f"Archiving utility not found: {self.binary} ({error})",
            )
        except subprocess.TimeoutExpired as error:
            return ArchiveResult(
                ok=False,
                code="ARCHIVE_FAILED",
                archive_path=archive_path,
                stdout=_decode(error.stdout),
                stderr=_decode(error.stderr),
                message=f"Archiving utility timed out after {self.timeout_seconds}s",
            )

        stdout = _decode(completed.stdout)
        stderr = _decode(completed.stderr)
        if completed.returncode == 0:
            return ArchiveResult(
                ok=True,
                archive_path=archive_path,
                exit_code=0,
                stdout=stdout,
                stderr=stderr,
            )
        if completed.returncode == _WARNING_EXIT_CODE:
            logger.warning(
                "7-Zip finished with warnings for %s: %s",
                archive_path,
                stderr.strip() or stdout.strip(),
            )
            return ArchiveResult(
                ok=True,
                archive_path=archive_path,
                exit_code=completed.returncode,
                stdout=stdout,
                stderr=stderr,
            )

        code = map_failure_output(stdout, stderr)
        return ArchiveResult(
            ok=False,
            code=code,
            archive_path=archive_path,
            exit_code=completed.returncode,
            stdout=stdout,
            stderr=stderr,
            message=f"7-Zip exited with status {completed.returncode}",
        )


def map_failure_output(stdout: str, stderr: str) -> ErrorCode:
    combined = f"{stderr}\n{stdout}"
    for pattern, code in _FAILURE_PATTERNS:
        if pattern.search(combined):
            return code
    return "ARCHIVE_FAILED"


def parse_slt_listing(output: str) -> list[ArchiveMember]:
    """Parse ``7z l -slt`` output into members.

    Every member is a block of ``Key = Value`` lines separated by blank lines,
    which keeps names with spaces or non-ASCII characters intact. Blocks
    before the ``----------`` separator describe the archive itself.
    """
    _, separator, body = output.partition("\n----------")
    if not separator:
        return []

    members: list[ArchiveMember] = []
    block: dict[str, str] = {}
    for line in body.splitlines() + [""]:
        if not line.strip():
            member = _member_from_block(block)
            if member is not None:
                members.append(member)
            block = {}
            continue
        key, sep, value = line.partition(" = ")
        if sep:
            block[key.strip()] = value
        elif line.rstrip().endswith(" ="):
            block[line.rstrip()[:-2].strip()] = ""
    return members


def _member_from_block(block: dict[str, str]) -> ArchiveMember | None:
    path = block.get("Path")
    if not path:
        return None
    attributes = block.get("Attributes", "")
    is_dir = block.get("Folder") == "+" or attributes.startswith("D")
    try:
        size = int(block.get("Size") or 0)
    except ValueError:
        size = 0
    return ArchiveMember(
        path=normalize_member_path(path),
        size_bytes=size,
        is_dir=is_dir,
    )


def _source_argument(path: Path, root: Path | None) -> str:
    if root is None:
        return str(path.resolve())
    try:
        return path.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return str(path.resolve())


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return value.decode("utf-8", errors="replace")
