from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path, PurePosixPath

from archivist.config.profile import DestinationConfig
from archivist.utils.error_taxonomy import TransferError
from archivist.utils.retry import is_transient_transfer_error, run_with_retry

logger = logging.getLogger(__name__)


def deliver_archive(
    archive_path: Path,
    destination: DestinationConfig,
    *,
    ssh_binary: str = "scp",
    max_retries: int = 2,
) -> str:
    """Move a finished archive to its destination and return its location.

    The returned string is what the catalog stores as ``destination_path``:
    a filesystem path for local and network-share destinations, and
    ``user@host:/path/name`` for SSH.
    """
    if destination.kind == "SSH":
        return _upload_ssh(
            archive_path, destination, ssh_binary=ssh_binary, max_retries=max_retries
        )
    return str(_move_to_directory(archive_path, destination))


def fetch_archive(
    remote_location: str,
    destination: DestinationConfig | None,
    work_dir: Path,
    *,
    ssh_binary: str = "scp",
    max_retries: int = 2,
) -> Path:
    """Copy an SSH-hosted archive into ``work_dir`` for restore."""
    work_dir.mkdir(parents=True, exist_ok=True)
    remote_name = PurePosixPath(remote_location.split(":", 1)[-1]).name
    local_path = work_dir / remote_name
    command = [ssh_binary, "-q", "-B"]
    if destination is not None:
        command += ["-P", str(destination.port)]
    command += [remote_location, str(local_path)]
    _run_scp(command, max_retries=max_retries)
    return local_path


def _move_to_directory(archive_path: Path, destination: DestinationConfig) -> Path:
    target_dir = Path(destination.path).expanduser()
    if destination.kind == "NetworkShare" and not _share_reachable(target_dir):
        raise TransferError(f"Network share is not reachable: {destination.path}")

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / archive_path.name
        if archive_path.resolve() == target.resolve():
            return target
        if target.exists():
            target.unlink()
        shutil.move(str(archive_path), str(target))
    except OSError as error:
        raise TransferError(
            f"Failed to move archive to {target_dir}: {error}"
        ) from error
    logger.info("Archive stored at %s", target)
    return target


def _share_reachable(target_dir: Path) -> bool:
    # The share itself cannot be created from here, only folders inside it.
    return target_dir.exists() or target_dir.parent.exists()


def _upload_ssh(
    archive_path: Path,
    destination: DestinationConfig,
    *,
    ssh_binary: str,
    max_retries: int,
) -> str:
    remote_dir = destination.path.rstrip("/") or "."
    host = destination.host or ""
    remote_host = f"{destination.user}@{host}" if destination.user else host
    remote_location = f"{remote_host}:{remote_dir}/{archive_path.name}"
    command = [
        ssh_binary,
        "-q",
        "-B",
        "-P",
        str(destination.port),
        str(archive_path),
        remote_location,
    ]
    _run_scp(command, max_retries=max_retries)
    logger.info("Archive uploaded to %s", remote_location)
    return remote_location


def _run_scp(command: list[str], *, max_retries: int) -> None:
    def _attempt() -> None:
        try:
            completed = subprocess.run(
                command, capture_output=True, timeout=3600, check=False
            )
        except FileNotFoundError as error:
            raise TransferError(f"Transfer utility not found: {command[0]}") from error
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise ConnectionError(
                f"{command[0]} exited with status {completed.returncode}: {stderr}"
            )

    try:
        run_with_retry(
            operation=_attempt,
            should_retry=is_transient_transfer_error,
            max_retries=max_retries,
        )
    except TransferError:
        raise
    except (ConnectionError, OSError, subprocess.SubprocessError) as error:
        raise TransferError(f"SSH transfer failed: {error}") from error
