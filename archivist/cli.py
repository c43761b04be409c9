from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict

from dotenv import load_dotenv
from pydantic import ValidationError

from archivist.archive.adapter import build_archive_adapter
from archivist.backup.runner import BackupOptions, run_backup
from archivist.config.profile import BackupProfile, load_profile
from archivist.config.settings import Settings, get_settings
from archivist.notify.notifier import build_notifier
from archivist.restore.orchestrator import RestoreOrchestrator
from archivist.restore.prompts import ConsolePrompter
from archivist.storage.catalog import CatalogRepo
from archivist.storage.models import BackupRecord
from archivist.storage.retention import purge_backups_older_than_days
from archivist.utils.error_taxonomy import ArchivistError, friendly_message
from archivist.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="archivist")
    parser.add_argument(
        "--env-file", type=str, default=".env", help="Path to .env file"
    )
    parser.add_argument("--log-level", default=None, help="Override log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_backup = subparsers.add_parser("backup", help="Run a backup from a profile")
    p_backup.add_argument("--profile", default=None, help="Backup profile YAML")
    p_backup.add_argument(
        "--category",
        action="append",
        default=None,
        help="Back up only this category (repeatable)",
    )
    p_backup.add_argument(
        "--strategy", choices=["Full", "Differential"], default=None
    )

    p_restore = subparsers.add_parser("restore", help="Interactive restore")
    p_restore.add_argument("--backup-id", type=int, default=None)
    p_restore.add_argument(
        "--conflict", choices=["overwrite", "skip", "rename"], default=None
    )
    p_restore.add_argument(
        "--ask-conflicts",
        action="store_true",
        help="Ask for the conflict policy instead of using the configured default",
    )
    p_restore.add_argument(
        "--registry-mode",
        choices=["import-all", "extract-only", "ask-per-item"],
        default=None,
    )
    p_restore.add_argument(
        "--profile",
        default=None,
        help="Profile whose SSH destination is used to fetch remote archives",
    )

    p_history = subparsers.add_parser("history", help="List recorded backups")
    p_history.add_argument("--type", dest="backup_type", default=None)
    p_history.add_argument(
        "--strategy", choices=["Full", "Differential"], default=None
    )
    p_history.add_argument("--limit", type=int, default=20)
    p_history.add_argument("--json", action="store_true", help="Print JSON")
    p_history.add_argument(
        "--backfill",
        action="store_true",
        help="Fill missing file counts from archive listings first",
    )

    p_delete = subparsers.add_parser("delete", help="Delete a backup and its archive")
    p_delete.add_argument("backup_id", type=int)

    p_purge = subparsers.add_parser("purge", help="Delete backups older than N days")
    p_purge.add_argument("--days", type=int, required=True)
    p_purge.add_argument("--type", dest="backup_type", default=None)
    p_purge.add_argument("--dry-run", action="store_true")
    p_purge.add_argument("--report-path", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if os.path.exists(args.env_file):
        load_dotenv(dotenv_path=args.env_file)
        get_settings.cache_clear()

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Settings validation error:\n{e}", file=sys.stderr)
        return 1

    setup_logging(args.log_level or settings.log_level, settings.log_file)

    try:
        if args.command == "backup":
            return _cmd_backup(args, settings)
        if args.command == "restore":
            return _cmd_restore(args, settings)
        if args.command == "history":
            return _cmd_history(args, settings)
        if args.command == "delete":
            return _cmd_delete(args, settings)
        if args.command == "purge":
            return _cmd_purge(args, settings)
    except ArchivistError as e:
        print(f"{friendly_message(e.code)}\n{e}", file=sys.stderr)
        return 2
    return 1


def _load_profile_or_none(path: str | None, settings: Settings) -> BackupProfile | None:
    profile_path = path or settings.resolved_profile_path
    try:
        return load_profile(profile_path)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError subclass.
        print(f"Profile error in {profile_path}:\n{e}", file=sys.stderr)
    except OSError as e:
        print(f"Failed to read profile {profile_path}: {e}", file=sys.stderr)
    return None


def _cmd_backup(args: argparse.Namespace, settings: Settings) -> int:
    profile = _load_profile_or_none(args.profile, settings)
    if profile is None:
        return 1
    try:
        categories = profile.select_categories(args.category)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1

    token = settings.notify_token.get_secret_value() if settings.notify_token else None
    result = run_backup(
        profile,
        catalog=CatalogRepo(settings.resolved_catalog_path),
        adapter=build_archive_adapter(settings),
        options=BackupOptions(
            temp_dir=settings.resolved_temp_dir,
            compression_level=settings.compression_level,
            differential_per_file=settings.differential_per_file,
            ssh_binary=settings.ssh_binary,
            transfer_max_retries=settings.transfer_max_retries,
        ),
        categories=[category.name for category in categories],
        strategy=args.strategy,
        notifier=build_notifier(
            settings.notify_url,
            token,
            timeout_seconds=settings.notify_timeout_seconds,
        ),
    )
    print("\n".join(result.summary_lines()))
    return 0 if result.status == "completed" else 1


def _cmd_restore(args: argparse.Namespace, settings: Settings) -> int:
    ssh_destination = None
    if args.profile:
        profile = _load_profile_or_none(args.profile, settings)
        if profile is None:
            return 1
        if profile.destination.kind == "SSH":
            ssh_destination = profile.destination

    orchestrator = RestoreOrchestrator.from_settings(
        settings,
        catalog=CatalogRepo(settings.resolved_catalog_path, create_if_missing=False),
        adapter=build_archive_adapter(settings),
        prompter=ConsolePrompter(),
        conflict_policy=args.conflict,
        ask_conflict_policy=bool(args.ask_conflicts),
        registry_mode=args.registry_mode,
        ssh_destination=ssh_destination,
    )
    summary = orchestrator.run(args.backup_id)
    print("\n".join(summary.render_lines()))
    if summary.state == "Failed" or summary.counts["Failed"]:
        return 1
    return 0


def _cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    catalog = CatalogRepo(settings.resolved_catalog_path, create_if_missing=False)
    if args.backfill:
        updated = catalog.backfill_statistics(build_archive_adapter(settings))
        logger.info("Backfilled statistics for %d backups", updated)

    records = catalog.list_backups(
        backup_type=args.backup_type,
        strategy=args.strategy,
        limit=args.limit,
    )
    if args.json:
        print(json.dumps([asdict(record) for record in records], ensure_ascii=False, indent=2))
        return 0
    if not records:
        print("No backups recorded.")
        return 0
    for record in records:
        print(format_history_line(record))
    return 0


def format_history_line(record: BackupRecord) -> str:
    status = "ok" if record.success else "FAILED"
    parent = f" <- #{record.parent_backup_id}" if record.parent_backup_id else ""
    return (
        f"#{record.id:<5} {record.timestamp}  {record.backup_type:<12} "
        f"{record.strategy:<12}{parent}  {record.file_count} files  "
        f"{record.size_bytes} bytes  {status}  {record.destination_path}"
    )


def _cmd_delete(args: argparse.Namespace, settings: Settings) -> int:
    catalog = CatalogRepo(settings.resolved_catalog_path, create_if_missing=False)
    result = catalog.delete_backup(args.backup_id)
    if not result.deleted:
        print(
            f"Delete failed [{result.error_code}]: {result.error_message}",
            file=sys.stderr,
        )
        if result.technical_details:
            print(result.technical_details, file=sys.stderr)
        return 1

    print(f"Deleted backup #{result.backup_id}")
    if result.artifact_missing:
        print("  archive file was already missing")
    if result.orphaned_children:
        print(
            "  differential backups now without a parent: "
            + ", ".join(f"#{child}" for child in result.orphaned_children)
        )
    return 0


def _cmd_purge(args: argparse.Namespace, settings: Settings) -> int:
    catalog = CatalogRepo(settings.resolved_catalog_path, create_if_missing=False)
    result = purge_backups_older_than_days(
        catalog=catalog,
        days=args.days,
        dry_run=bool(args.dry_run),
        backup_type=args.backup_type,
        report_path=args.report_path,
    )
    print(json.dumps(asdict(result), ensure_ascii=False, indent=2, sort_keys=True))
    return 1 if result.failed_backups else 0


if __name__ == "__main__":
    sys.exit(main())
