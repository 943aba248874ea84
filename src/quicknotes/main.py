#!/usr/bin/env python
"""Command line entry point for QuickNotes backups."""
import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path

from quicknotes import __version__
from quicknotes.backup import BackupManager
from quicknotes.config import config
from quicknotes.exceptions import QuickNotesError
from quicknotes.notifications import LoggingNotificationSink
from quicknotes.observability import configure_logging

PASSWORD_ENV = "QUICKNOTES_BACKUP_PASSWORD"


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="quicknotes-backup", description="QuickNotes encrypted backups"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--data-dir",
        help="Directory holding the database and blobs",
        type=str,
        default=None,
    )
    parser.add_argument(
        "--backup-dir",
        help="Directory for backup files",
        type=str,
        default=None,
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("QUICKNOTES_LOG_LEVEL", "INFO"),
    )

    sub = parser.add_subparsers(dest="command", required=True)
    create = sub.add_parser("create", help="Create an encrypted backup")
    create.add_argument(
        "--stored", action="store_true", help="Use the stored auto-backup password"
    )
    sub.add_parser("list", help="List recorded backups")

    info = sub.add_parser("info", help="Show the manifest of a backup")
    info.add_argument("path")
    info.add_argument("--verify", action="store_true", help="Also verify every file")

    restore = sub.add_parser("restore", help="Restore live data from a backup")
    restore.add_argument("path")
    restore.add_argument("--yes", action="store_true", help="Don't ask for confirmation")

    delete = sub.add_parser("delete", help="Delete a backup by id")
    delete.add_argument("backup_id")

    sub.add_parser("cleanup", help="Remove data left over from earlier restores")
    sub.add_parser("set-password", help="Store the auto-backup password in the OS keyring")
    sub.add_parser("clear-password", help="Remove the stored auto-backup password")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.data_dir:
        config.data_dir = Path(args.data_dir).expanduser()
    if args.backup_dir:
        config.backup_dir = Path(args.backup_dir).expanduser()


def read_password(confirm: bool = False) -> str:
    """Password from the environment, else prompted for."""
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password
    password = getpass.getpass("Backup password: ")
    if confirm and getpass.getpass("Repeat password: ") != password:
        raise SystemExit("Passwords do not match")
    return password


async def run(args, manager: BackupManager) -> int:
    if args.command == "create":
        password = None if args.stored else read_password(confirm=True)
        record = await manager.create_backup(password)
        print(f"Created {record.path} ({record.size} bytes)")
    elif args.command == "list":
        for record in await manager.list_backups():
            present = "" if Path(record.path).exists() else "  (file removed)"
            print(f"{record.id}  {record.timestamp.isoformat()}  {record.size:>10}  {record.path}{present}")
    elif args.command == "info":
        manifest = await manager.get_backup_info(args.path, read_password(), verify=args.verify)
        print(f"Version:  {manifest.version}")
        print(f"Created:  {manifest.timestamp}")
        print(f"Files:    {len(manifest.files)}")
        print(f"Bytes:    {sum(f.size for f in manifest.files)}")
        if args.verify:
            print("All files verified")
    elif args.command == "restore":
        if not args.yes:
            answer = input("This replaces all current notes and attachments. Continue? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("Aborted")
                return 1
        result = await manager.restore_backup(args.path, read_password())
        print(f"Restored {result.file_count} files ({result.blob_count} attachments)")
        for path in result.aside_paths:
            print(f"Previous data kept at {path}")
    elif args.command == "delete":
        await manager.delete_backup(args.backup_id)
        print(f"Deleted backup {args.backup_id}")
    elif args.command == "cleanup":
        removed = await manager.cleanup_stale_artifacts()
        print(f"Removed {len(removed)} leftover paths")
    elif args.command == "set-password":
        manager.credentials.store_auto_backup_password(read_password(confirm=True))
        print("Auto-backup password stored")
    elif args.command == "clear-password":
        if manager.credentials.delete_auto_backup_password():
            print("Auto-backup password removed")
        else:
            print("No auto-backup password was stored")
    return 0


def main(argv=None):
    """Run the QuickNotes backup CLI."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=False)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    manager = BackupManager(config, notifications=LoggingNotificationSink())
    try:
        code = asyncio.run(run(args, manager))
    except QuickNotesError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        code = 1
    finally:
        # The CLI exits before any grace period ends; `cleanup` removes the leftovers
        manager.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
