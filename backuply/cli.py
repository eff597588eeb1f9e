import argparse
import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import NoReturn, Optional

import yaml

from .config import DB_PATH_KEY, LOG_LEVEL_KEY, AppConfig
from .exceptions import BackuplyError
from .models import BackupRecord
from .operations import BackupOperations

logger = logging.getLogger('backuply')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = 'backuply.log'


def configure_logging(level: str, log_file: Path) -> None:
    """Send the 'backuply' logger to a file only, never to stdout."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False


def format_timestamp(timestamp: str) -> str:
    """
    Convert ISO format timestamp to a more readable format.

    Args:
        timestamp (str): ISO format timestamp string

    Returns:
        str: Human-readable timestamp in format YYYY-MM-DD HH:MM:SS
    """
    dt = datetime.fromisoformat(timestamp)
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_size(byte_length: int) -> str:
    if byte_length < 1024:
        return f"{byte_length} B"
    if byte_length < 1_048_576:
        return f"{byte_length / 1024:.1f} KB"
    return f"{byte_length / 1_048_576:.1f} MB"


def print_record(record: BackupRecord) -> None:
    """Print the attributes of a backup record as a two-column table."""
    rows = [
        ("id", record.id),
        ("name", record.name),
        ("label", record.label or "-"),
        ("created", format_timestamp(record.created)),
        ("type", record.type.value),
        ("reference_backup", record.based_on or "-"),
        ("size", format_size(record.total_bytes)),
        ("files", str(len(record.file_entries))),
        ("directories", str(len(record.directory_entries))),
        ("source", record.source_root),
        ("location", record.dest_root),
    ]
    for attribute, value in rows:
        print(f"{attribute:<18}{value}")


def print_error_and_exit(error_message: str, exit_code: int = 1) -> NoReturn:
    """
    Print an error message and exit the program with the specified exit code.

    Args:
        error_message (str): The error message to display
        exit_code (int, optional): The exit code to use. Defaults to 1.
    """
    logger.error(error_message)
    print(f"Error: {error_message}", file=sys.stderr)
    sys.exit(exit_code)


def open_operations(args: argparse.Namespace) -> BackupOperations:
    try:
        return BackupOperations(db_path=args.db_path, config=args.config)
    except BackuplyError as e:
        print_error_and_exit(f"Could not open the record store: {e}")


def backup_command(args: argparse.Namespace) -> None:
    """
    Create a full backup, or a differential backup when --ref is given.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - name: User-given backup name
            - source: Directory to back up
            - dest: Directory that will contain the backup
            - ref: Optional ID or name of the reference full backup
            - no_date: Do not add type and date to the backup directory name
    """
    source = Path(args.source)
    if not source.is_dir():
        print_error_and_exit(f"Source directory '{source}' does not exist or is not a directory")

    kind = "differential" if args.ref else "full"
    logger.info(f"Starting {kind} backup '{args.name}'")
    with open_operations(args) as ops:
        result = ops.backup(
            args.name, str(source.resolve()), str(Path(args.dest).resolve()),
            ref=args.ref, use_date=not args.no_date,
        )
    if not result.ok:
        print_error_and_exit(f"Something went wrong creating the backup. Reason: {result.error}")

    print("Backup successfully created. See details below:\n")
    print_record(result.value)


def restore_command(args: argparse.Namespace) -> None:
    """
    Restore a backup (full, or differential merged with its full) to a directory.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - ref: Backup ID or name
            - dest: Directory to restore to (will be created if it doesn't exist)
            - full: With a name, restore the latest FULL backup only
    """
    output_dir = Path(args.dest)
    if output_dir.exists() and not output_dir.is_dir():
        print_error_and_exit(f"'{output_dir}' exists but is not a directory")

    with open_operations(args) as ops:
        result = ops.restore(args.ref, str(output_dir.resolve()), full_only=args.full)
    if not result.ok:
        print_error_and_exit(f"Something went wrong when attempting to restore a backup. Reason: {result.error}")

    report = result.value
    print(f"Backup with ID, {report.record_id}, successfully restored to {output_dir}")
    print(f"{report.files_restored} files, {format_size(report.bytes_restored)}")


def list_command(args: argparse.Namespace) -> None:
    """Display all backups known to the record store, optionally filtered by name."""
    with open_operations(args) as ops:
        result = ops.list_backups(args.name, archived=args.archived)
    if not result.ok:
        print_error_and_exit(f"Could not list backups. Reason: {result.error}")

    records = result.value
    if not records:
        print("No backups found.")
        return

    print(f"{'ID':<38}{'TYPE':<6}{'CREATED':<21}{'SIZE':<11}{'NAME'}")
    for record in records:
        print(
            f"{record.id:<38}{record.type.value:<6}{format_timestamp(record.created):<21}"
            f"{format_size(record.total_bytes):<11}{record.name}"
        )


def show_command(args: argparse.Namespace) -> None:
    with open_operations(args) as ops:
        result = ops.find_backup(args.ref)
    if not result.ok:
        print_error_and_exit(str(result.error))
    print_record(result.value)


def delete_command(args: argparse.Namespace) -> None:
    with open_operations(args) as ops:
        result = ops.delete_backup(args.id, purge=args.purge)
    if not result.ok:
        print_error_and_exit(f"Failed to delete backup {args.id}. Reason: {result.error}")
    print(f"Backup {args.id} deleted.")


def archive_command(args: argparse.Namespace) -> None:
    with open_operations(args) as ops:
        result = ops.archive_backup(args.id)
    if not result.ok:
        print_error_and_exit(f"Failed to archive backup {args.id}. Reason: {result.error}")
    print(f"Backup {args.id} archived.")


def config_command(args: argparse.Namespace) -> None:
    """Set configuration options, or print the current configuration when none are given."""
    updates = {DB_PATH_KEY: args.set_db_path, LOG_LEVEL_KEY: args.set_log_level}
    updates = {key: value for key, value in updates.items() if value is not None}
    if not updates:
        print(yaml.safe_dump(args.config.as_dict(), default_flow_style=False, sort_keys=False), end="")
        return

    for key, value in updates.items():
        try:
            args.config.set(key, value)
        except BackuplyError as e:
            print_error_and_exit(f"Failed to set {key} in App Config: {e}")
        print(f"Setting config option {key}: {args.config.get(key)} ... done")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backuply",
        description="Full and differential backups of directory trees",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    # Global options so they are available for all commands
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to the record store (defaults to the db.path setting)"
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="Directory holding config.yaml and the log file"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    backup_parser = subparsers.add_parser(
        "backup",
        help="Back up a directory (differential when --ref is given)"
    )
    backup_parser.add_argument("--name", required=True, help="The name for this backup")
    backup_parser.add_argument(
        "--source",
        required=True,
        help="The directory that will be at the root of your backup"
    )
    backup_parser.add_argument("--dest", required=True, help="The directory which will contain the backup")
    backup_parser.add_argument(
        "--ref",
        default=None,
        help="ID or name of the full backup a differential backup is based on"
    )
    backup_parser.add_argument(
        "--no-date",
        action="store_true",
        help="Do not append the backup type and date to the backup directory name"
    )

    restore_parser = subparsers.add_parser("restore", help="Restore a backup to a directory")
    restore_parser.add_argument("--ref", required=True, help="The ID or name of the backup to restore")
    restore_parser.add_argument(
        "--dest",
        required=True,
        help="Directory to restore to (will be created if it doesn't exist)"
    )
    restore_parser.add_argument(
        "--full",
        action="store_true",
        help="With a name reference, restore the latest full backup only"
    )

    list_parser = subparsers.add_parser("list", help="List all known backups")
    list_parser.add_argument("--name", default=None, help="Only list backups with this name")
    list_parser.add_argument("--archived", action="store_true", help="List archived backups instead")

    show_parser = subparsers.add_parser("show", help="Show the details of one backup")
    show_parser.add_argument("ref", help="The ID or name of the backup")

    delete_parser = subparsers.add_parser("delete", help="Remove a backup record")
    delete_parser.add_argument("--id", required=True, help="ID of the backup to remove")
    delete_parser.add_argument("--purge", action="store_true", help="Also delete the stored copy from disk")

    archive_parser = subparsers.add_parser("archive", help="Move a backup record to the archive")
    archive_parser.add_argument("--id", required=True, help="ID of the backup to archive")

    config_parser = subparsers.add_parser("config", help="Show or change configuration")
    config_parser.add_argument(
        "--db.path",
        dest="set_db_path",
        default=None,
        help="Path to the local record store used to store backup metadata"
    )
    config_parser.add_argument(
        "--log.level",
        dest="set_log_level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    return parser


def main(argv: Optional[list] = None) -> None:
    """
    Main entry point for the backuply command line interface.
    Parses arguments and dispatches to appropriate command handlers.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        args.config = AppConfig(args.config_dir)
        configure_logging(args.config.log_level, args.config.config_dir / LOG_FILE_NAME)
    except BackuplyError as e:
        print_error_and_exit(f"Failed to initialize App Config: {e}")

    # Command dispatch
    command_handlers = {
        "backup": backup_command,
        "restore": restore_command,
        "list": list_command,
        "show": show_command,
        "delete": delete_command,
        "archive": archive_command,
        "config": config_command,
    }

    if args.command in command_handlers:
        command_handlers[args.command](args)
    else:
        parser.print_help()
        sys.exit(2)


if __name__ == "__main__":
    main()
