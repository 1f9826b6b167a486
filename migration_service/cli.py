"""
Command-line interface for the migration service.
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from .config import load_config
from .coordinator import MigrationCoordinator
from .errors import MigrationError
from .models import QueueItemStatus, RecursiveSyncResult

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: Whether to enable debug logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_coordinator(args: argparse.Namespace) -> MigrationCoordinator:
    """Create and configure the migration coordinator.

    Args:
        args: Command line arguments

    Returns:
        Configured MigrationCoordinator instance
    """
    config = load_config(args.config)
    if config.state_file is None:
        config.state_file = Path('migration_state.json')
    return MigrationCoordinator(config)


def _require_token(args: argparse.Namespace) -> str:
    if not args.access_token:
        raise MigrationError("An access token is required (--access-token or MIGRATION_ACCESS_TOKEN)")
    return args.access_token


async def handle_enqueue_all(coordinator: MigrationCoordinator, args: argparse.Namespace) -> None:
    auth = coordinator.create_auth(_require_token(args), args.refresh_token)
    result = await coordinator.enqueue_all(args.user, args.folder_id, auth, args.name)
    print(f"Scanned {len(result.folders)} folders: {result.added} files queued, "
          f"{result.skipped} skipped")
    if args.process:
        await coordinator.start_processing(args.user, auth)
        _print_stats(coordinator, args.user)


async def handle_process(coordinator: MigrationCoordinator, args: argparse.Namespace) -> None:
    auth = coordinator.create_auth(_require_token(args), args.refresh_token)
    await coordinator.start_processing(args.user, auth)
    _print_stats(coordinator, args.user)


async def handle_album(coordinator: MigrationCoordinator, args: argparse.Namespace) -> None:
    auth = coordinator.create_auth(_require_token(args), args.refresh_token)
    item = await coordinator.add_album_to_queue(args.user, args.folder_id, args.name, auth)
    print(f"Queued {item.folder_name} for album {item.mode.value.lower()} ({item.id})")
    if args.process:
        await coordinator.start_album_processing(args.user, auth)
        for album in coordinator.get_album_queue(args.user):
            print(f"{album.folder_name}: {album.status.value} "
                  f"{album.uploaded_files}/{album.total_files or 0} files"
                  + (f" - {album.error}" if album.error else ""))


async def handle_queue(coordinator: MigrationCoordinator, args: argparse.Namespace) -> None:
    status = QueueItemStatus(args.status) if args.status else None
    items = coordinator.get_queue(args.user, status)
    if not items:
        print("Queue is empty")
    for item in items:
        print(f"{item.id}  {item.status.value:<10} {item.file_name}"
              + (f"  ({item.error})" if item.error else ""))


async def handle_stats(coordinator: MigrationCoordinator, args: argparse.Namespace) -> None:
    _print_stats(coordinator, args.user)


async def handle_sync_status(coordinator: MigrationCoordinator, args: argparse.Namespace) -> None:
    auth = coordinator.create_auth(_require_token(args), args.refresh_token)
    result = await coordinator.recursively_refresh_folder_sync_status(args.user, args.folder_id, auth)
    _print_sync_tree(result)
    print(f"Processed {result.processed_count} folders in {result.duration_ms}ms")


def _print_stats(coordinator: MigrationCoordinator, user_key: str) -> None:
    print(json.dumps({
        'uploads': coordinator.get_stats(user_key),
        'albums': coordinator.get_album_stats(user_key),
    }, indent=2))


def _print_sync_tree(result: RecursiveSyncResult, indent: int = 0) -> None:
    if result.status is None:
        summary = "not scanned"
    else:
        summary = (f"{result.status.status.value} {result.status.synced_count}/"
                   f"{result.status.total_count} ({result.status.percentage}%)")
    print(f"{'  ' * indent}{result.folder_name or result.folder_id}: {summary}")
    for child in result.subfolders:
        _print_sync_tree(child, indent + 1)


HANDLERS = {
    'enqueue-all': handle_enqueue_all,
    'process': handle_process,
    'album': handle_album,
    'queue': handle_queue,
    'stats': handle_stats,
    'sync-status': handle_sync_status,
}


async def run(args: argparse.Namespace) -> None:
    coordinator = create_coordinator(args)
    try:
        await HANDLERS[args.command](coordinator, args)
    finally:
        await coordinator.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drive to Photos migration CLI")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Enable verbose logging")
    parser.add_argument('-c', '--config', type=Path,
                        help="Path to config file")
    parser.add_argument('-u', '--user', type=str, default='default',
                        help="User key the queues belong to")
    parser.add_argument('--access-token', type=str,
                        default=os.environ.get('MIGRATION_ACCESS_TOKEN'),
                        help="OAuth access token")
    parser.add_argument('--refresh-token', type=str,
                        default=os.environ.get('MIGRATION_REFRESH_TOKEN'),
                        help="OAuth refresh token")

    subparsers = parser.add_subparsers(dest='command', required=True)

    enqueue_parser = subparsers.add_parser('enqueue-all',
                                           help="Queue every file below a folder")
    enqueue_parser.add_argument('folder_id', type=str, nargs='?', default='root',
                                help="Root folder id (default: My Drive)")
    enqueue_parser.add_argument('-n', '--name', type=str,
                                help="Folder display name")
    enqueue_parser.add_argument('-p', '--process', action='store_true',
                                help="Process the upload queue afterwards")

    subparsers.add_parser('process', help="Process the upload queue")

    album_parser = subparsers.add_parser('album',
                                         help="Queue a folder to become an album")
    album_parser.add_argument('folder_id', type=str, help="Folder id")
    album_parser.add_argument('name', type=str, help="Folder name, used as album title")
    album_parser.add_argument('-p', '--process', action='store_true',
                              help="Process the album queue afterwards")

    queue_parser = subparsers.add_parser('queue', help="List upload queue items")
    queue_parser.add_argument('-s', '--status', type=str,
                              choices=[s.value for s in QueueItemStatus],
                              help="Only show items with this status")

    subparsers.add_parser('stats', help="Show queue statistics")

    sync_parser = subparsers.add_parser('sync-status',
                                        help="Show the sync status of a folder tree")
    sync_parser.add_argument('folder_id', type=str, nargs='?', default='root',
                             help="Folder id (default: My Drive)")
    return parser


def main(argv: Optional[list] = None) -> None:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except MigrationError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
