#!/usr/bin/env python3
"""Review sync CLI.

Command-line tool for syncing Gerrit changes (or GitHub pull requests) into
the local store.

Usage:
    sync.py                      # Incremental sync (default)
    sync.py --full               # Forced full sync (default look-back window)
    sync.py --change 42          # Re-sync one stored change by local id
    sync.py --check              # Are recently updated changes missing locally?
    sync.py --status             # Show sync status
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from reviewsync.config import get_config
from reviewsync.errors import ReviewSyncError
from reviewsync.logging_config import configure_logging
from reviewsync.service import build_runner
from reviewsync.storage import ChangeStore


def show_status(config):
    """Display the cursor and row counts of the local store."""
    store = ChangeStore(config.database_path)
    try:
        repository_id = store.get_repository_id(config.repository_name)
        cursor = store.get_cursor(repository_id) if repository_id else None

        print("Review Sync Status")
        print("=" * 50)
        print(f"Source: {config.source}")
        print(f"Repository: {config.repository_name}")
        print(f"Database: {config.database_path}")
        print(f"Last synced: {cursor.isoformat() if cursor else 'never'}")
        print()
        for table in ("changes", "revisions", "files", "diffs", "comments", "messages", "labels"):
            print(f"  {table}: {store.count(table)}")
    finally:
        store.close()


async def run_sync(config, full: bool = False, change_id: int | None = None) -> int:
    """Run one sync in the foreground and print its result."""
    runner = build_runner(config)
    coordinator = runner.coordinator
    try:
        if change_id is not None:
            print(f"Syncing change {change_id}...")
            result = await coordinator.sync_one(change_id, force=True)
        else:
            mode = "full" if full else "incremental"
            print(f"Syncing {config.repository_name} from {config.source} (mode={mode})...")
            result = await coordinator.sync(config.repository_name, force_full=full)
        await coordinator.analysis.wait_idle()
    finally:
        await coordinator.client.close()
        runner.store.close()

    print(f"  Changes: {result.changes_seen} seen, {result.changes_created} created, "
          f"{result.changes_updated} updated, {result.changes_unchanged} unchanged")
    print(f"  Transitions: {result.transitions}, Analyses: {result.analyses_scheduled}")
    print(f"  Patchsets: {result.revisions_synced}, Files: {result.files_synced}")
    print(f"  Diffs: {result.diffs_stored} stored, {result.diffs_stats_only} stats only")
    print(f"  Comments: {result.comments_synced}, Messages: {result.messages_synced}, "
          f"Votes: {result.labels_synced}")
    print(f"  Errors: {result.errors}")
    print(f"  Duration: {result.duration_seconds:.1f}s")
    return 1 if result.errors else 0


async def run_check(config) -> None:
    """Print the dashboard update check as JSON."""
    runner = build_runner(config)
    try:
        result = await runner.check_updates(config.repository_name)
    finally:
        await runner.coordinator.client.close()
        runner.store.close()
    print(json.dumps(result.to_dict(), indent=2))


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Sync code-review changes into the local store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                   # Incremental sync (since last cursor)
  %(prog)s --full            # Full sync of the default window
  %(prog)s --change 42       # Re-sync one change
  %(prog)s --status          # Display sync status

Configuration (.env):
    SOURCE=gerrit
    GERRIT_BASE_URL=https://go-review.googlesource.com
    GERRIT_PROJECT=go
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--full", action="store_true", help="Forced full sync")
    mode_group.add_argument("--change", type=int, metavar="ID", help="Re-sync one stored change")
    mode_group.add_argument("--check", action="store_true", help="Check for missing recent changes")
    mode_group.add_argument("--status", action="store_true", help="Display sync status")

    args = parser.parse_args()

    try:
        config = get_config()
    except Exception as e:
        print(f"ERROR: invalid configuration: {e}")
        sys.exit(1)

    configure_logging(config.log_level, config.log_format)

    if args.status:
        show_status(config)
        return

    if args.check:
        asyncio.run(run_check(config))
        return

    try:
        code = asyncio.run(run_sync(config, full=args.full, change_id=args.change))
    except ReviewSyncError as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    print("\nDone.")
    sys.exit(code)


if __name__ == "__main__":
    main()
