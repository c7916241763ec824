#!/usr/bin/env python3
"""
Re-sync the cached repository sizes of a user with GitHub.

Usage:
  - Ensure GITHUB_TOKEN and GITHUB_USERNAME are set (or present in .env)
  - Ensure DATABASE_URL points to the database used by the running app
  - Run: python scripts/reconcile_repositories.py --user <user-id> [--cleanup]

This script will:
 1. Check every repository of the user still exists on GitHub
 2. Compare the cached size with the total size of the release assets
 3. Overwrite cached sizes that drifted by more than the bulk threshold (10MB)
 4. With --cleanup, mark repositories missing on GitHub as inactive
"""
import argparse
import asyncio
import sys
from dataclasses import replace

from dotenv import load_dotenv

from freedrive.config import Settings
from freedrive.coordinator import FileCoordinator
from freedrive.database import build_engine, build_session_factory
from freedrive.github import GitHubClient
from freedrive.logging_config import configure_logging
from freedrive.store import RecordStore

load_dotenv()


def print_report(report):
    print(f"\nValid repositories: {len(report.valid)}")
    for name in report.valid:
        print(f"  {name}")

    print(f"\nSynced repositories: {len(report.synced)}")
    for sync in report.synced:
        print(f"  {sync.repository}: {sync.old_size_mb:.2f}MB -> {sync.new_size_mb:.2f}MB "
              f"(diff {sync.difference_mb:.2f}MB, {sync.asset_count} assets)")

    print(f"\nInvalid repositories: {len(report.invalid)}")
    for invalid in report.invalid:
        print(f"  {invalid.repository}: {invalid.reason}")


async def run(settings, user_id, cleanup):
    engine = build_engine(settings.database_url)
    store = RecordStore(build_session_factory(engine))
    provider = GitHubClient.from_settings(settings)
    coordinator = FileCoordinator.build(store, provider, settings)
    try:
        if cleanup:
            result = await coordinator.cleanup_orphaned_repositories(user_id)
            print_report(result["validation"])
            print(f"\nMarked inactive: {', '.join(result['cleaned']) or '(none)'}")
            for err in result["errors"]:
                print(f"  failed to deactivate {err['repository']}: {err['error']}")
        else:
            print_report(await coordinator.reconcile_all_repositories(user_id))
    finally:
        await provider.aclose()
        engine.dispose()


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--user', required=True, help='id of the user whose repositories are checked')
    p.add_argument('--db', help='DATABASE_URL override')
    p.add_argument('--cleanup', action='store_true', help='deactivate repositories missing on GitHub')
    args = p.parse_args()

    configure_logging()
    settings = Settings.from_env()
    if args.db:
        settings = replace(settings, database_url=args.db.strip())

    print(f"Using DATABASE_URL={settings.database_url}")
    try:
        asyncio.run(run(settings, args.user, args.cleanup))
    except ValueError as e:
        # missing GitHub configuration
        print(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
