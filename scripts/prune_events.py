from __future__ import annotations

import argparse
import asyncio

from whisprnet.core.logging import configure_logging
from whisprnet.persistence.db import Database
from whisprnet.services.insights import InsightClassifier
from whisprnet.services.pipeline.processor import purge_expired_events, retention_window


async def prune(dry_run: bool) -> None:
    # The cutoff never falls inside the longest rule window.
    database = Database()
    classifier = InsightClassifier()
    try:
        window = retention_window(classifier)
        print(f"retention_minutes={int(window.total_seconds() // 60)}")
        if dry_run:
            print("dry_run=true")
            return
        purged = await purge_expired_events(database, classifier)
        print(f"pruned_events={purged}")
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Purge buffered events outside the retention window")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(prune(args.dry_run))


if __name__ == "__main__":
    main()
