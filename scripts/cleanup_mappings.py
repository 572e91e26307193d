#!/usr/bin/env python
"""Delete stale, low-confidence global vendor mappings.

User-owned mappings are never touched.

Usage:
    python scripts/cleanup_mappings.py --min-confidence 0.3 --older-than-days 30
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Allow importing vendorlens from the project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from vendorlens.database import AsyncSessionLocal  # noqa: E402
from vendorlens.query import VendorMappingQueries  # noqa: E402

logger = logging.getLogger("cleanup_mappings")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Prune stale global vendor mappings")
    parser.add_argument(
        "--min-confidence",
        type=float,
        default=0.3,
        help="Delete mappings strictly below this confidence",
    )
    parser.add_argument(
        "--older-than-days",
        type=int,
        default=30,
        help="Only delete mappings created more than this many days ago",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s"
    )
    async with AsyncSessionLocal() as db:
        removed = await VendorMappingQueries(db).cleanup(
            min_confidence=args.min_confidence,
            older_than_days=args.older_than_days,
        )
    logger.info(
        "Removed %d global mappings below %.2f older than %d days",
        removed,
        args.min_confidence,
        args.older_than_days,
    )


if __name__ == "__main__":
    asyncio.run(main())
