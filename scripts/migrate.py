"""
Liedersammlung Migration
========================
One-off jobs that move content from the local ``public`` tree to the storage
box and the MongoDB metadata cache.

Usage:
  python scripts/migrate.py webdav                  # public/images + public/videos -> WebDAV
  python scripts/migrate.py legacy-scores           # public/Noten/<folder> -> /scores/<folder>
  python scripts/migrate.py videos                  # public/videos/*.json -> MongoDB

Optional:
  --content-dir DIR   Local content root (default: CONTENT_DIR)
  --legacy-dir DIR    Legacy scores tree (legacy-scores only, default: <content-dir>/Noten)

Credentials come from the same environment variables as the web service
(STORAGEBOX_WEBDAV_URL, STORAGEBOX_USER, STORAGEBOX_PASS, MONGODB_URI, MONGODB_DB).
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger

from liedersammlung.config import (
    CONTENT_DIR,
    LOG_LEVEL,
    STORAGEBOX_PASS,
    STORAGEBOX_USER,
    STORAGEBOX_WEBDAV_URL,
    VIDEOS,
)
from liedersammlung.database import connect_metadata_store
from liedersammlung.services.migration import (
    migrate_legacy_scores,
    migrate_local_to_webdav,
    migrate_videos_to_store,
)
from liedersammlung.webdav import WebDAVClient


def _webdav_client() -> WebDAVClient:
    client = WebDAVClient(STORAGEBOX_WEBDAV_URL, STORAGEBOX_USER, STORAGEBOX_PASS)
    if not client.is_configured:
        logger.error(
            "❌ WebDAV is not configured. Set STORAGEBOX_WEBDAV_URL, "
            "STORAGEBOX_USER and STORAGEBOX_PASS."
        )
        sys.exit(1)
    return client


async def run(args: argparse.Namespace) -> dict:
    content_dir = Path(args.content_dir)

    if args.command == "videos":
        store = connect_metadata_store()
        if store is None:
            logger.error("❌ MONGODB_URI is not set or invalid")
            sys.exit(1)
        await store.ensure_indexes()
        return await migrate_videos_to_store(store, content_dir / VIDEOS)

    client = _webdav_client()
    try:
        if args.command == "webdav":
            return await migrate_local_to_webdav(client, content_dir)

        store = connect_metadata_store()
        if store is not None:
            try:
                await store.ensure_indexes()
            except Exception as e:
                logger.warning("⚠️ MongoDB unavailable, continuing without metadata: {}", e)
                store = None
        legacy_dir = Path(args.legacy_dir) if args.legacy_dir else content_dir / "Noten"
        return await migrate_legacy_scores(client, store, legacy_dir)
    finally:
        await client.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Migrate Liedersammlung content to WebDAV and MongoDB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "command",
        choices=["webdav", "legacy-scores", "videos"],
        help="Migration job to run",
    )
    parser.add_argument(
        "--content-dir",
        default=str(CONTENT_DIR),
        help="Local content root holding images/ and videos/",
    )
    parser.add_argument(
        "--legacy-dir", default=None, help="Legacy Noten directory (legacy-scores only)"
    )
    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level=LOG_LEVEL, colorize=True)

    summary = asyncio.run(run(args))
    print(json.dumps(summary, indent=2, ensure_ascii=False))

    failed = sum(
        part.get("failed", 0)
        for part in (summary.values() if args.command == "webdav" else [summary])
        if isinstance(part, dict)
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
