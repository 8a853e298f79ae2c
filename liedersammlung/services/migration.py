"""
Liedersammlung - Migration Utilities

One-off jobs that move content out of the local ``public`` tree:

- local images and video descriptors -> storage box (``migrate_local_to_webdav``)
- legacy ``public/Noten/<folder>`` tree -> ``/scores/<folder>`` plus metadata
- local video descriptors -> MongoDB ``videos`` collection

Each job returns a summary dict and keeps going after single-file failures.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from liedersammlung.config import CATEGORIES, IMAGE_MIME_TYPES, VIDEOS
from liedersammlung.database import MetadataStore
from liedersammlung.services.resolver import filter_images
from liedersammlung.utils import extract_video_id, parse_descriptor
from liedersammlung.webdav import WebDAVClient


async def _copy_folder(
    client: WebDAVClient, local_dir: Path, remote_dir: str
) -> Dict[str, Any]:
    """Upload every image of *local_dir* to *remote_dir*."""
    images = filter_images([p.name for p in local_dir.iterdir() if p.is_file()])
    uploaded = 0
    failed = 0
    for name in images:
        try:
            data = (local_dir / name).read_bytes()
        except OSError as e:
            logger.error("❌ Cannot read {}: {}", local_dir / name, e)
            failed += 1
            continue
        mime = IMAGE_MIME_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")
        if await client.upload_file(f"{remote_dir}/{name}", data, mime):
            uploaded += 1
        else:
            failed += 1
    return {"images": images, "uploaded": uploaded, "failed": failed}


async def migrate_category(
    client: WebDAVClient, content_dir: Path, category: str
) -> Dict[str, Any]:
    local_base = Path(content_dir) / "images" / category
    if not local_base.is_dir():
        return {"skipped": True}

    folders = 0
    uploaded = 0
    failed = 0
    for song_dir in sorted(p for p in local_base.iterdir() if p.is_dir()):
        folders += 1
        result = await _copy_folder(client, song_dir, f"/{category}/{song_dir.name}")
        uploaded += result["uploaded"]
        failed += result["failed"]

    logger.info(
        "🚚 {}: {} folder(s), {} uploaded, {} failed", category, folders, uploaded, failed
    )
    return {"folders": folders, "uploaded": uploaded, "failed": failed}


async def migrate_video_files(client: WebDAVClient, content_dir: Path) -> Dict[str, Any]:
    videos_dir = Path(content_dir) / VIDEOS
    if not videos_dir.is_dir():
        return {"skipped": True}

    files = sorted(videos_dir.glob("*.json"))
    uploaded = 0
    failed = 0
    for path in files:
        if await client.upload_file(
            f"/{VIDEOS}/{path.name}", path.read_bytes(), "application/json"
        ):
            uploaded += 1
        else:
            failed += 1
    logger.info("🚚 videos: {} file(s), {} uploaded, {} failed", len(files), uploaded, failed)
    return {"files": len(files), "uploaded": uploaded, "failed": failed}


async def migrate_local_to_webdav(
    client: WebDAVClient, content_dir: Path
) -> Dict[str, Any]:
    """Copy the local content tree to the storage box; summary per category."""
    summary: Dict[str, Any] = {}
    for category in CATEGORIES:
        summary[category] = await migrate_category(client, content_dir, category)
    summary[VIDEOS] = await migrate_video_files(client, content_dir)
    return summary


async def migrate_legacy_scores(
    client: WebDAVClient,
    store: Optional[MetadataStore],
    legacy_dir: Path,
) -> Dict[str, Any]:
    """
    Move the historic ``Noten`` tree into ``/scores`` (always lowercase)
    and register every folder in the metadata cache when one is given.
    """
    legacy_dir = Path(legacy_dir)
    if not legacy_dir.is_dir():
        logger.info("📂 No legacy directory at {}, nothing to do", legacy_dir)
        return {"skipped": True}

    folders = sorted(p for p in legacy_dir.iterdir() if p.is_dir())
    logger.info("🚚 Found {} legacy folder(s) in {}", len(folders), legacy_dir)

    total_images = 0
    uploaded = 0
    failed = 0
    for i, folder in enumerate(folders, 1):
        result = await _copy_folder(client, folder, f"/scores/{folder.name}")
        total_images += len(result["images"])
        uploaded += result["uploaded"]
        failed += result["failed"]

        if store is not None and result["images"]:
            try:
                await store.upsert_song(
                    "scores", folder.name, result["images"], base="scores"
                )
            except Exception as e:
                logger.warning("⚠️ Metadata upsert failed for {}: {}", folder.name, e)

        if i % 20 == 0:
            logger.info(
                "📊 Progress: {}/{} folder(s), {}/{} image(s) uploaded",
                i,
                len(folders),
                uploaded,
                total_images,
            )

    return {
        "folders": len(folders),
        "totalImages": total_images,
        "uploaded": uploaded,
        "failed": failed,
        "mongo": store is not None,
    }


async def migrate_videos_to_store(
    store: MetadataStore, videos_dir: Path
) -> Dict[str, Any]:
    """Seed the ``videos`` collection from local JSON descriptors."""
    videos_dir = Path(videos_dir)
    if not videos_dir.is_dir():
        logger.info("📂 No local videos directory at {}, nothing to do", videos_dir)
        return {"skipped": True}

    files = sorted(videos_dir.glob("*.json"))
    inserted = 0
    updated = 0
    failed = 0
    for path in files:
        data = parse_descriptor(path.read_text(encoding="utf-8"))
        title = data.get("title")
        url = data.get("url")
        if not title or not url:
            continue
        video_id = extract_video_id(url)
        if video_id is None:
            logger.warning("⚠️ {} does not hold a YouTube link", path.name)
            failed += 1
            continue
        try:
            _, created = await store.upsert_video(title, url, video_id)
        except Exception as e:
            logger.error("❌ Could not store video {}: {}", path.name, e)
            failed += 1
            continue
        if created:
            inserted += 1
        else:
            updated += 1

    return {"files": len(files), "inserted": inserted, "updated": updated, "failed": failed}
