"""
Liedersammlung - Content Management Service

Handles:
- Unpacking uploaded ZIP archives of scanned pages into a song folder
- Writing the images to the storage box (or the local content directory)
- Registering songs in the MongoDB metadata cache
- Adding YouTube video links (MongoDB, or JSON descriptors as fallback)
- Deleting songs and videos from every place they are kept

Every operation returns a result dict.  Failures carry an ``error`` message
and the HTTP ``status`` the route should answer with.
"""

import json
import shutil
import zipfile
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List

from loguru import logger

from liedersammlung.config import CATEGORIES, IMAGE_MIME_TYPES, VIDEOS
from liedersammlung.database import make_slug
from liedersammlung.services.resolver import ContentResolver
from liedersammlung.utils import extract_video_id, sanitize_filename
from liedersammlung.webdav import category_bases, is_image_file


def _error(message: str, status: int = 400) -> Dict[str, Any]:
    return {"error": message, "status": status}


def _safe_segment(name: str) -> bool:
    """True if *name* can be used as a single path segment."""
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name


# ---------------------------------------------------------------------------
# Archive extraction
# ---------------------------------------------------------------------------
def song_name_from_archive(archive_name: str) -> str:
    """Folder name for an uploaded archive: its filename without ``.zip``."""
    name = PurePosixPath(archive_name.replace("\\", "/")).name
    if name.lower().endswith(".zip"):
        name = name[:-4]
    return sanitize_filename(name)


def extract_images(archive_path: str) -> Dict[str, bytes]:
    """
    Read every image entry of a ZIP archive, flattened to its basename.

    Directory structure inside the archive is ignored; a later entry with the
    same basename replaces an earlier one.  Raises ``zipfile.BadZipFile`` for
    corrupt archives.
    """
    images: Dict[str, bytes] = {}
    with zipfile.ZipFile(archive_path, "r") as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            basename = PurePosixPath(info.filename).name
            # Resource forks added by macOS archivers
            if basename.startswith("._") or not is_image_file(basename):
                continue
            images[basename] = zf.read(info)
    return images


# ---------------------------------------------------------------------------
# Song upload
# ---------------------------------------------------------------------------
async def process_song_archive(
    resolver: ContentResolver,
    archive_path: str,
    archive_name: str,
    category: str,
) -> Dict[str, Any]:
    """
    Full pipeline: unpack archive -> store images -> register metadata.

    The metadata upsert runs in the background; the song is readable from
    the storage box as soon as this returns.
    """
    if category not in CATEGORIES:
        return _error(f"Invalid category: {category}")
    if not archive_name.lower().endswith(".zip"):
        return _error("Only .zip archives are supported")

    song_name = song_name_from_archive(archive_name)
    if not _safe_segment(song_name) or song_name == "unknown":
        return _error("Archive name does not yield a valid song name")

    try:
        images = extract_images(archive_path)
    except zipfile.BadZipFile:
        logger.error("❌ Corrupted ZIP file: {}", archive_name)
        return _error("The ZIP file is corrupted or invalid")

    if not images:
        return _error("No image files found in the archive")

    stored: List[str] = []
    if resolver.remote is not None:
        client = resolver.remote.client
        for name, data in sorted(images.items()):
            mime = IMAGE_MIME_TYPES.get(PurePosixPath(name).suffix.lower(), "image/jpeg")
            ok = await client.upload_file(f"/{category}/{song_name}/{name}", data, mime)
            if not ok:
                logger.error("❌ Upload of {}/{} stopped at {}", category, song_name, name)
                return _error(f"Failed to store '{name}' on the storage box", 502)
            stored.append(name)
    else:
        target = resolver.local.root / category / song_name
        target.mkdir(parents=True, exist_ok=True)
        for name, data in sorted(images.items()):
            (target / name).write_bytes(data)
            stored.append(name)

    if resolver.cache is not None:
        resolver.schedule(
            resolver.cache.store.upsert_song(
                category, song_name, stored, base=category if resolver.remote is not None else None
            ),
            f"metadata upsert of {category}/{song_name}",
        )

    logger.info("📤 Stored {} image(s) for {}/{}", len(stored), category, song_name)
    return {
        "message": f'Song "{song_name}" uploaded: {len(stored)} image(s) stored in {category}.',
        "songName": song_name,
        "extractedFiles": len(stored),
        "category": category,
        "images": stored,
    }


# ---------------------------------------------------------------------------
# Videos
# ---------------------------------------------------------------------------
async def add_video(resolver: ContentResolver, title: str, url: str) -> Dict[str, Any]:
    """
    Register a YouTube link under *title*.

    MongoDB is used when available (same slug = update).  Without a
    metadata store a JSON descriptor ``{title, url, created}`` is written to
    ``/videos`` on the storage box or in the local content directory.
    """
    title = (title or "").strip()
    url = (url or "").strip()
    if not title or not url:
        return _error("Title and URL are required")

    video_id = extract_video_id(url)
    if video_id is None:
        return _error("Invalid YouTube URL")

    if resolver.cache is not None:
        slug, created = await resolver.cache.store.upsert_video(title, url, video_id)
        verb = "added" if created else "updated"
        return {"message": f'Video "{title}" {verb}.', "slug": slug, "videoId": video_id}

    file_name = f"{sanitize_filename(title)}.json"
    descriptor = {
        "title": title,
        "url": url,
        "created": datetime.now(timezone.utc).isoformat(),
    }
    payload = json.dumps(descriptor, indent=2, ensure_ascii=False).encode("utf-8")

    if resolver.remote is not None:
        ok = await resolver.remote.client.upload_file(
            f"/{VIDEOS}/{file_name}", payload, "application/json"
        )
        if not ok:
            return _error("Failed to store the video descriptor", 502)
    else:
        videos_dir = resolver.local.root.parent / VIDEOS
        videos_dir.mkdir(parents=True, exist_ok=True)
        (videos_dir / file_name).write_bytes(payload)

    logger.info("🎬 Video descriptor stored: {}", file_name)
    return {"message": f'Video "{title}" added.', "fileName": file_name, "videoId": video_id}


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------
async def delete_video(resolver: ContentResolver, name: str) -> Dict[str, Any]:
    """Delete a video by title (slug in MongoDB, descriptor file otherwise)."""
    if resolver.cache is not None:
        if not await resolver.cache.store.delete_video(make_slug(name)):
            return _error(f'Video "{name}" not found', 404)
        return {"message": f'Video "{name}" deleted.', "songName": name, "category": VIDEOS}

    file_name = f"{sanitize_filename(name)}.json"
    if resolver.remote is not None:
        client = resolver.remote.client
        target = f"/{VIDEOS}/{file_name}"
        if not await client.exists(target):
            return _error(f'Video "{name}" not found', 404)
        if not await client.delete_remote(target):
            return _error(f'Failed to delete "{name}" from the storage box', 502)
    else:
        path = resolver.local.root.parent / VIDEOS / file_name
        if not path.is_file():
            return _error(f'Video "{name}" not found', 404)
        path.unlink()

    logger.info("🗑️ Video descriptor deleted: {}", file_name)
    return {"message": f'Video "{name}" deleted.', "songName": name, "category": VIDEOS}


async def delete_song(
    resolver: ContentResolver, song_name: str, category: str
) -> Dict[str, Any]:
    """
    Delete a song folder of *category* (or a video when category is ``videos``).

    Returns a 404 result when nothing by that name exists.
    """
    if not song_name or not category:
        return _error("Song name and category are required")
    if category == VIDEOS:
        return await delete_video(resolver, song_name)
    if category not in CATEGORIES:
        return _error(f"Invalid category: {category}")
    if not _safe_segment(song_name):
        return _error("Invalid song name")

    if resolver.remote is not None:
        client = resolver.remote.client
        target = None
        for base in category_bases(category):
            if await client.exists(f"/{base}/{song_name}"):
                target = f"/{base}/{song_name}"
                break
        if target is None:
            return _error(f'Song "{song_name}" not found', 404)
        if not await client.delete_remote(target):
            return _error(f'Failed to delete "{song_name}" from the storage box', 502)
    else:
        path = resolver.local.root / category / song_name
        if not path.is_dir():
            return _error(f'Song "{song_name}" not found', 404)
        shutil.rmtree(path)
        logger.info("🗑️ Deleted local folder {}", path)

    if resolver.cache is not None:
        resolver.schedule(
            resolver.cache.store.delete_song(category, song_name),
            f"metadata removal of {category}/{song_name}",
        )

    return {
        "message": f'Song "{song_name}" deleted from {category}.',
        "songName": song_name,
        "category": category,
    }
