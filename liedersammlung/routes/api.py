"""
Liedersammlung - JSON API Routes

Provides all REST API endpoints for:
- Song listings and single-song resolution (with ETag / 304 handling)
- The MongoDB title cache (quick list and resync from WebDAV)
- Uploading song archives and video links, deleting content
- The WebDAV image proxy
- WebDAV status, health check and the one-off migration
- Debug views of what the cache and the storage box contain
"""

import os
import re
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

import aiofiles
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel

from liedersammlung.config import (
    APP_VERSION,
    CACHE_CONTROL,
    CATEGORIES,
    IMAGE_CACHE_CONTROL,
    IMAGE_MIME_TYPES,
    MAX_UPLOAD_BYTES,
    MAX_UPLOAD_MB,
    MIGRATION_TOKEN,
    VIDEOS,
    validate_mongo_uri,
)
from liedersammlung.database import SONGS
from liedersammlung.services.content_manager import (
    add_video,
    delete_song,
    process_song_archive,
)
from liedersammlung.services.migration import migrate_local_to_webdav
from liedersammlung.services.resolver import ContentResolver, SongNotFound
from liedersammlung.webdav import category_bases

router = APIRouter(prefix="/api", tags=["API"])

# Segment characters allowed by the image proxy: letters, digits, combining
# marks, whitespace and a few punctuation characters seen in song titles
_SEGMENT = r"[\w\u0300-\u036f\s.()'&+,~-]+"
PROXY_PATH_RE = re.compile(
    rf"^(scores|lyrics)/({_SEGMENT})/({_SEGMENT})\.(jpg|jpeg|png|gif|webp)$",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------
class DeleteRequest(BaseModel):
    songName: str = ""
    category: str = ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def get_resolver(request: Request) -> ContentResolver:
    """The process-wide resolver built in the lifespan."""
    return request.app.state.resolver


def _etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """Weak comparison of an ``If-None-Match`` header against *etag*."""
    if not if_none_match:
        return False
    wanted = etag[2:] if etag.startswith("W/") else etag
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == wanted:
            return True
    return False


def _conditional_json(request: Request, payload: Any, etag: str) -> Response:
    headers = {"ETag": etag, "Cache-Control": CACHE_CONTROL}
    if _etag_matches(request.headers.get("if-none-match"), etag):
        return Response(status_code=304, headers=headers)
    return JSONResponse(content=payload, headers=headers)


def _result_response(result: Dict[str, Any]) -> Any:
    """Turn a service result dict into a response or an HTTPException."""
    if "error" not in result:
        return result
    status = result.get("status", 400)
    if status >= 500:
        return JSONResponse(status_code=status, content={"error": result["error"]})
    raise HTTPException(status_code=status, detail=result["error"])


def _validate_category(category: str, allow_videos: bool = False) -> str:
    allowed = CATEGORIES + ((VIDEOS,) if allow_videos else ())
    if category not in allowed:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid type: {category}. Must be one of: {', '.join(allowed)}",
        )
    return category


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------
@router.get("/songs")
async def api_list_songs(
    request: Request,
    type: str = Query("lyrics"),
    minimal: bool = Query(False),
    resolver: ContentResolver = Depends(get_resolver),
):
    """List all songs of a category (or all videos), sorted by title."""
    _validate_category(type, allow_videos=True)

    try:
        if type == VIDEOS:
            return await resolver.list_videos()
        songs = await resolver.list_songs(type)
    except Exception as e:
        logger.exception("❌ Listing {} failed: {}", type, e)
        return JSONResponse(status_code=500, content={"error": "Failed to read songs"})

    etag = resolver.listing_etag(type, songs)
    return _conditional_json(request, resolver.listing_payload(songs, minimal), etag)


@router.get("/song")
async def api_get_song(
    request: Request,
    folder: str = Query(""),
    type: str = Query("scores"),
    resolver: ContentResolver = Depends(get_resolver),
):
    """Resolve one song folder to its ordered image URLs."""
    if not folder.strip():
        raise HTTPException(status_code=400, detail="folder is required")
    _validate_category(type)

    try:
        song = await resolver.resolve(type, folder)
    except SongNotFound:
        return JSONResponse(status_code=404, content={"error": "Song not found"})
    except Exception as e:
        logger.exception("❌ Resolving {}/{} failed: {}", type, folder, e)
        return JSONResponse(status_code=500, content={"error": "Failed to load song"})

    return _conditional_json(request, resolver.song_payload(song), resolver.song_etag(song))


# ---------------------------------------------------------------------------
# Metadata cache
# ---------------------------------------------------------------------------
@router.get("/cache-songs")
async def api_cache_songs(
    category: Optional[str] = Query(None),
    resolver: ContentResolver = Depends(get_resolver),
):
    """Quick title list from MongoDB; seeds from WebDAV when empty."""
    if category:
        _validate_category(category)
    try:
        return {"songs": await resolver.quick_titles(category)}
    except Exception as e:
        logger.error("❌ Title cache read failed: {}", e)
        return JSONResponse(status_code=500, content={"error": str(e)})


@router.post("/cache-songs")
async def api_refresh_cache(resolver: ContentResolver = Depends(get_resolver)):
    """Re-scan both categories on WebDAV and upsert every folder."""
    if resolver.remote is None:
        return JSONResponse(status_code=400, content={"ok": False, "reason": "webdav disabled"})
    if resolver.cache is None:
        return JSONResponse(status_code=500, content={"ok": False, "reason": "no collection"})
    try:
        return await resolver.refresh_cache()
    except Exception as e:
        logger.error("❌ Cache refresh failed: {}", e)
        return JSONResponse(status_code=500, content={"error": str(e)})


# ---------------------------------------------------------------------------
# Upload / delete
# ---------------------------------------------------------------------------
def _get_temp_path(filename: str) -> str:
    """Generate a secure temporary file path."""
    safe = PurePosixPath(filename.replace("\\", "/")).name
    return os.path.join(tempfile.gettempdir(), f"lsm_{uuid.uuid4().hex}_{safe}")


@router.post("/upload-song")
async def api_upload_song(
    zipFile: Optional[UploadFile] = File(None),
    type: str = Form(""),
    resolver: ContentResolver = Depends(get_resolver),
):
    """Upload a ZIP archive of page images as a new song folder."""
    if zipFile is None or not zipFile.filename:
        raise HTTPException(status_code=400, detail="No ZIP file found")
    _validate_category(type)

    temp_path = _get_temp_path(zipFile.filename)
    total_size = 0

    try:
        async with aiofiles.open(temp_path, "wb") as f:
            while chunk := await zipFile.read(65536):
                total_size += len(chunk)
                if total_size > MAX_UPLOAD_BYTES:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Maximum size is {MAX_UPLOAD_MB}MB.",
                    )
                await f.write(chunk)

        logger.info("📤 Upload received: {} ({} bytes) -> {}", zipFile.filename, total_size, type)
        result = await process_song_archive(resolver, temp_path, zipFile.filename, type)
        return _result_response(result)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception("❌ Upload processing error: {}", e)
        return JSONResponse(status_code=500, content={"error": "Upload failed"})
    finally:
        try:
            os.remove(temp_path)
        except FileNotFoundError:
            pass


@router.post("/upload-video")
async def api_upload_video(
    title: str = Form(""),
    url: str = Form(""),
    resolver: ContentResolver = Depends(get_resolver),
):
    """Add a YouTube link."""
    try:
        result = await add_video(resolver, title, url)
    except Exception as e:
        logger.exception("❌ Video upload error: {}", e)
        return JSONResponse(status_code=500, content={"error": "Video upload failed"})
    return _result_response(result)


@router.delete("/delete-song")
async def api_delete_song(
    body: DeleteRequest,
    resolver: ContentResolver = Depends(get_resolver),
):
    """Delete a song folder or a video."""
    try:
        result = await delete_song(resolver, body.songName.strip(), body.category.strip())
    except Exception as e:
        logger.exception("❌ Delete error: {}", e)
        return JSONResponse(status_code=500, content={"error": "Delete failed"})
    return _result_response(result)


# ---------------------------------------------------------------------------
# Image proxy
# ---------------------------------------------------------------------------
@router.get("/webdav-file")
async def api_webdav_file(
    path: str = Query(""),
    resolver: ContentResolver = Depends(get_resolver),
):
    """Stream one image from WebDAV so credentials never reach the browser."""
    match = PROXY_PATH_RE.match(path)
    if not match or any(seg.strip() in (".", "..") for seg in path.split("/")):
        raise HTTPException(status_code=400, detail="Invalid or disallowed path")
    if resolver.remote is None:
        raise HTTPException(status_code=400, detail="WebDAV is not enabled")

    literal, rest = path.split("/", 1)
    bases = [literal] + [b for b in category_bases(literal.lower()) if b != literal]

    content = None
    for base in bases:
        content = await resolver.remote.client.download_file(f"/{base}/{rest}")
        if content is not None:
            break
    if content is None:
        raise HTTPException(status_code=404, detail="File not found")

    mime = IMAGE_MIME_TYPES.get("." + match.group(4).lower(), "application/octet-stream")
    return Response(
        content=content,
        media_type=mime,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )


# ---------------------------------------------------------------------------
# Status / health
# ---------------------------------------------------------------------------
@router.get("/health")
async def health_check(resolver: ContentResolver = Depends(get_resolver)):
    """Health check endpoint for the service."""
    public_base = resolver.image_url.public_base if resolver.remote_enabled else None
    return {
        "status": "ok",
        "version": APP_VERSION,
        "storageMode": resolver.storage_mode,
        "webdavPublicBase": public_base or None,
        "metadataStore": resolver.cache is not None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/webdav-status")
async def api_webdav_status(resolver: ContentResolver = Depends(get_resolver)):
    """Report whether the storage box answers."""
    if resolver.remote is None:
        return {"enabled": False}
    status = await resolver.remote.client.check_connection()
    if status.get("connected"):
        return {"enabled": True, "ok": True}
    return JSONResponse(
        status_code=500,
        content={"enabled": True, "ok": False, "error": status.get("error")},
    )


@router.post("/migrate-webdav")
async def api_migrate_webdav(
    request: Request,
    resolver: ContentResolver = Depends(get_resolver),
):
    """
    Copy the local content tree to WebDAV.

    When MIGRATION_TOKEN is set the ``x-migration-token`` header must match.
    """
    if resolver.remote is None:
        raise HTTPException(status_code=400, detail="WebDAV is not enabled")
    if MIGRATION_TOKEN and request.headers.get("x-migration-token") != MIGRATION_TOKEN:
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        summary = await migrate_local_to_webdav(
            resolver.remote.client, resolver.local.root.parent
        )
    except Exception as e:
        logger.exception("❌ Migration failed: {}", e)
        return JSONResponse(
            status_code=500, content={"message": "Migration failed", "error": str(e)}
        )
    return {"message": "Migration complete", "summary": summary}


# ---------------------------------------------------------------------------
# Debug
# ---------------------------------------------------------------------------
@router.get("/debug/status")
async def api_debug_status(resolver: ContentResolver = Depends(get_resolver)):
    """WebDAV and MongoDB reachability."""
    webdav_ok: Any = False
    if resolver.remote is not None:
        status = await resolver.remote.client.check_connection()
        webdav_ok = True if status.get("connected") else status.get("error") or "error"

    db_ok: Any
    if resolver.cache is None:
        db_ok = validate_mongo_uri() or "not connected"
    else:
        try:
            db_ok = await resolver.cache.store.ping()
        except Exception as e:
            db_ok = str(e) or "error"

    return {"webdavEnabled": resolver.remote_enabled, "webdavOk": webdav_ok, "dbOk": db_ok}


@router.get("/debug/songs")
async def api_debug_songs(resolver: ContentResolver = Depends(get_resolver)):
    """Compare what the cache holds with the folders on WebDAV."""
    try:
        db_count = 0
        db_sample: list = []
        if resolver.cache is not None:
            db_count = await resolver.cache.store.count(SONGS)
            db_sample = await resolver.cache.store.sample_songs(50)

        webdav = None
        if resolver.remote is not None:
            webdav = {
                category: sorted(await resolver.remote_folder_names(category))
                for category in CATEGORIES
            }
    except Exception as e:
        return JSONResponse(status_code=500, content={"error": str(e)})

    return {
        "dbCount": db_count,
        "dbSample": db_sample,
        "webdav": webdav,
        "webdavEnabled": resolver.remote_enabled,
    }


@router.get("/debug/videos")
async def api_debug_videos(resolver: ContentResolver = Depends(get_resolver)):
    """What each video tier holds."""
    out: Dict[str, Any] = {}

    if resolver.cache is None:
        out["db"] = "no-db"
    else:
        try:
            out["db"] = await resolver.cache.store.list_videos()
        except Exception as e:
            out["db"] = {"error": str(e)}

    if resolver.remote is None:
        out["webdav"] = "disabled"
    else:
        entries = await resolver.remote.client.list_directory(f"/{VIDEOS}")
        out["webdav"] = [
            e.name for e in entries if not e.is_directory and e.name.endswith(".json")
        ]

    videos_dir = resolver.local.root.parent / VIDEOS
    out["local"] = sorted(p.name for p in videos_dir.glob("*.json")) if videos_dir.is_dir() else []
    return out


@router.get("/debug/list-folder")
async def api_debug_list_folder(
    folder: str = Query(""),
    type: str = Query("scores"),
    resolver: ContentResolver = Depends(get_resolver),
):
    """Raw WebDAV listing of one song folder (both category spellings)."""
    category = type.lower()
    _validate_category(category)
    if not folder:
        raise HTTPException(status_code=400, detail="folder is required")
    if resolver.remote is None:
        raise HTTPException(status_code=400, detail="WebDAV is not enabled")

    entries = []
    for base in category_bases(category):
        entries = await resolver.remote.client.list_directory(f"/{base}/{folder}")
        if entries:
            break
    return {"files": [{"name": e.name, "type": e.type} for e in entries]}
