"""
Liedersammlung - Content Resolver

Turns ``(category, folder)`` into an ordered list of displayable image URLs
and ``category`` into the listing of all folders, consulting an ordered
chain of sources:

1. :class:`MetadataStoreSource` - MongoDB cache (fast, may be stale)
2. :class:`RemoteStoreSource`   - WebDAV storage box (authoritative)
   or :class:`LocalFilesystemSource` when no storage box is configured

Whenever a source behind the cache answers, the resolver writes the result
back into the cache so the next request is served from MongoDB.
"""

import asyncio
import os
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

from loguru import logger

from liedersammlung.config import CATEGORIES, STORAGEBOX_PUBLIC_BASE_URL, VIDEOS
from liedersammlung.database import MetadataStore, make_slug, utcnow
from liedersammlung.utils import extract_video_id, parse_descriptor
from liedersammlung.webdav import (
    WebDAVClient,
    build_public_url,
    category_bases,
    encode_path,
    is_image_file,
)

# Parallel PROPFINDs while scanning many folders
SCAN_CONCURRENCY = 5


class SongNotFound(LookupError):
    """The folder does not exist in any source that was consulted."""


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------
@dataclass
class ResolvedSong:
    category: str
    folder: str
    title: str
    images: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    source: str = ""
    # Directory spelling on the storage box ("scores" or "Scores"); "" if unknown
    base: str = ""

    @property
    def slug(self) -> str:
        return song_id(self.folder)


def song_id(folder: str) -> str:
    """Stable client-side key for a folder."""
    return "-".join(folder.lower().split())


def other_category(category: str) -> str:
    return CATEGORIES[1] if category == CATEGORIES[0] else CATEGORIES[0]


def to_millis(value: Optional[datetime]) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as UTC."""
    if value is None:
        value = utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def fold_name(name: str) -> str:
    """Comparison key for folder names: NFC-normalised and case-folded."""
    return unicodedata.normalize("NFC", name).casefold()


def filter_images(names: List[str]) -> List[str]:
    """Keep displayable image files, sorted by filename."""
    return sorted(n for n in names if is_image_file(n))


def _from_document(doc: Dict[str, Any], source: str) -> ResolvedSong:
    return ResolvedSong(
        category=doc.get("category", ""),
        folder=doc["folder"],
        title=doc.get("title") or doc["folder"],
        images=list(doc.get("images") or []),
        updated_at=doc.get("updatedAt"),
        created_at=doc.get("createdAt"),
        source=source,
        base=doc.get("base") or "",
    )


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------
class SongSource(ABC):
    """One place that can answer song lookups."""

    name = "source"

    @abstractmethod
    async def resolve(self, category: str, folder: str) -> Optional[ResolvedSong]:
        """Return the song if this source knows it, else None."""

    @abstractmethod
    async def list_folders(self, category: str) -> List[ResolvedSong]:
        """Return every folder of *category* known to this source."""


class MetadataStoreSource(SongSource):
    """The MongoDB cache. Entries with an empty image list are a miss."""

    name = "metadata-store"

    def __init__(self, store: MetadataStore) -> None:
        self.store = store

    async def lookup(self, category: str, folder: str) -> Optional[ResolvedSong]:
        """Cached entry regardless of whether its image list is populated."""
        doc = await self.store.find_song(category, folder)
        return _from_document(doc, self.name) if doc else None

    async def resolve(self, category: str, folder: str) -> Optional[ResolvedSong]:
        song = await self.lookup(category, folder)
        return song if song and song.images else None

    async def list_folders(self, category: str) -> List[ResolvedSong]:
        docs = await self.store.list_songs(category)
        return [_from_document(d, self.name) for d in docs]


class RemoteStoreSource(SongSource):
    """The WebDAV storage box, tolerant of historic naming inconsistencies."""

    name = "webdav"

    def __init__(self, client: WebDAVClient) -> None:
        self.client = client

    async def _list_images(self, path: str) -> Optional[List[str]]:
        entries = await self.client.list_directory(path)
        if not entries:
            return None
        return filter_images([e.name for e in entries if not e.is_directory])

    async def probe(self, category: str, folder: str) -> Optional[ResolvedSong]:
        """
        Find *folder* below one of the spellings of *category*.

        Exact folder names are tried under every base first; only then are
        the category directories listed and matched case-insensitively.
        """
        bases = category_bases(category)
        for base in bases:
            images = await self._list_images(f"/{base}/{folder}")
            if images is not None:
                return ResolvedSong(
                    category, folder, folder, images, source=self.name, base=base
                )

        wanted = fold_name(folder)
        for base in bases:
            entries = await self.client.list_directory(f"/{base}")
            for entry in entries:
                if entry.is_directory and fold_name(entry.name) == wanted:
                    images = await self._list_images(f"/{base}/{entry.name}") or []
                    logger.info(
                        "🔎 '{}' matched remote folder '{}/{}'", folder, base, entry.name
                    )
                    return ResolvedSong(
                        category, entry.name, entry.name, images, source=self.name, base=base
                    )
        return None

    async def resolve(self, category: str, folder: str) -> Optional[ResolvedSong]:
        song = await self.probe(category, folder)
        if song is None:
            # Recover from uploads filed under the wrong category
            song = await self.probe(other_category(category), folder)
            if song is not None:
                logger.info(
                    "🔀 '{}' requested as {} but found in {}",
                    folder,
                    category,
                    song.category,
                )
        return song

    async def folder_names(self, category: str) -> Tuple[str, List[str]]:
        """Subfolders of the first spelling of *category* that lists anything."""
        for base in category_bases(category):
            entries = await self.client.list_directory(f"/{base}")
            if entries:
                return base, [e.name for e in entries if e.is_directory]
        return "", []

    async def list_folders(self, category: str) -> List[ResolvedSong]:
        listed_base, folders = await self.folder_names(category)

        sem = asyncio.Semaphore(SCAN_CONCURRENCY)

        async def _scan(folder: str) -> ResolvedSong:
            async with sem:
                song = await self.probe(category, folder)
            return song or ResolvedSong(
                category, folder, folder, source=self.name, base=listed_base
            )

        songs = await asyncio.gather(*(_scan(f) for f in folders))
        logger.info("🔍 Scanned {} {} folder(s) on WebDAV", len(songs), category)
        return sorted(songs, key=lambda s: s.title)


class LocalFilesystemSource(SongSource):
    """``<content_dir>/images/<category>/<folder>`` on local disk."""

    name = "local"

    def __init__(self, content_dir: Path) -> None:
        self.root = Path(content_dir) / "images"

    def _find_dir(self, category: str, folder: str) -> Optional[Path]:
        base = self.root / category
        exact = base / folder
        if exact.is_dir():
            return exact
        if not base.is_dir():
            return None
        wanted = fold_name(folder)
        for child in base.iterdir():
            if child.is_dir() and fold_name(child.name) == wanted:
                return child
        return None

    def _scan(self, category: str, path: Path) -> ResolvedSong:
        images = filter_images(os.listdir(path))
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return ResolvedSong(
            category, path.name, path.name, images, updated_at=mtime, source=self.name
        )

    async def resolve(self, category: str, folder: str) -> Optional[ResolvedSong]:
        for cat in (category, other_category(category)):
            path = self._find_dir(cat, folder)
            if path is not None:
                return self._scan(cat, path)
        return None

    async def list_folders(self, category: str) -> List[ResolvedSong]:
        base = self.root / category
        if not base.is_dir():
            return []
        songs = []
        for child in base.iterdir():
            if not child.is_dir():
                continue
            try:
                songs.append(self._scan(category, child))
            except OSError as e:
                logger.error("❌ Error reading folder {}: {}", child, e)
        return sorted(songs, key=lambda s: s.title)


# ---------------------------------------------------------------------------
# URL construction
# ---------------------------------------------------------------------------
class ImageUrlBuilder:
    """
    Maps ``category/folder/file`` to the URL the browser should load.

    Direct public URLs need the directory spelling the folder actually lives
    under (*base*); when it is unknown the proxy is used, which tries both.
    """

    def __init__(self, remote: bool, public_base: str = "") -> None:
        self.remote = remote
        self.public_base = public_base

    def __call__(self, category: str, folder: str, filename: str, base: str = "") -> str:
        relative = f"{category}/{folder}/{filename}"
        if not self.remote:
            return f"/images/{encode_path(relative)}"
        if base:
            public = build_public_url(self.public_base, f"{base}/{folder}/{filename}")
            if public:
                return public
        # Credentials stay on the server; the proxy streams the bytes
        return f"/api/webdav-file?path={encode_path(relative)}"


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------
class ContentResolver:
    """Resolution and lazy cache repair over the configured sources."""

    def __init__(
        self,
        store: Optional[MetadataStore],
        webdav: Optional[WebDAVClient],
        content_dir: Path,
        public_base: str = STORAGEBOX_PUBLIC_BASE_URL,
    ) -> None:
        self.cache = MetadataStoreSource(store) if store is not None else None
        self.remote_enabled = webdav is not None and webdav.is_configured
        self.remote = RemoteStoreSource(webdav) if self.remote_enabled else None
        self.local = LocalFilesystemSource(content_dir)
        self.image_url = ImageUrlBuilder(self.remote_enabled, public_base)
        self._pending: Set[asyncio.Task] = set()

    @property
    def chain(self) -> List[SongSource]:
        sources: List[SongSource] = []
        if self.cache is not None:
            sources.append(self.cache)
        sources.append(self.remote if self.remote is not None else self.local)
        return sources

    @property
    def storage_mode(self) -> str:
        return "webdav" if self.remote_enabled else "local"

    # ------------------------------------------------------------------
    # Background persistence
    # ------------------------------------------------------------------
    def schedule(self, coro: Awaitable[Any], description: str) -> asyncio.Task:
        """Run *coro* after the response; failures are logged, not raised."""
        task = asyncio.ensure_future(coro)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("❌ Background {} failed: {}", description, exc)

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for all scheduled background writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Single folder
    # ------------------------------------------------------------------
    async def resolve(self, category: str, folder: str) -> ResolvedSong:
        """
        Resolve one folder through the source chain.

        Raises :class:`SongNotFound` if no source knows the folder.
        """
        cached: Optional[ResolvedSong] = None
        for source in self.chain:
            if source is self.cache:
                try:
                    cached = await self.cache.lookup(category, folder)
                except Exception as e:
                    logger.error("❌ Metadata lookup failed for {}/{}: {}", category, folder, e)
                    continue
                if cached and cached.images:
                    logger.debug("⚡ Cache hit {}/{}", category, cached.folder)
                    return cached
                continue

            song = await source.resolve(category, folder)
            if song is None:
                continue
            if self.cache is not None and song.images:
                replaces = (
                    cached.folder
                    if cached and cached.category in ("", song.category)
                    else None
                )
                try:
                    song.updated_at = await self.cache.store.upsert_song(
                        song.category,
                        song.folder,
                        song.images,
                        replaces=replaces,
                        base=song.base or None,
                    )
                except Exception as e:
                    logger.error("❌ Cache write-back failed for {}/{}: {}", song.category, song.folder, e)
            return song

        raise SongNotFound(f"{category}/{folder}")

    def song_payload(self, song: ResolvedSong) -> Dict[str, Any]:
        return {
            "id": song.slug,
            "title": song.title,
            "category": song.category,
            "folder": song.folder,
            "images": [
                self.image_url(song.category, song.folder, i, song.base) for i in song.images
            ],
        }

    @staticmethod
    def song_etag(song: ResolvedSong) -> str:
        folder = song.folder
        try:
            folder.encode("latin-1")
        except UnicodeEncodeError:
            # Header values travel as latin-1
            folder = quote(folder, safe=" ")
        return (
            f'W/"song-{song.category}-{folder}-{len(song.images)}-'
            f'{to_millis(song.updated_at)}"'
        )

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    async def list_songs(self, category: str) -> List[ResolvedSong]:
        """
        All folders of *category*, sorted by title.

        Cached entries with an empty image list are re-read on the storage
        box and repaired with one bulk write.  An empty cache triggers a full
        remote scan which is returned at once and persisted in the background.
        """
        songs: List[ResolvedSong] = []
        if self.cache is not None:
            try:
                songs = await self.cache.list_folders(category)
            except Exception as e:
                logger.error("❌ Metadata listing failed for {}: {}", category, e)
                songs = []

        if songs:
            if self.remote is not None:
                await self._repair_empty(songs)
            return songs

        fallback = self.remote if self.remote is not None else self.local
        try:
            songs = await fallback.list_folders(category)
        except Exception as e:
            logger.error("❌ {} listing failed for {}: {}", fallback.name, category, e)
            return []

        if songs and self.cache is not None:
            self.schedule(
                self.cache.store.seed_folders(
                    category,
                    [(s.folder, s.images) for s in songs],
                    bases={s.folder: s.base for s in songs if s.base},
                ),
                f"seeding of {category}",
            )
        return songs

    async def _repair_empty(self, songs: List[ResolvedSong]) -> None:
        empty = [s for s in songs if not s.images]
        if not empty:
            return

        sem = asyncio.Semaphore(SCAN_CONCURRENCY)

        async def _probe(song: ResolvedSong) -> Optional[ResolvedSong]:
            async with sem:
                return await self.remote.probe(song.category, song.folder)

        found = await asyncio.gather(*(_probe(s) for s in empty))
        updates = []
        bases = {}
        for song, fresh in zip(empty, found):
            if fresh is not None and fresh.images:
                song.images = fresh.images
                song.base = fresh.base
                updates.append((song.category, song.folder, fresh.images))
                bases[(song.category, song.folder)] = fresh.base
        if not updates:
            return
        try:
            _, now = await self.cache.store.bulk_update_images(updates, bases=bases)
        except Exception as e:
            logger.error("❌ Bulk cache repair failed: {}", e)
            return
        for song in empty:
            if song.images:
                song.updated_at = now

    def listing_payload(self, songs: List[ResolvedSong], minimal: bool) -> List[Dict[str, Any]]:
        out = []
        for song in songs:
            item: Dict[str, Any] = {
                "id": song.slug,
                "title": song.title,
                "folder": song.folder,
                "imageCount": len(song.images),
            }
            if not minimal:
                item["images"] = [
                    self.image_url(song.category, song.folder, i, song.base)
                    for i in song.images
                ]
            out.append(item)
        return out

    @staticmethod
    def listing_etag(category: str, songs: List[ResolvedSong]) -> str:
        stamps = [s.updated_at or s.created_at for s in songs]
        latest = max((to_millis(t) for t in stamps if t is not None), default=None)
        if latest is None:
            latest = to_millis(None)
        return f'W/"songs-{category}-{len(songs)}-{latest}"'

    # ------------------------------------------------------------------
    # Cache refresh
    # ------------------------------------------------------------------
    async def refresh_cache(self) -> Dict[str, Any]:
        """Seed the cache with every folder found on the storage box."""
        total = 0
        upserts = 0
        for category in CATEGORIES:
            base, folders = await self.remote.folder_names(category)
            total += len(folders)
            upserts += await self.cache.store.seed_folders(
                category, [(f, []) for f in folders], bases=dict.fromkeys(folders, base)
            )
        logger.info("🔄 Cache refresh: {} folder(s), {} upsert(s)", total, upserts)
        return {"ok": True, "totalFolders": total, "upserts": upserts}

    async def quick_titles(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Title-only listing straight from the cache.

        When the cache is empty and the storage box is reachable the folders
        are seeded first (images stay empty until a song is opened).
        """
        if self.cache is None:
            return []
        store = self.cache.store
        docs = await store.list_titles(category)
        if docs or self.remote is None:
            return docs

        for cat in [category] if category else list(CATEGORIES):
            base, folders = await self.remote.folder_names(cat)
            await store.seed_folders(
                cat, [(f, []) for f in folders], bases=dict.fromkeys(folders, base)
            )
        return await store.list_titles(category)

    async def remote_folder_names(self, category: str) -> List[str]:
        _, folders = await self.remote.folder_names(category)
        return folders

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    async def list_videos(self) -> List[Dict[str, Any]]:
        """
        Video links from the first tier that has any:
        metadata store, then ``/videos/*.json`` on WebDAV, then local disk.
        """
        videos: List[Dict[str, Any]] = []
        if self.cache is not None:
            try:
                docs = await self.cache.store.list_videos()
                videos = [
                    video_payload(d.get("slug") or make_slug(d.get("title", "")), d)
                    for d in docs
                ]
            except Exception as e:
                logger.error("❌ Video listing from MongoDB failed: {}", e)
        if not videos and self.remote is not None:
            videos = await self._remote_videos()
        if not videos:
            videos = self._local_videos()
        return sorted(videos, key=lambda v: v["title"])

    async def _remote_videos(self) -> List[Dict[str, Any]]:
        client = self.remote.client
        entries = await client.list_directory(f"/{VIDEOS}")
        names = [e.name for e in entries if not e.is_directory and e.name.endswith(".json")]
        videos = []
        for name in names:
            raw = await client.download_file(f"/{VIDEOS}/{name}")
            if raw is None:
                continue
            data = parse_descriptor(raw)
            if not data.get("url"):
                logger.warning("⚠️ Skipping video descriptor without URL: {}", name)
                continue
            videos.append(video_payload(Path(name).stem, data))
        return videos

    def _local_videos(self) -> List[Dict[str, Any]]:
        videos_dir = self.local.root.parent / VIDEOS
        if not videos_dir.is_dir():
            return []
        videos = []
        for path in videos_dir.glob("*.json"):
            try:
                data = parse_descriptor(path.read_text(encoding="utf-8"))
            except OSError as e:
                logger.error("❌ Error reading video {}: {}", path.name, e)
                continue
            if not data.get("url"):
                logger.warning("⚠️ Skipping video descriptor without URL: {}", path.name)
                continue
            videos.append(video_payload(path.stem, data))
        return videos


def video_payload(video_key: str, data: Dict[str, Any]) -> Dict[str, Any]:
    url = data.get("url", "")
    return {
        "id": video_key,
        "title": data.get("title") or video_key,
        "url": url,
        "videoId": data.get("videoId") or extract_video_id(url),
    }
