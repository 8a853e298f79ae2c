"""
Liedersammlung - MongoDB Metadata Store

The ``songs`` collection caches, per category, the list of image filenames
found in each remote folder so the listing screens do not have to walk the
storage box.  The ``videos`` collection holds YouTube links keyed by a slug
derived from the title.

The storage box stays authoritative: an empty ``images`` list simply means
"not scanned yet" and triggers a rescan in the resolver.

pymongo is blocking, so every public method runs the driver call in a worker
thread via ``asyncio.to_thread`` and can be awaited from FastAPI routes.
"""

import asyncio
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from pymongo import ASCENDING, MongoClient, UpdateOne
from pymongo.database import Database

from liedersammlung.config import (
    MONGODB_DB,
    MONGODB_TIMEOUT_MS,
    MONGODB_URI,
    validate_mongo_uri,
)

SONGS = "songs"
VIDEOS = "videos"

# Fields returned by the title-only listing
MINIMAL_PROJECTION = {
    "_id": 0,
    "category": 1,
    "folder": 1,
    "title": 1,
    "imageCount": 1,
    "createdAt": 1,
    "updatedAt": 1,
}

# Fields of the quick title cache
TITLE_PROJECTION = {"_id": 0, "category": 1, "folder": 1, "title": 1, "imageCount": 1}


def utcnow() -> datetime:
    """Current time truncated to milliseconds (BSON date precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def make_slug(title: str) -> str:
    """Derive the URL-safe video slug from a title.

    NFKD-normalises, strips combining marks, drops anything that is not an
    ASCII letter, digit, whitespace or dash, and joins words with ``-``.
    """
    text = unicodedata.normalize("NFKD", title)
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[^a-zA-Z0-9\s-]", "", text)
    return re.sub(r"\s+", "-", text.strip()).lower()


def name_variants(folder: str) -> List[str]:
    """The folder name as given plus its NFC / NFD spellings (deduplicated)."""
    variants: List[str] = []
    for candidate in (
        folder,
        unicodedata.normalize("NFC", folder),
        unicodedata.normalize("NFD", folder),
    ):
        if candidate not in variants:
            variants.append(candidate)
    return variants


class MetadataStore:
    """Typed accessors for the ``songs`` and ``videos`` collections."""

    def __init__(self, database: Database) -> None:
        self.db = database
        self.songs = database[SONGS]
        self.videos = database[VIDEOS]

    # ------------------------------------------------------------------
    # Setup / diagnostics
    # ------------------------------------------------------------------
    def ensure_indexes_sync(self) -> None:
        self.songs.create_index(
            [("category", ASCENDING), ("folder", ASCENDING)], unique=True
        )
        self.songs.create_index([("category", ASCENDING), ("title", ASCENDING)])
        self.videos.create_index([("slug", ASCENDING)], unique=True)

    async def ensure_indexes(self) -> None:
        """Create the uniqueness indexes both collections rely on."""
        await asyncio.to_thread(self.ensure_indexes_sync)
        logger.info("🗂️ MongoDB indexes ensured")

    def close(self) -> None:
        self.db.client.close()

    async def ping(self) -> bool:
        await asyncio.to_thread(self.db.command, "ping")
        return True

    async def count(self, collection: str, query: Optional[Dict[str, Any]] = None) -> int:
        return await asyncio.to_thread(
            self.db[collection].count_documents, query or {}
        )

    async def sample_songs(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return a small sample of song entries for the debug endpoint."""

        def _sample() -> List[Dict[str, Any]]:
            cursor = self.songs.find({}, {"_id": 0}).limit(limit)
            return [
                {
                    "category": d.get("category"),
                    "folder": d.get("folder"),
                    "images": len(d.get("images") or []),
                }
                for d in cursor
            ]

        return await asyncio.to_thread(_sample)

    # ------------------------------------------------------------------
    # Songs
    # ------------------------------------------------------------------
    def find_song_sync(self, category: str, folder: str) -> Optional[Dict[str, Any]]:
        variants = name_variants(folder)
        doc = self.songs.find_one(
            {"category": category, "folder": {"$in": variants}}, {"_id": 0}
        )
        if doc:
            return doc
        # Historic uploads differ in case from what the UI asks for
        pattern = "^" + re.escape(unicodedata.normalize("NFC", folder)) + "$"
        return self.songs.find_one(
            {"category": category, "folder": {"$regex": pattern, "$options": "i"}},
            {"_id": 0},
        )

    async def find_song(self, category: str, folder: str) -> Optional[Dict[str, Any]]:
        """Look up one song entry; exact, then Unicode variants, then case-insensitive."""
        return await asyncio.to_thread(self.find_song_sync, category, folder)

    async def list_songs(
        self, category: str, minimal: bool = False
    ) -> List[Dict[str, Any]]:
        """All entries of *category* sorted by title."""
        projection = MINIMAL_PROJECTION if minimal else {"_id": 0}

        def _list() -> List[Dict[str, Any]]:
            cursor = self.songs.find({"category": category}, projection).sort(
                "title", ASCENDING
            )
            return list(cursor)

        return await asyncio.to_thread(_list)

    async def list_titles(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """Title-only entries of one category (all when None), sorted by title."""
        query = {"category": category} if category else {}

        def _titles() -> List[Dict[str, Any]]:
            cursor = self.songs.find(query, TITLE_PROJECTION).sort("title", ASCENDING)
            return list(cursor)

        return await asyncio.to_thread(_titles)

    def upsert_song_sync(
        self,
        category: str,
        folder: str,
        images: List[str],
        title: Optional[str] = None,
        replaces: Optional[str] = None,
        base: Optional[str] = None,
    ) -> datetime:
        now = utcnow()
        if replaces and replaces != folder:
            # The cache held a mis-spelled alias of the real remote folder
            self.songs.delete_one({"category": category, "folder": replaces})
        fields: Dict[str, Any] = {
            "title": title or folder,
            "images": list(images),
            "imageCount": len(images),
            "updatedAt": now,
            "lastSyncedAt": now,
        }
        if base:
            fields["base"] = base
        self.songs.update_one(
            {"category": category, "folder": folder},
            {"$setOnInsert": {"createdAt": now}, "$set": fields},
            upsert=True,
        )
        return now

    async def upsert_song(
        self,
        category: str,
        folder: str,
        images: List[str],
        title: Optional[str] = None,
        replaces: Optional[str] = None,
        base: Optional[str] = None,
    ) -> datetime:
        """
        Insert or refresh a song entry keyed by ``(category, folder)``.

        Idempotent: concurrent calls for the same key converge on the last
        write.  If *replaces* names a different folder in the same category
        that entry is removed (alias correction).  *base* is the directory
        spelling the folder was found under on the storage box.

        Returns the ``updatedAt`` timestamp that was written.
        """
        now = await asyncio.to_thread(
            self.upsert_song_sync, category, folder, images, title, replaces, base
        )
        logger.info("💾 Cached {}/{} ({} images)", category, folder, len(images))
        return now

    async def bulk_update_images(
        self,
        updates: Iterable[Tuple[str, str, List[str]]],
        bases: Optional[Dict[Tuple[str, str], str]] = None,
    ) -> Tuple[int, datetime]:
        """
        Refresh the image cache of many entries with a single bulk write.

        *updates* yields ``(category, folder, images)`` tuples; *bases* maps
        ``(category, folder)`` to the directory spelling it was found under.
        Returns the number of operations sent and the timestamp written.
        """
        bases = bases or {}
        now = utcnow()
        ops = []
        for category, folder, images in updates:
            fields: Dict[str, Any] = {
                "images": list(images),
                "imageCount": len(images),
                "updatedAt": now,
                "lastSyncedAt": now,
            }
            if bases.get((category, folder)):
                fields["base"] = bases[(category, folder)]
            ops.append(UpdateOne({"category": category, "folder": folder}, {"$set": fields}))
        if not ops:
            return 0, now
        await asyncio.to_thread(self.songs.bulk_write, ops, ordered=False)
        logger.info("💾 Repaired image cache of {} song(s)", len(ops))
        return len(ops), now

    async def seed_folders(
        self,
        category: str,
        folders: Iterable[Tuple[str, List[str]]],
        bases: Optional[Dict[str, str]] = None,
    ) -> int:
        """
        Upsert freshly scanned folders with one bulk write.

        *folders* yields ``(folder, images)``; *bases* maps a folder to the
        directory spelling it was found under.  Existing entries keep their
        title and creation time.  An empty *images* list never overwrites a
        populated cache.
        """
        bases = bases or {}
        now = utcnow()
        ops = []
        for folder, images in folders:
            update: Dict[str, Any] = {
                "$setOnInsert": {
                    "category": category,
                    "folder": folder,
                    "title": folder,
                    "createdAt": now,
                },
                "$set": {"updatedAt": now, "lastSyncedAt": now},
            }
            if images:
                update["$set"].update({"images": list(images), "imageCount": len(images)})
            else:
                update["$setOnInsert"].update({"images": [], "imageCount": 0})
            if bases.get(folder):
                update["$set"]["base"] = bases[folder]
            ops.append(
                UpdateOne({"category": category, "folder": folder}, update, upsert=True)
            )
        if not ops:
            return 0
        await asyncio.to_thread(self.songs.bulk_write, ops, ordered=False)
        logger.info("💾 Seeded {} {} folder(s)", len(ops), category)
        return len(ops)

    async def delete_song(self, category: str, folder: str) -> bool:
        """Delete one song entry. Returns True if a document was removed."""
        result = await asyncio.to_thread(
            self.songs.delete_one, {"category": category, "folder": folder}
        )
        deleted = result.deleted_count > 0
        if deleted:
            logger.info("🗑️ Removed {}/{} from metadata cache", category, folder)
        return deleted

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    async def upsert_video(
        self, title: str, url: str, video_id: str
    ) -> Tuple[str, bool]:
        """
        Store a video keyed by the slug of *title*.

        A title that normalises to an existing slug overwrites that entry.
        Returns ``(slug, created)``.
        """
        slug = make_slug(title)
        now = utcnow()
        result = await asyncio.to_thread(
            self.videos.update_one,
            {"slug": slug},
            {
                "$setOnInsert": {"createdAt": now},
                "$set": {"title": title.strip(), "url": url.strip(), "videoId": video_id},
            },
            upsert=True,
        )
        created = result.upserted_id is not None
        logger.info("🎬 Video {} ({})", "added" if created else "updated", slug)
        return slug, created

    async def list_videos(self) -> List[Dict[str, Any]]:
        def _list() -> List[Dict[str, Any]]:
            return list(self.videos.find({}, {"_id": 0}).sort("title", ASCENDING))

        return await asyncio.to_thread(_list)

    async def delete_video(self, slug: str) -> bool:
        result = await asyncio.to_thread(self.videos.delete_one, {"slug": slug})
        deleted = result.deleted_count > 0
        if deleted:
            logger.info("🗑️ Video {} deleted", slug)
        else:
            logger.warning("⚠️ Video {} not found for deletion", slug)
        return deleted


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------
def connect_metadata_store(
    uri: str = MONGODB_URI, db_name: str = MONGODB_DB
) -> Optional[MetadataStore]:
    """Build the process-wide store, or None when MongoDB is not configured."""
    if not uri:
        logger.warning("🍃 MONGODB_URI not set – metadata cache disabled")
        return None
    problem = validate_mongo_uri(uri)
    if problem:
        logger.error("🍃 {}", problem)
        return None

    client: MongoClient = MongoClient(uri, serverSelectionTimeoutMS=MONGODB_TIMEOUT_MS)
    database = client.get_default_database(default=db_name)
    logger.info("🍃 MongoDB metadata store: database '{}'", database.name)
    return MetadataStore(database)
