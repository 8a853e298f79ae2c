"""
Liedersammlung - Configuration
All settings loaded from environment variables with sensible defaults.

Content (scanned scores / lyrics and video descriptors) lives either on a
WebDAV storage box or on local disk below ``CONTENT_DIR``.  MongoDB is an
optional metadata cache that makes the listing screens fast.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
_ = load_dotenv()

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8000"))
APP_ENV = os.getenv("APP_ENV", "development")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
DEBUG = os.getenv("DEBUG", "true").lower() == "true"
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")

if APP_ENV == "production" and SECRET_KEY == "change-me-in-production":
    raise RuntimeError(
        "SECRET_KEY must be changed from the default value in production. "
        "Set the SECRET_KEY environment variable to a random secret."
    )

# ---------------------------------------------------------------------------
# Password gate (one shared password for the whole viewer)
# ---------------------------------------------------------------------------
APP_PASSWORD = os.getenv("APP_PASSWORD", "")  # empty = gate disabled
SESSION_COOKIE_NAME = "lsm_session"
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(60 * 60 * 24 * 30)))

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent

# Local content root: images/<category>/<folder>/<file> and videos/<title>.json
CONTENT_DIR = Path(os.getenv("CONTENT_DIR", str(PROJECT_ROOT / "public")))

TEMPLATES_DIR = BASE_DIR / "templates"
STATIC_DIR = BASE_DIR / "static"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")

# ---------------------------------------------------------------------------
# WebDAV storage box
# ---------------------------------------------------------------------------
STORAGEBOX_WEBDAV_URL = os.getenv("STORAGEBOX_WEBDAV_URL", "")
STORAGEBOX_USER = os.getenv("STORAGEBOX_USER", "")
STORAGEBOX_PASS = os.getenv("STORAGEBOX_PASS", "")
# Optional public base from which images can be served directly
STORAGEBOX_PUBLIC_BASE_URL = os.getenv("STORAGEBOX_PUBLIC_BASE_URL", "")

# ---------------------------------------------------------------------------
# MongoDB metadata cache
# ---------------------------------------------------------------------------
MONGODB_URI = os.getenv("MONGODB_URI", "")
MONGODB_DB = os.getenv("MONGODB_DB", "notenverwaltung")
MONGODB_TIMEOUT_MS = int(os.getenv("MONGODB_TIMEOUT_MS", "5000"))
MONGODB_URI_PREFIXES = ("mongodb://", "mongodb+srv://")

# One-time migration endpoint (empty = no token required)
MIGRATION_TOKEN = os.getenv("MIGRATION_TOKEN", "")

# ---------------------------------------------------------------------------
# Content model
# ---------------------------------------------------------------------------
CATEGORIES = ("scores", "lyrics")
VIDEOS = "videos"

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

# Validators for listing / song responses are fixed, not derived
CACHE_CONTROL = "public, max-age=120, stale-while-revalidate=600"
IMAGE_CACHE_CONTROL = "public, max-age=3600"

# ---------------------------------------------------------------------------
# Upload limits
# ---------------------------------------------------------------------------
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "50"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024


def validate_mongo_uri(uri: str = MONGODB_URI) -> str | None:
    """Return a human readable problem with *uri*, or None if it looks valid.

    Only the part before a possible credentials separator is echoed back so
    passwords never end up in logs or status responses.
    """
    if not uri:
        return "MONGODB_URI is not set"
    if not uri.startswith(MONGODB_URI_PREFIXES):
        shown = uri.split("@")[0].split(":")[0]
        return (
            f'Invalid format (starts with "{shown}"), '
            "expected mongodb:// or mongodb+srv://"
        )
    return None


def ensure_directories(root: Path = CONTENT_DIR) -> None:
    """Create the local content directories used in local storage mode."""
    for category in CATEGORIES:
        (root / "images" / category).mkdir(parents=True, exist_ok=True)
    (root / VIDEOS).mkdir(parents=True, exist_ok=True)
