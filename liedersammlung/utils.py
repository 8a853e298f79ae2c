"""
Liedersammlung - Shared Utilities

Common helpers used across multiple modules to avoid duplication.
"""

import json
import re
from typing import Any, Dict, Optional

# Accepted video links; the 11 character video ID follows the prefix
YOUTUBE_URL_RE = re.compile(
    r"^(https?://)?(www\.)?(youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)"
    r"([a-zA-Z0-9_-]{11})"
)


def sanitize_filename(name: str) -> str:
    """
    Sanitize a title for use as a filename on disk or on the storage box.

    Drops characters that are problematic on most file systems and in URLs
    and collapses whitespace runs into single spaces.
    """
    result = re.sub(r'[<>:"/\\|?*]', "", name)
    result = re.sub(r"\s+", " ", result)

    # Strip leading/trailing whitespace and dots
    result = result.strip(" .")

    return result or "unknown"


def extract_video_id(url: str) -> Optional[str]:
    """Return the YouTube video ID of *url*, or None if it is not a YouTube link."""
    match = YOUTUBE_URL_RE.match(url.strip())
    return match.group(4) if match else None


def parse_descriptor(raw: Any) -> Dict[str, Any]:
    """
    Safely parse a video descriptor that may be bytes, a JSON string or
    already a dict.

    Returns a dict in all cases (empty dict on parse failure).
    """
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return {}
        return data if isinstance(data, dict) else {}
    return {}
