"""
Liedersammlung - Page Routes

Serves HTML pages using Jinja2 templates: the kiosk viewer (letter grid,
song grid, page viewer) and the upload / delete page.

The viewer receives the title-only listing of the selected type already
grouped by first letter; images of a song are fetched by the browser from
``/api/song`` when it is opened.
"""

import unicodedata
from typing import Any, Dict, List

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse
from loguru import logger

from liedersammlung.config import APP_PASSWORD, APP_VERSION, CATEGORIES, VIDEOS

router = APIRouter(tags=["Pages"])

# Grid order of the letter screen
DIGIT_GROUP = "1"
OTHER_GROUP = "#"
LETTERS = [DIGIT_GROUP] + [chr(c) for c in range(ord("A"), ord("Z") + 1)]

TYPE_LABELS = {
    "lyrics": "Texte",
    "scores": "Noten",
    VIDEOS: "Videos",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def initial_of(title: str) -> str:
    """
    Group key of a title: ``"1"`` for digits, ``A``-``Z`` for letters
    (umlauts and accented letters fold to their base letter), ``"#"``
    for everything else.
    """
    stripped = title.strip()
    if not stripped:
        return OTHER_GROUP
    first = stripped[0]
    if first.isdigit():
        return DIGIT_GROUP
    if first in "ßẞ":
        return "S"
    base = unicodedata.normalize("NFKD", first)[0].upper()
    if "A" <= base <= "Z":
        return base
    return OTHER_GROUP


def group_by_initial(items: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group listing items by :func:`initial_of` their title, in grid order."""
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        groups.setdefault(initial_of(item.get("title", "")), []).append(item)

    ordered = {key: groups[key] for key in LETTERS if key in groups}
    if OTHER_GROUP in groups:
        ordered[OTHER_GROUP] = groups[OTHER_GROUP]
    for entries in ordered.values():
        entries.sort(key=lambda i: i.get("title", "").casefold())
    return ordered


# ---------------------------------------------------------------------------
# Viewer
# ---------------------------------------------------------------------------
@router.get("/", response_class=HTMLResponse)
async def index(request: Request, type: str = Query("lyrics")):
    """Kiosk viewer for one content type."""
    if type not in TYPE_LABELS:
        type = "lyrics"

    resolver = request.app.state.resolver
    error = ""
    try:
        if type == VIDEOS:
            items = await resolver.list_videos()
        else:
            songs = await resolver.list_songs(type)
            items = resolver.listing_payload(songs, minimal=True)
    except Exception as e:
        logger.error("❌ Could not load {} for the viewer: {}", type, e)
        items = []
        error = "Die Liste konnte nicht geladen werden."

    groups = group_by_initial(items)
    context = {
        "page_title": TYPE_LABELS[type],
        "content_type": type,
        "type_labels": TYPE_LABELS,
        "letters": LETTERS + [OTHER_GROUP],
        "groups": groups,
        "total": len(items),
        "error": error,
        "show_logout": bool(APP_PASSWORD),
        "version": APP_VERSION,
    }
    return request.app.state.templates.TemplateResponse(request, "index.html", context)


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------
@router.get("/upload", response_class=HTMLResponse)
async def upload_page(request: Request):
    """Upload song archives and video links, delete content."""
    resolver = request.app.state.resolver
    context = {
        "page_title": "Hochladen",
        "categories": list(CATEGORIES),
        "type_labels": TYPE_LABELS,
        "storage_mode": resolver.storage_mode,
        "metadata_store": resolver.cache is not None,
        "show_logout": bool(APP_PASSWORD),
        "version": APP_VERSION,
    }
    return request.app.state.templates.TemplateResponse(request, "upload.html", context)
