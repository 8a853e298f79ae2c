"""
Liedersammlung - WebDAV Storage Client

Async client for the storage box that holds the scanned song images and
video descriptors.  Uses httpx with Basic Auth against the WebDAV endpoint.

One :class:`WebDAVClient` is built at process start and handed to the
request handlers; it owns a single pooled :class:`httpx.AsyncClient`.

Read primitives (listing, download, info) log failures and return an empty
result so listing screens degrade gracefully.  Write primitives return
``False`` on failure and leave it to the caller to report the error.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import quote, unquote, urlparse

import httpx
from loguru import logger

from liedersammlung.config import IMAGE_EXTENSIONS

# WebDAV XML namespace
DAV_NS = "DAV:"

PROPFIND_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:">
    <d:prop>
        <d:resourcetype/>
        <d:getcontentlength/>
        <d:getcontenttype/>
        <d:getlastmodified/>
        <d:getetag/>
    </d:prop>
</d:propfind>"""


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------
@dataclass
class WebDAVItem:
    """Represents a file or directory returned by a PROPFIND request."""

    name: str
    path: str  # relative path from the WebDAV root
    is_directory: bool
    size: int = 0
    content_type: str = ""
    last_modified: str = ""
    etag: str = ""

    @property
    def type(self) -> str:
        return "directory" if self.is_directory else "file"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def is_image_file(name: str) -> bool:
    """Return True if *name* carries one of the displayable image extensions."""
    return PurePosixPath(name).suffix.lower() in IMAGE_EXTENSIONS


def encode_path(relative_path: str) -> str:
    """Percent-encode every segment of *relative_path*, keeping the slashes."""
    clean = relative_path.strip("/")
    return "/".join(quote(seg, safe="") for seg in clean.split("/")) if clean else ""


def build_public_url(public_base: str, relative_path: str) -> str | None:
    """Build a directly resolvable URL below *public_base*, or None if unset."""
    if not public_base:
        return None
    return f"{public_base.rstrip('/')}/{encode_path(relative_path)}"


def _parse_propfind_response(xml_text: str, base_path: str) -> list[WebDAVItem]:
    """Parse the XML response from a PROPFIND request into WebDAVItem list."""
    items: list[WebDAVItem] = []

    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.error("❌ Failed to parse WebDAV XML response: {}", e)
        return items

    for response_el in root.findall(f"{{{DAV_NS}}}response"):
        href_el = response_el.find(f"{{{DAV_NS}}}href")
        if href_el is None or href_el.text is None:
            continue

        href = unquote(urlparse(href_el.text).path or href_el.text)

        # Extract properties from the successful propstat
        props = None
        for propstat in response_el.findall(f"{{{DAV_NS}}}propstat"):
            status_el = propstat.find(f"{{{DAV_NS}}}status")
            if status_el is not None and "200" in (status_el.text or ""):
                props = propstat.find(f"{{{DAV_NS}}}prop")
                break

        if props is None:
            continue

        resourcetype = props.find(f"{{{DAV_NS}}}resourcetype")
        is_dir = (
            resourcetype is not None
            and resourcetype.find(f"{{{DAV_NS}}}collection") is not None
        )

        size = 0
        content_length = props.find(f"{{{DAV_NS}}}getcontentlength")
        if content_length is not None and content_length.text:
            try:
                size = int(content_length.text)
            except ValueError:
                pass

        content_type = ""
        ct_el = props.find(f"{{{DAV_NS}}}getcontenttype")
        if ct_el is not None and ct_el.text:
            content_type = ct_el.text

        last_modified = ""
        lm_el = props.find(f"{{{DAV_NS}}}getlastmodified")
        if lm_el is not None and lm_el.text:
            last_modified = lm_el.text

        etag = ""
        etag_el = props.find(f"{{{DAV_NS}}}getetag")
        if etag_el is not None and etag_el.text:
            etag = etag_el.text.strip('"')

        # Compute the relative path from the WebDAV base
        if href.startswith(base_path):
            relative = href[len(base_path) :]
        else:
            relative = href

        relative = relative.strip("/")
        name = PurePosixPath(relative).name if relative else ""

        items.append(
            WebDAVItem(
                name=name,
                path="/" + relative if relative else "/",
                is_directory=is_dir,
                size=size,
                content_type=content_type,
                last_modified=last_modified,
                etag=etag,
            )
        )

    return items


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class WebDAVClient:
    """Thin async wrapper around the WebDAV verbs the viewer needs."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._base_path = urlparse(self.base_url).path.rstrip("/")

    @property
    def is_configured(self) -> bool:
        """True if URL, user and password are all set."""
        return bool(self.base_url and self._username and self._password)

    def _build_url(self, remote_path: str = "/") -> str:
        """Build the full WebDAV URL for a given remote path."""
        encoded = encode_path(remote_path)
        return f"{self.base_url}/{encoded}" if encoded else self.base_url

    def _http(self) -> httpx.AsyncClient:
        # Created lazily so the client binds to the running event loop
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=httpx.BasicAuth(self._username, self._password),
                timeout=self._timeout,
                transport=self._transport,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def aclose(self) -> None:
        """Close the pooled HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def check_connection(self) -> dict[str, Any]:
        """
        Test the WebDAV connection.
        Returns a status dict with 'connected' bool and optional error info.
        """
        if not self.is_configured:
            return {
                "connected": False,
                "error": "WebDAV is not configured. Set STORAGEBOX_WEBDAV_URL, "
                "STORAGEBOX_USER and STORAGEBOX_PASS.",
            }

        try:
            response = await self._http().request(
                "PROPFIND", self._build_url("/"), headers={"Depth": "0"}
            )
            if response.status_code in (200, 207):
                logger.info("✅ WebDAV connection successful")
                return {"connected": True}
            msg = f"HTTP {response.status_code}: {response.text[:200]}"
            logger.warning("⚠️ WebDAV connection issue: {}", msg)
            return {"connected": False, "error": msg}
        except httpx.HTTPError as e:
            logger.error("❌ WebDAV connection failed: {}", e)
            return {"connected": False, "error": str(e)}

    async def _propfind(self, remote_path: str, depth: str) -> list[WebDAVItem] | None:
        response = await self._http().request(
            "PROPFIND",
            self._build_url(remote_path),
            headers={
                "Depth": depth,
                "Content-Type": "application/xml; charset=utf-8",
            },
            content=PROPFIND_BODY,
        )
        if response.status_code == 404:
            return None
        if response.status_code not in (200, 207):
            logger.error(
                "❌ WebDAV PROPFIND failed ({}) for {}: {}",
                response.status_code,
                remote_path,
                response.text[:300],
            )
            return None
        return _parse_propfind_response(response.text, self._base_path)

    async def list_directory(self, remote_path: str = "/") -> list[WebDAVItem]:
        """
        List files and directories at the given remote path.
        Returns a list of WebDAVItem objects (excluding the directory itself).
        """
        if not self.is_configured:
            logger.warning("⚠️ WebDAV not configured, returning empty listing")
            return []

        try:
            items = await self._propfind(remote_path, "1")
        except httpx.HTTPError as e:
            logger.error("❌ WebDAV list failed for {}: {}", remote_path, e)
            return []

        if items is None:
            logger.debug("📂 Nothing at WebDAV:{}", remote_path)
            return []

        clean_path = remote_path.strip("/")
        filtered = [item for item in items if item.path.strip("/") != clean_path]
        filtered.sort(key=lambda i: (not i.is_directory, i.name.lower()))

        logger.debug("📂 Listed {} items in WebDAV:{}", len(filtered), remote_path)
        return filtered

    async def get_file_info(self, remote_path: str) -> WebDAVItem | None:
        """
        Get metadata for a single file or directory.
        Returns a WebDAVItem or None if not found.
        """
        if not self.is_configured:
            return None

        try:
            items = await self._propfind(remote_path, "0")
        except httpx.HTTPError as e:
            logger.error("❌ Error getting info for {}: {}", remote_path, e)
            return None
        return items[0] if items else None

    async def exists(self, remote_path: str) -> bool:
        return await self.get_file_info(remote_path) is not None

    async def download_file(self, remote_path: str) -> bytes | None:
        """Download a file and return its content, or None on failure."""
        if not self.is_configured:
            logger.warning("⚠️ WebDAV not configured")
            return None

        try:
            response = await self._http().get(self._build_url(remote_path))
        except httpx.HTTPError as e:
            logger.error("❌ Download error for {}: {}", remote_path, e)
            return None

        if response.status_code == 200:
            logger.debug("⬇️ Downloaded {} ({} bytes)", remote_path, len(response.content))
            return response.content
        if response.status_code != 404:
            logger.error(
                "❌ Download failed ({}) for {}", response.status_code, remote_path
            )
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def mkdir(self, remote_path: str) -> bool:
        """
        Create a directory (and parent directories) via MKCOL.
        Returns True on success or if the directory already exists.
        """
        if not self.is_configured:
            return False

        current = ""
        for part in PurePosixPath(remote_path.strip("/")).parts:
            current = f"{current}/{part}"
            try:
                response = await self._http().request("MKCOL", self._build_url(current))
            except httpx.HTTPError as e:
                logger.error("❌ MKCOL error for {}: {}", current, e)
                return False
            if response.status_code in (201, 405):
                # 201 = created, 405 = already exists
                continue
            logger.error("❌ MKCOL failed ({}) for {}", response.status_code, current)
            return False

        logger.debug("📁 Ensured directory exists: {}", remote_path)
        return True

    async def upload_file(
        self,
        remote_path: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> bool:
        """
        Upload bytes to a remote path, creating parent directories first.
        Returns True on success.
        """
        if not self.is_configured:
            logger.warning("⚠️ WebDAV not configured")
            return False

        parent = str(PurePosixPath(remote_path).parent)
        if parent and parent != "/" and not await self.mkdir(parent):
            return False

        try:
            response = await self._http().put(
                self._build_url(remote_path),
                content=content,
                headers={"Content-Type": content_type},
            )
        except httpx.HTTPError as e:
            logger.error("❌ Upload error for {}: {}", remote_path, e)
            return False

        if response.status_code in (200, 201, 204):
            logger.info("⬆️ Uploaded {} ({} bytes)", remote_path, len(content))
            return True
        logger.error(
            "❌ Upload failed ({}) for {}: {}",
            response.status_code,
            remote_path,
            response.text[:200],
        )
        return False

    async def delete_remote(self, remote_path: str) -> bool:
        """
        Delete a file or directory.
        Returns True on success, False if missing or on error.
        """
        if not self.is_configured:
            return False

        try:
            response = await self._http().request("DELETE", self._build_url(remote_path))
        except httpx.HTTPError as e:
            logger.error("❌ Delete error for {}: {}", remote_path, e)
            return False

        if response.status_code in (200, 204):
            logger.info("🗑️ Deleted remote: {}", remote_path)
            return True
        if response.status_code == 404:
            logger.warning("⚠️ Remote path not found: {}", remote_path)
            return False
        logger.error("❌ Delete failed ({}): {}", response.status_code, remote_path)
        return False


def category_bases(category: str) -> list[str]:
    """Remote directory names tried for *category*: literal, then capitalised.

    The storage box historically holds both ``/scores`` and ``/Scores``.
    """
    bases = [category]
    capitalised = category[:1].upper() + category[1:]
    if capitalised != category:
        bases.append(capitalised)
    return bases
