"""
Liedersammlung - Pytest Configuration & Shared Fixtures

Provides reusable fixtures for:
- An in-memory WebDAV server speaking PROPFIND / GET / PUT / MKCOL / DELETE
  behind ``httpx.MockTransport``
- A MongoDB metadata store backed by mongomock
- A temporary local content directory
- Application / TestClient factories with injected clients
- Small image and ZIP archive builders
"""

import io
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote
from xml.sax.saxutils import escape

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

from liedersammlung.database import MetadataStore
from liedersammlung.main import create_app
from liedersammlung.webdav import WebDAVClient

DAV_URL = "https://dav.example.test/remote.php/dav"
DAV_BASE_PATH = "/remote.php/dav"

# Smallest valid PNG (1x1)
PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n"
    b"\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01"
    b"\x08\x02\x00\x00\x00\x90wS\xde\x00\x00\x00\x0cIDATx"
    b"\x9cc\xf8\x0f\x00\x00\x01\x01\x00\x05\x18\xd8N\x00"
    b"\x00\x00\x00IEND\xaeB`\x82"
)
JPG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32 + b"\xff\xd9"


# ---------------------------------------------------------------------------
# In-memory WebDAV server
# ---------------------------------------------------------------------------


class FakeWebDAV:
    """
    Minimal WebDAV server for tests.

    Paths are case-sensitive, like on the real storage box.  Every request
    is recorded in ``requests`` as ``(method, path)``.
    """

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.dirs = {""}
        self.requests: List[Tuple[str, str]] = []
        self.fail_puts = False
        self.fail_deletes = False

    # -- setup helpers -------------------------------------------------
    def add_dir(self, path: str) -> None:
        parts = path.strip("/").split("/")
        for i in range(1, len(parts) + 1):
            self.dirs.add("/".join(parts[:i]))

    def add_file(self, path: str, data: bytes = PNG_BYTES) -> None:
        clean = path.strip("/")
        parent = clean.rsplit("/", 1)[0] if "/" in clean else ""
        if parent:
            self.add_dir(parent)
        self.files[clean] = data

    def client(self) -> WebDAVClient:
        return WebDAVClient(
            DAV_URL, "user", "pass", transport=httpx.MockTransport(self.handler)
        )

    def calls(self, method: Optional[str] = None) -> List[Tuple[str, str]]:
        return [r for r in self.requests if method is None or r[0] == method]

    # -- protocol ------------------------------------------------------
    def _children(self, path: str) -> List[Tuple[str, bool]]:
        prefix = f"{path}/" if path else ""
        out = []
        for d in self.dirs:
            if d and d.startswith(prefix) and "/" not in d[len(prefix):]:
                out.append((d, True))
        for f in self.files:
            if f.startswith(prefix) and "/" not in f[len(prefix):]:
                out.append((f, False))
        return out

    def _response_xml(self, path: str, is_dir: bool) -> str:
        href = DAV_BASE_PATH + "/" + "/".join(quote(s) for s in path.split("/") if s)
        if is_dir:
            href += "/"
            props = "<d:resourcetype><d:collection/></d:resourcetype>"
        else:
            props = (
                "<d:resourcetype/>"
                f"<d:getcontentlength>{len(self.files[path])}</d:getcontentlength>"
            )
        return (
            f"<d:response><d:href>{escape(href)}</d:href><d:propstat>"
            f"<d:prop>{props}</d:prop><d:status>HTTP/1.1 200 OK</d:status>"
            "</d:propstat></d:response>"
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        raw = unquote(request.url.path)
        path = raw[len(DAV_BASE_PATH):].strip("/") if raw.startswith(DAV_BASE_PATH) else raw.strip("/")
        method = request.method
        self.requests.append((method, "/" + path))

        if method == "PROPFIND":
            if path in self.dirs:
                entries = [(path, True)]
                if request.headers.get("Depth") == "1":
                    entries += self._children(path)
            elif path in self.files:
                entries = [(path, False)]
            else:
                return httpx.Response(404)
            body = (
                '<?xml version="1.0" encoding="utf-8"?><d:multistatus xmlns:d="DAV:">'
                + "".join(self._response_xml(p, d) for p, d in entries)
                + "</d:multistatus>"
            )
            return httpx.Response(207, text=body)

        if method == "GET":
            if path in self.files:
                return httpx.Response(200, content=self.files[path])
            return httpx.Response(404)

        if method == "MKCOL":
            if path in self.dirs:
                return httpx.Response(405)
            self.dirs.add(path)
            return httpx.Response(201)

        if method == "PUT":
            if self.fail_puts:
                return httpx.Response(507, text="Insufficient Storage")
            self.add_file(path, request.content)
            return httpx.Response(201)

        if method == "DELETE":
            if self.fail_deletes:
                return httpx.Response(503, text="Service Unavailable")
            if path in self.files:
                del self.files[path]
                return httpx.Response(204)
            if path in self.dirs:
                prefix = path + "/"
                self.dirs = {d for d in self.dirs if d != path and not d.startswith(prefix)}
                self.files = {k: v for k, v in self.files.items() if not k.startswith(prefix)}
                return httpx.Response(204)
            return httpx.Response(404)

        return httpx.Response(405)


@pytest.fixture
def fake_dav() -> FakeWebDAV:
    return FakeWebDAV()


@pytest.fixture
def dav_client(fake_dav: FakeWebDAV) -> WebDAVClient:
    return fake_dav.client()


# ---------------------------------------------------------------------------
# Metadata store / content directory
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> MetadataStore:
    """A MetadataStore over a fresh in-memory mongomock database."""
    metadata = MetadataStore(mongomock.MongoClient().liedersammlung_test)
    metadata.ensure_indexes_sync()
    return metadata


@pytest.fixture
def content_dir(tmp_path: Path) -> Path:
    d = tmp_path / "public"
    (d / "images" / "scores").mkdir(parents=True)
    (d / "images" / "lyrics").mkdir(parents=True)
    (d / "videos").mkdir(parents=True)
    return d


def add_local_song(content_dir: Path, category: str, folder: str, files: List[str]) -> Path:
    song_dir = content_dir / "images" / category / folder
    song_dir.mkdir(parents=True, exist_ok=True)
    for name in files:
        (song_dir / name).write_bytes(PNG_BYTES)
    return song_dir


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def make_zip(entries: Dict[str, bytes]) -> bytes:
    """Build an in-memory ZIP archive from ``{name: data}``."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def zip_path(tmp_path: Path):
    """Factory fixture: write a ZIP built by :func:`make_zip` to disk."""

    def _factory(entries: Dict[str, bytes], name: str = "upload.zip") -> Path:
        path = tmp_path / name
        path.write_bytes(make_zip(entries))
        return path

    return _factory


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture
def make_client(fake_dav: FakeWebDAV, store: MetadataStore, content_dir: Path):
    """
    Factory fixture returning a TestClient (use it as a context manager so
    the lifespan runs).

    ``remote=False`` serves from the local content directory and
    ``with_store=False`` runs without the metadata cache.
    """

    def _factory(
        remote: bool = True, with_store: bool = True, public_base: str = ""
    ) -> TestClient:
        webdav = fake_dav.client() if remote else WebDAVClient("", "", "")
        app = create_app(
            webdav=webdav,
            store=store if with_store else None,
            content_dir=content_dir,
            connect_store=False,
            public_base=public_base,
        )
        return TestClient(app)

    return _factory


@pytest.fixture
def gate(monkeypatch) -> str:
    """Enable the password gate for the duration of a test."""
    password = "halleluja"
    monkeypatch.setattr("liedersammlung.auth.APP_PASSWORD", password)
    monkeypatch.setattr("liedersammlung.main.APP_PASSWORD", password)
    return password
