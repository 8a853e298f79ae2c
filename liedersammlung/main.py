"""
Liedersammlung - Main Application

Single-container FastAPI application that serves:
- The kiosk viewer and the upload page via Jinja2 templates
- Static files (CSS, JS) and, in local mode, the song images
- REST API endpoints for listing, resolving, uploading and deleting content
- The WebDAV image proxy
- Health, status and debug endpoints
- Simple password-based session authentication

Content lives on a WebDAV storage box (or on local disk); MongoDB is an
optional metadata cache.  Both clients are built once in the lifespan and
shared by all requests through ``app.state``.
"""

import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from loguru import logger

from liedersammlung.auth import (
    auth_required,
    clear_session_cookie,
    is_authenticated,
    render_login_page,
    set_session_cookie,
    verify_password,
)
from liedersammlung.config import (
    APP_ENV,
    APP_HOST,
    APP_PASSWORD,
    APP_PORT,
    APP_VERSION,
    CONTENT_DIR,
    DEBUG,
    LOG_LEVEL,
    STATIC_DIR,
    STORAGEBOX_PASS,
    STORAGEBOX_PUBLIC_BASE_URL,
    STORAGEBOX_USER,
    STORAGEBOX_WEBDAV_URL,
    TEMPLATES_DIR,
    ensure_directories,
)
from liedersammlung.database import MetadataStore, connect_metadata_store
from liedersammlung.routes.api import router as api_router
from liedersammlung.routes.pages import router as pages_router
from liedersammlung.services.resolver import ContentResolver
from liedersammlung.webdav import WebDAVClient

# ---------------------------------------------------------------------------
# Logging setup - stdout only (no file logging for stateless containers)
# ---------------------------------------------------------------------------
logger.remove()

logger.add(
    sys.stdout,
    level="DEBUG" if DEBUG else LOG_LEVEL,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    colorize=True,
)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    On startup:
        1. Create the local content directories
        2. Build the WebDAV client and the MongoDB store (unless injected)
        3. Ensure MongoDB indexes
        4. Build the content resolver shared by all requests

    On shutdown:
        5. Wait for pending background cache writes
        6. Close the pooled HTTP client and an owned MongoDB client
    """
    state = app.state

    # --- Startup ---
    logger.info("🚀 Starting Liedersammlung v{}", APP_VERSION)
    logger.info("📋 Environment: {} | Debug: {}", APP_ENV, DEBUG)

    if APP_PASSWORD:
        logger.info("🔒 Password gate enabled")
    else:
        logger.warning("🔓 Password gate DISABLED (no APP_PASSWORD set)")

    # Step 1: Local content directories
    ensure_directories(state.content_dir)

    # Step 2: Clients
    if state.webdav is None:
        state.webdav = WebDAVClient(
            STORAGEBOX_WEBDAV_URL, STORAGEBOX_USER, STORAGEBOX_PASS
        )
    if state.webdav.is_configured:
        logger.info("☁️  WebDAV storage box: {}", state.webdav.base_url)
    else:
        logger.info("📁 WebDAV not configured, serving from {}", state.content_dir)

    owns_store = state.store is None and state.connect_store
    if owns_store:
        state.store = connect_metadata_store()

    # Step 3: Indexes
    if state.store is not None:
        try:
            await state.store.ensure_indexes()
        except Exception as e:
            logger.error("❌ MongoDB unavailable at startup: {}", e)

    # Step 4: Resolver
    state.resolver = ContentResolver(
        state.store,
        state.webdav,
        state.content_dir,
        public_base=state.public_base,
    )

    logger.success("✅ Application ready, listening on {}:{}", APP_HOST, APP_PORT)

    yield

    # --- Shutdown ---
    logger.info("🛑 Shutting down Liedersammlung …")

    # Step 5: Pending background writes
    await state.resolver.drain()

    # Step 6: Close shared clients
    await state.webdav.aclose()
    if owns_store and state.store is not None:
        state.store.close()

    logger.info("👋 Shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(
    webdav: WebDAVClient | None = None,
    store: MetadataStore | None = None,
    content_dir: Path | None = None,
    *,
    connect_store: bool = True,
    public_base: str = STORAGEBOX_PUBLIC_BASE_URL,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Clients that are passed in are used as-is; missing ones are built from
    the environment at startup.  ``connect_store=False`` runs without MongoDB.
    """

    app = FastAPI(
        title="Liedersammlung",
        description=(
            "Password-protected viewer for a song collection: scanned scores, "
            "lyrics and YouTube videos, stored on WebDAV with a MongoDB cache."
        ),
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
    )

    app.state.webdav = webdav
    app.state.store = store
    app.state.connect_store = connect_store
    app.state.content_dir = Path(content_dir) if content_dir else CONTENT_DIR
    app.state.public_base = public_base

    # ------------------------------------------------------------------
    # Jinja2 templates
    # ------------------------------------------------------------------
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
    app.state.templates = templates

    # ------------------------------------------------------------------
    # Static files and local song images
    # ------------------------------------------------------------------
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
    app.mount(
        "/images",
        StaticFiles(directory=str(app.state.content_dir / "images"), check_dir=False),
        name="images",
    )

    # ------------------------------------------------------------------
    # Authentication middleware
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        """Redirect unauthenticated requests to the login page."""
        if auth_required(request):
            # For API requests, return 401 instead of redirect
            if request.url.path.startswith("/api/"):
                return JSONResponse(
                    status_code=401,
                    content={"error": "Authentication required"},
                )
            return RedirectResponse(url="/login", status_code=302)

        response = await call_next(request)
        return response

    # ------------------------------------------------------------------
    # Request logging middleware
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every incoming HTTP request with timing information."""
        start = time.time()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration = round(time.time() - start, 3)
            logger.error(
                "❌ {method} {path} - unhandled error after {duration}s: {exc}",
                method=request.method,
                path=request.url.path,
                duration=duration,
                exc=exc,
            )
            raise

        duration = round(time.time() - start, 3)
        status = response.status_code
        path = request.url.path

        if status >= 500:
            logger.error(
                "📤 {method} {path} - {status} [{duration}s]",
                method=request.method,
                path=path,
                status=status,
                duration=duration,
            )
        elif status >= 400:
            logger.warning(
                "📤 {method} {path} - {status} [{duration}s]",
                method=request.method,
                path=path,
                status=status,
                duration=duration,
            )
        elif not path.startswith(("/static", "/images")):
            logger.info(
                "📤 {method} {path} - {status} [{duration}s]",
                method=request.method,
                path=path,
                status=status,
                duration=duration,
            )

        return response

    # ------------------------------------------------------------------
    # Login / Logout routes (mounted directly on app, before routers)
    # ------------------------------------------------------------------
    @app.get("/login")
    async def login_page(request: Request):
        """Show the login form."""
        if not APP_PASSWORD or is_authenticated(request):
            return RedirectResponse(url="/", status_code=302)
        return render_login_page()

    @app.post("/login")
    async def login_post(password: str = Form(...)):
        """Handle login form submission."""
        if verify_password(password):
            logger.info("🔓 Viewer unlocked")
            response = RedirectResponse(url="/", status_code=302)
            set_session_cookie(response)
            return response

        logger.warning("🔒 Failed login attempt")
        return render_login_page(error="Falsches Passwort", status_code=401)

    @app.get("/logout")
    async def logout():
        """Log out and redirect to login page."""
        logger.info("🔒 Session ended")
        response = RedirectResponse(url="/login", status_code=302)
        clear_session_cookie(response)
        return response

    # ------------------------------------------------------------------
    # Register routers
    # ------------------------------------------------------------------
    app.include_router(api_router)  # /api/*  - JSON endpoints
    app.include_router(pages_router)  # /*      - HTML pages (must be last)

    return app


# ---------------------------------------------------------------------------
# Create the app instance (used by Uvicorn)
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# Direct execution (development)
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "liedersammlung.main:app",
        host=APP_HOST,
        port=APP_PORT,
        reload=DEBUG,
        log_level="debug" if DEBUG else "info",
    )
