"""Codelink FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from codelink import config
from codelink.routers.git_connect import git_connect_router
from codelink.routers.git_links import git_links_router
from codelink.routers.git_repos import git_repos_router
from codelink.routers.github_oauth import github_oauth_router
from codelink.routers.github_pulls import github_pulls_router
from codelink.routers.github_repos import github_repos_router

from codelink.db import connection, migrations
from codelink.observability import initialize as initialize_observability, shutdown as shutdown_observability
from codelink.services.oauth_handshake import cleanup_expired_states

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("codelink")


async def _state_cleanup_loop(db) -> None:
    interval = config.OAUTH_STATE_CLEANUP_INTERVAL_SECONDS
    while True:
        await asyncio.sleep(interval)
        try:
            await cleanup_expired_states(db)
        except Exception:  # noqa: BLE001
            logger.exception("Expired OAuth state cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Codelink backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Periodic removal of abandoned handshake states
    if config.OAUTH_STATE_CLEANUP_INTERVAL_SECONDS > 0:
        app.state.cleanup_task = asyncio.create_task(_state_cleanup_loop(db))

    yield

    logger.info("Codelink backend shutting down")

    if hasattr(app.state, "cleanup_task"):
        app.state.cleanup_task.cancel()
        try:
            await app.state.cleanup_task
        except asyncio.CancelledError:
            pass

    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Codelink API",
    description="GitHub code integration for project tarefas",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", [])[1:]) or "request"
    return JSONResponse({"error": f"Invalid {field}: {first.get('msg', 'validation error')}"}, status_code=400)


# Register routers
app.include_router(github_oauth_router)
app.include_router(git_connect_router)
app.include_router(github_repos_router)
app.include_router(git_repos_router)
app.include_router(github_pulls_router)
app.include_router(git_links_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "oauth": "configured" if config.GITHUB_CLIENT_ID and config.GITHUB_REDIRECT_URI else "unconfigured",
        "github_app": "configured" if config.GITHUB_APP_ID and config.GITHUB_PRIVATE_KEY else "unconfigured",
    }
