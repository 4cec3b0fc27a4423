"""FastAPI application exposing push and pull of the change log."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import Config
from ..sync.change import changes_from_json
from ..sync.store import ChangeStore, StoreError
from .auth import require_push_auth

logger = logging.getLogger(__name__)


def create_app(config: Config, store: ChangeStore) -> FastAPI:
    """Create the sync service application.

    Args:
        config: Application configuration.
        store: Change store chosen at startup. The app never swaps it.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="mixsync",
        description="Change-log synchronization for media-library devices",
        version=__version__,
    )

    app.state.config = config
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    timeout = config.server.request_timeout_seconds

    @app.exception_handler(StarletteHTTPException)
    async def plain_http_error(request: Request, exc: StarletteHTTPException):
        return PlainTextResponse(
            str(exc.detail), status_code=exc.status_code, headers=exc.headers
        )

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "ok"

    router = APIRouter(tags=["sync"])

    @router.get("/changes")
    async def pull_changes(since: str = "") -> Any:
        """Changes at or after the cursor; the full log when it is empty."""
        try:
            # Store calls block on a lock or the database, keep them off the loop
            changes = await run_in_threadpool(store.since, since, timeout)
        except StoreError as e:
            logger.error(f"Pull since {since!r} failed: {e}")
            return PlainTextResponse("error", status_code=500)

        return [c.to_dict() for c in changes]

    @router.post("/changes", dependencies=[Depends(require_push_auth)])
    async def push_changes(request: Request) -> Any:
        """Append a batch of changes. The batch succeeds or fails as a whole."""
        try:
            changes = changes_from_json(await request.body())
        except ValueError as e:
            logger.debug(f"Rejected push body: {e}")
            return PlainTextResponse("invalid json", status_code=400)

        try:
            received = await run_in_threadpool(store.append, changes, timeout)
        except StoreError as e:
            logger.error(f"Push of {len(changes)} changes failed: {e}")
            return PlainTextResponse("error", status_code=500)

        logger.info(f"Accepted {received} changes")
        return JSONResponse(
            {"status": "ok", "received": received}, status_code=202
        )

    # Versioned routes, plus unversioned ones for older clients
    app.include_router(router, prefix="/v1/sync")
    app.include_router(router)

    return app
