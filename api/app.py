"""FastAPI application for secondbrain."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.deps import set_repository
from api.routes import router
from api.ws import change_broadcaster
from db.backends import BackendError
from db.codec import CodecError
from db.repository import (
    EntityRepository,
    InvalidFieldError,
    NotFoundError,
    NotReadyError,
    open_store,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (NotReadyError, 503),
    (NotFoundError, 404),
    (InvalidFieldError, 422),
    (CodecError, 422),
    (BackendError, 500),
]


def _register_error_handlers(app: FastAPI) -> None:
    for exc_type, status in _STATUS_BY_ERROR:

        async def handler(request: Request, exc: Exception, status: int = status) -> JSONResponse:
            if status >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            return JSONResponse(status_code=status, content={"detail": str(exc)})

        app.add_exception_handler(exc_type, handler)


def create_app(
    config: dict[str, Any] | None = None,
    repository: EntityRepository | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: secondbrain config dict. The store is opened from it at
                startup and closed at shutdown.
        repository: An already-open store to serve instead (its lifecycle
                stays with the caller).
    """
    if config is None and repository is None:
        raise ValueError("create_app needs a config or an open repository")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = None
        if repository is None:
            owned = await open_store(
                backend=config["backend"],
                db_path=config["db_path"],
                kv_path=config.get("kv_path"),
                store_name=config.get("store_name", "secondbrain"),
                user_id=config.get("user_id"),
            )
            _attach(owned)

        yield

        if owned is not None:
            set_repository(None)
            await owned.close()

    def _attach(repo: EntityRepository) -> None:
        set_repository(repo)
        repo.subscribe(change_broadcaster(repo))

    if repository is not None:
        _attach(repository)

    app = FastAPI(title="secondbrain", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    app.include_router(router)

    return app
