from __future__ import annotations

import contextlib
import hmac
import json
from http import HTTPStatus
from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from records.models import GameRecord, SyncStatus
from remote.db import Database
from remote.repository import RecordStoreFullError, SqliteRemoteRecordRepository
from remote.settings import RemoteServerSettings
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from starlette.requests import Request

    from remote.repository import RemoteRecordRepository

type Endpoint = Callable[[Request], Awaitable[JSONResponse]]


def _app_version() -> str:
    try:
        return version("scoresync")
    except PackageNotFoundError:
        return "dev"


def _error(message: str, status: HTTPStatus) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def require_token(endpoint: Endpoint) -> Endpoint:
    """Reject requests without the configured bearer token. No-op when no token is configured."""

    async def wrapper(request: Request) -> JSONResponse:
        settings: RemoteServerSettings = request.app.state.settings
        if settings.api_token:
            scheme, _, token = request.headers.get("authorization", "").partition(" ")
            if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), settings.api_token.encode()):
                return _error("Authentication required", HTTPStatus.UNAUTHORIZED)
        return await endpoint(request)

    return wrapper


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": _app_version()})


async def query_records(request: Request) -> JSONResponse:
    repository: RemoteRecordRepository = request.app.state.repository
    settings: RemoteServerSettings = request.app.state.settings
    lookup_key = request.query_params.get("lookup_key", "")
    if not lookup_key:
        return _error("lookup_key query parameter is required", HTTPStatus.BAD_REQUEST)
    candidates = await repository.find_by_lookup_key(lookup_key, limit=settings.max_candidates)
    return JSONResponse({"records": [c.model_dump(mode="json") for c in candidates]})


async def create_record(request: Request) -> JSONResponse:
    repository: RemoteRecordRepository = request.app.state.repository

    try:
        body = json.loads(await request.body())
    except (ValueError, json.JSONDecodeError):  # fmt: skip
        return _error("Invalid JSON body", HTTPStatus.UNPROCESSABLE_ENTITY)
    if not isinstance(body, dict):
        return _error("Record must be a JSON object", HTTPStatus.UNPROCESSABLE_ENTITY)

    # Sync metadata belongs to the uploading device, never to the stored copy.
    body.update(sync_status=SyncStatus.UNSYNCED, remote_id=None)
    try:
        record = GameRecord.model_validate(body)
    except ValidationError as e:
        return _error(f"Invalid record: {e.error_count()} validation error(s)", HTTPStatus.UNPROCESSABLE_ENTITY)

    try:
        stored = await repository.create(record)
    except RecordStoreFullError as e:
        return _error(str(e), HTTPStatus.INSUFFICIENT_STORAGE)

    status = HTTPStatus.OK if stored.duplicate else HTTPStatus.CREATED
    return JSONResponse({"remote_id": stored.remote_id, "duplicate": stored.duplicate}, status_code=status)


async def fetch_record(request: Request) -> JSONResponse:
    repository: RemoteRecordRepository = request.app.state.repository
    data = await repository.get(request.path_params["remote_id"])
    if data is None:
        return _error("Record not found", HTTPStatus.NOT_FOUND)
    return JSONResponse(data)


def create_app(settings: RemoteServerSettings | None = None) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = RemoteServerSettings()

    routes = [
        Route("/health", health, methods=["GET"], name="health"),
        Route("/records", require_token(query_records), methods=["GET"], name="query_records"),
        Route("/records", require_token(create_record), methods=["POST"], name="create_record"),
        Route("/records/{remote_id:str}", require_token(fetch_record), methods=["GET"], name="fetch_record"),
    ]

    db = Database(settings.database_path)
    db.connect()
    repository = SqliteRemoteRecordRepository(db, max_records=settings.max_records)

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        yield
        db.close()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.state.db = db
    app.state.settings = settings
    app.state.repository = repository

    logger.info("remote record server ready", database=settings.database_path)
    return app


def get_app() -> Starlette:  # pragma: no cover
    """Factory function for uvicorn --factory remote.app:get_app."""
    s = RemoteServerSettings()
    setup_logging("remote", log_dir=s.log_dir)
    return create_app(settings=s)
