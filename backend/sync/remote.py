"""Remote authoritative record store interface and its HTTP client."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import ValidationError

from records.models import RemoteCandidate
from shared.errors import SyncError, SyncErrorReason

if TYPE_CHECKING:
    from records.models import GameRecord

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 10.0

_AUTH_STATUSES = {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN}
_QUOTA_STATUSES = {HTTPStatus.TOO_MANY_REQUESTS, HTTPStatus.INSUFFICIENT_STORAGE}
_VALIDATION_STATUSES = {HTTPStatus.BAD_REQUEST, HTTPStatus.UNPROCESSABLE_ENTITY}


@dataclass(frozen=True)
class CreateResult:
    remote_id: str
    duplicate: bool = False  # the server already held a record with the same content


class RemoteRecordStore(ABC):
    """Abstract interface for the remote store.

    Every call is a fallible network operation with no transactionality
    beyond the single call; failures raise SyncError with a categorized reason.
    """

    @abstractmethod
    async def query(self, lookup_key: str) -> list[RemoteCandidate]: ...

    @abstractmethod
    async def create(self, record: GameRecord) -> CreateResult: ...

    @abstractmethod
    async def fetch(self, remote_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def check_health(self) -> bool: ...


def classify_status(status_code: int) -> SyncErrorReason:
    """Map an HTTP error status to a sync failure category."""
    if status_code in _AUTH_STATUSES:
        return SyncErrorReason.AUTH_REQUIRED
    if status_code in _QUOTA_STATUSES:
        return SyncErrorReason.QUOTA
    if status_code in _VALIDATION_STATUSES:
        return SyncErrorReason.VALIDATION
    return SyncErrorReason.NETWORK


class HttpRemoteRecordStore(RemoteRecordStore):
    """httpx-based client for the remote record service.

    Owns one AsyncClient for connection reuse; call aclose() on shutdown.
    A custom transport can be injected (tests use httpx.ASGITransport).
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:  # noqa: ANN401
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise SyncError(SyncErrorReason.NETWORK, type(exc).__name__) from exc
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        reason = classify_status(response.status_code)
        raise SyncError(reason, f"HTTP {response.status_code}")

    @staticmethod
    def _json_body(response: httpx.Response) -> Any:  # noqa: ANN401
        try:
            return response.json()
        except ValueError as exc:
            raise SyncError(SyncErrorReason.NETWORK, "malformed response body") from exc

    async def query(self, lookup_key: str) -> list[RemoteCandidate]:
        response = await self._request("GET", "/records", params={"lookup_key": lookup_key})
        self._raise_for_status(response)
        body = self._json_body(response)
        try:
            return [RemoteCandidate.model_validate(item) for item in body.get("records", [])]
        except (AttributeError, ValidationError) as exc:
            raise SyncError(SyncErrorReason.NETWORK, "malformed query response") from exc

    async def create(self, record: GameRecord) -> CreateResult:
        payload = record.model_dump(
            mode="json",
            exclude={"sync_status", "remote_id", "is_imported", "imported_at", "shared_from"},
        )
        response = await self._request("POST", "/records", json=payload)
        self._raise_for_status(response)
        body = self._json_body(response)
        remote_id = body.get("remote_id") if isinstance(body, dict) else None
        if not isinstance(remote_id, str) or not remote_id:
            raise SyncError(SyncErrorReason.NETWORK, "create response without remote_id")
        return CreateResult(remote_id=remote_id, duplicate=bool(body.get("duplicate", False)))

    async def fetch(self, remote_id: str) -> dict[str, Any] | None:
        """Fetch a raw remote record. The result is untrusted input."""
        response = await self._request("GET", f"/records/{remote_id}")
        if response.status_code == HTTPStatus.NOT_FOUND:
            return None
        self._raise_for_status(response)
        body = self._json_body(response)
        if not isinstance(body, dict):
            raise SyncError(SyncErrorReason.NETWORK, "malformed fetch response")
        return body

    async def check_health(self) -> bool:
        try:
            response = await self._client.get("/health")
        except httpx.RequestError:
            return False
        return response.status_code == HTTPStatus.OK
