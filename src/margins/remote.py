from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import httpx
from aiolimiter import AsyncLimiter

from .errors import AuthExpiredError, PermissionDeniedError, RemoteError, classify_remote_error
from .codec import doc_id_from_name

logger = logging.getLogger(__name__)

BASE_URL_TEMPLATE = "https://firestore.googleapis.com/v1/projects/{project}/databases/(default)/documents"


@dataclass(slots=True)
class RemoteDocument:
    id: str
    fields: dict[str, Any] = field(default_factory=dict)


SnapshotHandler = Callable[[list[RemoteDocument]], Awaitable[None]]
ErrorHandler = Callable[[RemoteError], Awaitable[None]]


class Subscription:
    """Handle for a live snapshot feed; ``cancel`` is safe to call from inside a handler."""

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    def attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def active(self) -> bool:
        return not self._stopped and self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def cancel(self) -> None:
        self._stopped = True
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()


class RemoteCollection(Protocol):
    """One user's article collection in a remote document store."""

    async def set(self, doc_id: str, fields: dict[str, Any], *, merge: bool = False) -> None: ...

    async def delete(self, doc_id: str) -> None: ...

    async def list_documents(self) -> list[RemoteDocument]: ...

    def subscribe(self, on_snapshot: SnapshotHandler, on_error: ErrorHandler) -> Subscription: ...

    async def close(self) -> None: ...


class FirestoreCollection:
    """``users/{uid}/articles`` over the Firestore REST API.

    Writes share a per-minute rate limit. Subscriptions poll a query ordered
    by ``dateAdded`` descending and deliver a snapshot whenever the result
    differs from the previous one (always for the first poll).
    """

    def __init__(
        self,
        project_id: str,
        uid: str,
        token_source: Callable[[], str | None],
        *,
        rpm_write: int = 60,
        poll_interval: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not project_id:
            raise RemoteError("project id is required")
        self.uid = uid
        self._base = BASE_URL_TEMPLATE.format(project=project_id)
        self._parent = f"{self._base}/users/{uid}"
        self._token_source = token_source
        self._poll_interval = poll_interval
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=15.0, pool=5.0),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        self._write_limiter = AsyncLimiter(max(1, rpm_write), time_period=60)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _doc_url(self, doc_id: str) -> str:
        return f"{self._parent}/articles/{doc_id}"

    def _headers(self) -> dict[str, str]:
        token = self._token_source()
        if not token:
            raise AuthExpiredError("no bearer token")
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
            if response.status_code == 429:
                await self._respect_retry_after(response)
                response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteError(f"{method} {url} failed: {exc}", code="UNAVAILABLE") from exc
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    async def set(self, doc_id: str, fields: dict[str, Any], *, merge: bool = False) -> None:
        params: list[tuple[str, str]] = []
        if merge:
            params = [("updateMask.fieldPaths", name) for name in fields]
        async with self._write_limiter:
            await self._request("PATCH", self._doc_url(doc_id), params=params, json={"fields": fields})
        logger.debug("Remote set %s (merge=%s, %d fields)", doc_id, merge, len(fields))

    async def delete(self, doc_id: str) -> None:
        async with self._write_limiter:
            await self._request("DELETE", self._doc_url(doc_id))
        logger.debug("Remote delete %s", doc_id)

    async def list_documents(self) -> list[RemoteDocument]:
        query = {
            "structuredQuery": {
                "from": [{"collectionId": "articles"}],
                "orderBy": [{"field": {"fieldPath": "dateAdded"}, "direction": "DESCENDING"}],
            }
        }
        response = await self._request("POST", f"{self._parent}:runQuery", json=query)
        docs: list[RemoteDocument] = []
        for item in response.json() or []:
            document = item.get("document") if isinstance(item, dict) else None
            if not document:
                continue
            docs.append(RemoteDocument(id=doc_id_from_name(document["name"]), fields=document.get("fields") or {}))
        return docs

    def subscribe(self, on_snapshot: SnapshotHandler, on_error: ErrorHandler) -> Subscription:
        subscription = Subscription()
        task = asyncio.create_task(self._poll(subscription, on_snapshot, on_error))
        subscription.attach(task)
        return subscription

    async def _poll(self, subscription: Subscription, on_snapshot: SnapshotHandler, on_error: ErrorHandler) -> None:
        previous: list[RemoteDocument] | None = None
        while not subscription.stopped:
            try:
                docs = await self.list_documents()
            except (AuthExpiredError, PermissionDeniedError) as exc:
                # The feed is dead until the caller re-subscribes.
                subscription.cancel()
                await on_error(exc)
                return
            except RemoteError as exc:
                logger.debug("Snapshot poll failed: %s", exc)
                # Re-deliver on recovery even if nothing changed meanwhile.
                previous = None
                await on_error(exc)
            else:
                if previous is None or docs != previous:
                    previous = docs
                    await on_snapshot(docs)
            if subscription.stopped:
                return
            await asyncio.sleep(self._poll_interval)

    async def _respect_retry_after(self, response: httpx.Response) -> None:
        retry_after = response.headers.get("Retry-After")
        delay = 1.0
        if retry_after:
            try:
                delay = max(1.0, float(retry_after))
            except ValueError:
                delay = 1.0
        logger.warning("Rate limited by remote store, sleeping for %.1fs", delay)
        await asyncio.sleep(delay)


def _error_from_response(response: httpx.Response) -> RemoteError:
    code: str | None = None
    message = f"HTTP {response.status_code}"
    with contextlib.suppress(ValueError):
        payload = response.json()
        # runQuery errors arrive wrapped in a list
        if isinstance(payload, list) and payload:
            payload = payload[0]
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            code = error.get("status")
            message = error.get("message") or message
    return classify_remote_error(response.status_code, code, message)


__all__ = ["FirestoreCollection", "RemoteCollection", "RemoteDocument", "Subscription"]
