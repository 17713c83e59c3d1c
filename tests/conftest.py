from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from margins.codec import encode_article
from margins.database import Database
from margins.errors import AuthExpiredError, RemoteError
from margins.models import Article, Credential, Identity
from margins.remote import ErrorHandler, RemoteDocument, SnapshotHandler, Subscription
from margins.sync import SyncEngine


class FakeCollection:
    """In-memory remote collection; queue errors in ``fail_next`` to make writes fail."""

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_next: list[RemoteError] = []
        self.subscribe_error: RemoteError | None = None
        self.subscriptions = 0
        self.handlers: tuple[SnapshotHandler, ErrorHandler] | None = None
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def set(self, doc_id: str, fields: dict[str, Any], *, merge: bool = False) -> None:
        self.calls.append(("set", doc_id))
        self._maybe_fail()
        if merge and doc_id in self.docs:
            self.docs[doc_id] = {**self.docs[doc_id], **fields}
        else:
            self.docs[doc_id] = dict(fields)

    async def delete(self, doc_id: str) -> None:
        self.calls.append(("delete", doc_id))
        self._maybe_fail()
        self.docs.pop(doc_id, None)

    async def list_documents(self) -> list[RemoteDocument]:
        return [RemoteDocument(id=doc_id, fields=dict(fields)) for doc_id, fields in self.docs.items()]

    def subscribe(self, on_snapshot: SnapshotHandler, on_error: ErrorHandler) -> Subscription:
        self.subscriptions += 1
        self.handlers = (on_snapshot, on_error)
        subscription = Subscription()

        async def _deliver() -> None:
            if self.subscribe_error is not None:
                error, self.subscribe_error = self.subscribe_error, None
                subscription.cancel()
                await on_error(error)
                return
            await on_snapshot(await self.list_documents())

        subscription.attach(asyncio.create_task(_deliver()))
        return subscription

    async def emit_error(self, error: RemoteError) -> None:
        assert self.handlers is not None
        await self.handlers[1](error)

    async def emit_snapshot(self) -> None:
        assert self.handlers is not None
        await self.handlers[0](await self.list_documents())

    def seed(self, article: Article) -> None:
        self.docs[article.id] = encode_article(article)

    async def close(self) -> None:
        self.closed = True


class FakeAuth:
    def __init__(self, identity: Identity | None = None, *, refresh_ok: bool = True) -> None:
        self.identity = identity or Identity(uid="user-1", email="reader@example.com")
        self.refresh_ok = refresh_ok
        self.refresh_calls = 0
        self._credential = Credential(id_token="token-0", refresh_token="refresh")

    def is_authenticated(self) -> bool:
        return self.identity is not None

    def current_identity(self) -> Identity | None:
        return self.identity

    def credential(self) -> Credential | None:
        return self._credential

    def on_auth_change(self, callback):
        return lambda: None

    async def refresh_token(self) -> Credential:
        self.refresh_calls += 1
        if not self.refresh_ok:
            raise AuthExpiredError("refresh rejected", status=400)
        self._credential = Credential(id_token=f"token-{self.refresh_calls}", refresh_token="refresh")
        return self._credential


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "state" / "margins.db")
    yield database
    database.close()


@pytest.fixture
def remote() -> FakeCollection:
    return FakeCollection()


@pytest.fixture
def auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def notices() -> list[str]:
    return []


@pytest.fixture
def engine(db: Database, remote: FakeCollection, auth: FakeAuth, notices: list[str], tmp_path: Path) -> SyncEngine:
    return SyncEngine(
        db,
        remote_factory=lambda identity: remote,
        auth=auth,
        ledger_root=tmp_path,
        notify=notices.append,
    )
