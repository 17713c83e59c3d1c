from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Mapping

from .auth import AuthProvider, Unconfigured
from .codec import decode_article, encode_article, encode_fields
from .database import Database
from .errors import (
    AuthExpiredError,
    NotConfiguredError,
    PermissionDeniedError,
    RemoteError,
    StorageError,
)
from .failures import WriteOp, append_failure, read_failures
from .models import Article, Highlight, Identity, update_keys
from .remote import RemoteCollection, RemoteDocument, Subscription

logger = logging.getLogger(__name__)

PENDING_META_KEY = "pending_ids"
PERMISSION_NOTICE = "Access denied. Please check your account permissions."
EXPIRED_NOTICE = "Session expired. Changes are saved locally; sign in again to sync."

WriteStatus = Literal["success", "local_only", "partial", "failed"]
RemoteFactory = Callable[[Identity], RemoteCollection]
Notifier = Callable[[str], None]


class SyncState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    DEGRADED = "degraded"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    SYNCING = "syncing"
    LOCAL = "local"
    ERROR = "error"


@dataclass(slots=True)
class WriteOutcome:
    status: WriteStatus
    article_id: str
    synced: bool = False
    error: str | None = None
    article: Article | None = None

    @property
    def local_ok(self) -> bool:
        return self.status != "failed"


@dataclass(slots=True)
class ReplayStats:
    pushed: int = 0
    deleted: int = 0
    failed: int = 0

    def summary(self) -> dict[str, int]:
        return {"pushed": self.pushed, "deleted": self.deleted, "failed": self.failed}


@dataclass(slots=True)
class SyncSession:
    """Everything that belongs to one signed-in identity."""

    identity: Identity | None = None
    state: SyncState = SyncState.UNAUTHENTICATED
    status: SyncStatus = SyncStatus.LOCAL
    remote: RemoteCollection | None = None
    subscription: Subscription | None = None
    last_error: str | None = None
    snapshots: int = 0

    @property
    def authenticated(self) -> bool:
        return self.identity is not None and self.state is not SyncState.UNAUTHENTICATED


class SyncEngine:
    """Local-first article writes mirrored to a remote collection.

    The local cache is always written first and is the only thing a caller
    needs for correctness. While a session is signed in, each write is
    mirrored remotely, and every remote snapshot replaces the local article
    collection wholesale. Records whose remote write has not been confirmed
    are tracked as pending and survive snapshot replacement.
    """

    def __init__(
        self,
        db: Database,
        *,
        remote_factory: RemoteFactory | Unconfigured,
        auth: AuthProvider | Unconfigured,
        ledger_root: Path,
        notify: Notifier | None = None,
    ) -> None:
        self.db = db
        self.session = SyncSession()
        self._remote_factory = remote_factory
        self._auth = auth
        self._ledger_root = ledger_root
        self._notify = notify or (lambda message: None)
        self._first_snapshot = asyncio.Event()
        self._auth_retry_used = False
        self._background: set[asyncio.Task[Any]] = set()
        self._pending: set[str] = self._load_pending()

    # --- pending (unconfirmed) records ---
    def _load_pending(self) -> set[str]:
        raw = self.db.get_meta(PENDING_META_KEY)
        if not raw:
            return set()
        try:
            return {str(item) for item in json.loads(raw)}
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring unreadable pending id list")
            return set()

    def _save_pending(self) -> None:
        self.db.set_meta(PENDING_META_KEY, json.dumps(sorted(self._pending)) if self._pending else None)

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    # --- session lifecycle ---
    def _set_status(self, status: SyncStatus) -> None:
        if self.session.status is not status:
            logger.debug("Sync status %s -> %s", self.session.status.value, status.value)
        self.session.status = status

    async def _teardown(self) -> None:
        session = self.session
        if session.subscription is not None:
            session.subscription.cancel()
            session.subscription = None
        if session.remote is not None:
            await session.remote.close()
            session.remote = None

    async def sign_in(self, identity: Identity | None = None) -> None:
        if isinstance(self._remote_factory, Unconfigured):
            raise NotConfiguredError(f"remote sync unavailable: {self._remote_factory.reason}")
        if identity is None and not isinstance(self._auth, Unconfigured):
            identity = self._auth.current_identity()
        if identity is None:
            raise NotConfiguredError("no signed-in identity")

        # At most one live subscription.
        await self._teardown()
        self._first_snapshot = asyncio.Event()
        self._auth_retry_used = False
        self.session.identity = identity
        self.session.remote = self._remote_factory(identity)
        self.session.last_error = None
        self._subscribe()
        logger.info("Signed in as %s; subscribing to remote articles", identity.email or identity.uid)

    def _subscribe(self) -> None:
        remote = self.session.remote
        assert remote is not None
        self.session.state = SyncState.SUBSCRIBING
        self._set_status(SyncStatus.SYNCING)
        self.session.subscription = remote.subscribe(self._handle_snapshot, self._handle_error)

    async def sign_out(self) -> None:
        await self._teardown()
        # Do not leave one account's articles behind for the next one.
        self.db.clear_articles()
        self._pending.clear()
        self._save_pending()
        self.session = SyncSession()
        self._first_snapshot.set()
        logger.info("Signed out; local article cache cleared")

    def bind_auth(self) -> Callable[[], None]:
        """Follow the auth provider: sign in on a new identity, sign out when it goes away."""
        if isinstance(self._auth, Unconfigured):
            raise NotConfiguredError(f"authentication unavailable: {self._auth.reason}")

        def _on_change(identity: Identity | None) -> None:
            coro = self.sign_in(identity) if identity is not None else self.sign_out()
            task = asyncio.get_running_loop().create_task(coro)
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return self._auth.on_auth_change(_on_change)

    async def wait_until_ready(self, timeout: float | None = None) -> SyncState:
        """Wait for the first snapshot (or the first error) after ``sign_in``."""
        await asyncio.wait_for(self._first_snapshot.wait(), timeout)
        return self.session.state

    async def _expire_session(self, reason: str) -> None:
        logger.warning("Remote session expired: %s", reason)
        await self._teardown()
        self.session.identity = None
        self.session.state = SyncState.UNAUTHENTICATED
        self.session.last_error = reason
        self._set_status(SyncStatus.LOCAL)
        self._first_snapshot.set()
        self._notify(EXPIRED_NOTICE)

    # --- inbound ---
    async def _handle_snapshot(self, docs: list[RemoteDocument]) -> None:
        if not self.session.authenticated:
            return
        incoming: list[Article] = []
        for doc in docs:
            try:
                incoming.append(decode_article(doc.id, doc.fields))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping undecodable remote document %s: %s", doc.id, exc)
        remote_ids = {a.id for a in incoming}

        confirmed = self._pending & remote_ids
        self._pending -= confirmed
        kept = [a for a in self.db.get_articles() if a.id in self._pending and a.id not in remote_ids]
        try:
            self.db.save_articles(kept + incoming)
        except StorageError as exc:
            logger.error("Could not apply remote snapshot to the local cache: %s", exc)
            self._pending |= confirmed
            self.session.state = SyncState.DEGRADED
            self.session.last_error = str(exc)
            self._set_status(SyncStatus.ERROR)
            self._first_snapshot.set()
            return
        if confirmed or kept:
            self._save_pending()

        self.session.state = SyncState.LIVE
        self.session.snapshots += 1
        self.session.last_error = None
        self._auth_retry_used = False
        self._set_status(SyncStatus.SYNCED)
        self._first_snapshot.set()
        logger.info("Snapshot applied: %d remote, %d pending local", len(incoming), len(kept))

    async def _handle_error(self, exc: RemoteError) -> None:
        if not self.session.authenticated:
            return
        self.session.last_error = str(exc)
        if isinstance(exc, AuthExpiredError):
            if self._auth_retry_used or isinstance(self._auth, Unconfigured):
                await self._expire_session(str(exc))
                return
            self._auth_retry_used = True
            try:
                await self._auth.refresh_token()
            except RemoteError as refresh_exc:
                await self._expire_session(str(refresh_exc))
                return
            logger.info("Token refreshed; re-subscribing")
            if self.session.subscription is not None:
                self.session.subscription.cancel()
            self._subscribe()
            return

        self.session.state = SyncState.DEGRADED
        self._set_status(SyncStatus.ERROR)
        self._first_snapshot.set()
        if isinstance(exc, PermissionDeniedError):
            logger.warning("Remote subscription denied: %s", exc)
            self._notify(PERMISSION_NOTICE)
        else:
            logger.info("Remote subscription interrupted, serving local cache: %s", exc)

    # --- outbound ---
    async def _push(
        self,
        op: WriteOp,
        article_id: str,
        call: Callable[[RemoteCollection], Awaitable[None]],
        article: Article | None = None,
    ) -> WriteOutcome:
        remote = self.session.remote
        if remote is None or not self.session.authenticated:
            return WriteOutcome("success", article_id, synced=False, article=article)

        self._set_status(SyncStatus.SYNCING)
        try:
            await call(remote)
        except AuthExpiredError as exc:
            logger.info("Remote %s of %s rejected (%s); refreshing token", op, article_id, exc)
            try:
                if isinstance(self._auth, Unconfigured):
                    raise AuthExpiredError("no auth provider to refresh with") from exc
                await self._auth.refresh_token()
                await call(remote)
            except RemoteError as retry_exc:
                append_failure(self._ledger_root, article_id, op)
                await self._expire_session(str(retry_exc))
                return WriteOutcome("local_only", article_id, error=str(retry_exc), article=article)
        except PermissionDeniedError as exc:
            logger.warning("Remote %s of %s denied: %s", op, article_id, exc)
            append_failure(self._ledger_root, article_id, op)
            self._set_status(SyncStatus.ERROR)
            self._notify(PERMISSION_NOTICE)
            return WriteOutcome("partial", article_id, error=str(exc), article=article)
        except RemoteError as exc:
            logger.warning("Remote %s of %s failed, local copy kept: %s", op, article_id, exc)
            append_failure(self._ledger_root, article_id, op)
            self._set_status(SyncStatus.ERROR)
            return WriteOutcome("partial", article_id, error=str(exc), article=article)

        self._set_status(SyncStatus.SYNCED)
        return WriteOutcome("success", article_id, synced=True, article=article)

    async def add_article(self, article: Article) -> WriteOutcome:
        try:
            self.db.add_article(article)
        except StorageError as exc:
            logger.error("Could not save article %s locally: %s", article.id, exc)
            return WriteOutcome("failed", article.id, error=str(exc))
        if not self.session.authenticated:
            return WriteOutcome("success", article.id, article=article)

        self._pending.add(article.id)
        self._save_pending()
        fields = encode_article(article)
        outcome = await self._push("add", article.id, lambda remote: remote.set(article.id, fields), article)
        if outcome.synced:
            self._pending.discard(article.id)
            self._save_pending()
        return outcome

    async def update_article(self, article_id: str, updates: Mapping[str, Any]) -> WriteOutcome:
        try:
            updated = self.db.update_article(article_id, updates)
        except StorageError as exc:
            logger.error("Could not update article %s locally: %s", article_id, exc)
            return WriteOutcome("failed", article_id, error=str(exc))
        if updated is None:
            return WriteOutcome("failed", article_id, error="article not found")

        if article_id in self._pending:
            # The remote has never seen this record; a merge would leave a partial document.
            full = encode_article(updated)
            outcome = await self._push("update", article_id, lambda remote: remote.set(article_id, full), updated)
            if outcome.synced:
                self._pending.discard(article_id)
                self._save_pending()
            return outcome

        changed = {name: getattr(updated, name) for name in (*updates, "last_modified") if name != "id"}
        fields = encode_fields(update_keys(changed))
        return await self._push(
            "update",
            article_id,
            lambda remote: remote.set(article_id, fields, merge=True),
            updated,
        )

    async def delete_article(self, article_id: str) -> WriteOutcome:
        try:
            self.db.delete_article(article_id)
        except StorageError as exc:
            logger.error("Could not delete article %s locally: %s", article_id, exc)
            return WriteOutcome("failed", article_id, error=str(exc))
        if article_id in self._pending:
            self._pending.discard(article_id)
            self._save_pending()
        return await self._push("delete", article_id, lambda remote: remote.delete(article_id))

    # --- convenience mutations ---
    def _require(self, article_id: str) -> Article:
        article = self.db.get_article(article_id)
        if article is None:
            raise KeyError(article_id)
        return article

    async def save_read_progress(self, article_id: str, percent: int) -> WriteOutcome:
        """Raise stored progress to ``percent``; lower values are ignored."""
        article = self._require(article_id)
        percent = max(0, min(100, int(percent)))
        if percent <= article.read_progress:
            return WriteOutcome("success", article_id, synced=False, article=article)
        return await self.update_article(article_id, {"read_progress": percent})

    async def toggle_read(self, article_id: str) -> WriteOutcome:
        article = self._require(article_id)
        return await self.update_article(article_id, {"is_read": not article.is_read})

    async def toggle_favorite(self, article_id: str) -> WriteOutcome:
        article = self._require(article_id)
        return await self.update_article(article_id, {"is_favorite": not article.is_favorite})

    async def toggle_archive(self, article_id: str) -> WriteOutcome:
        article = self._require(article_id)
        return await self.update_article(article_id, {"is_archived": not article.is_archived})

    async def add_highlight(
        self,
        article_id: str,
        text: str,
        color: str = "yellow",
        *,
        note: str = "",
        tags: list[str] | None = None,
    ) -> tuple[Highlight, WriteOutcome]:
        article = self._require(article_id)
        highlight = Highlight.create(text, color, note=note, tags=tags)
        outcome = await self.update_article(article_id, {"highlights": [*article.highlights, highlight]})
        return highlight, outcome

    async def update_highlight_note(self, article_id: str, highlight_id: str, note: str) -> WriteOutcome:
        article = self._require(article_id)
        highlights = list(article.highlights)
        for index, highlight in enumerate(highlights):
            if highlight.id == highlight_id:
                highlights[index] = Highlight(
                    id=highlight.id,
                    text=highlight.text,
                    color=highlight.color,
                    note=note.strip(),
                    tags=list(highlight.tags),
                    timestamp=highlight.timestamp,
                )
                return await self.update_article(article_id, {"highlights": highlights})
        raise KeyError(highlight_id)

    async def delete_highlight(self, article_id: str, highlight_id: str) -> WriteOutcome:
        article = self._require(article_id)
        highlights = [h for h in article.highlights if h.id != highlight_id]
        if len(highlights) == len(article.highlights):
            raise KeyError(highlight_id)
        return await self.update_article(article_id, {"highlights": highlights})

    # --- reconciliation ---
    async def replay(self, *, date: dt.date) -> ReplayStats:
        """Re-push writes recorded in the ledger for ``date``."""
        stats = ReplayStats()
        remote = self.session.remote
        if remote is None or not self.session.authenticated:
            raise NotConfiguredError("sign in before replaying remote writes")
        entries = read_failures(self._ledger_root, date=date)
        if not entries:
            logger.info("No failed writes recorded for %s", date.isoformat())
            return stats
        for article_id, op in entries:
            article = self.db.get_article(article_id)
            try:
                if op == "delete" or article is None:
                    await remote.delete(article_id)
                    stats.deleted += 1
                else:
                    await remote.set(article_id, encode_article(article))
                    self._pending.discard(article_id)
                    stats.pushed += 1
            except RemoteError as exc:
                logger.error("Replay of %s %s failed: %s", op, article_id, exc)
                stats.failed += 1
        self._save_pending()
        return stats

    async def close(self) -> None:
        await self._teardown()
        for task in list(self._background):
            task.cancel()


__all__ = [
    "ReplayStats",
    "SyncEngine",
    "SyncSession",
    "SyncState",
    "SyncStatus",
    "WriteOutcome",
]
