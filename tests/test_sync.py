from __future__ import annotations

import datetime as dt

import pytest

from margins.auth import Unconfigured
from margins.errors import AuthExpiredError, NotConfiguredError, PermissionDeniedError, RemoteError, StorageError
from margins.failures import read_failures
from margins.models import Article
from margins.sync import EXPIRED_NOTICE, PERMISSION_NOTICE, SyncEngine, SyncState, SyncStatus


def _article(url: str = "https://example.com/a", title: str = "A") -> Article:
    return Article.create(url, title, "article", tags=["python"], content="Body text")


async def _signed_in(engine: SyncEngine) -> SyncEngine:
    await engine.sign_in()
    await engine.wait_until_ready(1.0)
    return engine


@pytest.mark.asyncio
async def test_add_without_session_is_local(engine, db, remote) -> None:
    article = _article()
    outcome = await engine.add_article(article)
    assert outcome.status == "success"
    assert outcome.synced is False
    assert db.get_article(article.id) is not None
    assert remote.calls == []


@pytest.mark.asyncio
async def test_add_while_live_mirrors_remotely(engine, db, remote) -> None:
    await _signed_in(engine)
    assert engine.session.state is SyncState.LIVE
    article = _article()
    outcome = await engine.add_article(article)
    assert outcome.synced is True
    assert article.id in remote.docs
    assert "id" not in remote.docs[article.id]
    assert engine.pending == frozenset()


@pytest.mark.asyncio
async def test_remote_failure_keeps_local_copy_and_records_ledger(engine, db, remote, tmp_path) -> None:
    await _signed_in(engine)
    remote.fail_next.append(RemoteError("backend unavailable", status=503, code="UNAVAILABLE"))
    article = _article()

    outcome = await engine.add_article(article)

    assert outcome.status == "partial"
    assert outcome.local_ok
    assert db.get_article(article.id) is not None
    assert article.id in engine.pending
    assert engine.session.status is SyncStatus.ERROR
    assert read_failures(tmp_path, date=dt.date.today()) == [(article.id, "add")]

    stats = await engine.replay(date=dt.date.today())
    assert stats.summary() == {"pushed": 1, "deleted": 0, "failed": 0}
    assert article.id in remote.docs
    assert engine.pending == frozenset()


@pytest.mark.asyncio
async def test_auth_expiry_refreshes_and_retries_exactly_once(engine, db, remote, auth) -> None:
    await _signed_in(engine)
    remote.fail_next.append(AuthExpiredError("token expired", status=401))
    article = _article()

    outcome = await engine.add_article(article)

    assert outcome.status == "success"
    assert outcome.synced is True
    assert auth.refresh_calls == 1
    assert remote.calls.count(("set", article.id)) == 2
    assert engine.session.state is SyncState.LIVE


@pytest.mark.asyncio
async def test_failed_refresh_keeps_local_and_drops_session(engine, db, remote, auth, notices) -> None:
    await _signed_in(engine)
    auth.refresh_ok = False
    remote.fail_next.append(AuthExpiredError("token expired", status=401))
    article = _article()

    outcome = await engine.add_article(article)

    assert outcome.status == "local_only"
    assert db.get_article(article.id) is not None
    assert auth.refresh_calls == 1
    assert remote.calls.count(("set", article.id)) == 1
    assert engine.session.state is SyncState.UNAUTHENTICATED
    assert engine.session.status is SyncStatus.LOCAL
    assert EXPIRED_NOTICE in notices

    # Later writes stay local without touching the remote.
    follow_up = await engine.update_article(article.id, {"is_favorite": True})
    assert follow_up.status == "success"
    assert follow_up.synced is False
    assert remote.calls.count(("set", article.id)) == 1


@pytest.mark.asyncio
async def test_permission_denied_write_notifies(engine, db, remote, notices) -> None:
    await _signed_in(engine)
    remote.fail_next.append(PermissionDeniedError("denied", status=403, code="PERMISSION_DENIED"))
    article = _article()

    outcome = await engine.add_article(article)

    assert outcome.status == "partial"
    assert db.get_article(article.id) is not None
    assert PERMISSION_NOTICE in notices


@pytest.mark.asyncio
async def test_snapshot_replaces_cache_but_keeps_pending(engine, db, remote) -> None:
    stale = _article("https://stale.example.com", "Stale")
    db.add_article(stale)
    remote_article = _article("https://remote.example.com", "Remote")
    remote.seed(remote_article)

    await _signed_in(engine)
    assert [a.id for a in db.get_articles()] == [remote_article.id]

    remote.fail_next.append(RemoteError("backend unavailable", status=503))
    unsynced = _article("https://new.example.com", "New")
    await engine.add_article(unsynced)

    await _signed_in(engine)
    assert {a.id for a in db.get_articles()} == {remote_article.id, unsynced.id}
    assert unsynced.id in engine.pending

    await engine.replay(date=dt.date.today())
    await _signed_in(engine)
    assert {a.id for a in db.get_articles()} == {remote_article.id, unsynced.id}
    assert engine.pending == frozenset()


@pytest.mark.asyncio
async def test_update_merges_only_changed_fields(engine, db, remote) -> None:
    article = _article()
    remote.seed(article)
    await _signed_in(engine)

    outcome = await engine.update_article(article.id, {"read_progress": 40})

    assert outcome.synced is True
    assert remote.docs[article.id]["readProgress"] == {"integerValue": "40"}
    assert "lastModified" in remote.docs[article.id]
    assert db.get_article(article.id).read_progress == 40


@pytest.mark.asyncio
async def test_update_of_unconfirmed_article_pushes_full_record(engine, db, remote) -> None:
    await _signed_in(engine)
    remote.fail_next.append(RemoteError("backend unavailable", status=503, code="UNAVAILABLE"))
    article = Article.create(
        "https://example.com/long-read", "A Long Read", "article", tags=["essay"], content="Full body of the essay"
    )
    await engine.add_article(article)
    assert article.id in engine.pending

    outcome = await engine.toggle_favorite(article.id)

    assert outcome.synced is True
    assert remote.docs[article.id]["url"] == {"stringValue": "https://example.com/long-read"}
    assert engine.pending == frozenset()

    await _signed_in(engine)
    stored = db.get_article(article.id)
    assert stored.url == "https://example.com/long-read"
    assert stored.title == "A Long Read"
    assert stored.content == "Full body of the essay"
    assert stored.is_favorite is True


@pytest.mark.asyncio
async def test_update_unknown_article_fails(engine) -> None:
    outcome = await engine.update_article("article_missing", {"is_read": True})
    assert outcome.status == "failed"
    assert not outcome.local_ok


@pytest.mark.asyncio
async def test_sign_out_clears_local_articles(engine, db, remote) -> None:
    remote.seed(_article())
    await _signed_in(engine)
    assert db.get_articles()

    await engine.sign_out()

    assert db.get_articles() == []
    assert engine.pending == frozenset()
    assert engine.session.state is SyncState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_subscription_permission_denied_degrades(engine, remote, notices) -> None:
    remote.subscribe_error = PermissionDeniedError("denied", status=403, code="PERMISSION_DENIED")
    await _signed_in(engine)
    assert engine.session.state is SyncState.DEGRADED
    assert engine.session.status is SyncStatus.ERROR
    assert PERMISSION_NOTICE in notices


@pytest.mark.asyncio
async def test_subscription_auth_error_resubscribes_after_refresh(engine, remote, auth) -> None:
    remote.subscribe_error = AuthExpiredError("expired", status=401)
    await _signed_in(engine)
    assert auth.refresh_calls == 1
    assert remote.subscriptions == 2
    assert engine.session.state is SyncState.LIVE


@pytest.mark.asyncio
async def test_read_progress_only_moves_forward(engine, db) -> None:
    article = _article()
    await engine.add_article(article)

    await engine.save_read_progress(article.id, 50)
    await engine.save_read_progress(article.id, 30)
    assert db.get_article(article.id).read_progress == 50

    await engine.save_read_progress(article.id, 150)
    assert db.get_article(article.id).read_progress == 100


@pytest.mark.asyncio
async def test_highlight_lifecycle(engine, db) -> None:
    article = _article()
    await engine.add_article(article)

    highlight, outcome = await engine.add_highlight(article.id, "Quoted passage", "green", tags=["Idea"])
    assert outcome.status == "success"
    assert highlight.tags == ["idea"]

    await engine.update_highlight_note(article.id, highlight.id, "  worth rereading ")
    stored = db.get_article(article.id).highlights
    assert stored[0].note == "worth rereading"

    await engine.delete_highlight(article.id, highlight.id)
    assert db.get_article(article.id).highlights == []
    with pytest.raises(KeyError):
        await engine.delete_highlight(article.id, highlight.id)


@pytest.mark.asyncio
async def test_sign_in_without_remote_raises(db, auth, tmp_path) -> None:
    engine = SyncEngine(db, remote_factory=Unconfigured("no project"), auth=auth, ledger_root=tmp_path)
    with pytest.raises(NotConfiguredError):
        await engine.sign_in()
    with pytest.raises(NotConfiguredError):
        await engine.replay(date=dt.date.today())


@pytest.mark.asyncio
async def test_delete_survives_remote_failure(engine, db, remote, tmp_path) -> None:
    await _signed_in(engine)
    remote.fail_next.append(RemoteError("backend unavailable", status=503, code="UNAVAILABLE"))
    article = _article()
    await engine.add_article(article)
    assert article.id in engine.pending

    remote.fail_next.append(RemoteError("backend unavailable", status=503, code="UNAVAILABLE"))
    outcome = await engine.delete_article(article.id)

    assert outcome.status == "partial"
    assert db.get_article(article.id) is None
    assert article.id not in engine.pending
    assert (article.id, "delete") in read_failures(tmp_path, date=dt.date.today())
    assert remote.calls[-1] == ("delete", article.id)


@pytest.mark.asyncio
async def test_transient_subscription_error_recovers_to_live(engine, db, remote) -> None:
    await _signed_in(engine)
    assert engine.session.state is SyncState.LIVE

    await remote.emit_error(RemoteError("backend unavailable", status=503, code="UNAVAILABLE"))
    assert engine.session.state is SyncState.DEGRADED
    assert engine.session.status is SyncStatus.ERROR

    incoming = _article("https://remote.example.com", "Remote")
    remote.seed(incoming)
    await remote.emit_snapshot()

    assert engine.session.state is SyncState.LIVE
    assert engine.session.status is SyncStatus.SYNCED
    assert engine.session.last_error is None
    assert db.get_article(incoming.id) is not None


@pytest.mark.asyncio
async def test_snapshot_storage_failure_degrades(engine, db, remote, monkeypatch) -> None:
    await _signed_in(engine)

    def _broken(articles):
        raise StorageError("disk full")

    monkeypatch.setattr(db, "save_articles", _broken)
    await remote.emit_snapshot()

    assert engine.session.state is SyncState.DEGRADED
    assert engine.session.status is SyncStatus.ERROR
    assert engine.session.last_error == "disk full"
