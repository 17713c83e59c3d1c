from __future__ import annotations

import asyncio
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import AsyncIterator

import typer

from .analytics import analytics, format_minutes
from .auth import EnvTokenAuth, Unconfigured
from .config import Settings, load_settings
from .database import Database
from .errors import AuthExpiredError, NotConfiguredError, RemoteError, RetrievalError, StorageError
from .extractor import extract
from .highlights import export_markdown
from .importers import import_books, parse_kindle_clippings
from .library import Library
from .logging_setup import setup_logging
from .models import Identity
from .remote import FirestoreCollection
from .retrieval import fetch_article, strategies_from_templates
from .sync import SyncEngine, SyncState
from .tags import normalize_tags

app = typer.Typer(help="Local-first read-it-later library")
auth_app = typer.Typer(help="Authentication helpers")
tags_app = typer.Typer(help="Tag maintenance")
folder_app = typer.Typer(help="Folders")
highlights_app = typer.Typer(help="Highlights")
app.add_typer(auth_app, name="auth")
app.add_typer(tags_app, name="tags")
app.add_typer(folder_app, name="folder")
app.add_typer(highlights_app, name="highlights")

READY_TIMEOUT = 30.0


@dataclass(slots=True)
class AppState:
    settings: Settings


def _resolve_config_path(config: Path | None) -> Path | None:
    if config:
        return config
    env_value = os.getenv("MARGINS_CONFIG")
    if env_value:
        return Path(env_value)
    default = Path.cwd() / ".margins.yaml"
    return default if default.exists() else None


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(None, "--config", exists=True, help="Path to .margins.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    cfg_path = _resolve_config_path(config)
    settings = load_settings(cfg_path)
    if verbose:
        settings.log_level = "DEBUG"
    setup_logging(settings.log_level)
    settings.ensure_data_dirs()
    _startup_maintenance(settings)
    ctx.obj = AppState(settings=settings)
    typer.secho(f"Config: {settings.config_path or 'defaults'}, db={settings.db_path}", fg="cyan", err=True)


def _startup_maintenance(settings: Settings) -> None:
    db = Database(settings.db_path)
    try:
        normalize_tags(db)
    except StorageError as exc:
        typer.secho(f"Tag normalization skipped: {exc}", fg="yellow", err=True)
    finally:
        db.close()


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if not isinstance(state, AppState):
        raise typer.BadParameter("application state missing")
    return state


def _notice(message: str) -> None:
    typer.secho(message, fg="yellow", err=True)


def build_auth(settings: Settings) -> EnvTokenAuth | Unconfigured:
    identity = settings.identity()
    if identity is None:
        return Unconfigured("MARGINS_UID and MARGINS_ID_TOKEN are not set")
    return EnvTokenAuth(api_key=settings.api_key, identity=identity, credential=settings.credential())


def build_engine(settings: Settings, db: Database) -> SyncEngine:
    auth = build_auth(settings)
    if not settings.remote_configured or isinstance(auth, Unconfigured):
        reason = auth.reason if isinstance(auth, Unconfigured) else "remote.project_id is not set"
        return SyncEngine(db, remote_factory=Unconfigured(reason), auth=auth, ledger_root=settings.root, notify=_notice)

    def _bearer() -> str | None:
        credential = auth.credential()
        return credential.id_token if credential else None

    def _factory(identity: Identity) -> FirestoreCollection:
        return FirestoreCollection(
            settings.project_id,
            identity.uid,
            _bearer,
            rpm_write=settings.rpm_write,
            poll_interval=settings.poll_interval,
        )

    return SyncEngine(db, remote_factory=_factory, auth=auth, ledger_root=settings.root, notify=_notice)


@asynccontextmanager
async def open_engine(settings: Settings, *, connect: bool) -> AsyncIterator[SyncEngine]:
    """Engine over the local cache; with ``connect`` it also signs in when credentials allow."""
    db = Database(settings.db_path)
    engine = build_engine(settings, db)
    try:
        if connect and settings.remote_configured and settings.has_credentials:
            await engine.sign_in()
            try:
                await engine.wait_until_ready(READY_TIMEOUT)
            except asyncio.TimeoutError:
                typer.secho("Remote did not answer in time; working from the local cache", fg="yellow", err=True)
        yield engine
    finally:
        await engine.close()
        db.close()


def _split_tags(raw: str | None) -> list[str]:
    return [t for t in (raw or "").split(",") if t.strip()]


@app.command()
def add(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Article URL"),
    title: str | None = typer.Option(None, "--title", help="Override the extracted title"),
    tags: str | None = typer.Option(None, "--tags", help="Comma-separated tags"),
    folder: str | None = typer.Option(None, "--folder", help="Folder id"),
    force: bool = typer.Option(False, "--force", help="Save even if the URL is already in the library"),
) -> None:
    state = _get_state(ctx)

    async def _run():
        async with open_engine(state.settings, connect=True) as engine:
            library = Library(engine, state.settings)
            return await library.save_url(url, title=title, tags=_split_tags(tags), folder_id=folder, force=force)

    try:
        result = asyncio.run(_run())
    except ValueError as exc:
        typer.secho(str(exc), fg="red", err=True)
        raise typer.Exit(code=2) from None

    if result.saved is None and result.duplicate is not None:
        typer.secho(f"Already saved as {result.duplicate.id} ({result.duplicate.title}); use --force to add again", fg="yellow")
        raise typer.Exit(code=1)
    if result.saved is None:
        error = result.outcome.error if result.outcome else "unknown error"
        typer.secho(f"Save failed: {error}", fg="red", err=True)
        raise typer.Exit(code=1)
    typer.secho(f"Saved {result.saved.id}: {result.saved.title}", fg="green")
    if result.outcome and result.outcome.status != "success":
        typer.secho(f"Remote sync: {result.outcome.status} ({result.outcome.error})", fg="yellow", err=True)
    if result.manual_entry:
        typer.secho(
            f"Could not extract readable content; paste it in with `margins paste {result.saved.id}`.", fg="yellow"
        )


@app.command()
def paste(
    ctx: typer.Context,
    article_id: str = typer.Argument(..., help="Article id"),
    file: Path | None = typer.Option(None, "--file", exists=True, dir_okay=False, help="Read text from a file instead of stdin"),
) -> None:
    """Replace an article's content with text pasted on stdin."""
    state = _get_state(ctx)
    text = file.read_text(encoding="utf-8", errors="replace") if file is not None else sys.stdin.read()
    if not text.strip():
        typer.secho("No content given", fg="red", err=True)
        raise typer.Exit(code=2)

    async def _run():
        async with open_engine(state.settings, connect=True) as engine:
            if engine.db.get_article(article_id) is None:
                return None
            library = Library(engine, state.settings)
            return await library.save_manual_content(article_id, text)

    outcome = asyncio.run(_run())
    if outcome is None:
        typer.secho(f"No article {article_id}", fg="red", err=True)
        raise typer.Exit(code=1)
    if outcome.status == "failed":
        typer.secho(f"Save failed: {outcome.error}", fg="red", err=True)
        raise typer.Exit(code=1)
    reading_time = outcome.article.reading_time if outcome.article else 0
    typer.echo({"status": outcome.status, "synced": outcome.synced, "reading_time": reading_time})


@app.command("extract")
def extract_cmd(
    ctx: typer.Context,
    url: str | None = typer.Argument(None, help="URL to fetch"),
    file: Path | None = typer.Option(None, "--file", exists=True, dir_okay=False, help="Local HTML file"),
) -> None:
    state = _get_state(ctx)
    if (url is None) == (file is None):
        typer.secho("Give exactly one of URL or --file", fg="red", err=True)
        raise typer.Exit(code=2)
    if file is not None:
        result = extract(file.read_text(encoding="utf-8", errors="replace"))
    else:
        settings = state.settings
        try:
            result = asyncio.run(
                fetch_article(
                    url,
                    strategies=strategies_from_templates(settings.strategies),
                    timeout=settings.fetch_timeout,
                    min_length=settings.min_html_length,
                )
            )
        except RetrievalError as exc:
            typer.secho(str(exc), fg="red", err=True)
            raise typer.Exit(code=1) from None
    typer.secho(result.title or "(untitled)", bold=True)
    typer.echo(f"{result.reading_time} min read")
    typer.echo("")
    typer.echo(result.content)


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    unread: bool = typer.Option(False, "--unread", help="Only unread, unarchived articles"),
) -> None:
    state = _get_state(ctx)
    db = Database(state.settings.db_path)
    try:
        articles = db.get_articles()
    finally:
        db.close()
    if unread:
        articles = [a for a in articles if not a.is_read and not a.is_archived]
    for article in articles:
        mark = "x" if article.is_read else " "
        typer.echo(f"[{mark}] {article.id}  {article.title}  <{article.url}>  {article.read_progress}%")


@app.command()
def delete(ctx: typer.Context, article_id: str = typer.Argument(..., help="Article id")) -> None:
    state = _get_state(ctx)

    async def _run():
        async with open_engine(state.settings, connect=True) as engine:
            if engine.db.get_article(article_id) is None:
                return None
            return await engine.delete_article(article_id)

    outcome = asyncio.run(_run())
    if outcome is None:
        typer.secho(f"No article {article_id}", fg="red", err=True)
        raise typer.Exit(code=1)
    typer.echo({"status": outcome.status, "synced": outcome.synced})


@app.command()
def progress(
    ctx: typer.Context,
    article_id: str = typer.Argument(..., help="Article id"),
    percent: int = typer.Argument(..., min=0, max=100, help="Read progress"),
) -> None:
    state = _get_state(ctx)

    async def _run():
        async with open_engine(state.settings, connect=True) as engine:
            return await engine.save_read_progress(article_id, percent)

    try:
        outcome = asyncio.run(_run())
    except KeyError:
        typer.secho(f"No article {article_id}", fg="red", err=True)
        raise typer.Exit(code=1) from None
    current = outcome.article.read_progress if outcome.article else percent
    typer.echo({"status": outcome.status, "progress": current})


@tags_app.command("normalize")
def tags_normalize(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    db = Database(state.settings.db_path)
    try:
        changed = normalize_tags(db)
    finally:
        db.close()
    typer.echo({"articles_rewritten": changed})


@app.command()
def stats(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    db = Database(state.settings.db_path)
    try:
        report = analytics(db.get_articles(), db.get_sessions())
    finally:
        db.close()
    typer.echo(f"Articles: {report.total_articles} ({report.read_articles} read, {report.unread_articles} unread)")
    typer.echo(f"Favorites: {report.favorite_articles}")
    typer.echo(f"Reading time (30d): {format_minutes(report.total_read_minutes)} over {report.sessions_last_30_days} sessions")
    typer.echo(f"Average session: {format_minutes(report.avg_session_minutes)}")
    typer.echo(f"Streak: {report.reading_streak} day(s)")
    for day in report.daily_stats:
        typer.echo(f"  {day.date}: {day.sessions} session(s), {format_minutes(round(day.total_time / 60000))}")


@highlights_app.command("export")
def highlights_export(
    ctx: typer.Context,
    out: Path | None = typer.Option(None, "--out", help="Write Markdown here instead of stdout"),
) -> None:
    state = _get_state(ctx)
    db = Database(state.settings.db_path)
    try:
        markdown = export_markdown(db.get_articles())
    finally:
        db.close()
    if out is None:
        typer.echo(markdown)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(markdown, encoding="utf-8")
    typer.secho(f"Wrote {out}", fg="green", err=True)


@app.command("import-kindle")
def import_kindle(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="My Clippings.txt"),
) -> None:
    state = _get_state(ctx)
    books = parse_kindle_clippings(file.read_text(encoding="utf-8", errors="replace"))
    if not books:
        typer.secho("No highlights found", fg="yellow", err=True)
        raise typer.Exit(code=1)

    async def _run() -> tuple[int, int]:
        async with open_engine(state.settings, connect=True) as engine:
            return await import_books(engine, books)

    added, updated = asyncio.run(_run())
    typer.echo({"added": added, "updated": updated})


@folder_app.command("add")
def folder_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Folder name"),
    color: str | None = typer.Option(None, "--color", help="Hex colour"),
) -> None:
    state = _get_state(ctx)
    db = Database(state.settings.db_path)
    try:
        folder = db.add_folder(name, color)
    finally:
        db.close()
    typer.echo(f"{folder.id}  {folder.name}")


@folder_app.command("list")
def folder_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    db = Database(state.settings.db_path)
    try:
        folders = db.get_folders()
        counts: dict[str | None, int] = {}
        for article in db.get_articles():
            counts[article.folder_id] = counts.get(article.folder_id, 0) + 1
    finally:
        db.close()
    for folder in folders:
        typer.echo(f"{folder.id}  {folder.name}  ({counts.get(folder.id, 0)} articles)")


@folder_app.command("delete")
def folder_delete(ctx: typer.Context, folder_id: str = typer.Argument(..., help="Folder id")) -> None:
    state = _get_state(ctx)
    db = Database(state.settings.db_path)
    try:
        removed = db.delete_folder(folder_id)
    finally:
        db.close()
    if not removed:
        typer.secho(f"No folder {folder_id}", fg="red", err=True)
        raise typer.Exit(code=1)
    typer.echo({"deleted": folder_id})


@app.command()
def sync(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    settings = state.settings
    if not settings.remote_configured or not settings.has_credentials:
        typer.secho("Remote sync is not configured; set remote.project_id and MARGINS_UID/MARGINS_ID_TOKEN", fg="red", err=True)
        raise typer.Exit(code=2)

    async def _run() -> dict[str, object]:
        async with open_engine(settings, connect=True) as engine:
            session = engine.session
            return {
                "state": session.state.value,
                "status": session.status.value,
                "articles": len(engine.db.get_articles()),
                "pending": len(engine.pending),
                "error": session.last_error,
            }

    summary = asyncio.run(_run())
    typer.echo(summary)
    if summary["state"] != SyncState.LIVE.value:
        raise typer.Exit(code=1)


@app.command()
def replay(
    ctx: typer.Context,
    date_option: str | None = typer.Option(None, "--date", help="Replay failures from this date (YYYY-MM-DD)"),
) -> None:
    state = _get_state(ctx)
    if date_option:
        try:
            target_date = datetime.strptime(date_option, "%Y-%m-%d").date()
        except ValueError:
            typer.secho("--date must be in YYYY-MM-DD format", fg="red", err=True)
            raise typer.Exit(code=2) from None
    else:
        target_date = date.today()

    async def _run() -> dict[str, int]:
        async with open_engine(state.settings, connect=True) as engine:
            stats = await engine.replay(date=target_date)
            return stats.summary()

    try:
        summary = asyncio.run(_run())
    except NotConfiguredError as exc:
        typer.secho(str(exc), fg="red", err=True)
        raise typer.Exit(code=2) from None
    typer.echo(summary)


@auth_app.command("check")
def auth_check(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    settings = state.settings
    auth = build_auth(settings)
    if isinstance(auth, Unconfigured) or not settings.remote_configured:
        typer.secho("Auth not configured", fg="red", err=True)
        raise typer.Exit(code=2)

    async def _run() -> int:
        identity = auth.current_identity()
        assert identity is not None
        credential = auth.credential()
        remote = FirestoreCollection(
            settings.project_id,
            identity.uid,
            lambda: credential.id_token if credential else None,
        )
        try:
            try:
                docs = await remote.list_documents()
            except AuthExpiredError:
                credential = await auth.refresh_token()
                docs = await remote.list_documents()
            return len(docs)
        finally:
            await remote.close()

    try:
        count = asyncio.run(_run())
    except RemoteError as exc:
        typer.secho(f"Auth failed: {exc}", fg="red", err=True)
        raise typer.Exit(code=1) from None
    typer.secho(f"Auth OK ({count} remote articles)", fg="green")


__all__ = ["app", "build_engine", "open_engine"]
