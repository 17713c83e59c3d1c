from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import yaml
from dotenv import load_dotenv

from .models import Credential, Identity
from .retrieval import DEFAULT_MIN_LENGTH, DEFAULT_STRATEGY_TEMPLATES, DEFAULT_TIMEOUT


@dataclass(slots=True)
class Settings:
    """Runtime settings resolved from YAML + environment variables."""

    root: Path
    db_path: Path
    fetch_timeout: float
    min_html_length: int
    strategies: tuple[str, ...]
    project_id: str
    api_key: str
    rpm_write: int
    poll_interval: float
    session_limit: int
    id_token: str = ""
    refresh_token: str = ""
    uid: str = ""
    email: str = ""
    log_level: str = "INFO"
    config_path: Path | None = None

    def ensure_data_dirs(self) -> None:
        """Ensure directories backing state and data exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        (self.root / "data" / "failures").mkdir(parents=True, exist_ok=True)

    @property
    def remote_configured(self) -> bool:
        return bool(self.project_id)

    @property
    def has_credentials(self) -> bool:
        return bool(self.uid and self.id_token)

    def identity(self) -> Identity | None:
        if not self.has_credentials:
            return None
        return Identity(uid=self.uid, email=self.email)

    def credential(self) -> Credential | None:
        if not self.has_credentials:
            return None
        return Credential(id_token=self.id_token, refresh_token=self.refresh_token)


def _tuple_from(value: Iterable[str] | None, default: Sequence[str]) -> tuple[str, ...]:
    if not value:
        return tuple(default)
    return tuple(str(item) for item in value if item)


def load_settings(path: str | os.PathLike[str] | None) -> Settings:
    """Load settings from YAML file and environment variables."""
    load_dotenv()
    cfg_path = Path(path).resolve() if path else None
    data: dict[str, object] = {}

    if cfg_path:
        with open(cfg_path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
            if not isinstance(raw, dict):
                raise ValueError("Configuration file must contain a mapping at top level")
            data = raw

    root = (cfg_path.parent if cfg_path else Path.cwd()).resolve()
    state = data.get("state", {})
    retrieval = data.get("retrieval", {})
    remote = data.get("remote", {})
    stats = data.get("analytics", {})

    db_path = (root / _coerce_path(state, "db_path", "./data/state/margins.db")).resolve()
    # Allow environment override for database path as it may be user-specific.
    env_db_path = os.getenv("MARGINS_DB_PATH")
    if env_db_path:
        db_path = Path(env_db_path).expanduser().resolve()

    fetch_timeout = float(_coerce_value(retrieval, "timeout", DEFAULT_TIMEOUT))
    min_html_length = int(_coerce_value(retrieval, "min_html_length", DEFAULT_MIN_LENGTH))
    strategies = _tuple_from(_coerce_list(retrieval, "strategies"), DEFAULT_STRATEGY_TEMPLATES)
    bad = [s for s in strategies if "{url}" not in s]
    if bad:
        raise ValueError(f"retrieval.strategies entries must contain {{url}}: {bad}")

    project_id = os.getenv("MARGINS_PROJECT_ID") or str(_coerce_value(remote, "project_id", ""))
    api_key = os.getenv("MARGINS_API_KEY") or str(_coerce_value(remote, "api_key", ""))
    rpm_write = int(_coerce_value(remote, "rpm_write", 60))
    poll_interval = float(_coerce_value(remote, "poll_interval", 30.0))
    session_limit = int(_coerce_value(stats, "session_limit", 100))

    return Settings(
        root=root,
        db_path=db_path,
        fetch_timeout=fetch_timeout,
        min_html_length=min_html_length,
        strategies=strategies,
        project_id=project_id.strip(),
        api_key=api_key.strip(),
        rpm_write=rpm_write,
        poll_interval=poll_interval,
        session_limit=session_limit,
        id_token=os.getenv("MARGINS_ID_TOKEN", "").strip(),
        refresh_token=os.getenv("MARGINS_REFRESH_TOKEN", "").strip(),
        uid=os.getenv("MARGINS_UID", "").strip(),
        email=os.getenv("MARGINS_EMAIL", "").strip(),
        config_path=cfg_path,
    )


def _coerce_path(section: object, key: str, default: str) -> Path:
    if isinstance(section, dict) and key in section and section[key]:
        return Path(str(section[key]))
    return Path(default)


def _coerce_list(section: object, key: str) -> list[str] | None:
    if isinstance(section, dict) and key in section and section[key]:
        raw = section[key]
        if isinstance(raw, list):
            return [str(item) for item in raw if item]
        return [str(raw)]
    return None


def _coerce_value(section: object, key: str, default: object) -> object:
    if isinstance(section, dict) and key in section:
        value = section[key]
        if value is None:
            return default
        return value
    return default


__all__ = ["Settings", "load_settings"]
