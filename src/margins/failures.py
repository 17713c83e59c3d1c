from __future__ import annotations

import csv
import datetime as dt
from pathlib import Path
from typing import Literal

from filelock import FileLock

WriteOp = Literal["add", "update", "delete"]


def failure_csv_path(root: Path, *, date: dt.date | None = None) -> Path:
    date = date or dt.datetime.now().date()
    day_str = date.strftime("%Y%m%d")
    path = root / "data" / "failures" / day_str / "failed_writes.csv"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def append_failure(root: Path, article_id: str, op: WriteOp, *, date: dt.date | None = None) -> None:
    """Record a remote write that did not land so ``replay`` can push it again."""
    csv_path = failure_csv_path(root, date=date)
    lock = FileLock(str(csv_path) + ".lock")
    with lock:
        is_new = not csv_path.exists()
        with open(csv_path, "a", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            if is_new:
                writer.writerow(["article_id", "op"])
            writer.writerow([article_id, op])


def read_failures(root: Path, *, date: dt.date) -> list[tuple[str, WriteOp]]:
    """Entries for ``date``, collapsed to the last op per article in first-seen order."""
    csv_path = failure_csv_path(root, date=date)
    if not csv_path.exists():
        return []
    latest: dict[str, WriteOp] = {}
    with open(csv_path, "r", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        for row in reader:
            article_id = row.get("article_id")
            op = row.get("op")
            if article_id and op in ("add", "update", "delete"):
                latest[article_id] = op  # type: ignore[assignment]
    return list(latest.items())


__all__ = ["failure_csv_path", "append_failure", "read_failures"]
