from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url


def _engine_options_for_url(url: str) -> dict[str, Any]:
    u = (url or "").strip().lower()
    if u.startswith("postgresql"):
        return {
            "pool_pre_ping": True,
            "pool_size": 5,
            "max_overflow": 10,
            "future": True,
        }
    # SQLite keeps args minimal to avoid compatibility surprises.
    return {"future": True}


def _ensure_sqlite_dir(url: str) -> None:
    try:
        parsed = make_url(url)
    except Exception:
        return
    if not parsed.drivername.startswith("sqlite"):
        return
    db_name = parsed.database or ""
    if not db_name or db_name == ":memory:":
        return
    Path(db_name).parent.mkdir(parents=True, exist_ok=True)


def make_engine(url: str, *, extra_options: Mapping[str, Any] | None = None) -> Engine:
    options = _engine_options_for_url(url)
    if extra_options:
        options.update(dict(extra_options))
    _ensure_sqlite_dir(url)
    return create_engine(url, **options)

