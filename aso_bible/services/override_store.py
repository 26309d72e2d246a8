from __future__ import annotations

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from aso_bible.db.config import get_db_settings, redact_database_url
from aso_bible.db.engine import make_engine
from aso_bible.db.models import OVERRIDE_MODELS, RulesetMarket, RulesetVertical
from aso_bible.db.repo import OverridesRepo, ProfilesRepo
from aso_bible.db.session import make_session_factory
from aso_bible.rules.errors import DuplicateOverrideError, RulesetError, StoreError
from aso_bible.rules.models import OverrideRecord
from aso_bible.rules.overrides import OverrideKind, OverrideTarget, parse_kind, validate_payload, validate_target


logger = logging.getLogger("aso_bible.store")

REQUIRED_TABLES = tuple(m.__tablename__ for m in OVERRIDE_MODELS.values()) + (
    "aso_ruleset_vertical",
    "aso_ruleset_market",
    "aso_ruleset_versions",
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def run_alembic_upgrade(database_url: str, root: Path | None = None) -> None:
    root = root or project_root()
    alembic_ini = root / "alembic.ini"
    script_location = root / "alembic"
    if not alembic_ini.exists() or not script_location.exists():
        raise RuntimeError(f"Alembic configuration not found under {root}")
    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(script_location))
    cfg.set_main_option("sqlalchemy.url", database_url)
    prev = os.environ.get("DATABASE_URL")
    try:
        os.environ["DATABASE_URL"] = database_url
        command.upgrade(cfg, "head")
    finally:
        if prev is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = prev


def vertical_row_dict(row: RulesetVertical) -> dict[str, Any]:
    return {
        "id": int(row.id),
        "vertical": row.vertical,
        "label": row.label,
        "description": row.description,
        "is_active": bool(row.is_active),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def market_row_dict(row: RulesetMarket) -> dict[str, Any]:
    return {
        "id": int(row.id),
        "market": row.market,
        "label": row.label,
        "is_active": bool(row.is_active),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


@contextmanager
def store_errors(op: str, *, integrity_is_duplicate: bool = False) -> Generator[None, None, None]:
    """Translate SQLAlchemy failures into ruleset errors. Nothing is retried."""
    try:
        yield
    except RulesetError:
        raise
    except IntegrityError as e:
        if integrity_is_duplicate:
            raise DuplicateOverrideError(f"{op}: {e.orig}") from e
        logger.error("store %s failed: %s", op, e)
        raise StoreError(f"{op}: {e.orig}", store_code=e.code) from e
    except SQLAlchemyError as e:
        logger.error("store %s failed: %s", op, e)
        raise StoreError(f"{op}: {e}", store_code=getattr(e, "code", None)) from e


class OverrideStore:
    """Versioned override rows plus the vertical/market identity tables.

    Writes are append-only: an upsert inserts a new version and deactivates
    the previous one; a remove flips ``is_active`` and keeps the row.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        database_url: str = "",
        engine: Optional[Engine] = None,
    ) -> None:
        self._Session = session_factory
        self.database_url = database_url
        self.engine = engine
        self.overrides_repo = OverridesRepo(session_factory)
        self.profiles_repo = ProfilesRepo(session_factory)

    @classmethod
    def from_url(cls, database_url: str | None = None, *, auto_init: bool = True) -> "OverrideStore":
        settings = get_db_settings()
        url = database_url or settings.database_url
        engine: Engine = make_engine(url, extra_options={"echo": settings.echo})
        store = cls(make_session_factory(engine), database_url=url, engine=engine)
        if auto_init:
            store.ensure_schema()
        return store

    def ensure_schema(self) -> None:
        if self.engine is None:
            return
        with self.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        insp = inspect(self.engine)
        missing = [name for name in REQUIRED_TABLES if not insp.has_table(name)]
        if not missing:
            return
        try:
            run_alembic_upgrade(self.database_url)
            insp = inspect(self.engine)
            still_missing = [name for name in REQUIRED_TABLES if not insp.has_table(name)]
            if still_missing:
                raise RuntimeError(f"missing tables after migration: {still_missing}")
        except Exception as e:
            raise RuntimeError(
                "Database schema is not ready; run `alembic upgrade head` "
                f"(url={redact_database_url(self.database_url)}): {e}"
            ) from e

    def observability_info(self) -> dict[str, str]:
        backend = "postgresql" if self.database_url.lower().startswith("postgresql") else "sqlite"
        return {"db_backend": backend, "db_url": redact_database_url(self.database_url)}

    # -- overrides ---------------------------------------------------------

    def upsert(
        self,
        kind: str | OverrideKind,
        target: OverrideTarget | dict[str, Any],
        payload: Any,
        *,
        created_by: str = "",
        notes: str | None = None,
    ) -> OverrideRecord:
        k = parse_kind(kind)
        tgt = validate_target(target)
        model = validate_payload(k, payload)
        with store_errors(f"upsert {k.value}", integrity_is_duplicate=True):
            record = self.overrides_repo.upsert(
                k.value, tgt, model, created_by=created_by, notes=notes, now=_utc_now()
            )
        logger.info(
            "override upserted kind=%s target=%s key=%s version=%s id=%s by=%s",
            k.value,
            tgt.target_key,
            record.natural_key,
            record.version,
            record.id,
            created_by or "-",
        )
        return record

    def list(
        self,
        kind: str | OverrideKind,
        target: OverrideTarget | dict[str, Any] | None = None,
        *,
        scope: str | None = None,
        vertical: str | None = None,
        market: str | None = None,
        organization_id: str | None = None,
        include_inactive: bool = False,
    ) -> list[OverrideRecord]:
        k = parse_kind(kind)
        tgt = validate_target(target) if target is not None else None
        with store_errors(f"list {k.value}"):
            return self.overrides_repo.list_rows(
                k.value,
                target=tgt,
                scope=scope,
                vertical=vertical,
                market=market,
                organization_id=organization_id,
                include_inactive=include_inactive,
            )

    def get(self, kind: str | OverrideKind, override_id: int) -> OverrideRecord | None:
        k = parse_kind(kind)
        with store_errors(f"get {k.value}"):
            return self.overrides_repo.get(k.value, override_id)

    def remove(self, kind: str | OverrideKind, override_id: int) -> OverrideRecord | None:
        k = parse_kind(kind)
        with store_errors(f"remove {k.value}"):
            record = self.overrides_repo.deactivate(k.value, override_id, now=_utc_now())
        if record is not None:
            logger.info("override deactivated kind=%s id=%s key=%s", k.value, record.id, record.natural_key)
        return record

    def history(
        self, kind: str | OverrideKind, target: OverrideTarget | dict[str, Any], natural_key: str = ""
    ) -> list[OverrideRecord]:
        k = parse_kind(kind)
        tgt = validate_target(target)
        if k is OverrideKind.TOKEN:
            natural_key = natural_key.strip().lower()
        with store_errors(f"history {k.value}"):
            return self.overrides_repo.history(k.value, tgt, natural_key)

    def load_layer(self, target: OverrideTarget) -> dict[str, list[OverrideRecord]]:
        with store_errors(f"load layer {target.target_key}"):
            return self.overrides_repo.load_layer(target)

    def list_active_rows(self, kind: str | OverrideKind) -> list[OverrideRecord]:
        k = parse_kind(kind)
        with store_errors(f"list active {k.value}"):
            return self.overrides_repo.list_active(k.value)

    # -- vertical / market rows ----------------------------------------------

    def upsert_vertical_row(
        self, vertical: str, *, label: str, description: str | None = None, is_active: bool = True
    ) -> dict[str, Any]:
        with store_errors(f"upsert vertical {vertical}"):
            row = self.profiles_repo.upsert_vertical(
                vertical=vertical, label=label, description=description, is_active=is_active, now=_utc_now()
            )
        logger.info("vertical row saved vertical=%s active=%s", vertical, is_active)
        return vertical_row_dict(row)

    def upsert_market_row(self, market: str, *, label: str, is_active: bool = True) -> dict[str, Any]:
        with store_errors(f"upsert market {market}"):
            row = self.profiles_repo.upsert_market(market=market, label=label, is_active=is_active, now=_utc_now())
        logger.info("market row saved market=%s active=%s", market, is_active)
        return market_row_dict(row)

    def get_vertical_row(self, vertical: str) -> dict[str, Any] | None:
        with store_errors(f"get vertical {vertical}"):
            row = self.profiles_repo.get_vertical(vertical)
        return vertical_row_dict(row) if row is not None else None

    def list_vertical_rows(self, *, active_only: bool = True) -> list[dict[str, Any]]:
        with store_errors("list verticals"):
            rows = self.profiles_repo.list_verticals(active_only=active_only)
        return [vertical_row_dict(r) for r in rows]

    def get_market_row(self, market: str) -> dict[str, Any] | None:
        with store_errors(f"get market {market}"):
            row = self.profiles_repo.get_market(market)
        return market_row_dict(row) if row is not None else None

    def list_market_rows(self, *, active_only: bool = True) -> list[dict[str, Any]]:
        with store_errors("list markets"):
            rows = self.profiles_repo.list_markets(active_only=active_only)
        return [market_row_dict(r) for r in rows]

    def pending_record(
        self, kind: str | OverrideKind, target: OverrideTarget | dict[str, Any], payload: Any
    ) -> OverrideRecord:
        """Validate an unsaved override and wrap it as a record for preview merges."""
        k = parse_kind(kind)
        tgt = validate_target(target)
        model = validate_payload(k, payload)
        if k is OverrideKind.LLM_RULES:
            body = {"rules_override": model.override_dict()}
        else:
            body = model.model_dump(mode="json", exclude={"kind"})
        return OverrideRecord(
            id=0,
            kind=k.value,
            scope=tgt.scope.value,
            vertical=tgt.vertical,
            market=tgt.market,
            organization_id=tgt.organization_id,
            natural_key=model.natural_key(),
            payload=body,
            version=0,
            is_active=True,
            created_by="preview",
        )
