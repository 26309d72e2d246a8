from __future__ import annotations

from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from aso_bible.db.models import RulesetMarket, RulesetVersion, RulesetVertical


class ProfilesRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    # -- vertical / market identity rows ---------------------------------

    def upsert_vertical(
        self, *, vertical: str, label: str, description: str | None, is_active: bool, now: str
    ) -> RulesetVertical:
        with self._Session() as s:
            try:
                row = s.execute(
                    select(RulesetVertical).where(RulesetVertical.vertical == vertical).order_by(RulesetVertical.id.desc()).limit(1)
                ).scalar_one_or_none()
                if row is None:
                    row = RulesetVertical(vertical=vertical, created_at=now)
                    s.add(row)
                row.label = label
                row.description = description
                row.is_active = is_active
                row.updated_at = now
                s.commit()
                return row
            except Exception:
                s.rollback()
                raise

    def upsert_market(self, *, market: str, label: str, is_active: bool, now: str) -> RulesetMarket:
        with self._Session() as s:
            try:
                row = s.execute(
                    select(RulesetMarket).where(RulesetMarket.market == market).order_by(RulesetMarket.id.desc()).limit(1)
                ).scalar_one_or_none()
                if row is None:
                    row = RulesetMarket(market=market, created_at=now)
                    s.add(row)
                row.label = label
                row.is_active = is_active
                row.updated_at = now
                s.commit()
                return row
            except Exception:
                s.rollback()
                raise

    def get_vertical(self, vertical: str) -> RulesetVertical | None:
        with self._Session() as s:
            return s.execute(
                select(RulesetVertical)
                .where(and_(RulesetVertical.vertical == vertical, RulesetVertical.is_active.is_(True)))
                .order_by(RulesetVertical.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_verticals(self, *, active_only: bool = True) -> list[RulesetVertical]:
        with self._Session() as s:
            q = select(RulesetVertical).order_by(RulesetVertical.vertical.asc(), RulesetVertical.id.asc())
            if active_only:
                q = q.where(RulesetVertical.is_active.is_(True))
            return list(s.execute(q).scalars().all())

    def get_market(self, market: str) -> RulesetMarket | None:
        with self._Session() as s:
            return s.execute(
                select(RulesetMarket)
                .where(and_(RulesetMarket.market == market, RulesetMarket.is_active.is_(True)))
                .order_by(RulesetMarket.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_markets(self, *, active_only: bool = True) -> list[RulesetMarket]:
        with self._Session() as s:
            q = select(RulesetMarket).order_by(RulesetMarket.market.asc(), RulesetMarket.id.asc())
            if active_only:
                q = q.where(RulesetMarket.is_active.is_(True))
            return list(s.execute(q).scalars().all())

    # -- ruleset snapshots ------------------------------------------------

    def get_active_snapshot(self, target_key: str) -> RulesetVersion | None:
        with self._Session() as s:
            return s.execute(
                select(RulesetVersion)
                .where(and_(RulesetVersion.target_key == target_key, RulesetVersion.is_active.is_(True)))
                .order_by(RulesetVersion.version.desc())
                .limit(1)
            ).scalar_one_or_none()

    def latest_active_snapshot(self, *, vertical: str | None = None, market: str | None = None) -> RulesetVersion | None:
        q = select(RulesetVersion).where(RulesetVersion.is_active.is_(True))
        if vertical is not None:
            q = q.where(RulesetVersion.vertical == vertical)
        if market is not None:
            q = q.where(RulesetVersion.market == market)
        with self._Session() as s:
            return s.execute(
                q.order_by(RulesetVersion.created_at.desc(), RulesetVersion.id.desc()).limit(1)
            ).scalar_one_or_none()

    def get_snapshot(self, target_key: str, version: int) -> RulesetVersion | None:
        with self._Session() as s:
            return s.execute(
                select(RulesetVersion)
                .where(and_(RulesetVersion.target_key == target_key, RulesetVersion.version == int(version)))
                .limit(1)
            ).scalar_one_or_none()

    def list_snapshots(self, target_key: str | None = None, *, include_inactive: bool = True) -> list[RulesetVersion]:
        with self._Session() as s:
            q = select(RulesetVersion).order_by(RulesetVersion.target_key.asc(), RulesetVersion.version.desc())
            if target_key is not None:
                q = q.where(RulesetVersion.target_key == target_key)
            if not include_inactive:
                q = q.where(RulesetVersion.is_active.is_(True))
            return list(s.execute(q).scalars().all())

    def publish_snapshot(
        self,
        *,
        target_key: str,
        vertical: str | None,
        market: str | None,
        snapshot: dict[str, Any],
        created_by: str,
        notes: str | None,
        now: str,
    ) -> RulesetVersion:
        with self._Session() as s:
            try:
                latest = s.execute(
                    select(func.max(RulesetVersion.version)).where(RulesetVersion.target_key == target_key)
                ).scalar_one_or_none() or 0
                s.execute(
                    update(RulesetVersion)
                    .where(and_(RulesetVersion.target_key == target_key, RulesetVersion.is_active.is_(True)))
                    .values(is_active=False)
                )
                row = RulesetVersion(
                    target_key=target_key,
                    vertical=vertical,
                    market=market,
                    version=int(latest) + 1,
                    ruleset_snapshot=snapshot,
                    notes=notes,
                    created_by=created_by,
                    is_active=True,
                    created_at=now,
                )
                s.add(row)
                s.commit()
                return row
            except Exception:
                s.rollback()
                raise

    def rollback(self, target_key: str) -> tuple[RulesetVersion, RulesetVersion] | None:
        with self._Session() as s:
            current = s.execute(
                select(RulesetVersion)
                .where(and_(RulesetVersion.target_key == target_key, RulesetVersion.is_active.is_(True)))
                .order_by(RulesetVersion.version.desc())
                .limit(1)
            ).scalar_one_or_none()
            if current is None:
                return None
            previous = s.execute(
                select(RulesetVersion)
                .where(and_(RulesetVersion.target_key == target_key, RulesetVersion.version < current.version))
                .order_by(RulesetVersion.version.desc())
                .limit(1)
            ).scalar_one_or_none()
            if previous is None:
                return None
            try:
                s.execute(
                    update(RulesetVersion).where(RulesetVersion.target_key == target_key).values(is_active=False)
                )
                previous.is_active = True
                s.commit()
            except Exception:
                s.rollback()
                raise
            return previous, current
