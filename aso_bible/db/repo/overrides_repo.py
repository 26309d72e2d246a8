from __future__ import annotations

from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from aso_bible.db.models import OVERRIDE_MODELS
from aso_bible.rules.errors import DuplicateOverrideError
from aso_bible.rules.models import OverrideRecord
from aso_bible.rules.overrides import OverrideTarget


def payload_columns(kind: str, payload: Any) -> dict[str, Any]:
    """Map a validated payload model onto the kind's table columns."""
    data = payload.model_dump(mode="json", exclude={"kind"})
    if kind == "formula":
        return {
            "formula_id": data["formula_id"],
            "override_payload": {
                "multiplier": data["multiplier"],
                "component_weights": data["component_weights"],
            },
        }
    if kind == "llm_rules":
        return {"rules_override": payload.override_dict()}
    return data


def row_payload(kind: str, row: Any) -> dict[str, Any]:
    if kind == "token":
        return {"token": row.token, "relevance": row.relevance}
    if kind == "kpi_weight":
        return {"kpi_name": row.kpi_name, "weight_multiplier": row.weight_multiplier}
    if kind == "hook_pattern":
        return {
            "hook_category": row.hook_category,
            "weight_multiplier": row.weight_multiplier,
            "keywords": list(row.keywords or []),
        }
    if kind == "formula":
        body = dict(row.override_payload or {})
        return {
            "formula_id": row.formula_id,
            "multiplier": body.get("multiplier", 1.0),
            "component_weights": dict(body.get("component_weights") or {}),
        }
    if kind == "stopword":
        return {"stopwords": list(row.stopwords or [])}
    if kind == "recommendation_template":
        return {"recommendation_id": row.recommendation_id, "message": row.message}
    if kind == "rule":
        out: dict[str, Any] = {"rule_id": row.rule_id}
        for name in ("weight_multiplier", "severity", "threshold_low", "threshold_high"):
            if getattr(row, name) is not None:
                out[name] = getattr(row, name)
        return out
    if kind == "llm_rules":
        return {"rules_override": dict(row.rules_override or {})}
    raise KeyError(kind)


def to_record(kind: str, row: Any) -> OverrideRecord:
    model = OVERRIDE_MODELS[kind]
    return OverrideRecord(
        id=int(row.id),
        kind=kind,
        scope=str(row.scope),
        vertical=row.vertical,
        market=row.market,
        organization_id=row.organization_id,
        natural_key=str(getattr(row, model.key_column)) if model.key_column else "",
        payload=row_payload(kind, row),
        version=int(row.version),
        is_active=bool(row.is_active),
        notes=row.notes,
        created_by=str(row.created_by or ""),
        created_at=str(row.created_at),
        updated_at=str(row.updated_at),
    )


class OverridesRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    @staticmethod
    def _key_filter(model: Any, target_key: str, natural_key: str) -> list[Any]:
        conds = [model.target_key == target_key]
        if model.key_column:
            conds.append(getattr(model, model.key_column) == natural_key)
        return conds

    def upsert(
        self,
        kind: str,
        target: OverrideTarget,
        payload: Any,
        *,
        created_by: str,
        notes: str | None,
        now: str,
    ) -> OverrideRecord:
        model = OVERRIDE_MODELS[kind]
        natural_key = payload.natural_key()
        conds = self._key_filter(model, target.target_key, natural_key)
        with self._Session() as s:
            try:
                active = s.execute(
                    select(model.id, model.version).where(and_(*conds, model.is_active.is_(True)))
                ).all()
                latest = s.execute(select(func.max(model.version)).where(and_(*conds))).scalar_one_or_none() or 0
                for row_id, version in active:
                    # Compare-and-swap on (id, version, is_active): a concurrent writer
                    # that got there first leaves nothing to update.
                    res = s.execute(
                        update(model)
                        .where(and_(model.id == row_id, model.version == version, model.is_active.is_(True)))
                        .values(is_active=False, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        raise DuplicateOverrideError(
                            f"{kind} target={target.target_key} key={natural_key!r} changed concurrently",
                            row_ids=[int(row_id)],
                        )
                row = model(
                    scope=target.scope.value,
                    target_key=target.target_key,
                    vertical=target.vertical,
                    market=target.market,
                    organization_id=target.organization_id,
                    notes=notes,
                    version=int(latest) + 1,
                    is_active=True,
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                    **payload_columns(kind, payload),
                )
                s.add(row)
                s.flush()
                record = to_record(kind, row)
                s.commit()
                return record
            except Exception:
                s.rollback()
                raise

    def list_rows(
        self,
        kind: str,
        *,
        target: OverrideTarget | None = None,
        scope: str | None = None,
        vertical: str | None = None,
        market: str | None = None,
        organization_id: str | None = None,
        include_inactive: bool = False,
    ) -> list[OverrideRecord]:
        model = OVERRIDE_MODELS[kind]
        q = select(model)
        if target is not None:
            q = q.where(model.target_key == target.target_key)
        if scope:
            q = q.where(model.scope == scope)
        if vertical:
            q = q.where(model.vertical == vertical)
        if market:
            q = q.where(model.market == market)
        if organization_id:
            q = q.where(model.organization_id == organization_id)
        if not include_inactive:
            q = q.where(model.is_active.is_(True))
        order = [model.target_key]
        if model.key_column:
            order.append(getattr(model, model.key_column))
        q = q.order_by(*order, model.version.desc(), model.id.desc())
        with self._Session() as s:
            return [to_record(kind, r) for r in s.execute(q).scalars().all()]

    def get(self, kind: str, override_id: int) -> OverrideRecord | None:
        model = OVERRIDE_MODELS[kind]
        with self._Session() as s:
            row = s.get(model, int(override_id))
            return to_record(kind, row) if row is not None else None

    def deactivate(self, kind: str, override_id: int, *, now: str) -> OverrideRecord | None:
        model = OVERRIDE_MODELS[kind]
        with self._Session() as s:
            try:
                row = s.get(model, int(override_id))
                if row is None:
                    return None
                row.is_active = False
                row.updated_at = now
                s.flush()
                record = to_record(kind, row)
                s.commit()
                return record
            except Exception:
                s.rollback()
                raise

    def history(self, kind: str, target: OverrideTarget, natural_key: str) -> list[OverrideRecord]:
        model = OVERRIDE_MODELS[kind]
        conds = self._key_filter(model, target.target_key, natural_key)
        with self._Session() as s:
            rows = s.execute(select(model).where(and_(*conds)).order_by(model.version.desc(), model.id.desc()))
            return [to_record(kind, r) for r in rows.scalars().all()]

    def load_layer(self, target: OverrideTarget) -> dict[str, list[OverrideRecord]]:
        out: dict[str, list[OverrideRecord]] = {}
        with self._Session() as s:
            for kind, model in OVERRIDE_MODELS.items():
                rows = s.execute(
                    select(model)
                    .where(and_(model.target_key == target.target_key, model.is_active.is_(True)))
                    .order_by(model.id.asc())
                ).scalars()
                records = [to_record(kind, r) for r in rows.all()]
                if records:
                    out[kind] = records
        return out

    def list_active(self, kind: str) -> list[OverrideRecord]:
        model = OVERRIDE_MODELS[kind]
        with self._Session() as s:
            rows = s.execute(select(model).where(model.is_active.is_(True)).order_by(model.id.asc()))
            return [to_record(kind, r) for r in rows.scalars().all()]
