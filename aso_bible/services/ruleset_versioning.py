from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from aso_bible.db.models import RulesetVersion
from aso_bible.rules.errors import SnapshotNotFoundError
from aso_bible.rules.merger import RulesetMerger, apply_client_layer
from aso_bible.rules.models import MergedRuleSet
from aso_bible.rules.registry import ProfileRegistry
from aso_bible.services.override_store import OverrideStore, store_errors


logger = logging.getLogger("aso_bible.versioning")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def snapshot_target_key(vertical: str | None, market: str | None) -> str:
    return f"{vertical or ''}|{market or ''}"


@dataclass(frozen=True)
class SnapshotRecord:
    id: int
    vertical: str | None
    market: str | None
    version: int
    is_active: bool
    notes: str | None
    created_by: str
    created_at: str
    ruleset: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: RulesetVersion) -> "SnapshotRecord":
        return cls(
            id=int(row.id),
            vertical=row.vertical,
            market=row.market,
            version=int(row.version),
            is_active=bool(row.is_active),
            notes=row.notes,
            created_by=str(row.created_by or ""),
            created_at=str(row.created_at),
            ruleset=dict(row.ruleset_snapshot or {}),
        )

    def to_dict(self, *, include_ruleset: bool = True) -> dict[str, Any]:
        out = {
            "id": self.id,
            "vertical": self.vertical,
            "market": self.market,
            "version": self.version,
            "is_active": self.is_active,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }
        if include_ruleset:
            out["ruleset"] = self.ruleset
        return out


def _flatten(obj: Any, prefix: str = "") -> dict[str, Any]:
    if isinstance(obj, Mapping) and not obj and not prefix:
        return {}
    if isinstance(obj, Mapping) and obj:
        out: dict[str, Any] = {}
        for k in sorted(obj):
            path = f"{prefix}.{k}" if prefix else str(k)
            out.update(_flatten(obj[k], path))
        return out
    return {prefix: obj}


def diff_rulesets(old: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, Any]:
    """Flat dotted-path diff of two snapshots. Lists compare as whole values."""
    a = _flatten(old)
    b = _flatten(new)
    return {
        "added": {k: b[k] for k in sorted(b.keys() - a.keys())},
        "removed": {k: a[k] for k in sorted(a.keys() - b.keys())},
        "changed": {k: {"from": a[k], "to": b[k]} for k in sorted(a.keys() & b.keys()) if a[k] != b[k]},
    }


class RulesetVersioning:
    def __init__(self, registry: ProfileRegistry, store: OverrideStore, merger: RulesetMerger | None = None) -> None:
        self.registry = registry
        self.store = store
        self.merger = merger or RulesetMerger(registry, store)

    def publish_snapshot(
        self, vertical: str, market: str | None = None, *, created_by: str = "", notes: str | None = None
    ) -> SnapshotRecord:
        merged = self.merger.merge_org_independent(vertical, market)
        with store_errors(f"publish snapshot {vertical}/{market or '-'}"):
            row = self.store.profiles_repo.publish_snapshot(
                target_key=snapshot_target_key(vertical, market),
                vertical=vertical,
                market=market,
                snapshot=merged.to_snapshot(),
                created_by=created_by,
                notes=notes,
                now=_utc_now(),
            )
        logger.info(
            "ruleset snapshot published vertical=%s market=%s version=%s by=%s",
            vertical,
            market or "-",
            row.version,
            created_by or "-",
        )
        return SnapshotRecord.from_row(row)

    def get_active_snapshot(self, vertical: str, market: str | None = None) -> SnapshotRecord | None:
        with store_errors(f"get snapshot {vertical}/{market or '-'}"):
            row = self.store.profiles_repo.get_active_snapshot(snapshot_target_key(vertical, market))
        return SnapshotRecord.from_row(row) if row is not None else None

    def list_snapshots(
        self, vertical: str | None = None, market: str | None = None, *, include_inactive: bool = True
    ) -> list[SnapshotRecord]:
        key = snapshot_target_key(vertical, market) if vertical else None
        with store_errors("list snapshots"):
            rows = self.store.profiles_repo.list_snapshots(key, include_inactive=include_inactive)
        return [SnapshotRecord.from_row(r) for r in rows]

    def rollback_snapshot(self, vertical: str, market: str | None = None) -> dict[str, SnapshotRecord]:
        with store_errors(f"rollback snapshot {vertical}/{market or '-'}"):
            result = self.store.profiles_repo.rollback(snapshot_target_key(vertical, market))
        if result is None:
            raise SnapshotNotFoundError(f"no previous snapshot for vertical={vertical} market={market or '-'}")
        restored, deactivated = result
        logger.info(
            "ruleset snapshot rolled back vertical=%s market=%s from=%s to=%s",
            vertical,
            market or "-",
            deactivated.version,
            restored.version,
        )
        return {"restored": SnapshotRecord.from_row(restored), "deactivated": SnapshotRecord.from_row(deactivated)}

    def diff_snapshots(
        self, vertical: str, market: str | None, from_version: int, to_version: int | None = None
    ) -> dict[str, Any]:
        key = snapshot_target_key(vertical, market)
        with store_errors(f"diff snapshots {key}"):
            old = self.store.profiles_repo.get_snapshot(key, from_version)
            new = (
                self.store.profiles_repo.get_snapshot(key, to_version)
                if to_version is not None
                else self.store.profiles_repo.get_active_snapshot(key)
            )
        if old is None or new is None:
            raise SnapshotNotFoundError(f"target={key} from={from_version} to={to_version or 'active'}")
        return {
            "from_version": int(old.version),
            "to_version": int(new.version),
            **diff_rulesets(old.ruleset_snapshot or {}, new.ruleset_snapshot or {}),
        }

    def resolve_runtime_ruleset(
        self, vertical: str, market: str | None = None, organization_id: str | None = None
    ) -> MergedRuleSet:
        """Active snapshot plus the live client layer; a live merge when nothing is published."""
        snap = self.get_active_snapshot(vertical, market)
        if snap is None:
            logger.debug("no published snapshot vertical=%s market=%s, merging live", vertical, market or "-")
            return self.merger.merge(vertical, market, organization_id)
        base = MergedRuleSet.from_snapshot(snap.ruleset)
        return apply_client_layer(base, self.merger.client_layer(organization_id))
