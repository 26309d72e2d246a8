from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from aso_bible.db.config import get_db_settings
from aso_bible.rules.errors import RulesetError, ValidationError
from aso_bible.rules.merger import RulesetMerger
from aso_bible.rules.overrides import parse_kind, validate_target
from aso_bible.rules.registry import ProfileRegistry, load_registry
from aso_bible.services.override_store import OverrideStore, run_alembic_upgrade
from aso_bible.services.parity_audit import run_audit
from aso_bible.services.ruleset_versioning import RulesetVersioning


USAGE = (
    "Usage: python -m aso_bible.workers.cli "
    "ruleset:merge|ruleset:publish|ruleset:rollback|ruleset:versions|"
    "overrides:list|overrides:upsert|overrides:remove|audit:parity|db:upgrade [options]"
)


def _get_opt(argv: list[str], key: str) -> str | None:
    if key not in argv:
        return None
    idx = argv.index(key)
    if idx + 1 >= len(argv):
        return None
    return argv[idx + 1]


def _flag(argv: list[str], key: str) -> bool:
    raw = _get_opt(argv, key)
    if raw is None or raw.startswith("--"):
        return key in argv
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _require(argv: list[str], key: str) -> str:
    value = _get_opt(argv, key)
    if not value:
        raise ValidationError(f"missing required option {key}", errors=[f"{key}: required"])
    return value


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _open_store() -> OverrideStore:
    return OverrideStore.from_url()


def _load_registry() -> ProfileRegistry:
    return load_registry()


def _target_from_argv(argv: list[str]) -> dict[str, Any]:
    scope = _require(argv, "--scope")
    return {
        "scope": scope,
        "vertical": _get_opt(argv, "--vertical"),
        "market": _get_opt(argv, "--market"),
        "organization_id": _get_opt(argv, "--org"),
    }


def cmd_ruleset_merge(argv: list[str]) -> int:
    vertical = _require(argv, "--vertical")
    merger = RulesetMerger(_load_registry(), _open_store())
    merged = merger.merge(vertical, _get_opt(argv, "--market"), _get_opt(argv, "--org"))
    _print({"ok": True, "ruleset": merged.to_snapshot()})
    return 0


def cmd_ruleset_publish(argv: list[str]) -> int:
    vertical = _require(argv, "--vertical")
    versioning = RulesetVersioning(_load_registry(), _open_store())
    snap = versioning.publish_snapshot(
        vertical,
        _get_opt(argv, "--market"),
        created_by=_get_opt(argv, "--created-by") or os.environ.get("USER", "cli"),
        notes=_get_opt(argv, "--notes"),
    )
    _print({"ok": True, "snapshot": snap.to_dict(include_ruleset=False)})
    return 0


def cmd_ruleset_rollback(argv: list[str]) -> int:
    vertical = _require(argv, "--vertical")
    versioning = RulesetVersioning(_load_registry(), _open_store())
    result = versioning.rollback_snapshot(vertical, _get_opt(argv, "--market"))
    _print({"ok": True, **{k: v.to_dict(include_ruleset=False) for k, v in result.items()}})
    return 0


def cmd_ruleset_versions(argv: list[str]) -> int:
    versioning = RulesetVersioning(_load_registry(), _open_store())
    snaps = versioning.list_snapshots(_get_opt(argv, "--vertical"), _get_opt(argv, "--market"))
    _print({"ok": True, "versions": [s.to_dict(include_ruleset=False) for s in snaps]})
    return 0


def cmd_overrides_list(argv: list[str]) -> int:
    kind = parse_kind(_require(argv, "--kind"))
    rows = _open_store().list(
        kind,
        scope=_get_opt(argv, "--scope"),
        vertical=_get_opt(argv, "--vertical"),
        market=_get_opt(argv, "--market"),
        organization_id=_get_opt(argv, "--org"),
        include_inactive=_flag(argv, "--include-inactive"),
    )
    _print({"ok": True, "kind": kind.value, "count": len(rows), "overrides": [r.to_dict() for r in rows]})
    return 0


def cmd_overrides_upsert(argv: list[str]) -> int:
    kind = parse_kind(_require(argv, "--kind"))
    target = validate_target(_target_from_argv(argv))
    record = _open_store().upsert(
        kind,
        target,
        _require(argv, "--payload"),
        created_by=_get_opt(argv, "--created-by") or os.environ.get("USER", "cli"),
        notes=_get_opt(argv, "--notes"),
    )
    _print({"ok": True, "override": record.to_dict()})
    return 0


def cmd_overrides_remove(argv: list[str]) -> int:
    kind = parse_kind(_require(argv, "--kind"))
    raw_id = _require(argv, "--id")
    try:
        override_id = int(raw_id)
    except ValueError:
        raise ValidationError(f"--id must be an integer, got {raw_id!r}", errors=["--id: not an integer"]) from None
    record = _open_store().remove(kind, override_id)
    if record is None:
        _print({"ok": False, "error": f"{kind.value} override {override_id} not found"})
        return 1
    _print({"ok": True, "override": record.to_dict()})
    return 0


def cmd_audit_parity(argv: list[str]) -> int:
    out = _get_opt(argv, "--out")
    return run_audit(_load_registry(), _open_store(), path=Path(out) if out else None)


def cmd_db_upgrade(argv: list[str]) -> int:
    url = _get_opt(argv, "--database-url") or get_db_settings().database_url
    run_alembic_upgrade(url)
    store = OverrideStore.from_url(url, auto_init=False)
    _print({"ok": True, **store.observability_info()})
    return 0


COMMANDS = {
    "ruleset:merge": cmd_ruleset_merge,
    "ruleset:publish": cmd_ruleset_publish,
    "ruleset:rollback": cmd_ruleset_rollback,
    "ruleset:versions": cmd_ruleset_versions,
    "overrides:list": cmd_overrides_list,
    "overrides:upsert": cmd_overrides_upsert,
    "overrides:remove": cmd_overrides_remove,
    "audit:parity": cmd_audit_parity,
    "db:upgrade": cmd_db_upgrade,
}


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        print(USAGE, file=sys.stderr)
        return 2

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    cmd = argv[0]
    handler = COMMANDS.get(cmd)
    if handler is None:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        return 2
    try:
        return handler(argv[1:])
    except ValidationError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "error": str(e), "errors": e.errors}, ensure_ascii=False))
        return 10
    except RulesetError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "error": str(e)}, ensure_ascii=False))
        return 10
    except Exception as e:  # pragma: no cover
        print(json.dumps({"ok": False, "error_code": "ASO_999_UNEXPECTED", "error": str(e)}, ensure_ascii=False))
        return 12


if __name__ == "__main__":
    raise SystemExit(main())
