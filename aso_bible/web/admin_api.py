from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer
from pydantic import BaseModel, Field

from aso_bible.rules.errors import (
    CatalogError,
    DuplicateOverrideError,
    ProfileNotFoundError,
    RulesetError,
    SnapshotNotFoundError,
    StoreError,
    ValidationError,
)
from aso_bible.rules.merger import RulesetMerger
from aso_bible.rules.overrides import parse_kind
from aso_bible.rules.registry import ProfileRegistry, load_registry
from aso_bible.services.override_store import OverrideStore
from aso_bible.services.parity_audit import ParityAuditor, write_report
from aso_bible.services.ruleset_versioning import RulesetVersioning


logger = logging.getLogger("aso_bible.admin_api")


class VerticalRowPayload(BaseModel):
    label: str = Field(min_length=1, max_length=128)
    description: str | None = None
    is_active: bool = True


class MarketRowPayload(BaseModel):
    label: str = Field(min_length=1, max_length=128)
    is_active: bool = True


class OverrideUpsertPayload(BaseModel):
    target: dict[str, Any]
    payload: dict[str, Any]
    created_by: str = Field(default="aso-admin", min_length=1, max_length=128)
    notes: str | None = None


class PendingOverride(BaseModel):
    kind: str
    target: dict[str, Any]
    payload: dict[str, Any]


class PreviewPayload(BaseModel):
    vertical: str = Field(min_length=1, max_length=64)
    market: str | None = None
    organization_id: str | None = None
    pending: list[PendingOverride] = Field(default_factory=list)


class PublishPayload(BaseModel):
    vertical: str = Field(min_length=1, max_length=64)
    market: str | None = None
    created_by: str = Field(default="aso-admin", min_length=1, max_length=128)
    notes: str | None = None


class RollbackPayload(BaseModel):
    vertical: str = Field(min_length=1, max_length=64)
    market: str | None = None


basic = HTTPBasic(auto_error=False)
bearer = HTTPBearer(auto_error=False)


def _is_loopback(host: str | None) -> bool:
    return host in {"127.0.0.1", "::1", "localhost"}


def _auth_guard(
    request: Request,
    basic_cred: HTTPBasicCredentials | None = Depends(basic),
    bearer_cred: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> dict[str, str]:
    admin_token = os.environ.get("ADMIN_TOKEN", "").strip()
    admin_user = os.environ.get("ADMIN_USER", "").strip()
    admin_pass = os.environ.get("ADMIN_PASS", "").strip()

    if admin_token:
        if bearer_cred and bearer_cred.scheme.lower() == "bearer" and bearer_cred.credentials == admin_token:
            return {"auth": "bearer", "principal": "token-user"}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if admin_user and admin_pass:
        if basic_cred and basic_cred.username == admin_user and basic_cred.password == admin_pass:
            return {"auth": "basic", "principal": basic_cred.username}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: basic auth required",
            headers={"WWW-Authenticate": 'Basic realm="AsoBibleAdmin"'},
        )

    # No explicit credentials: only allow local requests.
    host = request.client.host if request.client else None
    if _is_loopback(host):
        return {"auth": "local", "principal": "localhost"}
    raise HTTPException(
        status_code=401,
        detail="unauthorized: configure ADMIN_TOKEN or ADMIN_USER/ADMIN_PASS",
        headers={"WWW-Authenticate": 'Basic realm="AsoBibleAdmin"'},
    )


def _status_for(exc: RulesetError) -> int:
    if isinstance(exc, (ProfileNotFoundError, SnapshotNotFoundError)):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, DuplicateOverrideError):
        return 409
    if isinstance(exc, StoreError):
        return 502
    if isinstance(exc, CatalogError):
        return 500
    return 400


def create_app(
    registry: ProfileRegistry | None = None,
    store: OverrideStore | None = None,
) -> FastAPI:
    registry = registry or load_registry()
    store = store or OverrideStore.from_url()
    merger = RulesetMerger(registry, store)
    versioning = RulesetVersioning(registry, store, merger)
    app = FastAPI(title="ASO Bible Admin API", version="1.0.0")

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        # No auth: used by container healthchecks.
        obs = store.observability_info()
        return {
            "ok": True,
            "service": "aso-bible-admin",
            "db_url": obs["db_url"],
            "db_backend": obs["db_backend"],
            "verticals": len(registry.verticals),
            "markets": len(registry.markets),
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload = {"ok": False, "error": {"code": f"HTTP_{exc.status_code}", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(RulesetError)
    async def _ruleset_exception_handler(request: Request, exc: RulesetError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"ok": False, "error": exc.to_dict()})

    # -- verticals / markets -------------------------------------------------

    @app.get("/admin/api/verticals")
    def list_verticals(_: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        rows = {r["vertical"]: r for r in store.list_vertical_rows(active_only=False)}
        items = [
            {**p.identity(), "in_code": True, "db": rows.pop(p.id, None)}
            for p in registry.get_all_verticals()
        ]
        items.extend(
            {"id": vid, "label": r["label"], "description": r["description"] or "", "in_code": False, "db": r}
            for vid, r in sorted(rows.items())
        )
        return {"ok": True, "verticals": items}

    @app.put("/admin/api/verticals/{vertical_id}")
    def put_vertical(
        vertical_id: str,
        payload: VerticalRowPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        row = store.upsert_vertical_row(
            vertical_id, label=payload.label, description=payload.description, is_active=payload.is_active
        )
        return {"ok": True, "vertical": row}

    @app.get("/admin/api/markets")
    def list_markets(_: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        rows = {r["market"]: r for r in store.list_market_rows(active_only=False)}
        items = [
            {**p.identity(), "locales": list(p.locales), "in_code": True, "db": rows.pop(p.id, None)}
            for p in registry.get_all_markets()
        ]
        items.extend(
            {"id": mid, "label": r["label"], "description": "", "locales": [], "in_code": False, "db": r}
            for mid, r in sorted(rows.items())
        )
        return {"ok": True, "markets": items}

    @app.put("/admin/api/markets/{market_id}")
    def put_market(
        market_id: str,
        payload: MarketRowPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        row = store.upsert_market_row(market_id, label=payload.label, is_active=payload.is_active)
        return {"ok": True, "market": row}

    # -- overrides -------------------------------------------------------------

    @app.get("/admin/api/overrides/{kind}")
    def list_overrides(
        kind: str,
        scope: str | None = None,
        vertical: str | None = None,
        market: str | None = None,
        organization_id: str | None = None,
        include_inactive: bool = False,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        rows = store.list(
            kind,
            scope=scope,
            vertical=vertical,
            market=market,
            organization_id=organization_id,
            include_inactive=include_inactive,
        )
        return {"ok": True, "kind": parse_kind(kind).value, "overrides": [r.to_dict() for r in rows]}

    @app.post("/admin/api/overrides/{kind}")
    def upsert_override(
        kind: str,
        payload: OverrideUpsertPayload,
        auth: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        created_by = payload.created_by if payload.created_by != "aso-admin" else auth["principal"]
        record = store.upsert(kind, payload.target, payload.payload, created_by=created_by, notes=payload.notes)
        return {"ok": True, "override": record.to_dict()}

    @app.get("/admin/api/overrides/{kind}/history")
    def override_history(
        kind: str,
        scope: str,
        key: str = "",
        vertical: str | None = None,
        market: str | None = None,
        organization_id: str | None = None,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        target = {"scope": scope, "vertical": vertical, "market": market, "organization_id": organization_id}
        rows = store.history(kind, target, key)
        return {"ok": True, "kind": parse_kind(kind).value, "key": key, "history": [r.to_dict() for r in rows]}

    @app.delete("/admin/api/overrides/{kind}/{override_id}")
    def remove_override(
        kind: str,
        override_id: int,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        record = store.remove(kind, override_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"{kind} override {override_id} not found")
        return {"ok": True, "override": record.to_dict()}

    # -- ruleset ---------------------------------------------------------------

    @app.post("/admin/api/ruleset/preview")
    def preview_ruleset(
        payload: PreviewPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        pending = [store.pending_record(p.kind, p.target, p.payload) for p in payload.pending]
        merged = merger.merge(payload.vertical, payload.market, payload.organization_id, pending=pending)
        return {"ok": True, "pending": len(pending), "ruleset": merged.to_snapshot()}

    @app.get("/admin/api/ruleset/runtime")
    def runtime_ruleset(
        vertical: str,
        market: str | None = None,
        organization_id: str | None = None,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        merged = versioning.resolve_runtime_ruleset(vertical, market, organization_id)
        return {"ok": True, "ruleset": merged.to_snapshot()}

    @app.post("/admin/api/ruleset/publish")
    def publish_ruleset(
        payload: PublishPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        snap = versioning.publish_snapshot(
            payload.vertical, payload.market, created_by=payload.created_by, notes=payload.notes
        )
        return {"ok": True, "snapshot": snap.to_dict()}

    @app.post("/admin/api/ruleset/rollback")
    def rollback_ruleset(
        payload: RollbackPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        result = versioning.rollback_snapshot(payload.vertical, payload.market)
        return {"ok": True, **{k: v.to_dict(include_ruleset=False) for k, v in result.items()}}

    @app.get("/admin/api/ruleset/versions")
    def ruleset_versions(
        vertical: str | None = None,
        market: str | None = None,
        include_inactive: bool = True,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        snaps = versioning.list_snapshots(vertical, market, include_inactive=include_inactive)
        return {"ok": True, "versions": [s.to_dict(include_ruleset=False) for s in snaps]}

    @app.get("/admin/api/ruleset/versions/diff")
    def ruleset_diff(
        vertical: str,
        from_version: int,
        to_version: int | None = None,
        market: str | None = None,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        return {"ok": True, **versioning.diff_snapshots(vertical, market, from_version, to_version)}

    # -- audit -----------------------------------------------------------------

    @app.post("/admin/api/audit/parity")
    def audit_parity(
        write: bool = False,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        report = ParityAuditor(registry, store).run()
        out: dict[str, Any] = {"ok": report["summary"]["errors"] == 0, "report": report}
        if write:
            out["report_path"] = str(write_report(report))
        return out

    return app


def run_server() -> None:
    host = os.environ.get("ADMIN_API_HOST", "127.0.0.1")
    port = int(os.environ.get("ADMIN_API_PORT", "8790"))
    uvicorn.run("aso_bible.web.admin_api:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    run_server()
