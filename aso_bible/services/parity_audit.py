from __future__ import annotations

import json
import logging
import os
import sys
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, TextIO

from aso_bible.rules.errors import RulesetError
from aso_bible.rules.models import MarketProfile, OverrideRecord, VerticalProfile
from aso_bible.rules.normalizer import code_base
from aso_bible.rules.overrides import OverrideKind, Scope
from aso_bible.rules.registry import BASE_VERTICAL_ID, ProfileRegistry, load_registry
from aso_bible.services.override_store import OverrideStore, store_errors
from aso_bible.services.ruleset_versioning import snapshot_target_key


logger = logging.getLogger("aso_bible.parity")

DEFAULT_REPORT_PATH = "./runtime-parity-report.json"

STAT_KEYS = {
    OverrideKind.TOKEN: "tokenOverrides",
    OverrideKind.KPI_WEIGHT: "kpiOverrides",
    OverrideKind.HOOK_PATTERN: "hookOverrides",
    OverrideKind.FORMULA: "formulaOverrides",
    OverrideKind.STOPWORD: "stopwordOverrides",
    OverrideKind.RECOMMENDATION_TEMPLATE: "recommendationOverrides",
    OverrideKind.RULE: "ruleOverrides",
    OverrideKind.LLM_RULES: "llmRuleOverrides",
}

REC_CRITICAL = "CRITICAL: Fix error-severity issues before runtime is affected (threshold/locale drift, duplicate overrides)"
REC_MISSING_VERTICALS = "ACTION: Publish or seed the vertical profiles that exist in code but not in DB"
REC_MISSING_MARKETS = "ACTION: Publish or seed the market profiles that exist in code but not in DB"
REC_COUNT_MISMATCH = "INVESTIGATE: Override count mismatches may indicate incomplete seeding or code changes"
REC_DUPLICATES = "CLEANUP: Deactivate duplicate active override rows, keeping the highest version"
REC_ORPHANS = "REVIEW: Deactivate or add code profiles for DB-only (orphan) verticals and markets"


def report_path() -> Path:
    return Path(os.environ.get("PARITY_REPORT_PATH", "").strip() or DEFAULT_REPORT_PATH)


@dataclass
class ParityIssue:
    severity: str
    category: str
    message: str
    details: Any = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"severity": self.severity, "category": self.category, "message": self.message}
        if self.details is not None:
            out["details"] = self.details
        return out


def _store_failure(category: str, what: str, e: RulesetError) -> ParityIssue:
    logger.error("parity audit query failed %s: %s", what, e)
    return ParityIssue("error", category, f"Failed to query DB for {what}", e.to_dict())


class ParityAuditor:
    """Compare the code catalog against DB profile rows, snapshots and overrides.

    A failed query becomes an error issue and the audit carries on with the
    next profile or table.
    """

    def __init__(self, registry: ProfileRegistry, store: OverrideStore) -> None:
        self.registry = registry
        self.store = store
        self.issues: list[ParityIssue] = []

    # -- snapshots -----------------------------------------------------------

    def _vertical_snapshot(self, vertical_id: str) -> dict[str, Any] | None:
        repo = self.store.profiles_repo
        with store_errors(f"snapshot vertical {vertical_id}"):
            row = repo.get_active_snapshot(snapshot_target_key(vertical_id, None))
            if row is None:
                row = repo.latest_active_snapshot(vertical=vertical_id)
        return dict(row.ruleset_snapshot or {}) if row is not None else None

    def _market_snapshot(self, market_id: str) -> dict[str, Any] | None:
        with store_errors(f"snapshot market {market_id}"):
            row = self.store.profiles_repo.latest_active_snapshot(market=market_id)
        return dict(row.ruleset_snapshot or {}) if row is not None else None

    # -- verticals -----------------------------------------------------------

    def _audit_vertical(self, profile: VerticalProfile) -> dict[str, Any] | None:
        logger.info("checking vertical %s", profile.id)
        db = self.store.get_vertical_row(profile.id)
        if db is None:
            if profile.is_base:
                self.issues.append(
                    ParityIssue("info", "vertical", f"Vertical {profile.id} exists in code but not in DB (expected for base)")
                )
            else:
                self.issues.append(ParityIssue("warning", "vertical", f"Vertical {profile.id} exists in code but not in DB"))
            return {
                "id": profile.id,
                "inCode": True,
                "inDb": False,
                "label": {"code": profile.label, "db": None},
                "description": {"code": profile.description, "db": None},
                "discoveryThresholds": {
                    "code": profile.discovery_thresholds.to_dict() if profile.discovery_thresholds else None,
                    "db": None,
                },
            }

        if profile.label != db["label"]:
            self.issues.append(
                ParityIssue(
                    "warning", "vertical", f"Vertical {profile.id}: Label mismatch", {"code": profile.label, "db": db["label"]}
                )
            )
        if db["description"] is not None and profile.description != db["description"]:
            self.issues.append(
                ParityIssue(
                    "info",
                    "vertical",
                    f"Vertical {profile.id}: Description mismatch",
                    {"code": profile.description, "db": db["description"]},
                )
            )

        snapshot = self._vertical_snapshot(profile.id)
        db_thresholds = (snapshot or {}).get("discovery_thresholds")
        code_thresholds = None
        if profile.discovery_thresholds is not None:
            # Code thresholds as resolved for the snapshot's market.
            snap_market = (snapshot or {}).get("market_id")
            code_thresholds = code_base(self.registry, profile.id, snap_market).discovery_thresholds
            if not db_thresholds:
                self.issues.append(
                    ParityIssue(
                        "warning",
                        "vertical",
                        f"Vertical {profile.id}: Discovery thresholds missing in DB",
                        {"code": code_thresholds, "db": None},
                    )
                )
            elif dict(db_thresholds) != code_thresholds:
                self.issues.append(
                    ParityIssue(
                        "error",
                        "vertical",
                        f"Vertical {profile.id}: Discovery thresholds mismatch",
                        {"code": code_thresholds, "db": db_thresholds},
                    )
                )

        return {
            "id": profile.id,
            "inCode": True,
            "inDb": True,
            "label": {"code": profile.label, "db": db["label"], "match": profile.label == db["label"]},
            "description": {"code": profile.description, "db": db["description"]},
            "discoveryThresholds": {"code": code_thresholds, "db": db_thresholds},
        }

    def audit_verticals(self) -> list[dict[str, Any]]:
        comparison: list[dict[str, Any]] = []
        code_verticals = self.registry.get_all_verticals()
        for profile in code_verticals:
            try:
                entry = self._audit_vertical(profile)
            except RulesetError as e:
                self.issues.append(_store_failure("vertical", f"vertical {profile.id}", e))
                continue
            if entry is not None:
                comparison.append(entry)

        try:
            db_rows = self.store.list_vertical_rows()
        except RulesetError as e:
            self.issues.append(_store_failure("vertical", "vertical orphans", e))
            return comparison
        code_ids = {v.id for v in code_verticals}
        for orphan in sorted({r["vertical"] for r in db_rows} - code_ids):
            self.issues.append(ParityIssue("warning", "vertical", f"Vertical {orphan} exists in DB but not in code (orphan)"))
            comparison.append({"id": orphan, "inCode": False, "inDb": True})
        return comparison

    def _count_vertical_rows(self, kind: OverrideKind, vertical_id: str) -> int:
        return len(self.store.list(kind, scope=Scope.VERTICAL.value, vertical=vertical_id))

    def audit_ruleset_content(self, profile: VerticalProfile) -> None:
        checks: list[tuple[str, OverrideKind, int]] = [
            ("Token", OverrideKind.TOKEN, len(profile.token_relevance_overrides)),
            ("KPI", OverrideKind.KPI_WEIGHT, len(profile.kpi_overrides)),
        ]
        for label, kind, code_count in checks:
            try:
                db_count = self._count_vertical_rows(kind, profile.id)
            except RulesetError as e:
                self.issues.append(_store_failure("override", f"{kind.value} overrides of {profile.id}", e))
                continue
            if code_count != db_count:
                self.issues.append(
                    ParityIssue(
                        "warning",
                        "override",
                        f"Vertical {profile.id}: {label} override count mismatch (code: {code_count}, db: {db_count})",
                    )
                )

    # -- markets -------------------------------------------------------------

    def _audit_market(self, profile: MarketProfile) -> dict[str, Any]:
        logger.info("checking market %s", profile.id)
        db = self.store.get_market_row(profile.id)
        if db is None:
            self.issues.append(ParityIssue("warning", "market", f"Market {profile.id} exists in code but not in DB"))
            return {
                "id": profile.id,
                "inCode": True,
                "inDb": False,
                "label": {"code": profile.label, "db": None},
                "locales": {"code": list(profile.locales), "db": None},
            }

        if profile.label != db["label"]:
            self.issues.append(
                ParityIssue("warning", "market", f"Market {profile.id}: Label mismatch", {"code": profile.label, "db": db["label"]})
            )

        snapshot = self._market_snapshot(profile.id)
        db_locales = (snapshot or {}).get("locales")
        if not db_locales:
            self.issues.append(
                ParityIssue(
                    "warning",
                    "market",
                    f"Market {profile.id}: Locales missing in DB",
                    {"code": list(profile.locales), "db": None},
                )
            )
        else:
            missing = [loc for loc in profile.locales if loc not in set(db_locales)]
            extra = [loc for loc in db_locales if loc not in set(profile.locales)]
            if missing or extra:
                self.issues.append(
                    ParityIssue(
                        "error",
                        "market",
                        f"Market {profile.id}: Locale list mismatch",
                        {"code": list(profile.locales), "db": db_locales, "missingInDb": missing, "extraInDb": extra},
                    )
                )

        return {
            "id": profile.id,
            "inCode": True,
            "inDb": True,
            "label": {"code": profile.label, "db": db["label"], "match": profile.label == db["label"]},
            "locales": {"code": list(profile.locales), "db": db_locales},
        }

    def audit_markets(self) -> list[dict[str, Any]]:
        comparison: list[dict[str, Any]] = []
        code_markets = self.registry.get_all_markets()
        for profile in code_markets:
            try:
                comparison.append(self._audit_market(profile))
            except RulesetError as e:
                self.issues.append(_store_failure("market", f"market {profile.id}", e))

        try:
            db_rows = self.store.list_market_rows()
        except RulesetError as e:
            self.issues.append(_store_failure("market", "market orphans", e))
            return comparison
        code_ids = {m.id for m in code_markets}
        for orphan in sorted({r["market"] for r in db_rows} - code_ids):
            self.issues.append(ParityIssue("warning", "market", f"Market {orphan} exists in DB but not in code (orphan)"))
            comparison.append({"id": orphan, "inCode": False, "inDb": True})
        return comparison

    # -- overrides -----------------------------------------------------------

    @staticmethod
    def _group(rows: Iterable[OverrideRecord], key: Callable[[OverrideRecord], tuple[Any, ...]]) -> dict[tuple[Any, ...], list[OverrideRecord]]:
        groups: dict[tuple[Any, ...], list[OverrideRecord]] = defaultdict(list)
        for row in rows:
            groups[key(row)].append(row)
        return {k: v for k, v in groups.items() if len(v) > 1}

    @staticmethod
    def _same_target_key(row: OverrideRecord) -> tuple[Any, ...]:
        return (row.natural_key, row.scope, row.vertical, row.market, row.organization_id)

    def audit_overrides(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for kind in OverrideKind:
            name = STAT_KEYS[kind]
            try:
                rows = self.store.list_active_rows(kind)
            except RulesetError as e:
                self.issues.append(_store_failure("override", f"{kind.value} overrides", e))
                stats[name] = {"total": None, "duplicates": None}
                continue

            if kind is OverrideKind.TOKEN:
                dups = self._group(rows, lambda r: (r.natural_key.lower(),))
                if dups:
                    self.issues.append(
                        ParityIssue(
                            "info",
                            "override",
                            f"Found {len(dups)} tokens with multiple scope overrides (expected for inheritance)",
                            [
                                {
                                    "token": key[0],
                                    "scopes": [
                                        {
                                            "id": r.id,
                                            "scope": r.scope,
                                            "vertical": r.vertical,
                                            "market": r.market,
                                            "organization_id": r.organization_id,
                                            "relevance": r.payload.get("relevance"),
                                        }
                                        for r in group
                                    ],
                                }
                                for key, group in sorted(dups.items())[:5]
                            ],
                        )
                    )
            else:
                dups = self._group(rows, self._same_target_key)
                for key, group in sorted(dups.items(), key=lambda kv: tuple(str(x) for x in kv[0])):
                    natural_key, scope, vertical, market, org = key
                    label = natural_key or kind.value
                    self.issues.append(
                        ParityIssue(
                            "error",
                            "override",
                            f"Duplicate active {kind.value} override {label!r} at {scope} "
                            f"vertical={vertical or '-'} market={market or '-'} org={org or '-'}",
                            {
                                "kind": kind.value,
                                "natural_key": natural_key,
                                "scope": scope,
                                "vertical": vertical,
                                "market": market,
                                "organization_id": org,
                                "row_ids": sorted(r.id for r in group),
                                "versions": sorted(r.version for r in group),
                            },
                        )
                    )
            stats[name] = {"total": len(rows), "duplicates": len(dups)}
        return stats

    # -- report --------------------------------------------------------------

    def run(self) -> dict[str, Any]:
        self.issues = []
        logger.info("parity audit started")
        vertical_comparison = self.audit_verticals()
        for profile in self.registry.get_all_verticals():
            if profile.id != BASE_VERTICAL_ID:
                self.audit_ruleset_content(profile)
        market_comparison = self.audit_markets()
        override_stats = self.audit_overrides()

        issues = [i.to_dict() for i in self.issues]
        errors = sum(1 for i in self.issues if i.severity == "error")
        warnings = sum(1 for i in self.issues if i.severity == "warning")
        infos = sum(1 for i in self.issues if i.severity == "info")

        recommendations: list[str] = []
        if errors:
            recommendations.append(REC_CRITICAL)
        if any(not v["inDb"] and v["id"] != BASE_VERTICAL_ID for v in vertical_comparison):
            recommendations.append(REC_MISSING_VERTICALS)
        if any(not m["inDb"] for m in market_comparison):
            recommendations.append(REC_MISSING_MARKETS)
        if any(not c["inCode"] for c in vertical_comparison + market_comparison):
            recommendations.append(REC_ORPHANS)
        if any(i.category == "override" and "count mismatch" in i.message for i in self.issues):
            recommendations.append(REC_COUNT_MISMATCH)
        if any(i.category == "override" and i.message.startswith("Duplicate active") for i in self.issues):
            recommendations.append(REC_DUPLICATES)

        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "summary": {
                "totalVerticals": len(self.registry.get_all_verticals()),
                "totalMarkets": len(self.registry.get_all_markets()),
                "dbVerticals": sum(1 for v in vertical_comparison if v["inDb"]),
                "dbMarkets": sum(1 for m in market_comparison if m["inDb"]),
                "issues": len(issues),
                "errors": errors,
                "warnings": warnings,
                "infos": infos,
            },
            "issues": issues,
            "verticalComparison": vertical_comparison,
            "marketComparison": market_comparison,
            "overrideStats": override_stats,
            "recommendations": recommendations,
        }
        logger.info("parity audit finished issues=%d errors=%d warnings=%d", len(issues), errors, warnings)
        return report


def write_report(report: dict[str, Any], path: Path | None = None) -> Path:
    path = path or report_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report, ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def print_summary(report: dict[str, Any], out: TextIO = sys.stdout) -> None:
    s = report["summary"]
    w = out.write
    w("ASO Bible runtime parity audit\n")
    w(f"Timestamp: {report['timestamp']}\n")
    w(f"Verticals: {s['totalVerticals']} in code, {s['dbVerticals']} in DB\n")
    w(f"Markets: {s['totalMarkets']} in code, {s['dbMarkets']} in DB\n")
    w(f"Issues: {s['issues']} total ({s['errors']} errors, {s['warnings']} warnings, {s['infos']} info)\n")
    for severity, title in (("error", "ERRORS"), ("warning", "WARNINGS")):
        items = [i for i in report["issues"] if i["severity"] == severity]
        if not items:
            continue
        w(f"\n{title}:\n")
        for idx, issue in enumerate(items, start=1):
            w(f"  {idx}. [{issue['category']}] {issue['message']}\n")
            if "details" in issue:
                w(f"     Details: {json.dumps(issue['details'], ensure_ascii=False)}\n")
    if s["infos"]:
        w(f"\nINFO: {s['infos']} informational messages (see the JSON report)\n")
    w("\nOverride statistics:\n")
    for name, st in report["overrideStats"].items():
        w(f"  {name}: {st.get('total')} total, {st.get('duplicates')} duplicates\n")
    if report["recommendations"]:
        w("\nRecommendations:\n")
        for idx, rec in enumerate(report["recommendations"], start=1):
            w(f"  {idx}. {rec}\n")


def _fatal_report(exc: Exception) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "summary": {
            "totalVerticals": 0,
            "totalMarkets": 0,
            "dbVerticals": 0,
            "dbMarkets": 0,
            "issues": 1,
            "errors": 1,
            "warnings": 0,
            "infos": 0,
        },
        "issues": [ParityIssue("error", "schema", f"Fatal error: {exc}").to_dict()],
        "verticalComparison": [],
        "marketComparison": [],
        "overrideStats": {},
        "recommendations": [REC_CRITICAL],
    }


def run_audit(
    registry: ProfileRegistry | None = None,
    store: OverrideStore | None = None,
    *,
    path: Path | None = None,
    out: TextIO | None = None,
) -> int:
    """Run the audit, print the summary and write the JSON report.

    Returns the process exit code: 1 on any error issue or fatal failure.
    """
    out = out or sys.stdout
    try:
        if registry is None:
            registry = load_registry()
        if store is None:
            store = OverrideStore.from_url()
        report = ParityAuditor(registry, store).run()
    except Exception as e:
        logger.exception("parity audit aborted")
        written = write_report(_fatal_report(e), path)
        out.write(f"Fatal error: {e}\nReport saved to: {written}\n")
        return 1

    print_summary(report, out)
    written = write_report(report, path)
    out.write(f"\nFull report saved to: {written}\n")
    if report["summary"]["errors"] > 0:
        out.write("AUDIT FAILED: error-severity issues found\n")
        return 1
    return 0
