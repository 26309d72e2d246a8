from __future__ import annotations

import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from aso_bible.db.base import Base
from aso_bible.db.engine import make_engine
from aso_bible.db.models import KpiWeightOverride
from aso_bible.db.session import make_session_factory
from aso_bible.rules.errors import StoreError
from aso_bible.rules.overrides import OverrideTarget
from aso_bible.rules.registry import load_registry
from aso_bible.services.override_store import OverrideStore
from aso_bible.services.parity_audit import REC_CRITICAL, REC_DUPLICATES, ParityAuditor, run_audit
from aso_bible.services.ruleset_versioning import RulesetVersioning


def _make_store(root: Path) -> OverrideStore:
    url = f"sqlite:///{root / 'aso.db'}"
    engine = make_engine(url)
    Base.metadata.create_all(engine)
    return OverrideStore(make_session_factory(engine), database_url=url, engine=engine)


def _insert_kpi_row(store: OverrideStore, *, version: int, multiplier: float) -> int:
    # Bypasses the store so two active rows can share one natural key.
    with store._Session() as s:
        row = KpiWeightOverride(
            scope="vertical",
            target_key="vertical:finance",
            vertical="finance",
            kpi_name="snippet_quality",
            weight_multiplier=multiplier,
            version=version,
            is_active=True,
            created_by="seed",
            created_at="2026-01-01T00:00:00+00:00",
            updated_at="2026-01-01T00:00:00+00:00",
        )
        s.add(row)
        s.commit()
        return int(row.id)


class ParityAuditTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.store = _make_store(self.root)
        self.registry = load_registry()
        self.auditor = ParityAuditor(self.registry, self.store)

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def _issues(self, report: dict, severity: str) -> list[dict]:
        return [i for i in report["issues"] if i["severity"] == severity]

    def test_empty_db_reports_missing_profiles_without_errors(self) -> None:
        report = self.auditor.run()
        s = report["summary"]
        self.assertEqual(s["totalVerticals"], len(self.registry.get_all_verticals()))
        self.assertEqual(s["totalMarkets"], len(self.registry.get_all_markets()))
        self.assertEqual((s["dbVerticals"], s["dbMarkets"], s["errors"]), (0, 0, 0))
        infos = [i["message"] for i in self._issues(report, "info")]
        self.assertTrue(any("base" in m and "expected for base" in m for m in infos))
        warnings = [i["message"] for i in self._issues(report, "warning")]
        self.assertIn("Vertical finance exists in code but not in DB", warnings)
        self.assertIn("Market us exists in code but not in DB", warnings)
        self.assertEqual(set(report), {
            "timestamp", "summary", "issues", "verticalComparison", "marketComparison", "overrideStats", "recommendations",
        })
        self.assertEqual(report["overrideStats"]["kpiOverrides"], {"total": 0, "duplicates": 0})
        self.assertNotIn(REC_CRITICAL, report["recommendations"])

    def test_duplicate_active_kpi_rows_are_one_error(self) -> None:
        a = _insert_kpi_row(self.store, version=1, multiplier=1.2)
        b = _insert_kpi_row(self.store, version=2, multiplier=1.4)
        report = self.auditor.run()
        errors = [i for i in self._issues(report, "error") if i["category"] == "override"]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["details"]["row_ids"], sorted([a, b]))
        self.assertEqual(errors[0]["details"]["kind"], "kpi_weight")
        self.assertEqual(report["overrideStats"]["kpiOverrides"], {"total": 2, "duplicates": 1})
        self.assertIn(REC_CRITICAL, report["recommendations"])
        self.assertIn(REC_DUPLICATES, report["recommendations"])

    def test_token_overrides_across_scopes_are_info(self) -> None:
        self.store.upsert("token", OverrideTarget.for_vertical("finance"), {"token": "bank", "relevance": 3})
        self.store.upsert("token", OverrideTarget.for_client("org-1"), {"token": "bank", "relevance": 1})
        report = self.auditor.run()
        token_infos = [i for i in self._issues(report, "info") if "multiple scope overrides" in i["message"]]
        self.assertEqual(len(token_infos), 1)
        self.assertEqual(token_infos[0]["details"][0]["token"], "bank")
        self.assertEqual(report["summary"]["errors"], 0)

    def test_orphan_rows_warn(self) -> None:
        self.store.upsert_vertical_row("crypto", label="Crypto")
        self.store.upsert_market_row("zz", label="Nowhere")
        report = self.auditor.run()
        warnings = [i["message"] for i in self._issues(report, "warning")]
        self.assertIn("Vertical crypto exists in DB but not in code (orphan)", warnings)
        self.assertIn("Market zz exists in DB but not in code (orphan)", warnings)
        self.assertIn({"id": "crypto", "inCode": False, "inDb": True}, report["verticalComparison"])
        self.assertEqual(report["summary"]["dbVerticals"], 1)

    def test_label_mismatch_warns(self) -> None:
        self.store.upsert_vertical_row("finance", label="Money", description="Banking, budgeting, investing and payments apps.")
        report = self.auditor.run()
        messages = [i["message"] for i in self._issues(report, "warning")]
        self.assertIn("Vertical finance: Label mismatch", messages)

    def test_published_snapshot_thresholds_match_code(self) -> None:
        self.store.upsert_vertical_row("finance", label="Finance")
        RulesetVersioning(self.registry, self.store).publish_snapshot("finance", None)
        report = self.auditor.run()
        finance = next(v for v in report["verticalComparison"] if v["id"] == "finance")
        self.assertEqual(finance["discoveryThresholds"]["db"], finance["discoveryThresholds"]["code"])
        self.assertFalse([i for i in self._issues(report, "error") if "finance" in i["message"]])

    def test_threshold_drift_is_error(self) -> None:
        self.store.upsert_vertical_row("finance", label="Finance")
        self.store.profiles_repo.publish_snapshot(
            target_key="finance|",
            vertical="finance",
            market=None,
            snapshot={"market_id": None, "discovery_thresholds": {"excellent": 9, "good": 2, "moderate": 1}},
            created_by="seed",
            notes=None,
            now="2026-01-01T00:00:00+00:00",
        )
        report = self.auditor.run()
        errors = [i["message"] for i in self._issues(report, "error")]
        self.assertIn("Vertical finance: Discovery thresholds mismatch", errors)

    def test_missing_thresholds_in_snapshot_warns(self) -> None:
        self.store.upsert_vertical_row("finance", label="Finance")
        report = self.auditor.run()
        warnings = [i["message"] for i in self._issues(report, "warning")]
        self.assertIn("Vertical finance: Discovery thresholds missing in DB", warnings)

    def test_locale_mismatch_is_error(self) -> None:
        self.store.upsert_market_row("ca", label="Canada")
        self.store.profiles_repo.publish_snapshot(
            target_key="finance|ca",
            vertical="finance",
            market="ca",
            snapshot={"market_id": "ca", "locales": ["en-CA"]},
            created_by="seed",
            notes=None,
            now="2026-01-01T00:00:00+00:00",
        )
        report = self.auditor.run()
        errors = [i for i in self._issues(report, "error") if i["category"] == "market"]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["details"]["missingInDb"], ["fr-CA"])

    def test_matching_locales_are_clean(self) -> None:
        self.store.upsert_market_row("ca", label="Canada")
        RulesetVersioning(self.registry, self.store).publish_snapshot("finance", "ca")
        report = self.auditor.run()
        self.assertFalse([i for i in report["issues"] if i["category"] == "market" and "ca" in i["message"].split()])

    def test_failed_query_is_recorded_and_audit_continues(self) -> None:
        original = self.store.get_market_row

        def flaky(market: str):
            if market == "us":
                raise StoreError("get market us: connection reset", store_code="e3q8")
            return original(market)

        with patch.object(self.store, "get_market_row", side_effect=flaky):
            report = self.auditor.run()
        errors = [i for i in self._issues(report, "error") if i["category"] == "market"]
        self.assertEqual([i["message"] for i in errors], ["Failed to query DB for market us"])
        self.assertEqual(errors[0]["details"]["store_code"], "e3q8")
        market_ids = {m["id"] for m in report["marketComparison"]}
        self.assertNotIn("us", market_ids)
        self.assertIn("uk", market_ids)

    def test_run_audit_writes_report_and_exit_code(self) -> None:
        out_path = self.root / "reports" / "parity.json"
        buf = io.StringIO()
        rc = run_audit(self.registry, self.store, path=out_path, out=buf)
        self.assertEqual(rc, 0)
        self.assertTrue(out_path.exists())
        self.assertIn("ASO Bible runtime parity audit", buf.getvalue())

        _insert_kpi_row(self.store, version=1, multiplier=1.2)
        _insert_kpi_row(self.store, version=2, multiplier=1.4)
        rc = run_audit(self.registry, self.store, path=out_path, out=io.StringIO())
        self.assertEqual(rc, 1)
        self.assertEqual(json.loads(out_path.read_text(encoding="utf-8"))["summary"]["errors"], 1)

    def test_run_audit_fatal_still_writes_report(self) -> None:
        out_path = self.root / "parity.json"
        with patch.object(ParityAuditor, "run", side_effect=RuntimeError("boom")):
            rc = run_audit(self.registry, self.store, path=out_path, out=io.StringIO())
        self.assertEqual(rc, 1)
        report = json.loads(out_path.read_text(encoding="utf-8"))
        self.assertEqual(report["issues"][0]["message"], "Fatal error: boom")


if __name__ == "__main__":
    unittest.main()
