from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from aso_bible.db.base import Base
from aso_bible.db.engine import make_engine
from aso_bible.db.session import make_session_factory
from aso_bible.rules.errors import SnapshotNotFoundError
from aso_bible.rules.merger import RulesetMerger
from aso_bible.rules.overrides import OverrideTarget
from aso_bible.rules.registry import load_registry
from aso_bible.services.override_store import OverrideStore
from aso_bible.services.ruleset_versioning import RulesetVersioning, diff_rulesets, snapshot_target_key


def _make_store(root: Path) -> OverrideStore:
    url = f"sqlite:///{root / 'aso.db'}"
    engine = make_engine(url)
    Base.metadata.create_all(engine)
    return OverrideStore(make_session_factory(engine), database_url=url, engine=engine)


class DiffRulesetsTests(unittest.TestCase):
    def test_flat_paths(self) -> None:
        old = {"weights": {"a": 0.1, "b": 0.2}, "stopwords": ["x"], "gone": 1}
        new = {"weights": {"a": 0.1, "b": 0.3, "c": 0.4}, "stopwords": ["x", "y"]}
        d = diff_rulesets(old, new)
        self.assertEqual(d["added"], {"weights.c": 0.4})
        self.assertEqual(d["removed"], {"gone": 1})
        self.assertEqual(d["changed"]["weights.b"], {"from": 0.2, "to": 0.3})
        self.assertEqual(d["changed"]["stopwords"], {"from": ["x"], "to": ["x", "y"]})
        self.assertNotIn("weights.a", d["changed"])

    def test_target_key(self) -> None:
        self.assertEqual(snapshot_target_key("finance", "us"), "finance|us")
        self.assertEqual(snapshot_target_key("finance", None), "finance|")


class RulesetVersioningTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.store = _make_store(Path(self._td.name))
        self.registry = load_registry()
        self.versioning = RulesetVersioning(self.registry, self.store)
        self.merger = RulesetMerger(self.registry, self.store)

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def test_publish_increments_and_keeps_one_active(self) -> None:
        v1 = self.versioning.publish_snapshot("finance", "us", created_by="ana", notes="first")
        self.store.upsert("token", OverrideTarget.for_vertical("finance"), {"token": "crypto", "relevance": 1})
        v2 = self.versioning.publish_snapshot("finance", "us", created_by="ana")
        self.assertEqual((v1.version, v2.version), (1, 2))
        self.assertTrue(v2.is_active)
        snaps = self.versioning.list_snapshots("finance", "us")
        self.assertEqual([(s.version, s.is_active) for s in snaps], [(2, True), (1, False)])
        active = self.versioning.get_active_snapshot("finance", "us")
        self.assertEqual(active.version, 2)
        self.assertEqual(active.ruleset["token_overrides"]["crypto"], 1)
        self.assertIsNone(active.ruleset["organization_id"])

    def test_snapshots_are_per_target(self) -> None:
        self.versioning.publish_snapshot("finance", "us")
        self.versioning.publish_snapshot("finance", "uk")
        self.versioning.publish_snapshot("finance", None)
        self.assertEqual(self.versioning.get_active_snapshot("finance", "uk").version, 1)
        self.assertEqual(self.versioning.get_active_snapshot("finance").version, 1)
        self.assertEqual(len(self.versioning.list_snapshots()), 3)

    def test_snapshot_for_db_only_market_keeps_market_overrides(self) -> None:
        self.store.upsert("token", OverrideTarget.for_market("xx"), {"token": "zelle", "relevance": 0})
        snap = self.versioning.publish_snapshot("finance", "xx", created_by="ana")
        self.assertEqual(snap.market, "xx")
        self.assertEqual(snap.ruleset["market_id"], "xx")
        self.assertEqual(snap.ruleset["token_overrides"]["zelle"], 0)

    def test_snapshot_ignores_client_overrides(self) -> None:
        self.store.upsert("kpi_weight", OverrideTarget.for_client("org-1"), {"kpi_name": "snippet_quality", "weight_multiplier": 2.0})
        snap = self.versioning.publish_snapshot("finance", "us")
        self.assertEqual(snap.ruleset["weights"]["snippet_quality"], 0.15)

    def test_rollback_reactivates_previous(self) -> None:
        self.versioning.publish_snapshot("finance", "us")
        self.versioning.publish_snapshot("finance", "us")
        result = self.versioning.rollback_snapshot("finance", "us")
        self.assertEqual(result["restored"].version, 1)
        self.assertEqual(result["deactivated"].version, 2)
        self.assertEqual(self.versioning.get_active_snapshot("finance", "us").version, 1)
        active = [s for s in self.versioning.list_snapshots("finance", "us") if s.is_active]
        self.assertEqual(len(active), 1)

    def test_rollback_without_previous(self) -> None:
        with self.assertRaises(SnapshotNotFoundError):
            self.versioning.rollback_snapshot("finance", "us")
        self.versioning.publish_snapshot("finance", "us")
        with self.assertRaises(SnapshotNotFoundError):
            self.versioning.rollback_snapshot("finance", "us")

    def test_diff_between_versions(self) -> None:
        self.versioning.publish_snapshot("finance", "us")
        self.store.upsert("kpi_weight", OverrideTarget.for_market("us"), {"kpi_name": "snippet_quality", "weight_multiplier": 2.0})
        self.versioning.publish_snapshot("finance", "us")
        d = self.versioning.diff_snapshots("finance", "us", 1)
        self.assertEqual((d["from_version"], d["to_version"]), (1, 2))
        self.assertEqual(d["changed"]["weights.snippet_quality"], {"from": 0.15, "to": 0.3})
        self.assertEqual(d["changed"]["source"], {"from": "code", "to": "hybrid"})
        with self.assertRaises(SnapshotNotFoundError):
            self.versioning.diff_snapshots("finance", "us", 7)

    def test_runtime_falls_back_to_live_merge(self) -> None:
        self.store.upsert("token", OverrideTarget.for_vertical("finance"), {"token": "crypto", "relevance": 2})
        live = self.versioning.resolve_runtime_ruleset("finance", "us")
        self.assertEqual(live.token_overrides["crypto"], 2)

    def test_runtime_uses_snapshot_plus_live_client_layer(self) -> None:
        self.versioning.publish_snapshot("finance", "us")
        # Published snapshots do not move when vertical overrides change afterwards.
        self.store.upsert("token", OverrideTarget.for_vertical("finance"), {"token": "crypto", "relevance": 2})
        self.store.upsert("kpi_weight", OverrideTarget.for_client("org-1"), {"kpi_name": "safety_credibility", "weight_multiplier": 1.5})
        runtime = self.versioning.resolve_runtime_ruleset("finance", "us", "org-1")
        self.assertNotIn("crypto", runtime.token_overrides)
        self.assertAlmostEqual(runtime.weights["safety_credibility"], 0.30, places=6)
        self.assertEqual(runtime.organization_id, "org-1")

    def test_runtime_snapshot_matches_full_merge_when_unchanged(self) -> None:
        self.store.upsert("stopword", OverrideTarget.for_market("us"), {"stopwords": ["usa"]})
        self.store.upsert("kpi_weight", OverrideTarget.for_client("org-1"), {"kpi_name": "factual_grounding", "weight_multiplier": 1.2})
        self.versioning.publish_snapshot("finance", "us")
        runtime = self.versioning.resolve_runtime_ruleset("finance", "us", "org-1")
        full = self.merger.merge("finance", "us", "org-1")
        self.assertEqual(runtime.to_json(), full.to_json())


if __name__ == "__main__":
    unittest.main()
