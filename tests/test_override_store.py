from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError, OperationalError

from aso_bible.db.base import Base
from aso_bible.db.engine import make_engine
from aso_bible.db.models import KpiWeightOverride
from aso_bible.db.session import make_session_factory
from aso_bible.rules.errors import DuplicateOverrideError, StoreError, ValidationError
from aso_bible.rules.overrides import OverrideTarget
from aso_bible.services.override_store import OverrideStore


def _make_store(root: Path) -> OverrideStore:
    url = f"sqlite:///{root / 'aso.db'}"
    engine = make_engine(url)
    Base.metadata.create_all(engine)
    return OverrideStore(make_session_factory(engine), database_url=url, engine=engine)


class OverrideStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.store = _make_store(Path(self._td.name))
        self.finance = OverrideTarget.for_vertical("finance")

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def test_upsert_twice_keeps_one_active_row(self) -> None:
        first = self.store.upsert("kpi_weight", self.finance, {"kpi_name": "snippet_quality", "weight_multiplier": 1.2}, created_by="ana")
        second = self.store.upsert("kpi_weight", self.finance, {"kpi_name": "snippet_quality", "weight_multiplier": 1.2}, created_by="ana")
        self.assertEqual(first.version, 1)
        self.assertEqual(second.version, 2)
        active = self.store.list("kpi_weight", self.finance)
        self.assertEqual([r.id for r in active], [second.id])
        history = self.store.history("kpi_weight", self.finance, "snippet_quality")
        self.assertEqual([r.version for r in history], [2, 1])
        self.assertFalse(history[1].is_active)

    def test_upsert_round_trips_payload(self) -> None:
        rec = self.store.upsert(
            "hook_pattern",
            {"scope": "market", "market": "us"},
            {"hook_category": "trust_safety", "weight_multiplier": 1.3, "keywords": ["Secure ", "secure", "FDIC"]},
            notes="launch",
        )
        self.assertEqual(rec.scope, "market")
        self.assertEqual(rec.market, "us")
        self.assertEqual(rec.natural_key, "trust_safety")
        self.assertEqual(rec.payload["keywords"], ["secure", "fdic"])
        self.assertEqual(rec.notes, "launch")
        again = self.store.get("hook_pattern", rec.id)
        self.assertEqual(again, rec)

    def test_formula_and_llm_payload_columns(self) -> None:
        f = self.store.upsert(
            "formula", self.finance, {"formula_id": "title_score", "multiplier": 1.1, "component_weights": {"usage": 0.9}}
        )
        self.assertEqual(f.payload, {"formula_id": "title_score", "multiplier": 1.1, "component_weights": {"usage": 0.9}})
        llm = self.store.upsert(
            "llm_rules", OverrideTarget.for_client("org-1"), {"rules_override": {"snippet_rules": {"ideal_snippet_count": 4}}}
        )
        self.assertEqual(llm.payload, {"rules_override": {"snippet_rules": {"ideal_snippet_count": 4}}})
        self.assertEqual(llm.natural_key, "")

    def test_invalid_payload_never_reaches_db(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.upsert("kpi_weight", self.finance, {"kpi_name": "snippet_quality", "weight_multiplier": 3})
        with self.assertRaises(ValidationError):
            self.store.upsert("kpi_weight", {"scope": "vertical", "market": "us"}, {"kpi_name": "x", "weight_multiplier": 1})
        self.assertEqual(self.store.list("kpi_weight", include_inactive=True), [])

    def test_db_rejects_row_whose_columns_do_not_match_scope(self) -> None:
        bad_shapes = [
            {"scope": "global", "vertical": "finance"},
            {"scope": "vertical", "vertical": "finance", "market": "us"},
            {"scope": "market", "vertical": "finance"},
            {"scope": "client"},
        ]
        for shape in bad_shapes:
            with self.subTest(shape=shape), self.store._Session() as s:
                s.add(
                    KpiWeightOverride(
                        target_key="x",
                        kpi_name="snippet_quality",
                        weight_multiplier=1.0,
                        created_at="2026-01-01T00:00:00+00:00",
                        updated_at="2026-01-01T00:00:00+00:00",
                        **shape,
                    )
                )
                with self.assertRaises(IntegrityError):
                    s.commit()
                s.rollback()
        self.assertEqual(self.store.list("kpi_weight", include_inactive=True), [])

    def test_remove_is_soft(self) -> None:
        rec = self.store.upsert("token", self.finance, {"token": "budget", "relevance": 2})
        removed = self.store.remove("token", rec.id)
        self.assertIsNotNone(removed)
        self.assertFalse(removed.is_active)
        self.assertEqual(self.store.list("token", self.finance), [])
        self.assertEqual(len(self.store.list("token", self.finance, include_inactive=True)), 1)
        self.assertIsNone(self.store.remove("token", 9999))

    def test_history_lower_cases_token_key(self) -> None:
        self.store.upsert("token", self.finance, {"token": "Budget", "relevance": 2})
        self.store.upsert("token", self.finance, {"token": "budget", "relevance": 3})
        history = self.store.history("token", self.finance, "BUDGET")
        self.assertEqual([r.payload["relevance"] for r in history], [3, 2])

    def test_list_filters(self) -> None:
        self.store.upsert("token", self.finance, {"token": "bank", "relevance": 3})
        self.store.upsert("token", OverrideTarget.for_market("us"), {"token": "bank", "relevance": 1})
        self.store.upsert("token", OverrideTarget.for_client("org-1"), {"token": "bank", "relevance": 0})
        self.assertEqual(len(self.store.list("token")), 3)
        self.assertEqual(len(self.store.list("token", scope="market")), 1)
        self.assertEqual(len(self.store.list("token", organization_id="org-1")), 1)
        self.assertEqual(len(self.store.list_active_rows("token")), 3)
        layer = self.store.load_layer(self.finance)
        self.assertEqual(list(layer), ["token"])

    def test_lost_compare_and_swap_is_duplicate(self) -> None:
        rec = self.store.upsert("kpi_weight", self.finance, {"kpi_name": "snippet_quality", "weight_multiplier": 1.2})
        fired = {"done": False}

        @event.listens_for(self.store.engine, "before_cursor_execute")
        def _bump(conn, cursor, statement, parameters, context, executemany):
            # A concurrent writer deactivates the row between our read and our update.
            if not fired["done"] and statement.lstrip().upper().startswith("UPDATE"):
                fired["done"] = True
                cursor.execute(
                    "UPDATE aso_kpi_weight_overrides SET is_active = 0 WHERE id = ?",
                    (rec.id,),
                )

        try:
            with self.assertRaises(DuplicateOverrideError) as ctx:
                self.store.upsert("kpi_weight", self.finance, {"kpi_name": "snippet_quality", "weight_multiplier": 1.5})
        finally:
            event.remove(self.store.engine, "before_cursor_execute", _bump)
        self.assertEqual(ctx.exception.row_ids, [rec.id])
        with self.store._Session() as s:
            rows = s.execute(select(KpiWeightOverride)).scalars().all()
        self.assertEqual(len(rows), 1)

    def test_store_failures_become_store_error(self) -> None:
        with patch.object(
            self.store.overrides_repo, "list_rows", side_effect=OperationalError("SELECT", {}, Exception("db gone"))
        ):
            with self.assertRaises(StoreError) as ctx:
                self.store.list("token")
        self.assertEqual(ctx.exception.err.code, "ASO_003_STORE_FAILED")

    def test_vertical_and_market_rows(self) -> None:
        row = self.store.upsert_vertical_row("finance", label="Finance", description="Banking")
        self.assertEqual(row["vertical"], "finance")
        updated = self.store.upsert_vertical_row("finance", label="Finance & Banking", description=None)
        self.assertEqual(updated["id"], row["id"])
        self.assertEqual(self.store.get_vertical_row("finance")["label"], "Finance & Banking")
        self.store.upsert_market_row("us", label="United States")
        self.store.upsert_market_row("zz", label="Nowhere", is_active=False)
        self.assertEqual([m["market"] for m in self.store.list_market_rows()], ["us"])
        self.assertEqual(len(self.store.list_market_rows(active_only=False)), 2)
        self.assertIsNone(self.store.get_market_row("zz"))

    def test_observability_info_redacts_password(self) -> None:
        store = OverrideStore(self.store._Session, database_url="postgresql+psycopg://u:secret@db/aso")
        info = store.observability_info()
        self.assertEqual(info["db_backend"], "postgresql")
        self.assertNotIn("secret", info["db_url"])


if __name__ == "__main__":
    unittest.main()
