from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError

from aso_bible.db.engine import make_engine
from aso_bible.rules.overrides import OverrideTarget
from aso_bible.services.override_store import REQUIRED_TABLES, OverrideStore, run_alembic_upgrade


class AlembicMigrationTests(unittest.TestCase):
    def test_upgrade_creates_every_table(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            url = f"sqlite:///{Path(td) / 'migrated.db'}"
            run_alembic_upgrade(url)
            engine = make_engine(url)
            try:
                insp = inspect(engine)
                for table in REQUIRED_TABLES:
                    self.assertTrue(insp.has_table(table), table)
                uniques = {u["name"] for u in insp.get_unique_constraints("aso_kpi_weight_overrides")}
                self.assertIn("uq_aso_kpi_weight_overrides_version", uniques)
                with self.assertRaises(IntegrityError), engine.begin() as conn:
                    conn.execute(
                        text(
                            "INSERT INTO aso_token_relevance_overrides "
                            "(scope, target_key, vertical, market, token, relevance, created_at, updated_at) "
                            "VALUES ('vertical', 'vertical:finance', 'finance', 'us', 'bank', 2, 't', 't')"
                        )
                    )
            finally:
                engine.dispose()
            # A second upgrade is a no-op.
            run_alembic_upgrade(url)

    def test_from_url_initialises_schema(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            url = f"sqlite:///{Path(td) / 'sub' / 'auto.db'}"
            store = OverrideStore.from_url(url)
            try:
                rec = store.upsert("token", OverrideTarget.for_market("uk"), {"token": "colour", "relevance": 2})
                self.assertEqual(rec.version, 1)
                self.assertEqual(store.observability_info()["db_backend"], "sqlite")
            finally:
                store.engine.dispose()

    def test_from_url_honours_db_echo(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            url = f"sqlite:///{Path(td) / 'echo.db'}"
            with patch.dict(os.environ, {"DB_ECHO": "1"}):
                store = OverrideStore.from_url(url, auto_init=False)
            try:
                self.assertTrue(store.engine.echo)
            finally:
                store.engine.dispose()
            with patch.dict(os.environ, {"DB_ECHO": "0"}):
                quiet = OverrideStore.from_url(url, auto_init=False)
            try:
                self.assertFalse(quiet.engine.echo)
            finally:
                quiet.engine.dispose()


if __name__ == "__main__":
    unittest.main()
