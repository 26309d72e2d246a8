from __future__ import annotations

import json
from typing import Any

from sqlalchemy import Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class JSONText(TypeDecorator):
    """
    Cross-DB JSON column type used for override payloads and ruleset snapshots:
    - PostgreSQL: JSONB
    - Others (SQLite): TEXT holding key-sorted JSON, so equal payloads store equal text
    """

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value: Any, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return value
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False, sort_keys=True)

    def process_result_value(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return None
        if dialect.name == "postgresql" or isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except ValueError:
            return value
