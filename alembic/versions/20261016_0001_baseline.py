"""baseline: override tables, vertical/market rows, ruleset snapshots

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


# table name -> natural key column (None for one-row-per-target tables)
OVERRIDE_TABLES = {
    "aso_token_relevance_overrides": "token",
    "aso_kpi_weight_overrides": "kpi_name",
    "aso_hook_pattern_overrides": "hook_category",
    "aso_formula_overrides": "formula_id",
    "aso_stopword_overrides": None,
    "aso_recommendation_template_overrides": "recommendation_id",
    "aso_rule_evaluator_overrides": "rule_id",
    "llm_visibility_rule_overrides": None,
}

# Exactly the target column named by scope is set.
SCOPE_TARGET_CHECK = (
    "(scope = 'vertical' AND vertical IS NOT NULL AND market IS NULL AND organization_id IS NULL)"
    " OR (scope = 'market' AND market IS NOT NULL AND vertical IS NULL AND organization_id IS NULL)"
    " OR (scope = 'client' AND organization_id IS NOT NULL AND vertical IS NULL AND market IS NULL)"
)


def _json_type() -> sa.TypeEngine:
    dialect_name = op.get_context().dialect.name
    if dialect_name == "postgresql":
        return postgresql.JSONB()
    return sa.Text()


def _has_table(table_name: str) -> bool:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    return table_name in set(insp.get_table_names())


def _existing_indexes(table_name: str) -> set[str]:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    try:
        return {str(i.get("name", "")) for i in insp.get_indexes(table_name)}
    except Exception:
        return set()


def _create_index_if_missing(name: str, table_name: str, cols: list[str]) -> None:
    if name in _existing_indexes(table_name):
        return
    op.create_index(name, table_name, cols, unique=False)


def _override_columns(table: str, json_type: sa.TypeEngine) -> list[sa.Column]:
    if table == "aso_token_relevance_overrides":
        return [
            sa.Column("token", sa.String(100), nullable=False),
            sa.Column("relevance", sa.SmallInteger(), nullable=False),
        ]
    if table == "aso_kpi_weight_overrides":
        return [
            sa.Column("kpi_name", sa.String(100), nullable=False),
            sa.Column("weight_multiplier", sa.Float(), nullable=False),
        ]
    if table == "aso_hook_pattern_overrides":
        return [
            sa.Column("hook_category", sa.String(50), nullable=False),
            sa.Column("weight_multiplier", sa.Float(), nullable=False),
            sa.Column("keywords", json_type, nullable=False),
        ]
    if table == "aso_formula_overrides":
        return [
            sa.Column("formula_id", sa.String(100), nullable=False),
            sa.Column("override_payload", json_type, nullable=False),
        ]
    if table == "aso_stopword_overrides":
        return [sa.Column("stopwords", json_type, nullable=False)]
    if table == "aso_recommendation_template_overrides":
        return [
            sa.Column("recommendation_id", sa.String(100), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
        ]
    if table == "aso_rule_evaluator_overrides":
        return [
            sa.Column("rule_id", sa.String(100), nullable=False),
            sa.Column("weight_multiplier", sa.Float(), nullable=True),
            sa.Column("severity", sa.String(20), nullable=True),
            sa.Column("threshold_low", sa.Float(), nullable=True),
            sa.Column("threshold_high", sa.Float(), nullable=True),
        ]
    return [sa.Column("rules_override", json_type, nullable=False)]


def upgrade() -> None:
    json_type = _json_type()

    for table, key_col in OVERRIDE_TABLES.items():
        key_cols = [key_col] if key_col else []
        if not _has_table(table):
            op.create_table(
                table,
                sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
                sa.Column("scope", sa.String(20), nullable=False),
                sa.Column("target_key", sa.String(), nullable=False),
                sa.Column("vertical", sa.String(50), nullable=True),
                sa.Column("market", sa.String(10), nullable=True),
                sa.Column("organization_id", sa.String(), nullable=True),
                *_override_columns(table, json_type),
                sa.Column("notes", sa.Text(), nullable=True),
                sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
                sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
                sa.Column("created_by", sa.String(), nullable=False, server_default=""),
                sa.Column("created_at", sa.String(), nullable=False),
                sa.Column("updated_at", sa.String(), nullable=False),
                sa.CheckConstraint(SCOPE_TARGET_CHECK, name=f"ck_{table}_scope_target"),
                sa.UniqueConstraint("target_key", *key_cols, "version", name=f"uq_{table}_version"),
            )
        _create_index_if_missing(f"idx_{table}_active", table, ["target_key", *key_cols, "is_active"])
        _create_index_if_missing(f"idx_{table}_vertical", table, ["vertical", "is_active"])
        _create_index_if_missing(f"idx_{table}_market", table, ["market", "is_active"])
        _create_index_if_missing(f"idx_{table}_org", table, ["organization_id", "is_active"])

    if not _has_table("aso_ruleset_vertical"):
        op.create_table(
            "aso_ruleset_vertical",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("vertical", sa.String(50), nullable=False),
            sa.Column("label", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
        )
    _create_index_if_missing("idx_aso_ruleset_vertical_active", "aso_ruleset_vertical", ["vertical", "is_active"])

    if not _has_table("aso_ruleset_market"):
        op.create_table(
            "aso_ruleset_market",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("market", sa.String(10), nullable=False),
            sa.Column("label", sa.String(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
        )
    _create_index_if_missing("idx_aso_ruleset_market_active", "aso_ruleset_market", ["market", "is_active"])

    if not _has_table("aso_ruleset_versions"):
        op.create_table(
            "aso_ruleset_versions",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("target_key", sa.String(), nullable=False),
            sa.Column("vertical", sa.String(50), nullable=True),
            sa.Column("market", sa.String(10), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("ruleset_snapshot", json_type, nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(), nullable=False, server_default=""),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.UniqueConstraint("target_key", "version", name="uq_aso_ruleset_versions_target_version"),
        )
    _create_index_if_missing(
        "idx_aso_ruleset_versions_lookup",
        "aso_ruleset_versions",
        ["vertical", "market", "is_active", "created_at"],
    )


def downgrade() -> None:
    for table in ("aso_ruleset_versions", "aso_ruleset_market", "aso_ruleset_vertical", *reversed(list(OVERRIDE_TABLES))):
        if _has_table(table):
            op.drop_table(table)
