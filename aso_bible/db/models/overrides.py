from __future__ import annotations

from typing import Any, ClassVar, Optional

from sqlalchemy import Boolean, CheckConstraint, Float, Index, Integer, SmallInteger, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from aso_bible.db.base import Base
from aso_bible.db.types import JSONText

# Exactly the target column named by scope is set.
SCOPE_TARGET_CHECK = (
    "(scope = 'vertical' AND vertical IS NOT NULL AND market IS NULL AND organization_id IS NULL)"
    " OR (scope = 'market' AND market IS NOT NULL AND vertical IS NULL AND organization_id IS NULL)"
    " OR (scope = 'client' AND organization_id IS NOT NULL AND vertical IS NULL AND market IS NULL)"
)


class _OverrideMixin:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    # "<scope>:<vertical|market|organization_id>", the comparable form of the target columns.
    target_key: Mapped[str] = mapped_column(String, nullable=False)
    vertical: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    market: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(String, nullable=False, default="")
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    # Column holding the natural key inside one target; None for one-row-per-target tables.
    key_column: ClassVar[Optional[str]] = None

    @declared_attr.directive
    def __table_args__(cls) -> tuple[Any, ...]:
        table = cls.__tablename__  # type: ignore[attr-defined]
        key_cols = [cls.key_column] if cls.key_column else []
        return (
            CheckConstraint(SCOPE_TARGET_CHECK, name=f"ck_{table}_scope_target"),
            UniqueConstraint("target_key", *key_cols, "version", name=f"uq_{table}_version"),
            Index(f"idx_{table}_active", "target_key", *key_cols, "is_active"),
            Index(f"idx_{table}_vertical", "vertical", "is_active"),
            Index(f"idx_{table}_market", "market", "is_active"),
            Index(f"idx_{table}_org", "organization_id", "is_active"),
        )


class TokenRelevanceOverride(_OverrideMixin, Base):
    __tablename__ = "aso_token_relevance_overrides"
    key_column = "token"

    token: Mapped[str] = mapped_column(String(100), nullable=False)
    relevance: Mapped[int] = mapped_column(SmallInteger, nullable=False)


class KpiWeightOverride(_OverrideMixin, Base):
    __tablename__ = "aso_kpi_weight_overrides"
    key_column = "kpi_name"

    kpi_name: Mapped[str] = mapped_column(String(100), nullable=False)
    weight_multiplier: Mapped[float] = mapped_column(Float, nullable=False)


class HookPatternOverride(_OverrideMixin, Base):
    __tablename__ = "aso_hook_pattern_overrides"
    key_column = "hook_category"

    hook_category: Mapped[str] = mapped_column(String(50), nullable=False)
    weight_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    keywords: Mapped[list[str]] = mapped_column(JSONText(), nullable=False, default=list)


class FormulaOverride(_OverrideMixin, Base):
    __tablename__ = "aso_formula_overrides"
    key_column = "formula_id"

    formula_id: Mapped[str] = mapped_column(String(100), nullable=False)
    override_payload: Mapped[dict[str, Any]] = mapped_column(JSONText(), nullable=False, default=dict)


class StopwordOverride(_OverrideMixin, Base):
    __tablename__ = "aso_stopword_overrides"

    stopwords: Mapped[list[str]] = mapped_column(JSONText(), nullable=False, default=list)


class RecommendationTemplateOverride(_OverrideMixin, Base):
    __tablename__ = "aso_recommendation_template_overrides"
    key_column = "recommendation_id"

    recommendation_id: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)


class RuleEvaluatorOverride(_OverrideMixin, Base):
    __tablename__ = "aso_rule_evaluator_overrides"
    key_column = "rule_id"

    rule_id: Mapped[str] = mapped_column(String(100), nullable=False)
    weight_multiplier: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    severity: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    threshold_low: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    threshold_high: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class LlmVisibilityRuleOverride(_OverrideMixin, Base):
    __tablename__ = "llm_visibility_rule_overrides"

    rules_override: Mapped[dict[str, Any]] = mapped_column(JSONText(), nullable=False, default=dict)
