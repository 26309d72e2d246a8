from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from aso_bible.db.base import Base
from aso_bible.db.types import JSONText


class RulesetVertical(Base):
    __tablename__ = "aso_ruleset_vertical"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vertical: Mapped[str] = mapped_column(String(50), nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        Index("idx_aso_ruleset_vertical_active", "vertical", "is_active"),
    )


class RulesetMarket(Base):
    __tablename__ = "aso_ruleset_market"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market: Mapped[str] = mapped_column(String(10), nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        Index("idx_aso_ruleset_market_active", "market", "is_active"),
    )


class RulesetVersion(Base):
    __tablename__ = "aso_ruleset_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # "<vertical>|<market>" with empty parts for absent targets; NULLs are not comparable in unique keys.
    target_key: Mapped[str] = mapped_column(String, nullable=False)
    vertical: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    market: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    ruleset_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONText(), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("target_key", "version", name="uq_aso_ruleset_versions_target_version"),
        Index("idx_aso_ruleset_versions_lookup", "vertical", "market", "is_active", "created_at"),
    )
