from __future__ import annotations

import json
from copy import deepcopy
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class DiscoveryThresholds:
    excellent: int
    good: int
    moderate: int

    def to_dict(self) -> dict[str, int]:
        return {"excellent": self.excellent, "good": self.good, "moderate": self.moderate}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DiscoveryThresholds":
        return cls(
            excellent=int(data["excellent"]),
            good=int(data["good"]),
            moderate=int(data["moderate"]),
        )


DEFAULT_DISCOVERY_THRESHOLDS = DiscoveryThresholds(excellent=5, good=3, moderate=1)


@dataclass(frozen=True)
class HookDefault:
    weight: float
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class VerticalProfile:
    id: str
    label: str
    description: str
    discovery_thresholds: DiscoveryThresholds | None
    token_relevance_overrides: Mapping[str, int]
    kpi_overrides: Mapping[str, float]
    hook_overrides: Mapping[str, HookDefault]
    stopwords: tuple[str, ...]
    recommendation_templates: Mapping[str, str]

    @property
    def is_base(self) -> bool:
        return self.id == "base"

    def identity(self) -> dict[str, Any]:
        return {"id": self.id, "label": self.label, "description": self.description}


@dataclass(frozen=True)
class MarketProfile:
    id: str
    label: str
    locales: tuple[str, ...]
    discovery_thresholds: DiscoveryThresholds | None = None
    stopwords: tuple[str, ...] = ()
    description: str = ""

    def identity(self) -> dict[str, Any]:
        return {"id": self.id, "label": self.label, "description": self.description}


@dataclass(frozen=True)
class RuleDefinition:
    rule_id: str
    name: str
    weight_default: float
    severity_default: str
    threshold_low: float | None = None
    threshold_high: float | None = None

    def effective(self) -> dict[str, Any]:
        return {
            "weight": self.weight_default,
            "severity": self.severity_default,
            "threshold_low": self.threshold_low,
            "threshold_high": self.threshold_high,
        }


@dataclass
class RulesetLayer:
    """One normalized override layer (vertical, market or client) ready for merging.

    Weight maps hold multipliers. Everything else holds replacement values,
    except ``stopwords``, ``hook_keywords`` and the LLM keyword lists, which
    accumulate.
    """

    source: str
    identity: dict[str, Any]
    version: int | None = None
    token_overrides: dict[str, int] = field(default_factory=dict)
    kpi_multipliers: dict[str, float] = field(default_factory=dict)
    hook_multipliers: dict[str, float] = field(default_factory=dict)
    hook_keywords: dict[str, list[str]] = field(default_factory=dict)
    stopwords: list[str] = field(default_factory=list)
    formula_multipliers: dict[str, float] = field(default_factory=dict)
    recommendation_templates: dict[str, str] = field(default_factory=dict)
    rule_multipliers: dict[str, float] = field(default_factory=dict)
    rule_settings: dict[str, dict[str, Any]] = field(default_factory=dict)
    llm_rules: dict[str, Any] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not any(
            (
                self.token_overrides,
                self.kpi_multipliers,
                self.hook_multipliers,
                self.hook_keywords,
                self.stopwords,
                self.formula_multipliers,
                self.recommendation_templates,
                self.rule_multipliers,
                self.rule_settings,
                self.llm_rules,
            )
        )


@dataclass
class MergedRuleSet:
    vertical_id: str
    market_id: str | None
    organization_id: str | None
    discovery_thresholds: dict[str, int]
    locales: list[str]
    weights: dict[str, float]
    token_overrides: dict[str, int]
    hook_weights: dict[str, float]
    hook_keywords: dict[str, list[str]]
    stopwords: list[str]
    formula_overrides: dict[str, float]
    recommendation_templates: dict[str, str]
    rules: dict[str, dict[str, Any]]
    llm_rules: dict[str, Any]
    inheritance_chain: dict[str, dict[str, Any]]
    section_sources: dict[str, list[str]]
    versions: dict[str, int]
    # "code" when no DB layer contributed, "hybrid" otherwise.
    source: str = "code"

    def to_snapshot(self) -> dict[str, Any]:
        # JSON round-trip normalises tuples and drops object identity.
        return json.loads(self.to_json())

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> "MergedRuleSet":
        d = deepcopy(dict(data))
        return cls(
            vertical_id=str(d.get("vertical_id", "base")),
            market_id=d.get("market_id"),
            organization_id=d.get("organization_id"),
            discovery_thresholds=dict(d.get("discovery_thresholds") or DEFAULT_DISCOVERY_THRESHOLDS.to_dict()),
            locales=list(d.get("locales") or []),
            weights={str(k): float(v) for k, v in (d.get("weights") or {}).items()},
            token_overrides={str(k): int(v) for k, v in (d.get("token_overrides") or {}).items()},
            hook_weights={str(k): float(v) for k, v in (d.get("hook_weights") or {}).items()},
            hook_keywords={str(k): list(v) for k, v in (d.get("hook_keywords") or {}).items()},
            stopwords=list(d.get("stopwords") or []),
            formula_overrides={str(k): float(v) for k, v in (d.get("formula_overrides") or {}).items()},
            recommendation_templates=dict(d.get("recommendation_templates") or {}),
            rules=dict(d.get("rules") or {}),
            llm_rules=dict(d.get("llm_rules") or {}),
            inheritance_chain=dict(d.get("inheritance_chain") or {}),
            section_sources={str(k): list(v) for k, v in (d.get("section_sources") or {}).items()},
            versions={str(k): int(v) for k, v in (d.get("versions") or {}).items()},
            source=str(d.get("source", "code")),
        )


@dataclass(frozen=True)
class OverrideRecord:
    """One stored override row, detached from the session.

    ``payload`` holds the kind-specific fields, natural key included.
    """

    id: int
    kind: str
    scope: str
    vertical: str | None
    market: str | None
    organization_id: str | None
    natural_key: str
    payload: dict[str, Any]
    version: int
    is_active: bool
    notes: str | None = None
    created_by: str = ""
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
