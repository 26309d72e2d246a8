from __future__ import annotations

import logging
import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from .errors import CatalogError, ProfileNotFoundError
from .models import DiscoveryThresholds, HookDefault, MarketProfile, RuleDefinition, VerticalProfile


logger = logging.getLogger("aso_bible.registry")

BASE_VERTICAL_ID = "base"
SEVERITIES = ("critical", "strong", "moderate", "optional", "info")


def default_profiles_root() -> Path:
    override = os.environ.get("ASO_PROFILES_DIR", "").strip()
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[1] / "profiles"


def _load_doc(path: Path) -> dict[str, Any]:
    try:
        obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise CatalogError(f"file={path} error={e}") from e
    if not isinstance(obj, dict):
        raise CatalogError(f"file={path} expected a mapping at top level")
    return obj


def _require(doc: dict[str, Any], key: str, path: Path) -> Any:
    if key not in doc or doc[key] in (None, ""):
        raise CatalogError(f"file={path} missing required key '{key}'")
    return doc[key]


def _thresholds(raw: Any, path: Path) -> DiscoveryThresholds | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise CatalogError(f"file={path} discovery_thresholds must be a mapping")
    try:
        return DiscoveryThresholds.from_dict(raw)
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"file={path} invalid discovery_thresholds: {e}") from e


def _words(raw: Any) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for w in raw or []:
        key = str(w).strip().lower()
        if key:
            seen.setdefault(key, None)
    return tuple(seen)


def _parse_vertical(doc: dict[str, Any], path: Path) -> VerticalProfile:
    hooks: dict[str, HookDefault] = {}
    for category, spec in (doc.get("hook_overrides") or {}).items():
        spec = spec or {}
        hooks[str(category)] = HookDefault(
            weight=float(spec.get("weight", 1.0)),
            keywords=_words(spec.get("keywords")),
        )
    return VerticalProfile(
        id=str(_require(doc, "id", path)),
        label=str(_require(doc, "label", path)),
        description=str(doc.get("description") or ""),
        discovery_thresholds=_thresholds(doc.get("discovery_thresholds"), path),
        token_relevance_overrides=MappingProxyType(
            {str(k).strip().lower(): int(v) for k, v in (doc.get("token_relevance_overrides") or {}).items()}
        ),
        kpi_overrides=MappingProxyType({str(k): float(v) for k, v in (doc.get("kpi_overrides") or {}).items()}),
        hook_overrides=MappingProxyType(hooks),
        stopwords=_words(doc.get("stopwords")),
        recommendation_templates=MappingProxyType(
            {str(k): str(v).strip() for k, v in (doc.get("recommendation_templates") or {}).items()}
        ),
    )


def _parse_market(doc: dict[str, Any], path: Path) -> MarketProfile:
    locales = _require(doc, "locales", path)
    if not isinstance(locales, list):
        raise CatalogError(f"file={path} locales must be a list")
    return MarketProfile(
        id=str(_require(doc, "id", path)),
        label=str(_require(doc, "label", path)),
        locales=tuple(str(x) for x in locales),
        discovery_thresholds=_thresholds(doc.get("discovery_thresholds"), path),
        stopwords=_words(doc.get("stopwords")),
        description=str(doc.get("description") or ""),
    )


def _parse_rules(doc: dict[str, Any], path: Path) -> dict[str, RuleDefinition]:
    out: dict[str, RuleDefinition] = {}
    for raw in doc.get("rules") or []:
        rule_id = str(_require(raw, "rule_id", path))
        severity = str(raw.get("severity_default", "moderate"))
        if severity not in SEVERITIES:
            raise CatalogError(f"file={path} rule={rule_id} unknown severity {severity!r}")
        out[rule_id] = RuleDefinition(
            rule_id=rule_id,
            name=str(raw.get("name") or rule_id),
            weight_default=float(raw.get("weight_default", 1.0)),
            severity_default=severity,
            threshold_low=raw.get("threshold_low"),
            threshold_high=raw.get("threshold_high"),
        )
    return out


@dataclass(frozen=True)
class ProfileRegistry:
    """Code-defined vertical/market catalog. Built once, then shared read-only."""

    verticals: Mapping[str, VerticalProfile]
    markets: Mapping[str, MarketProfile]
    kpi_weights: Mapping[str, float]
    rules: Mapping[str, RuleDefinition]
    _llm_rules: Mapping[str, Any]

    @property
    def base(self) -> VerticalProfile:
        return self.verticals[BASE_VERTICAL_ID]

    @property
    def base_kpi_weights(self) -> dict[str, float]:
        return dict(self.kpi_weights)

    @property
    def base_rules(self) -> dict[str, RuleDefinition]:
        return dict(self.rules)

    @property
    def base_llm_rules(self) -> dict[str, Any]:
        return deepcopy(dict(self._llm_rules))

    def get_all_verticals(self) -> list[VerticalProfile]:
        return list(self.verticals.values())

    def get_all_markets(self) -> list[MarketProfile]:
        return list(self.markets.values())

    def get_vertical(self, vertical_id: str) -> VerticalProfile:
        profile = self.verticals.get(vertical_id)
        if profile is None:
            raise ProfileNotFoundError(f"vertical={vertical_id}")
        return profile

    def get_market(self, market_id: str) -> MarketProfile:
        profile = self.markets.get(market_id)
        if profile is None:
            raise ProfileNotFoundError(f"market={market_id}")
        return profile

    def find_market(self, market_id: str | None) -> MarketProfile | None:
        if not market_id:
            return None
        return self.markets.get(market_id)


def load_registry(root: Path | None = None) -> ProfileRegistry:
    root = root or default_profiles_root()
    verticals: dict[str, VerticalProfile] = {}
    markets: dict[str, MarketProfile] = {}

    base_path = root / "verticals" / f"{BASE_VERTICAL_ID}.yaml"
    if not base_path.exists():
        raise CatalogError(f"base vertical profile not found under {root}")
    verticals[BASE_VERTICAL_ID] = _parse_vertical(_load_doc(base_path), base_path)

    for p in sorted((root / "verticals").glob("*.y*ml")):
        if p == base_path:
            continue
        profile = _parse_vertical(_load_doc(p), p)
        if profile.id in verticals:
            raise CatalogError(f"file={p} duplicate vertical id {profile.id}")
        verticals[profile.id] = profile

    for p in sorted((root / "markets").glob("*.y*ml")):
        profile = _parse_market(_load_doc(p), p)
        if profile.id in markets:
            raise CatalogError(f"file={p} duplicate market id {profile.id}")
        markets[profile.id] = profile

    kpi_path = root / "kpis.yaml"
    kpi_doc = _load_doc(kpi_path) if kpi_path.exists() else {}
    kpi_weights = {str(k): float(v) for k, v in (kpi_doc.get("weights") or {}).items()}

    rules_path = root / "rules.yaml"
    rules = _parse_rules(_load_doc(rules_path), rules_path) if rules_path.exists() else {}

    llm_path = root / "llm_visibility.yaml"
    llm_rules = _load_doc(llm_path) if llm_path.exists() else {}

    logger.debug(
        "profile catalog loaded root=%s verticals=%d markets=%d kpis=%d rules=%d",
        root,
        len(verticals),
        len(markets),
        len(kpi_weights),
        len(rules),
    )
    return ProfileRegistry(
        verticals=MappingProxyType(verticals),
        markets=MappingProxyType(markets),
        kpi_weights=MappingProxyType(kpi_weights),
        rules=MappingProxyType(rules),
        _llm_rules=MappingProxyType(llm_rules),
    )
