from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .errors import ValidationError
from .models import DEFAULT_DISCOVERY_THRESHOLDS, MergedRuleSet, OverrideRecord, RulesetLayer
from .overrides import OverrideKind, validate_payload
from .registry import ProfileRegistry


logger = logging.getLogger("aso_bible.normalizer")

SECTIONS = (
    "discovery_thresholds",
    "locales",
    "weights",
    "token_overrides",
    "hook_weights",
    "hook_keywords",
    "stopwords",
    "formula_overrides",
    "recommendation_templates",
    "rules",
    "llm_rules",
)


def union_words(*groups: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    for group in groups:
        for w in group or ():
            key = str(w).strip().lower()
            if key:
                seen.add(key)
    return sorted(seen)


def _winners(rows: Iterable[OverrideRecord]) -> list[OverrideRecord]:
    # Several active rows for one key can exist after a race or a manual
    # insert; the highest version (then id) wins.
    best: dict[str, OverrideRecord] = {}
    for row in rows:
        cur = best.get(row.natural_key)
        if cur is None or (row.version, row.id) > (cur.version, cur.id):
            best[row.natural_key] = row
    return [best[k] for k in sorted(best)]


def _payload(kind: OverrideKind, row: OverrideRecord) -> Any | None:
    try:
        return validate_payload(kind, row.payload)
    except ValidationError as e:
        logger.warning("skipping invalid %s override id=%s: %s", kind.value, row.id, e.detail)
        return None


def normalize_layer(
    source: str,
    rows_by_kind: Mapping[str, Iterable[OverrideRecord]],
    *,
    identity: dict[str, Any] | None = None,
) -> RulesetLayer:
    """Turn the active rows of one target into an engine-ready layer."""
    layer = RulesetLayer(source=source, identity=dict(identity or {}))
    versions: list[int] = []

    for raw_kind, rows in rows_by_kind.items():
        kind = OverrideKind(raw_kind)
        for row in _winners(rows):
            p = _payload(kind, row)
            if p is None:
                continue
            versions.append(int(row.version))
            if kind is OverrideKind.TOKEN:
                layer.token_overrides[p.token] = int(p.relevance)
            elif kind is OverrideKind.KPI_WEIGHT:
                layer.kpi_multipliers[p.kpi_name] = float(p.weight_multiplier)
            elif kind is OverrideKind.HOOK_PATTERN:
                layer.hook_multipliers[p.hook_category] = float(p.weight_multiplier)
                if p.keywords:
                    layer.hook_keywords[p.hook_category] = list(p.keywords)
            elif kind is OverrideKind.FORMULA:
                layer.formula_multipliers[p.formula_id] = float(p.multiplier)
                for component, mult in sorted(p.component_weights.items()):
                    layer.formula_multipliers[f"{p.formula_id}.{component}"] = float(mult)
            elif kind is OverrideKind.STOPWORD:
                layer.stopwords = union_words(layer.stopwords, p.stopwords)
            elif kind is OverrideKind.RECOMMENDATION_TEMPLATE:
                layer.recommendation_templates[p.recommendation_id] = p.message
            elif kind is OverrideKind.RULE:
                if p.weight_multiplier is not None:
                    layer.rule_multipliers[p.rule_id] = float(p.weight_multiplier)
                settings = {
                    k: getattr(p, k)
                    for k in ("severity", "threshold_low", "threshold_high")
                    if getattr(p, k) is not None
                }
                if settings:
                    layer.rule_settings[p.rule_id] = settings
            elif kind is OverrideKind.LLM_RULES:
                layer.llm_rules = p.override_dict()

    layer.version = max(versions) if versions else None
    return layer


def code_base(registry: ProfileRegistry, vertical_id: str, market_id: str | None) -> MergedRuleSet:
    """Build the code-defined starting point: base profile, then vertical, then market.

    Code values are absolute. A vertical's ``kpi_overrides`` replace the base
    KPI weight outright; DB layers multiply afterwards.
    """
    base = registry.base
    vertical = registry.get_vertical(vertical_id)
    market = registry.find_market(market_id)
    profiles = [base] if vertical.is_base else [base, vertical]

    thresholds = DEFAULT_DISCOVERY_THRESHOLDS
    for t in [p.discovery_thresholds for p in profiles] + [market.discovery_thresholds if market else None]:
        if t is not None:
            thresholds = t

    weights = dict(registry.base_kpi_weights)
    tokens: dict[str, int] = {}
    hook_weights: dict[str, float] = {}
    hook_keywords: dict[str, list[str]] = {}
    templates: dict[str, str] = {}
    for p in profiles:
        weights.update(p.kpi_overrides)
        tokens.update(p.token_relevance_overrides)
        for category, hook in p.hook_overrides.items():
            hook_weights[category] = hook.weight
            hook_keywords[category] = union_words(hook_keywords.get(category, ()), hook.keywords)
        templates.update(p.recommendation_templates)

    chain: dict[str, dict[str, Any]] = {"base": base.identity()}
    if not vertical.is_base:
        chain["vertical"] = vertical.identity()
    if market is not None:
        chain["market"] = market.identity()

    return MergedRuleSet(
        vertical_id=vertical.id,
        market_id=market.id if market else market_id,
        organization_id=None,
        discovery_thresholds=thresholds.to_dict(),
        locales=list(market.locales) if market else [],
        weights={k: round(float(v), 6) for k, v in sorted(weights.items())},
        token_overrides=dict(sorted(tokens.items())),
        hook_weights={k: round(float(v), 6) for k, v in sorted(hook_weights.items())},
        hook_keywords=dict(sorted(hook_keywords.items())),
        stopwords=union_words(*(p.stopwords for p in profiles), market.stopwords if market else ()),
        formula_overrides={},
        recommendation_templates=dict(sorted(templates.items())),
        rules={rid: rd.effective() for rid, rd in sorted(registry.base_rules.items())},
        llm_rules=registry.base_llm_rules,
        inheritance_chain=chain,
        section_sources={s: ["code"] for s in SECTIONS},
        versions={},
        source="code",
    )
