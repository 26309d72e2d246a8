from __future__ import annotations

import logging
from copy import deepcopy
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .models import MergedRuleSet, OverrideRecord, RulesetLayer
from .normalizer import code_base, normalize_layer, union_words
from .overrides import OverrideTarget, Scope
from .registry import ProfileRegistry

if TYPE_CHECKING:
    from aso_bible.services.override_store import OverrideStore


logger = logging.getLogger("aso_bible.merger")

_LLM_UNION_SECTIONS = {
    "intent_rules": None,
    "safety_rules": ("forbidden_phrases",),
}


def _mul(current: float, multiplier: float) -> float:
    return round(float(current) * float(multiplier), 6)


def _touch(merged: MergedRuleSet, section: str, source: str) -> None:
    sources = merged.section_sources.setdefault(section, [])
    if source not in sources:
        sources.append(source)


def _merge_llm_rules(current: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = deepcopy(current)
    for section, value in override.items():
        if not isinstance(value, dict):
            out[section] = deepcopy(value)
            continue
        target = out.setdefault(section, {})
        if section == "weights":
            for kpi, mult in value.items():
                target[kpi] = _mul(target.get(kpi, 1.0), mult)
        elif section == "clusters":
            for name, cluster in value.items():
                cur = target.setdefault(name, {})
                cur["keywords"] = union_words(cur.get("keywords", ()), cluster.get("keywords", ()))
                if cluster.get("weight") is not None:
                    cur["weight"] = cluster["weight"]
        elif section in _LLM_UNION_SECTIONS:
            union_keys = _LLM_UNION_SECTIONS[section]
            for key, item in value.items():
                if union_keys is None or key in union_keys:
                    target[key] = union_words(target.get(key, ()), item)
                else:
                    target[key] = deepcopy(item)
        else:
            target.update(deepcopy(value))
    return out


def merge_layers(base: MergedRuleSet, *layers: Optional[RulesetLayer]) -> MergedRuleSet:
    """Fold DB layers onto an already-built ruleset, in order.

    Scalars are last-write-wins, weights multiply (a missing layer counts as
    1.0) and word lists are unioned. ``base`` is left untouched.
    """
    merged = deepcopy(base)
    for layer in layers:
        if layer is None:
            continue
        src = layer.source
        if layer.version is not None:
            merged.versions[src] = int(layer.version)
        if src == Scope.CLIENT.value and layer.identity.get("id"):
            merged.organization_id = str(layer.identity["id"])
        if layer.identity:
            merged.inheritance_chain.setdefault(src, dict(layer.identity))
        if layer.is_empty():
            continue
        merged.source = "hybrid"

        if layer.token_overrides:
            merged.token_overrides.update(layer.token_overrides)
            _touch(merged, "token_overrides", src)

        for kpi, mult in layer.kpi_multipliers.items():
            if kpi not in merged.weights:
                logger.warning("ignoring %s multiplier for unknown kpi=%s", src, kpi)
                continue
            merged.weights[kpi] = _mul(merged.weights[kpi], mult)
            _touch(merged, "weights", src)

        for category, mult in layer.hook_multipliers.items():
            merged.hook_weights[category] = _mul(merged.hook_weights.get(category, 1.0), mult)
            _touch(merged, "hook_weights", src)
        for category, words in layer.hook_keywords.items():
            merged.hook_keywords[category] = union_words(merged.hook_keywords.get(category, ()), words)
            _touch(merged, "hook_keywords", src)

        if layer.stopwords:
            merged.stopwords = union_words(merged.stopwords, layer.stopwords)
            _touch(merged, "stopwords", src)

        for key, mult in layer.formula_multipliers.items():
            merged.formula_overrides[key] = _mul(merged.formula_overrides.get(key, 1.0), mult)
            _touch(merged, "formula_overrides", src)

        if layer.recommendation_templates:
            merged.recommendation_templates.update(layer.recommendation_templates)
            _touch(merged, "recommendation_templates", src)

        for rule_id in sorted(set(layer.rule_multipliers) | set(layer.rule_settings)):
            rule = merged.rules.get(rule_id)
            if rule is None:
                logger.warning("ignoring %s override for unknown rule_id=%s", src, rule_id)
                continue
            if rule_id in layer.rule_multipliers:
                rule["weight"] = _mul(rule["weight"], layer.rule_multipliers[rule_id])
            rule.update(layer.rule_settings.get(rule_id, {}))
            _touch(merged, "rules", src)

        if layer.llm_rules:
            merged.llm_rules = _merge_llm_rules(merged.llm_rules, layer.llm_rules)
            _touch(merged, "llm_rules", src)

    merged.token_overrides = dict(sorted(merged.token_overrides.items()))
    merged.hook_weights = dict(sorted(merged.hook_weights.items()))
    merged.hook_keywords = dict(sorted(merged.hook_keywords.items()))
    merged.formula_overrides = dict(sorted(merged.formula_overrides.items()))
    merged.recommendation_templates = dict(sorted(merged.recommendation_templates.items()))
    return merged


def _same_target(rec: OverrideRecord, target: OverrideTarget) -> bool:
    return (rec.scope, rec.vertical, rec.market, rec.organization_id) == (
        target.scope.value,
        target.vertical,
        target.market,
        target.organization_id,
    )


def apply_client_layer(merged: MergedRuleSet, layer: Optional[RulesetLayer]) -> MergedRuleSet:
    return merge_layers(merged, layer)


class RulesetMerger:
    def __init__(self, registry: ProfileRegistry, store: "OverrideStore") -> None:
        self.registry = registry
        self.store = store

    def load_layer(
        self,
        target: OverrideTarget,
        *,
        identity: dict[str, Any] | None = None,
        pending: Iterable[OverrideRecord] = (),
    ) -> RulesetLayer:
        rows = {k: list(v) for k, v in self.store.load_layer(target).items()}
        for rec in pending:
            if not _same_target(rec, target):
                continue
            # A pending row replaces whatever is stored under its key.
            kept = [r for r in rows.get(rec.kind, []) if r.natural_key != rec.natural_key]
            rows[rec.kind] = kept + [rec]
        return normalize_layer(target.scope.value, rows, identity=identity)

    def client_layer(self, organization_id: str | None, *, pending: Iterable[OverrideRecord] = ()) -> RulesetLayer | None:
        if not organization_id:
            return None
        return self.load_layer(
            OverrideTarget.for_client(organization_id),
            identity={"id": organization_id, "label": organization_id, "description": ""},
            pending=pending,
        )

    def merge_org_independent(
        self, vertical_id: str, market_id: str | None, *, pending: Iterable[OverrideRecord] = ()
    ) -> MergedRuleSet:
        pending = list(pending)
        merged = code_base(self.registry, vertical_id, market_id)
        layers: list[RulesetLayer] = []
        if merged.vertical_id != "base":
            layers.append(self.load_layer(OverrideTarget.for_vertical(merged.vertical_id), pending=pending))
        if market_id:
            # Markets without a code profile still carry their DB overrides.
            identity = None
            if self.registry.find_market(market_id) is None:
                identity = {"id": market_id, "label": market_id, "description": ""}
            market = self.load_layer(OverrideTarget.for_market(market_id), identity=identity, pending=pending)
            if identity is None or not market.is_empty():
                layers.append(market)
        return merge_layers(merged, *layers)

    def merge(
        self,
        vertical_id: str,
        market_id: str | None = None,
        organization_id: str | None = None,
        *,
        pending: Iterable[OverrideRecord] = (),
    ) -> MergedRuleSet:
        """Resolve the effective ruleset for a vertical, market and optional client.

        ``pending`` rows are treated as the newest version for their target,
        which lets the admin preview an override before saving it.
        """
        pending = list(pending)
        merged = self.merge_org_independent(vertical_id, market_id, pending=pending)
        merged = apply_client_layer(merged, self.client_layer(organization_id, pending=pending))
        logger.debug(
            "ruleset merged vertical=%s market=%s org=%s source=%s versions=%s weights=%d tokens=%d stopwords=%d",
            merged.vertical_id,
            merged.market_id,
            merged.organization_id,
            merged.source,
            merged.versions,
            len(merged.weights),
            len(merged.token_overrides),
            len(merged.stopwords),
        )
        return merged
