from aso_bible.db.models.overrides import (
    FormulaOverride,
    HookPatternOverride,
    KpiWeightOverride,
    LlmVisibilityRuleOverride,
    RecommendationTemplateOverride,
    RuleEvaluatorOverride,
    StopwordOverride,
    TokenRelevanceOverride,
)
from aso_bible.db.models.rulesets import RulesetMarket, RulesetVersion, RulesetVertical

# Keyed by override kind name.
OVERRIDE_MODELS = {
    "token": TokenRelevanceOverride,
    "kpi_weight": KpiWeightOverride,
    "hook_pattern": HookPatternOverride,
    "formula": FormulaOverride,
    "stopword": StopwordOverride,
    "recommendation_template": RecommendationTemplateOverride,
    "rule": RuleEvaluatorOverride,
    "llm_rules": LlmVisibilityRuleOverride,
}

__all__ = [
    "OVERRIDE_MODELS",
    "TokenRelevanceOverride",
    "KpiWeightOverride",
    "HookPatternOverride",
    "FormulaOverride",
    "StopwordOverride",
    "RecommendationTemplateOverride",
    "RuleEvaluatorOverride",
    "LlmVisibilityRuleOverride",
    "RulesetVertical",
    "RulesetMarket",
    "RulesetVersion",
]
