from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class OverrideKind(str, Enum):
    TOKEN = "token"
    KPI_WEIGHT = "kpi_weight"
    HOOK_PATTERN = "hook_pattern"
    FORMULA = "formula"
    STOPWORD = "stopword"
    RECOMMENDATION_TEMPLATE = "recommendation_template"
    RULE = "rule"
    LLM_RULES = "llm_rules"


class Scope(str, Enum):
    VERTICAL = "vertical"
    MARKET = "market"
    CLIENT = "client"


Severity = Literal["critical", "strong", "moderate", "optional", "info"]
Multiplier = Annotated[float, Field(ge=0.5, le=2.0)]

_STRICT = ConfigDict(extra="forbid")


def _clean_words(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for v in values:
        key = str(v).strip().lower()
        if key:
            seen.setdefault(key, None)
    return list(seen)


class OverrideTarget(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    scope: Scope
    vertical: Optional[str] = None
    market: Optional[str] = None
    organization_id: Optional[str] = None

    @model_validator(mode="after")
    def check_scope(self) -> "OverrideTarget":
        expected = {
            Scope.VERTICAL: "vertical",
            Scope.MARKET: "market",
            Scope.CLIENT: "organization_id",
        }[self.scope]
        for name in ("vertical", "market", "organization_id"):
            value = getattr(self, name)
            if name == expected and not value:
                raise ValueError(f"scope '{self.scope.value}' requires {name}")
            if name != expected and value is not None:
                raise ValueError(f"scope '{self.scope.value}' does not accept {name}")
        return self

    @property
    def target_id(self) -> str:
        return str(self.vertical or self.market or self.organization_id)

    @property
    def target_key(self) -> str:
        return f"{self.scope.value}:{self.target_id}"

    @classmethod
    def for_vertical(cls, vertical: str) -> "OverrideTarget":
        return cls(scope=Scope.VERTICAL, vertical=vertical)

    @classmethod
    def for_market(cls, market: str) -> "OverrideTarget":
        return cls(scope=Scope.MARKET, market=market)

    @classmethod
    def for_client(cls, organization_id: str) -> "OverrideTarget":
        return cls(scope=Scope.CLIENT, organization_id=organization_id)


class TokenPayload(BaseModel):
    model_config = _STRICT

    kind: Literal["token"] = "token"
    token: str = Field(min_length=1, max_length=100)
    relevance: int = Field(ge=0, le=3)

    @field_validator("token")
    @classmethod
    def lower_token(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("token must not be blank")
        return v

    def natural_key(self) -> str:
        return self.token


class KpiWeightPayload(BaseModel):
    model_config = _STRICT

    kind: Literal["kpi_weight"] = "kpi_weight"
    kpi_name: str = Field(min_length=1, max_length=100)
    weight_multiplier: Multiplier

    def natural_key(self) -> str:
        return self.kpi_name


class HookPatternPayload(BaseModel):
    model_config = _STRICT

    kind: Literal["hook_pattern"] = "hook_pattern"
    hook_category: str = Field(min_length=1, max_length=50)
    weight_multiplier: Multiplier = 1.0
    keywords: list[str] = Field(default_factory=list)

    @field_validator("keywords")
    @classmethod
    def clean_keywords(cls, v: list[str]) -> list[str]:
        return _clean_words(v)

    def natural_key(self) -> str:
        return self.hook_category


class FormulaPayload(BaseModel):
    model_config = _STRICT

    kind: Literal["formula"] = "formula"
    formula_id: str = Field(min_length=1, max_length=100)
    multiplier: Multiplier = 1.0
    component_weights: dict[str, Multiplier] = Field(default_factory=dict)

    def natural_key(self) -> str:
        return self.formula_id


class StopwordPayload(BaseModel):
    model_config = _STRICT

    kind: Literal["stopword"] = "stopword"
    stopwords: list[str] = Field(min_length=1)

    @field_validator("stopwords")
    @classmethod
    def clean_stopwords(cls, v: list[str]) -> list[str]:
        v = _clean_words(v)
        if not v:
            raise ValueError("stopwords must contain at least one non-blank word")
        return v

    def natural_key(self) -> str:
        return ""


class RecommendationTemplatePayload(BaseModel):
    model_config = _STRICT

    kind: Literal["recommendation_template"] = "recommendation_template"
    recommendation_id: str = Field(min_length=1, max_length=100)
    message: str

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message must not be blank")
        return v

    def natural_key(self) -> str:
        return self.recommendation_id


class RulePayload(BaseModel):
    model_config = _STRICT

    kind: Literal["rule"] = "rule"
    rule_id: str = Field(min_length=1, max_length=100)
    weight_multiplier: Optional[Multiplier] = None
    severity: Optional[Severity] = None
    threshold_low: Optional[float] = None
    threshold_high: Optional[float] = None

    @model_validator(mode="after")
    def check_fields(self) -> "RulePayload":
        if all(
            getattr(self, f) is None for f in ("weight_multiplier", "severity", "threshold_low", "threshold_high")
        ):
            raise ValueError("rule override must set at least one of weight_multiplier, severity, thresholds")
        if self.threshold_low is not None and self.threshold_high is not None and self.threshold_low > self.threshold_high:
            raise ValueError("threshold_low must not exceed threshold_high")
        return self

    def natural_key(self) -> str:
        return self.rule_id


# Partial LLM visibility rule sections. Every field is optional so an
# override only carries what it changes.


class LlmWeights(BaseModel):
    model_config = _STRICT

    factual_grounding: Optional[Multiplier] = None
    semantic_clusters: Optional[Multiplier] = None
    structure_readability: Optional[Multiplier] = None
    intent_coverage: Optional[Multiplier] = None
    snippet_quality: Optional[Multiplier] = None
    safety_credibility: Optional[Multiplier] = None


class LlmStructureRules(BaseModel):
    model_config = _STRICT

    required_sections: Optional[list[str]] = None
    max_sentence_length: Optional[int] = Field(default=None, gt=0)
    min_bullet_points: Optional[int] = Field(default=None, ge=0)
    ideal_paragraph_length: Optional[int] = Field(default=None, gt=0)


class LlmCluster(BaseModel):
    model_config = _STRICT

    keywords: list[str] = Field(default_factory=list)
    weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class AvoidPattern(BaseModel):
    model_config = _STRICT

    pattern: str
    reason: str


class LlmFactualRules(BaseModel):
    model_config = _STRICT

    required_facts: Optional[list[str]] = None
    fact_patterns: Optional[list[str]] = None
    avoid_patterns: Optional[list[AvoidPattern]] = None


class LlmIntentRules(BaseModel):
    model_config = _STRICT

    task_intent: Optional[list[str]] = None
    comparison_intent: Optional[list[str]] = None
    problem_intent: Optional[list[str]] = None
    feature_intent: Optional[list[str]] = None
    safety_intent: Optional[list[str]] = None


class LlmSnippetRules(BaseModel):
    model_config = _STRICT

    min_snippet_length: Optional[int] = Field(default=None, gt=0)
    max_snippet_length: Optional[int] = Field(default=None, gt=0)
    ideal_snippet_count: Optional[int] = Field(default=None, ge=0)


class RiskyPattern(BaseModel):
    model_config = _STRICT

    pattern: str
    severity: Literal["critical", "warning"]
    reason: str


class LlmSafetyRules(BaseModel):
    model_config = _STRICT

    forbidden_phrases: Optional[list[str]] = None
    risky_patterns: Optional[list[RiskyPattern]] = None


class LlmRulesOverride(BaseModel):
    model_config = _STRICT

    weights: Optional[LlmWeights] = None
    structure_rules: Optional[LlmStructureRules] = None
    clusters: Optional[dict[str, LlmCluster]] = None
    factual_rules: Optional[LlmFactualRules] = None
    intent_rules: Optional[LlmIntentRules] = None
    snippet_rules: Optional[LlmSnippetRules] = None
    safety_rules: Optional[LlmSafetyRules] = None


class LlmRulesPayload(BaseModel):
    model_config = _STRICT

    kind: Literal["llm_rules"] = "llm_rules"
    rules_override: LlmRulesOverride

    def natural_key(self) -> str:
        return ""

    def override_dict(self) -> dict[str, Any]:
        return self.rules_override.model_dump(mode="json", exclude_none=True)


OverridePayload = Annotated[
    Union[
        TokenPayload,
        KpiWeightPayload,
        HookPatternPayload,
        FormulaPayload,
        StopwordPayload,
        RecommendationTemplatePayload,
        RulePayload,
        LlmRulesPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(OverridePayload)


def _format_errors(exc: PydanticValidationError, tag: str = "") -> list[str]:
    out: list[str] = []
    for err in exc.errors():
        parts = [str(p) for p in err.get("loc", ())]
        # Discriminated unions prefix the location with the tag value.
        if tag and parts and parts[0] == tag:
            parts = parts[1:]
        loc = ".".join(parts)
        out.append(f"{loc}: {err.get('msg', '')}" if loc else str(err.get("msg", "")))
    return out


def parse_kind(kind: str | OverrideKind) -> OverrideKind:
    try:
        return OverrideKind(kind)
    except ValueError:
        raise ValidationError(
            f"unknown override kind {kind!r}",
            errors=[f"kind must be one of {', '.join(k.value for k in OverrideKind)}"],
        ) from None


def validate_payload(kind: str | OverrideKind, payload: Any) -> Any:
    """Validate a raw override payload for ``kind`` and return the typed model.

    ``payload`` may be a mapping or a JSON string (as stored in the DB by
    older editors). Any problem raises :class:`ValidationError`.
    """
    k = parse_kind(kind)
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise ValidationError(f"malformed JSON payload for {k.value}", errors=[str(e)]) from e
    if not isinstance(payload, dict):
        raise ValidationError(f"payload for {k.value} must be an object", errors=["payload: not an object"])
    data = dict(payload)
    if data.get("kind", k.value) != k.value:
        raise ValidationError(
            f"payload kind {data.get('kind')!r} does not match {k.value!r}",
            errors=[f"kind: expected {k.value}"],
        )
    data["kind"] = k.value
    try:
        return _payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        errors = _format_errors(e, k.value)
        raise ValidationError(f"{k.value}: " + "; ".join(errors), errors=errors) from e


def validate_target(raw: Any) -> OverrideTarget:
    if isinstance(raw, OverrideTarget):
        return raw
    try:
        return OverrideTarget.model_validate(raw)
    except PydanticValidationError as e:
        errors = _format_errors(e)
        raise ValidationError("target: " + "; ".join(errors), errors=errors) from e
