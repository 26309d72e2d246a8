from __future__ import annotations

import unittest

from aso_bible.rules.errors import ValidationError
from aso_bible.rules.overrides import (
    FormulaPayload,
    KpiWeightPayload,
    OverrideKind,
    OverrideTarget,
    Scope,
    StopwordPayload,
    TokenPayload,
    parse_kind,
    validate_payload,
    validate_target,
)


class OverrideTargetTests(unittest.TestCase):
    def test_target_key_per_scope(self) -> None:
        self.assertEqual(OverrideTarget.for_vertical("finance").target_key, "vertical:finance")
        self.assertEqual(OverrideTarget.for_market("us").target_key, "market:us")
        self.assertEqual(OverrideTarget.for_client("org-1").target_key, "client:org-1")

    def test_scope_requires_its_own_column(self) -> None:
        with self.assertRaises(ValidationError):
            validate_target({"scope": "vertical"})
        with self.assertRaises(ValidationError):
            validate_target({"scope": "client", "vertical": "finance"})

    def test_scope_rejects_foreign_columns(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_target({"scope": "market", "market": "us", "organization_id": "org-1"})
        self.assertTrue(ctx.exception.errors)

    def test_unknown_scope(self) -> None:
        with self.assertRaises(ValidationError):
            validate_target({"scope": "global", "vertical": "finance"})

    def test_passes_through_existing_target(self) -> None:
        t = OverrideTarget(scope=Scope.CLIENT, organization_id="org-9")
        self.assertIs(validate_target(t), t)


class OverridePayloadTests(unittest.TestCase):
    def test_token_is_lower_cased_and_trimmed(self) -> None:
        p = validate_payload("token", {"token": "  Spanish ", "relevance": 3})
        self.assertIsInstance(p, TokenPayload)
        self.assertEqual(p.token, "spanish")
        self.assertEqual(p.natural_key(), "spanish")

    def test_token_relevance_range(self) -> None:
        with self.assertRaises(ValidationError):
            validate_payload("token", {"token": "learn", "relevance": 4})
        with self.assertRaises(ValidationError):
            validate_payload("token", {"token": "learn", "relevance": -1})

    def test_multiplier_bounds_are_inclusive(self) -> None:
        self.assertEqual(validate_payload("kpi_weight", {"kpi_name": "x", "weight_multiplier": 0.5}).weight_multiplier, 0.5)
        self.assertEqual(validate_payload("kpi_weight", {"kpi_name": "x", "weight_multiplier": 2.0}).weight_multiplier, 2.0)

    def test_out_of_range_multiplier_is_rejected_not_clamped(self) -> None:
        for bad in (0.49, 2.01, 0, 10):
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError) as ctx:
                    validate_payload("kpi_weight", {"kpi_name": "factual_grounding", "weight_multiplier": bad})
                self.assertTrue(any("weight_multiplier" in e for e in ctx.exception.errors))

    def test_formula_component_weights_are_range_checked(self) -> None:
        p = validate_payload("formula", {"formula_id": "title_score", "multiplier": 1.1, "component_weights": {"usage": 0.8}})
        self.assertIsInstance(p, FormulaPayload)
        with self.assertRaises(ValidationError):
            validate_payload("formula", {"formula_id": "title_score", "component_weights": {"usage": 3.0}})

    def test_unknown_fields_are_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_payload("kpi_weight", {"kpi_name": "x", "weight_multiplier": 1.0, "colour": "red"})
        self.assertTrue(any("colour" in e for e in ctx.exception.errors))

    def test_json_string_payload(self) -> None:
        p = validate_payload(OverrideKind.KPI_WEIGHT, '{"kpi_name": "snippet_quality", "weight_multiplier": 1.5}')
        self.assertIsInstance(p, KpiWeightPayload)
        self.assertEqual(p.natural_key(), "snippet_quality")

    def test_malformed_json_payload(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_payload("kpi_weight", '{"kpi_name": ')
        self.assertIn("malformed JSON", ctx.exception.detail)

    def test_non_object_payload(self) -> None:
        with self.assertRaises(ValidationError):
            validate_payload("stopword", ["a", "b"])

    def test_kind_mismatch(self) -> None:
        with self.assertRaises(ValidationError):
            validate_payload("token", {"kind": "kpi_weight", "token": "x", "relevance": 1})

    def test_unknown_kind(self) -> None:
        with self.assertRaises(ValidationError):
            parse_kind("colour_scheme")

    def test_stopwords_are_cleaned(self) -> None:
        p = validate_payload("stopword", {"stopwords": [" Free ", "free", "BEST", ""]})
        self.assertIsInstance(p, StopwordPayload)
        self.assertEqual(p.stopwords, ["free", "best"])
        with self.assertRaises(ValidationError):
            validate_payload("stopword", {"stopwords": ["  "]})

    def test_rule_override_needs_a_field(self) -> None:
        with self.assertRaises(ValidationError):
            validate_payload("rule", {"rule_id": "title_character_usage"})
        with self.assertRaises(ValidationError):
            validate_payload("rule", {"rule_id": "title_character_usage", "threshold_low": 90, "threshold_high": 10})
        with self.assertRaises(ValidationError):
            validate_payload("rule", {"rule_id": "title_character_usage", "severity": "fatal"})
        p = validate_payload("rule", {"rule_id": "title_character_usage", "severity": "strong"})
        self.assertEqual(p.severity, "strong")

    def test_blank_recommendation_message(self) -> None:
        with self.assertRaises(ValidationError):
            validate_payload("recommendation_template", {"recommendation_id": "missing_cta", "message": "   "})

    def test_llm_rules_override_dict_drops_unset_sections(self) -> None:
        p = validate_payload(
            "llm_rules",
            {"rules_override": {"weights": {"factual_grounding": 1.2}, "intent_rules": {"task_intent": ["Budget"]}}},
        )
        body = p.override_dict()
        self.assertEqual(body["weights"], {"factual_grounding": 1.2})
        self.assertEqual(body["intent_rules"], {"task_intent": ["Budget"]})
        self.assertNotIn("safety_rules", body)

    def test_llm_rules_weight_bounds_and_unknown_keys(self) -> None:
        with self.assertRaises(ValidationError):
            validate_payload("llm_rules", {"rules_override": {"weights": {"factual_grounding": 2.5}}})
        with self.assertRaises(ValidationError):
            validate_payload("llm_rules", {"rules_override": {"weights": {"vibes": 1.0}}})


if __name__ == "__main__":
    unittest.main()
