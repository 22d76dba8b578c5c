"""Tests for hypothesis normalization and the template source."""

from pathlib import Path

import pytest
import yaml

import selfheal
from selfheal.hypotheses import (
    DEFAULT_CONFIDENCE,
    DEFAULT_TEMPLATES_PATH,
    TemplateHypothesisSource,
    normalize_hypotheses,
)


class TestTemplateFile:
    """The shipped template file parses and is well-formed."""

    def test_template_file_structure(self, knowledge_dir):
        with open(knowledge_dir / "hypothesis_templates.yaml") as f:
            templates = yaml.safe_load(f)
        names = [family["name"] for family in templates["families"]]
        assert names == ["checkout", "auth", "webhook", "rate", "platform", "migration"]
        assert templates["fallback"]
        for family in templates["families"]:
            for hypothesis in family["hypotheses"]:
                assert hypothesis["cause"]
                assert 0.0 <= hypothesis["confidence"] <= 1.0
                assert isinstance(hypothesis["assumptions"], list)

    def test_default_path_ships_inside_package(self):
        package_dir = Path(selfheal.__file__).resolve().parent
        assert DEFAULT_TEMPLATES_PATH.is_file()
        assert package_dir in DEFAULT_TEMPLATES_PATH.parents


class TestTemplateHypothesisSource:
    """First matching family wins; fallback otherwise."""

    @pytest.mark.parametrize("fingerprint, family", [
        ("api:checkout_gateway_error", "checkout"),
        ("api:auth_rejected", "auth"),
        ("webhook:delivery_failed", "webhook"),
        ("api:rate_limited", "rate"),
        ("log:platform_degraded", "platform"),
        ("migration_state:dual_write_lag", "migration"),
        ("api:invalid_currency_setting", "fallback"),
    ])
    def test_family_selection(self, fingerprint, family):
        result = TemplateHypothesisSource().generate_hypotheses(
            {"fingerprint": fingerprint, "summary": ""}
        )
        assert result["family"] == family
        assert result["source"] == "template"
        assert normalize_hypotheses(result)

    def test_first_family_wins(self):
        result = TemplateHypothesisSource().generate_hypotheses(
            {"fingerprint": "webhook:checkout.completed", "summary": ""}
        )
        assert result["family"] == "checkout"

    def test_summary_is_matched_too(self):
        result = TemplateHypothesisSource().generate_hypotheses(
            {"fingerprint": "api:e1", "summary": "Detected pattern: api:e1 - Webhook rejected"}
        )
        assert result["family"] == "webhook"

    def test_custom_template_file(self, tmp_path):
        path = tmp_path / "templates.yaml"
        path.write_text(yaml.safe_dump({
            "families": [{
                "name": "ledger",
                "keywords": ["ledger"],
                "hypotheses": [{"cause": "Ledger lag", "confidence": 0.6, "assumptions": []}],
            }],
            "fallback": [],
        }))
        source = TemplateHypothesisSource(templates_path=path)
        assert source.generate_hypotheses({"fingerprint": "api:ledger", "summary": ""})["family"] == "ledger"
        assert normalize_hypotheses(source.generate_hypotheses({"fingerprint": "api:x"})) == []


class TestNormalizeHypotheses:
    """External output is validated before scoring."""

    @pytest.mark.parametrize("result", [None, [], "text", {"hypotheses": None}, {"other": 1}])
    def test_unusable_results_are_empty(self, result):
        assert normalize_hypotheses(result) == []

    def test_drops_entries_without_cause(self):
        result = {"hypotheses": [{"confidence": 0.9}, {"cause": "  "}, {"cause": "Real", "confidence": 0.4}]}
        assert [h["cause"] for h in normalize_hypotheses(result)] == ["Real"]

    def test_clamps_and_defaults_confidence(self):
        result = {"hypotheses": [
            {"cause": "a", "confidence": 3},
            {"cause": "b", "confidence": -1},
            {"cause": "c", "confidence": "likely"},
        ]}
        assert [h["confidence"] for h in normalize_hypotheses(result)] == [1.0, 0.0, DEFAULT_CONFIDENCE]

    def test_coerces_assumptions_to_list(self):
        result = {"hypotheses": [
            {"cause": "a", "confidence": 0.5, "assumptions": "single"},
            {"cause": "b", "confidence": 0.5},
            {"cause": "c", "confidence": 0.5, "assumptions": ("x", 2)},
        ]}
        assert [h["assumptions"] for h in normalize_hypotheses(result)] == [["single"], [], ["x", "2"]]
