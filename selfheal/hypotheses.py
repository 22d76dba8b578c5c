#!/usr/bin/env python3
"""Hypothesis sources: root-cause candidates for a synthesized observation.

The pipeline talks to any object exposing
``generate_hypotheses(synthesized) -> {"hypotheses": [...]} | None``.
A None result or an empty list means "no opinion" and the observation is
skipped for this run. External sources (LLM services, rule engines) plug in
through the same contract; ``normalize_hypotheses`` validates whatever they
return before the scorer sees it.

TemplateHypothesisSource is the deterministic built-in: it keyword-matches
the fingerprint and summary against the template families in
selfheal/knowledge/hypothesis_templates.yaml, first family wins, with a generic
fallback family when nothing matches.

Usage (from Python):
    from selfheal.hypotheses import TemplateHypothesisSource
    result = TemplateHypothesisSource().generate_hypotheses(synthesized)
    # {"hypotheses": [{"cause": "...", "confidence": 0.85, "assumptions": [...]}],
    #  "family": "checkout", "source": "template"}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from selfheal.schema import clamp_confidence

logger = logging.getLogger(__name__)

# Installed with the package (package-data in pyproject.toml).
DEFAULT_TEMPLATES_PATH = Path(__file__).resolve().parent / "knowledge" / "hypothesis_templates.yaml"

# Confidence assigned when an external source omits or garbles it.
DEFAULT_CONFIDENCE = 0.5


class HypothesisSource:
    """Contract for anything that proposes root causes."""

    def generate_hypotheses(self, synthesized: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


def normalize_hypotheses(result: Any) -> List[Dict[str, Any]]:
    """Validate a source's output into a clean list of Hypothesis dicts.

    Entries without a cause are dropped, confidence is clamped to [0, 1]
    (unparsable values get DEFAULT_CONFIDENCE) and assumptions are coerced
    to a list of strings. Anything that is not the expected shape yields [].
    """
    if not isinstance(result, dict):
        return []
    raw = result.get("hypotheses")
    if not isinstance(raw, list):
        return []

    hypotheses = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        cause = str(entry.get("cause") or "").strip()
        if not cause:
            logger.debug("Dropping hypothesis without a cause: %r", entry)
            continue
        assumptions = entry.get("assumptions")
        if assumptions is None:
            assumptions = []
        elif isinstance(assumptions, (list, tuple)):
            assumptions = [str(a) for a in assumptions]
        else:
            assumptions = [str(assumptions)]
        hypotheses.append({
            "cause": cause,
            "confidence": clamp_confidence(entry.get("confidence"), default=DEFAULT_CONFIDENCE),
            "assumptions": assumptions,
        })
    return hypotheses


def _load_templates(path: Path) -> Dict[str, Any]:
    """Load the template families from YAML."""
    with open(path, "r") as f:
        templates = yaml.safe_load(f) or {}
    if not isinstance(templates, dict):
        raise ValueError(f"Hypothesis template file must contain a mapping: {path}")
    return templates


class TemplateHypothesisSource(HypothesisSource):
    """Deterministic keyword-to-template hypothesis generator."""

    def __init__(self, templates_path: Optional[Path] = None):
        self.templates_path = Path(templates_path) if templates_path else DEFAULT_TEMPLATES_PATH

    def generate_hypotheses(self, synthesized: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        templates = _load_templates(self.templates_path)
        text = f"{synthesized.get('fingerprint') or ''} {synthesized.get('summary') or ''}".lower()

        for family in templates.get("families") or []:
            keywords = [str(k).lower() for k in family.get("keywords") or [family.get("name", "")]]
            if any(keyword and keyword in text for keyword in keywords):
                return {
                    "hypotheses": list(family.get("hypotheses") or []),
                    "family": family.get("name"),
                    "source": "template",
                }

        return {
            "hypotheses": list(templates.get("fallback") or []),
            "family": "fallback",
            "source": "template",
        }
