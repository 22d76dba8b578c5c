#!/usr/bin/env python3
"""Risk scoring: deterministic 1-10 score for an (observation, hypothesis) pair.

The model is additive with one multiplier, and evaluation order matters:
the multi-merchant doubling runs after the checkout bonus, so a checkout
issue across several merchants lands near the top of the scale while a
non-checkout one only doubles the base. The rules are therefore kept as an
explicit ordered table (RISK_RULES) rather than independent conditionals;
the table order is the contract and the returned ``factors`` list records,
in order, the tag of every rule that fired.

    #   factor                            effect
    1   (base)                            score 1, reversibility high, urgency normal
    2   checkout_impact                   +5, reversibility low, urgency high
    3   multi_merchant                    x2, urgency high (immediate if already high)
    4   escalating_pattern                +2, urgency immediate
    5   recurring_pattern                 +1
    6   long_standing                     +1 per full 24h, at most +3
    7   high_confidence                   +1 (hypothesis confidence > 0.8)
    8   critical_error                    +2, urgency normal -> high
    9   data_integrity                    +3, reversibility low, urgency immediate
    10  checkout_migration_stage          +1
    11  low_confidence_single_merchant    -1 (floor 1)

The final score is clamped to [1, 10]. Pure function, no I/O.

Usage (from Python):
    from selfheal.risk import evaluate
    assessment = evaluate(synthesized_observation, hypothesis)
    # {"score": 10, "factors": ["checkout_impact", "multi_merchant", ...],
    #  "reversibility": "low", "urgency": "immediate"}
"""

from __future__ import annotations

from typing import Any, Dict, List

from selfheal.schema import clamp_confidence


# ──────────────────────────────────────────────────
# Vocabularies and weights
# ──────────────────────────────────────────────────

CHECKOUT_TERMS = ("checkout", "payment", "transaction")
CRITICAL_ERROR_TERMS = ("500", "timeout", "crash")
DATA_INTEGRITY_TERMS = ("corrupt", "lost", "missing")

CHECKOUT_BONUS = 5
MULTI_MERCHANT_MULTIPLIER = 2
ESCALATING_BONUS = 2
RECURRING_BONUS = 1
LONG_STANDING_HOURS_PER_POINT = 24
LONG_STANDING_MAX_BONUS = 3
HIGH_CONFIDENCE_THRESHOLD = 0.8
HIGH_CONFIDENCE_BONUS = 1
CRITICAL_ERROR_BONUS = 2
DATA_INTEGRITY_BONUS = 3
CHECKOUT_STAGE_BONUS = 1
LOW_CONFIDENCE_THRESHOLD = 0.6
LOW_CONFIDENCE_PENALTY = 1

MIN_SCORE = 1
MAX_SCORE = 10

# Scores at or above this read as "medium" reversibility unless a rule forced "low".
MEDIUM_REVERSIBILITY_SCORE = 5


def contains_any(text: str, terms) -> bool:
    return any(term in text for term in terms)


def build_risk_context(observation: Dict[str, Any], hypothesis: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the inputs every rule reads."""
    text = " ".join(
        str(part or "")
        for part in (
            observation.get("summary"),
            observation.get("fingerprint"),
            hypothesis.get("cause"),
        )
    ).lower()
    try:
        merchant_count = int(observation.get("merchant_count") or 0)
    except (TypeError, ValueError):
        merchant_count = 0
    try:
        hours = float(observation.get("time_since_first_hours") or 0.0)
    except (TypeError, ValueError):
        hours = 0.0
    return {
        "text": text,
        "merchant_count": merchant_count,
        "historical_pattern": observation.get("historical_pattern") or "new",
        "hours": max(0.0, hours),
        "confidence": clamp_confidence(hypothesis.get("confidence")),
        "migration_stage": observation.get("migration_stage"),
    }


# ──────────────────────────────────────────────────
# Rule effects (mutate the running state in place)
# ──────────────────────────────────────────────────

def _apply_checkout(ctx, state):
    state["score"] += CHECKOUT_BONUS
    state["reversibility"] = "low"
    state["urgency"] = "high"


def _apply_multi_merchant(ctx, state):
    state["score"] *= MULTI_MERCHANT_MULTIPLIER
    state["urgency"] = "immediate" if state["urgency"] == "high" else "high"


def _apply_escalating(ctx, state):
    state["score"] += ESCALATING_BONUS
    state["urgency"] = "immediate"


def _apply_recurring(ctx, state):
    state["score"] += RECURRING_BONUS


def _long_standing_bonus(ctx) -> int:
    return min(LONG_STANDING_MAX_BONUS, int(ctx["hours"] // LONG_STANDING_HOURS_PER_POINT))


def _apply_long_standing(ctx, state):
    state["score"] += _long_standing_bonus(ctx)


def _apply_high_confidence(ctx, state):
    state["score"] += HIGH_CONFIDENCE_BONUS


def _apply_critical_error(ctx, state):
    state["score"] += CRITICAL_ERROR_BONUS
    if state["urgency"] == "normal":
        state["urgency"] = "high"


def _apply_data_integrity(ctx, state):
    state["score"] += DATA_INTEGRITY_BONUS
    state["reversibility"] = "low"
    state["urgency"] = "immediate"


def _apply_checkout_stage(ctx, state):
    state["score"] += CHECKOUT_STAGE_BONUS


def _apply_low_confidence(ctx, state):
    state["score"] = max(MIN_SCORE, state["score"] - LOW_CONFIDENCE_PENALTY)


# Evaluated top to bottom. Do not reorder: the multiplier must follow the
# checkout bonus, and the mitigation runs last.
RISK_RULES: List[Dict[str, Any]] = [
    {
        "factor": "checkout_impact",
        "applies": lambda ctx: contains_any(ctx["text"], CHECKOUT_TERMS),
        "apply": _apply_checkout,
    },
    {
        "factor": "multi_merchant",
        "applies": lambda ctx: ctx["merchant_count"] > 1,
        "apply": _apply_multi_merchant,
    },
    {
        "factor": "escalating_pattern",
        "applies": lambda ctx: ctx["historical_pattern"] == "escalating",
        "apply": _apply_escalating,
    },
    {
        "factor": "recurring_pattern",
        "applies": lambda ctx: ctx["historical_pattern"] == "recurring",
        "apply": _apply_recurring,
    },
    {
        "factor": "long_standing",
        "applies": lambda ctx: _long_standing_bonus(ctx) > 0,
        "apply": _apply_long_standing,
    },
    {
        "factor": "high_confidence",
        "applies": lambda ctx: ctx["confidence"] > HIGH_CONFIDENCE_THRESHOLD,
        "apply": _apply_high_confidence,
    },
    {
        "factor": "critical_error",
        "applies": lambda ctx: contains_any(ctx["text"], CRITICAL_ERROR_TERMS),
        "apply": _apply_critical_error,
    },
    {
        "factor": "data_integrity",
        "applies": lambda ctx: contains_any(ctx["text"], DATA_INTEGRITY_TERMS),
        "apply": _apply_data_integrity,
    },
    {
        "factor": "checkout_migration_stage",
        "applies": lambda ctx: ctx["migration_stage"] == "checkout_migration",
        "apply": _apply_checkout_stage,
    },
    {
        "factor": "low_confidence_single_merchant",
        "applies": lambda ctx: (
            ctx["merchant_count"] <= 1 and ctx["confidence"] < LOW_CONFIDENCE_THRESHOLD
        ),
        "apply": _apply_low_confidence,
    },
]


def evaluate(observation: Dict[str, Any], hypothesis: Dict[str, Any]) -> Dict[str, Any]:
    """Score one hypothesis against a synthesized observation.

    Args:
        observation: SynthesizedObservation dict (summary, fingerprint,
            merchant_count, historical_pattern, time_since_first_hours,
            migration_stage).
        hypothesis: Dict with cause and confidence.

    Returns:
        RiskAssessment dict: score (int in [1, 10]), factors (ordered tags),
        reversibility, urgency.
    """
    ctx = build_risk_context(observation, hypothesis)
    state = {"score": MIN_SCORE, "reversibility": "high", "urgency": "normal"}
    factors: List[str] = []

    for rule in RISK_RULES:
        if rule["applies"](ctx):
            rule["apply"](ctx, state)
            factors.append(rule["factor"])

    score = int(max(MIN_SCORE, min(MAX_SCORE, state["score"])))
    reversibility = state["reversibility"]
    if reversibility == "high" and score >= MEDIUM_REVERSIBILITY_SCORE:
        reversibility = "medium"

    return {
        "score": score,
        "factors": factors,
        "reversibility": reversibility,
        "urgency": state["urgency"],
    }
