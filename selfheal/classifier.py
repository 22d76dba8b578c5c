#!/usr/bin/env python3
"""Classifier: map (observation, best hypothesis, risk) to a Decision.

A fixed-order decision tree. Rules are evaluated top to bottom and the
FIRST match wins; nothing ranks across rules. Several rules can match the
same input (a checkout outage throwing 500s matches both rule 1 and rule 3),
so the order in CLASSIFICATION_RULES is the precedence policy:
system failures preempt domain categories, domain categories preempt the
migration-stage fallback, and merchant misconfiguration is the default.

    #   rule                   classification              confidence
    1   system_failure         platform_regression         0.95
    2   broad_immediate        platform_regression         0.90
    3   checkout               checkout_failure            0.85 (score>=5) / 0.70
    4   auth                   auth_failure                0.80
    5   webhook                webhook_failure             0.75
    6   rate_limit             rate_limit                  0.80
    7   migration_stage        migration_error /           0.85 / 0.70
                               merchant_misconfiguration   0.75
    8   documentation          documentation_gap           0.70 / 0.65 / 0.60
    9   default                merchant_misconfiguration   additive, capped 0.95

Usage (from Python):
    from selfheal.classifier import classify
    decision = classify(synthesized_observation, hypothesis, risk_assessment)
    # {"classification": "platform_regression", "confidence": 0.95,
    #  "reasoning": "...", "suggested_action": "create_engineering_incident",
    #  "rule": "system_failure"}
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from selfheal.risk import CHECKOUT_TERMS, contains_any


# ──────────────────────────────────────────────────
# Vocabularies
# ──────────────────────────────────────────────────

SYSTEM_FAILURE_TERMS = ("500", "timeout", "crash")
# "token" is deliberately absent: token-only text is left to the
# migration-stage rule (stage "authentication").
AUTH_TERMS = ("auth", "credential", "unauthorized", "forbidden", "permission denied")
WEBHOOK_TERMS = ("webhook",)
RATE_LIMIT_TERMS = ("rate limit", "rate_limit", "rate-limit", "ratelimit", "too many requests", "throttl")
DOCS_TERMS = ("docs", "documentation", "documented", "doc_gap")
PARAMETER_TERMS = ("parameter", "schema", "format")
FIELD_TERMS = ("expected", "required", "missing field", "missing_field", "missing-field")
CONFIG_TERMS = ("config", "setting", "key")

HIGH_RISK_SCORE = 7
BROAD_MERCHANT_COUNT = 3
CHECKOUT_HIGH_SCORE = 5
MIGRATION_LOW_SCORE = 5
LOW_RISK_SCORE = 3

# Default-branch confidence model.
DEFAULT_BASE_CONFIDENCE = 0.5
SINGLE_MERCHANT_BOOST = 0.15
CONFIG_VOCABULARY_BOOST = 0.10
NEW_PATTERN_BOOST = 0.05
LOW_RISK_SINGLE_BOOST = 0.2
LOW_RISK_SINGLE_CEILING = 0.9
DEFAULT_CONFIDENCE_CAP = 0.95

# Tool tag proposed for each classification; the router makes the final call.
SUGGESTED_ACTIONS = {
    "platform_regression": "create_engineering_incident",
    "checkout_failure": "draft_ticket_reply",
    "auth_failure": "draft_ticket_reply",
    "webhook_failure": "draft_ticket_reply",
    "rate_limit": "draft_ticket_reply",
    "migration_error": "email_engineering",
    "documentation_gap": "request_doc_update",
    "merchant_misconfiguration": "draft_ticket_reply",
}


def build_classifier_context(
    observation: Dict[str, Any],
    hypothesis: Dict[str, Any],
    risk: Dict[str, Any],
) -> Dict[str, Any]:
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
    return {
        "text": text,
        "score": int(risk.get("score") or 0),
        "urgency": risk.get("urgency"),
        "merchant_count": merchant_count,
        "migration_stage": observation.get("migration_stage"),
        "historical_pattern": observation.get("historical_pattern") or "new",
        "cause": hypothesis.get("cause") or "",
    }


# ──────────────────────────────────────────────────
# Rule outcomes: (classification, confidence, reasoning)
# ──────────────────────────────────────────────────

Outcome = Tuple[str, float, str]


def _system_failure(ctx) -> Outcome:
    return (
        "platform_regression", 0.95,
        f"Risk {ctx['score']}/10 with system-failure signals (500/timeout/crash).",
    )


def _broad_immediate(ctx) -> Outcome:
    return (
        "platform_regression", 0.90,
        f"Risk {ctx['score']}/10 across {ctx['merchant_count']} merchants with immediate urgency.",
    )


def _checkout(ctx) -> Outcome:
    confidence = 0.85 if ctx["score"] >= CHECKOUT_HIGH_SCORE else 0.70
    return (
        "checkout_failure", confidence,
        f"Checkout/payment flow affected (risk {ctx['score']}/10).",
    )


def _auth(ctx) -> Outcome:
    return ("auth_failure", 0.80, "Authentication or credential failure signals.")


def _webhook(ctx) -> Outcome:
    return ("webhook_failure", 0.75, "Webhook delivery failure signals.")


def _rate_limit(ctx) -> Outcome:
    return ("rate_limit", 0.80, "Rate limiting or throttling signals.")


def _migration_stage(ctx) -> Outcome:
    stage = ctx["migration_stage"]
    if ctx["merchant_count"] > 1:
        return (
            "migration_error", 0.85,
            f"Migration stage {stage} active across {ctx['merchant_count']} merchants.",
        )
    if ctx["merchant_count"] == 1 and ctx["score"] < MIGRATION_LOW_SCORE:
        return (
            "merchant_misconfiguration", 0.75,
            f"Single merchant during {stage} with low risk; likely merchant-side setup.",
        )
    return ("migration_error", 0.70, f"Migration stage {stage} active.")


def _documentation(ctx) -> Outcome:
    if contains_any(ctx["text"], DOCS_TERMS):
        return ("documentation_gap", 0.70, "Signals reference documentation.")
    if contains_any(ctx["text"], PARAMETER_TERMS):
        return ("documentation_gap", 0.65, "Parameter/schema/format confusion.")
    return ("documentation_gap", 0.60, "Expected/required field confusion.")


def default_confidence(ctx) -> float:
    single = ctx["merchant_count"] <= 1
    confidence = DEFAULT_BASE_CONFIDENCE
    if single:
        confidence += SINGLE_MERCHANT_BOOST
    if contains_any(ctx["text"], CONFIG_TERMS):
        confidence += CONFIG_VOCABULARY_BOOST
    if ctx["historical_pattern"] == "new":
        confidence += NEW_PATTERN_BOOST
    if ctx["score"] <= LOW_RISK_SCORE and single:
        confidence = min(LOW_RISK_SINGLE_CEILING, confidence + LOW_RISK_SINGLE_BOOST)
    return round(min(DEFAULT_CONFIDENCE_CAP, confidence), 4)


def _default(ctx) -> Outcome:
    return (
        "merchant_misconfiguration", default_confidence(ctx),
        "No platform-wide signal; treating as merchant configuration issue.",
    )


# Evaluated top to bottom; first match wins. Order is the precedence policy.
CLASSIFICATION_RULES: List[Dict[str, Any]] = [
    {
        "name": "system_failure",
        "matches": lambda ctx: (
            ctx["score"] >= HIGH_RISK_SCORE and contains_any(ctx["text"], SYSTEM_FAILURE_TERMS)
        ),
        "decide": _system_failure,
    },
    {
        "name": "broad_immediate",
        "matches": lambda ctx: (
            ctx["score"] >= HIGH_RISK_SCORE
            and ctx["merchant_count"] > BROAD_MERCHANT_COUNT
            and ctx["urgency"] == "immediate"
        ),
        "decide": _broad_immediate,
    },
    {
        "name": "checkout",
        "matches": lambda ctx: contains_any(ctx["text"], CHECKOUT_TERMS),
        "decide": _checkout,
    },
    {
        "name": "auth",
        "matches": lambda ctx: contains_any(ctx["text"], AUTH_TERMS),
        "decide": _auth,
    },
    {
        "name": "webhook",
        "matches": lambda ctx: contains_any(ctx["text"], WEBHOOK_TERMS),
        "decide": _webhook,
    },
    {
        "name": "rate_limit",
        "matches": lambda ctx: contains_any(ctx["text"], RATE_LIMIT_TERMS),
        "decide": _rate_limit,
    },
    {
        "name": "migration_stage",
        "matches": lambda ctx: bool(ctx["migration_stage"]),
        "decide": _migration_stage,
    },
    {
        "name": "documentation",
        "matches": lambda ctx: contains_any(
            ctx["text"], DOCS_TERMS + PARAMETER_TERMS + FIELD_TERMS
        ),
        "decide": _documentation,
    },
    {
        "name": "default",
        "matches": lambda ctx: True,
        "decide": _default,
    },
]


def classify(
    observation: Dict[str, Any],
    hypothesis: Dict[str, Any],
    risk: Dict[str, Any],
) -> Dict[str, Any]:
    """Run the decision tree and return a Decision dict.

    Returns:
        Dict with classification, confidence, reasoning, suggested_action and
        rule (name of the rule that matched).
    """
    ctx = build_classifier_context(observation, hypothesis, risk)
    for rule in CLASSIFICATION_RULES:
        if rule["matches"](ctx):
            classification, confidence, reasoning = rule["decide"](ctx)
            if ctx["cause"]:
                reasoning = f"{reasoning} Hypothesis: {ctx['cause']}"
            return {
                "classification": classification,
                "confidence": confidence,
                "reasoning": reasoning,
                "suggested_action": SUGGESTED_ACTIONS[classification],
                "rule": rule["name"],
            }
    # Unreachable: the default rule always matches.
    raise RuntimeError("No classification rule matched")
