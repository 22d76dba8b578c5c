#!/usr/bin/env python3
"""Approval gate: decide whether a decision may act without a human.

Two independent predicates over (risk score, decision confidence,
classification). They are not complements: when both are False the router
drafts the action and leaves it waiting for review.
"""

from __future__ import annotations

LOW_CONFIDENCE = 0.6
HIGH_RISK_SCORE = 7
ELEVATED_RISK_SCORE = 5
CHECKOUT_APPROVAL_SCORE = 6

AUTO_EXECUTE_MAX_SCORE = 3
AUTO_EXECUTE_MIN_CONFIDENCE = 0.9

# Customer-facing failure classes that need review once risk is elevated.
SENSITIVE_CLASSIFICATIONS = ("auth_failure", "webhook_failure", "rate_limit")


def requires_approval(score: int, confidence: float, classification: str) -> bool:
    """True when a human must sign off before the action runs."""
    if confidence < LOW_CONFIDENCE:
        return True
    if score >= HIGH_RISK_SCORE:
        return True
    if classification == "platform_regression":
        return True
    if classification == "migration_error" and score >= ELEVATED_RISK_SCORE:
        return True
    if classification in SENSITIVE_CLASSIFICATIONS and score >= ELEVATED_RISK_SCORE:
        return True
    if classification == "checkout_failure" and score >= CHECKOUT_APPROVAL_SCORE:
        return True
    return False


def can_auto_execute(score: int, confidence: float, classification: str) -> bool:
    """True only for low-risk, high-confidence merchant misconfigurations."""
    if classification == "platform_regression":
        return False
    return (
        score <= AUTO_EXECUTE_MAX_SCORE
        and confidence >= AUTO_EXECUTE_MIN_CONFIDENCE
        and classification == "merchant_misconfiguration"
    )
