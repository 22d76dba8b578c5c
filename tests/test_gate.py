"""Tests for the approval gate predicates."""

import pytest

from selfheal.gate import can_auto_execute, requires_approval


class TestRequiresApproval:
    """Any one trigger is enough to require a human."""

    @pytest.mark.parametrize("score, confidence, classification, expected", [
        (2, 0.59, "merchant_misconfiguration", True),   # low confidence
        (7, 0.95, "merchant_misconfiguration", True),   # high risk
        (1, 0.95, "platform_regression", True),         # always for platform
        (5, 0.85, "migration_error", True),
        (4, 0.85, "migration_error", False),
        (5, 0.80, "auth_failure", True),
        (5, 0.75, "webhook_failure", True),
        (5, 0.80, "rate_limit", True),
        (4, 0.80, "rate_limit", False),
        (6, 0.85, "checkout_failure", True),
        (5, 0.85, "checkout_failure", False),
        (6, 0.70, "documentation_gap", False),
        (3, 0.60, "merchant_misconfiguration", False),
    ])
    def test_table(self, score, confidence, classification, expected):
        assert requires_approval(score, confidence, classification) is expected


class TestCanAutoExecute:
    """Only low-risk, high-confidence misconfigurations run unattended."""

    @pytest.mark.parametrize("score, confidence, classification, expected", [
        (3, 0.90, "merchant_misconfiguration", True),
        (1, 0.95, "merchant_misconfiguration", True),
        (4, 0.95, "merchant_misconfiguration", False),
        (3, 0.89, "merchant_misconfiguration", False),
        (1, 0.99, "platform_regression", False),
        (1, 0.99, "documentation_gap", False),
        (2, 0.95, "checkout_failure", False),
    ])
    def test_table(self, score, confidence, classification, expected):
        assert can_auto_execute(score, confidence, classification) is expected

    def test_neither_predicate_can_hold(self):
        # "Draft and wait": no approval needed, but not allowed to auto-run.
        assert requires_approval(2, 0.7, "documentation_gap") is False
        assert can_auto_execute(2, 0.7, "documentation_gap") is False
