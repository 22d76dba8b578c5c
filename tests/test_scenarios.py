"""Tests for the scenario replay harness and the shipped scenarios."""

import pytest

from eval.run_scenarios import (
    REPLAY_START,
    SCENARIOS_DIR,
    expand_events,
    grade_scenario,
    load_scenarios,
    run_scenario,
)
from selfheal.store import InMemoryEventStore

ALL_SCENARIOS = [
    "checkout_outage",
    "documentation_gap",
    "empty_queue",
    "merchant_misconfiguration",
]


class TestScenarioFiles:
    """Every scenario file parses and names its expectations."""

    def test_all_scenarios_present(self):
        assert [s["name"] for s in load_scenarios()] == ALL_SCENARIOS

    @pytest.mark.parametrize("scenario", load_scenarios(SCENARIOS_DIR), ids=lambda s: s["name"])
    def test_required_fields(self, scenario):
        assert scenario["description"]
        assert isinstance(scenario["events"], list)
        assert scenario["expect"]["status"] in ("success", "idle", "error")


class TestExpandEvents:
    """repeat and merchant_ids turn one entry into many bodies."""

    def test_repeat_cycles_merchants(self):
        bodies = expand_events([{
            "repeat": 4,
            "merchant_ids": ["m1", "m2"],
            "body": {"event_type": "api_error", "payload": {"error_code": "X"}},
        }])
        assert [b["merchant_id"] for b in bodies] == ["m1", "m2", "m1", "m2"]
        assert bodies[0]["created_at"] == REPLAY_START.isoformat()
        assert bodies[0]["payload"] is not bodies[1]["payload"]

    def test_plain_entries_pass_through(self):
        bodies = expand_events([{"event_type": "api_error", "merchant_id": "m9", "payload": {}}])
        assert bodies[0]["merchant_id"] == "m9"
        assert "created_at" in bodies[0]

    def test_explicit_merchant_kept(self):
        bodies = expand_events([{
            "repeat": 2,
            "merchant_ids": ["m1"],
            "body": {"event_type": "api_error", "merchant_id": "m0", "payload": {}},
        }])
        assert {b["merchant_id"] for b in bodies} == {"m0"}


class TestGrading:
    """Graders compare the store with the expectations."""

    def test_failed_expectation_is_fail(self):
        scenario = {"name": "x", "expect": {"status": "success", "observations": 1}}
        graded = grade_scenario(scenario, InMemoryEventStore(), {"status": "idle"})
        assert graded["grade"] == "FAIL"
        assert [c["passed"] for c in graded["checks"]] == [False, False]


class TestShippedScenarios:
    """Replaying the shipped scenarios passes every check."""

    @pytest.mark.parametrize("name", ALL_SCENARIOS)
    def test_scenario_passes(self, name):
        scenario = next(s for s in load_scenarios() if s["name"] == name)
        graded = run_scenario(scenario)
        failed = [c for c in graded["checks"] if not c["passed"]]
        assert graded["grade"] == "PASS", failed
