"""Shared test fixtures for the self-healing pipeline tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from selfheal.schema import ingest_event
from selfheal.store import InMemoryEventStore

# Project root
ROOT = Path(__file__).parent.parent

# Path to knowledge and config files
KNOWLEDGE_DIR = ROOT / "selfheal" / "knowledge"
CONFIG_DIR = ROOT / "data" / "config"

# Every test clock starts here.
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def knowledge_dir():
    """Path to the packaged knowledge directory."""
    return KNOWLEDGE_DIR


@pytest.fixture
def store():
    """Fresh in-memory event store."""
    return InMemoryEventStore()


@pytest.fixture
def clock():
    """Fixed, manually advanced clock starting at T0."""
    return FixedClock()


@pytest.fixture
def add_events(store):
    """Ingest N copies of a signal body, cycling merchant ids, 1s apart.

    Usage: add_events(body, count=3, merchants=["m1", "m2"], start=T0)
    """
    def _add(body, count=1, merchants=None, start=T0):
        merchants = merchants or [None]
        created = []
        for i in range(count):
            event = dict(body)
            event.setdefault("created_at", start + timedelta(seconds=i))
            if merchants[i % len(merchants)] is not None:
                event["merchant_id"] = merchants[i % len(merchants)]
            created.append(ingest_event(store, event))
        return created
    return _add


@pytest.fixture
def checkout_body():
    """Checkout failure signal carrying 500/timeout vocabulary."""
    return {
        "event_type": "checkout_failure",
        "source": "api",
        "payload": {
            "error_code": "CHECKOUT_GATEWAY_ERROR",
            "message": "Checkout failed with 500 after gateway timeout",
        },
    }


@pytest.fixture
def doc_gap_body():
    """Support ticket about a confusing API parameter (no checkout terms)."""
    return {
        "event_type": "support_ticket",
        "source": "ticket",
        "fingerprint": "doc_gap:parameter_confusion",
        "payload": {"subject": "Which parameter name does the refund endpoint expect?"},
    }


@pytest.fixture
def misconfig_body():
    """Single-merchant store setting problem."""
    return {
        "event_type": "api_error",
        "source": "api",
        "payload": {
            "error_code": "INVALID_CURRENCY_SETTING",
            "message": "Currency setting not enabled for store",
        },
    }


def make_observation(**overrides):
    """SynthesizedObservation-shaped dict with neutral defaults."""
    observation = {
        "id": "obs-1",
        "fingerprint": "api:neutral_signal",
        "summary": "Detected pattern: api:neutral_signal",
        "merchant_count": 1,
        "first_seen": T0,
        "last_seen": T0,
        "status": "active",
        "metadata": {
            "affected_merchants": ["m1"],
            "sample_event_ids": [],
            "event_count": 1,
            "source_types": ["api_error"],
        },
        "historical_pattern": "new",
        "time_since_first_hours": 0.0,
        "migration_stage": None,
    }
    observation.update(overrides)
    return observation


def make_hypothesis(cause="Neutral cause", confidence=0.7, assumptions=None):
    return {"cause": cause, "confidence": confidence, "assumptions": assumptions or []}
