#!/usr/bin/env python3
"""Context synthesis: enrich one observation with derived context.

Adds three fields to a copy of the observation:

- time_since_first_hours: wall-clock hours since first_seen
- historical_pattern: "new", "recurring" (resolved observations with the
  same fingerprint exist) or "escalating" (recurring, and the current event
  count exceeds ESCALATION_RATIO x the most recent past occurrence)
- migration_stage: inferred by keyword from fingerprint + summary, or None

The result is a read-only view computed fresh on every run; it is never
written back to the store.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from selfheal.config import DEFAULT_SETTINGS
from selfheal.schema import parse_timestamp, utcnow
from selfheal.store import StoreError

logger = logging.getLogger(__name__)


ESCALATION_RATIO = 1.5

# (keywords, stage) checked in order; first hit wins.
MIGRATION_STAGE_KEYWORDS = (
    (("checkout",), "checkout_migration"),
    (("webhook",), "webhook_integration"),
    (("auth", "token"), "authentication"),
)


def infer_migration_stage(observation: Dict[str, Any]) -> Optional[str]:
    """Keyword-match the fingerprint and summary against the stage vocabulary."""
    text = f"{observation.get('fingerprint') or ''} {observation.get('summary') or ''}".lower()
    for keywords, stage in MIGRATION_STAGE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return stage
    return None


def _event_count(observation: Dict[str, Any]) -> int:
    metadata = observation.get("metadata") or {}
    try:
        return int(metadata.get("event_count") or 0)
    except (TypeError, ValueError):
        return 0


def classify_history(observation: Dict[str, Any], past: List[Dict[str, Any]]) -> str:
    """Pattern from past resolved occurrences (most recent first)."""
    if not past:
        return "new"
    if _event_count(observation) > ESCALATION_RATIO * _event_count(past[0]):
        return "escalating"
    return "recurring"


def hours_between(start: Any, end: datetime) -> float:
    started = parse_timestamp(start)
    if started is None:
        return 0.0
    return max(0.0, (end - started).total_seconds() / 3600.0)


class ContextSynthesizer:
    """Build SynthesizedObservation views from stored observations."""

    def __init__(
        self,
        store,
        settings: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or DEFAULT_SETTINGS
        self.store = store
        self.clock = clock
        self.lookback = int(settings.get("history_lookback", DEFAULT_SETTINGS["history_lookback"]))

    def past_occurrences(self, observation: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Most recent resolved observations sharing the fingerprint.

        A store failure degrades to "no history" so the observation is still
        analyzed this run.
        """
        try:
            return self.store.query_observations(
                filters={"fingerprint": observation.get("fingerprint"), "status": "resolved"},
                order_by="last_seen",
                descending=True,
                limit=self.lookback,
            )
        except StoreError as exc:
            logger.warning(
                "History lookup failed for observation %s: %s", observation.get("id"), exc
            )
            return []

    def synthesize(self, observation: Dict[str, Any]) -> Dict[str, Any]:
        synthesized = copy.deepcopy(observation)
        synthesized["time_since_first_hours"] = hours_between(
            observation.get("first_seen"), self.clock()
        )
        synthesized["historical_pattern"] = classify_history(
            observation, self.past_occurrences(observation)
        )
        synthesized["migration_stage"] = infer_migration_stage(observation)
        return synthesized
