#!/usr/bin/env python3
"""Record vocabulary and ingest normalization for the decision pipeline.

Every record in the pipeline is a plain dict with snake_case keys, the same
shape the event store hands back. This module holds the closed value sets
(event types, statuses, classifications, ...) and the helpers that turn an
inbound signal body into a canonical RawEvent row.

Usage (from Python):
    from selfheal.schema import normalize_event
    event = normalize_event({"event_type": "api_error", "payload": {...}})
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ──────────────────────────────────────────────────
# Closed value sets
# ──────────────────────────────────────────────────

# Signal types accepted at ingest. Anything else is rejected.
EVENT_TYPES = (
    "checkout_failure",
    "webhook_failure",
    "api_error",
    "support_ticket",
    "migration_event",
    "log_error",
    "timeout_error",
    "schema_error",
)

# Channels a signal can arrive through. Unknown channels fall back to "api".
SOURCES = (
    "ticket",
    "log",
    "webhook",
    "api",
    "migration_state",
    "simulation",
)
DEFAULT_SOURCE = "api"

SOURCE_ORIGINS = ("real", "simulation")
DEFAULT_SOURCE_ORIGIN = "real"

OBSERVATION_STATUSES = ("active", "investigating", "resolved")
HISTORICAL_PATTERNS = ("new", "recurring", "escalating")

REVERSIBILITY_LEVELS = ("high", "medium", "low")
URGENCY_LEVELS = ("immediate", "high", "normal", "low")

CLASSIFICATIONS = (
    "platform_regression",
    "checkout_failure",
    "auth_failure",
    "webhook_failure",
    "rate_limit",
    "migration_error",
    "merchant_misconfiguration",
    "documentation_gap",
)

PROPOSAL_STATUSES = (
    "pending",
    "pending_approval",
    "approved",
    "rejected",
    "executed",
    "failed",
)

# Tables the pipeline writes besides raw_events and observations.
RECORD_TABLES = (
    "hypotheses",
    "risk_assessments",
    "decisions",
    "action_proposals",
    "audit_logs",
    "agent_learnings",
)

# Payload keys that may carry the merchant id when the body does not.
MERCHANT_ID_PAYLOAD_KEYS = ("merchant_id", "merchantId")


class InvalidEventError(ValueError):
    """Raised when an inbound signal cannot be turned into a RawEvent."""


# ──────────────────────────────────────────────────
# Small helpers
# ──────────────────────────────────────────────────

def utcnow() -> datetime:
    """Timezone-aware current time; the default clock for every component."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _to_float(value: Any) -> float | None:
    """Convert values to float safely; return None if unparsable."""
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings; naive values are read as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def clamp_confidence(value: Any, default: float = 0.0) -> float:
    """Coerce a confidence value into [0, 1], using default when unparsable."""
    number = _to_float(value)
    if number is None:
        return default
    return max(0.0, min(1.0, number))


# ──────────────────────────────────────────────────
# Ingest normalization
# ──────────────────────────────────────────────────

def _resolve_merchant_id(body: Dict[str, Any], payload: Dict[str, Any]) -> Optional[str]:
    merchant_id = body.get("merchant_id")
    if not merchant_id:
        for key in MERCHANT_ID_PAYLOAD_KEYS:
            if payload.get(key):
                merchant_id = payload[key]
                break
    if not merchant_id or merchant_id == "unknown":
        return None
    return str(merchant_id)


def normalize_event(
    body: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Validate an inbound signal body and return a canonical RawEvent dict.

    Required: ``event_type`` (one of EVENT_TYPES) and ``payload`` (a dict).
    Optional fields get defaults: ``source`` falls back to "api" when missing
    or unknown, ``source_origin`` to "real". The merchant id is taken from
    the body first, then from the payload. A supplied fingerprint is kept
    verbatim; derivation happens later, in the cluster engine.

    Raises:
        InvalidEventError: missing/unknown event_type or non-dict payload.
    """
    if not isinstance(body, dict):
        raise InvalidEventError("Signal body must be an object")

    event_type = body.get("event_type")
    if not event_type:
        raise InvalidEventError("Missing required field: event_type")
    if event_type not in EVENT_TYPES:
        raise InvalidEventError(
            f"Invalid event_type: {event_type} (valid: {', '.join(EVENT_TYPES)})"
        )

    payload = body.get("payload")
    if not isinstance(payload, dict):
        raise InvalidEventError("Missing or invalid payload (must be object)")

    source = body.get("source")
    if source not in SOURCES:
        source = DEFAULT_SOURCE

    source_origin = body.get("source_origin")
    if source_origin not in SOURCE_ORIGINS:
        source_origin = DEFAULT_SOURCE_ORIGIN

    return {
        "id": body.get("id") or new_id(),
        "event_type": event_type,
        "merchant_id": _resolve_merchant_id(body, payload),
        "payload": dict(payload),
        "fingerprint": body.get("fingerprint") or None,
        "source": source,
        "source_origin": source_origin,
        "processed": False,
        "created_at": parse_timestamp(body.get("created_at")) or (now or utcnow()),
    }


def ingest_event(store, body: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Normalize a signal and append it to the store's raw event table."""
    event = normalize_event(body, now=now)
    return store.insert_event(event)
