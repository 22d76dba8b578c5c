#!/usr/bin/env python3
"""Cluster engine: fold unprocessed raw events into observations.

One pass pulls a bounded batch of unprocessed events (oldest first), derives
a fingerprint per event, groups the batch by fingerprint, and folds each
group into the open observation for that fingerprint (merge) or a new one
(create). Consumed events are then flagged processed so a second pass over
the same batch is a no-op.

Fingerprints are the clustering key. A precomputed fingerprint on the event
wins; otherwise one is derived from the payload in field priority order:

    error_code -> event -> error -> message/msg -> error_type/type -> reason

falling back to ``<source>:unclassified``. Free text (error text, messages,
reasons) is normalized first so that messages differing only in ids,
timestamps, addresses or counters collide into one fingerprint.

Groups are independent: a store failure while folding one group is logged
and the remaining groups still commit. The read-check-then-write for a
fingerprint runs under a per-fingerprint lock and retries as a merge when
the store reports a unique-constraint race.

Folded event ids stay in the observation's ``pending_event_ids`` until the
events are flagged processed. If flagging fails, the next pass folds the
same events again and the merge skips the pending ids, so counts never
double.

Usage (from Python):
    from selfheal.cluster import ClusterEngine
    result = ClusterEngine(store).process_new_events()
    # {"processed_count": 30, "cluster_count": 1, "failed_groups": 0}
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from selfheal.config import DEFAULT_SETTINGS
from selfheal.schema import new_id, utcnow
from selfheal.store import StoreError, UniqueConstraintError

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────
# Fingerprint derivation
# ──────────────────────────────────────────────────

# Normalized free text is truncated to this many characters.
MESSAGE_FINGERPRINT_LENGTH = 40

# (payload field, is free text) in derivation priority order.
FINGERPRINT_FIELD_PRIORITY = (
    ("error_code", False),
    ("event", False),
    ("error", True),
    ("message", True),
    ("msg", True),
    ("error_type", False),
    ("type", False),
    ("reason", True),
)

UNCLASSIFIED = "unclassified"

_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
_DATE_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}(?:[t ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:z|[+-]\d{2}:?\d{2})?)?"
)
_IP_RE = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")
_DIGITS_RE = re.compile(r"\d+")
_WHITESPACE_RE = re.compile(r"\s+")

# Payload fields scanned (in order) for the human-readable sample on a summary.
SAMPLE_TEXT_FIELDS = (
    "message", "msg", "error_message", "error", "subject", "description", "reason",
)
SAMPLE_TEXT_LENGTH = 160


def normalize_message(text: Any, max_length: int = MESSAGE_FINGERPRINT_LENGTH) -> str:
    """Collapse volatile parts of a free-text message into placeholder tokens.

    Lowercases, then replaces UUIDs, dates/timestamps, IPv4 addresses and
    digit runs with ``<uuid>``, ``<date>``, ``<ip>`` and ``<n>``, joins
    whitespace runs with ``_`` and truncates. Placeholders carry no digits
    or whitespace, so normalizing an already-normalized string returns it
    unchanged.
    """
    normalized = str(text).lower()
    normalized = _UUID_RE.sub("<uuid>", normalized)
    normalized = _DATE_RE.sub("<date>", normalized)
    normalized = _IP_RE.sub("<ip>", normalized)
    normalized = _DIGITS_RE.sub("<n>", normalized)
    normalized = _WHITESPACE_RE.sub("_", normalized.strip())
    return normalized[:max_length]


def _scalar_text(value: Any) -> Optional[str]:
    """Usable fingerprint material, or None for empty/structured values."""
    if value is None or isinstance(value, (dict, list, tuple, set, bool)):
        return None
    text = str(value).strip()
    return text or None


def derive_fingerprint(event: Dict[str, Any]) -> str:
    """Fingerprint for one raw event (precomputed value wins)."""
    precomputed = _scalar_text(event.get("fingerprint"))
    if precomputed:
        return precomputed

    source = _scalar_text(event.get("source")) or _scalar_text(event.get("event_type")) or "unknown"
    payload = event.get("payload")
    if not isinstance(payload, dict):
        logger.debug("Event %s has a non-dict payload; using unclassified bucket", event.get("id"))
        payload = {}

    for field, is_free_text in FINGERPRINT_FIELD_PRIORITY:
        value = _scalar_text(payload.get(field))
        if value is None:
            continue
        if is_free_text:
            value = normalize_message(value)
            if not value:
                continue
        return f"{source}:{value}"

    return f"{source}:{UNCLASSIFIED}"


def _sample_text(events: List[Dict[str, Any]]) -> Optional[str]:
    for event in events:
        payload = event.get("payload")
        if not isinstance(payload, dict):
            continue
        for field in SAMPLE_TEXT_FIELDS:
            text = _scalar_text(payload.get(field))
            if text:
                return text[:SAMPLE_TEXT_LENGTH]
    return None


def build_summary(fingerprint: str, metadata: Dict[str, Any]) -> str:
    """Human summary: fingerprint and a sample message.

    The summary feeds keyword matching downstream, so it carries only text
    taken from the signal itself. Counts and event type tags (which would
    match words like "500", "timeout" or "checkout" on their own) stay in
    metadata.
    """
    summary = f"Detected pattern: {fingerprint}"
    if metadata.get("sample_text"):
        summary += f" - {metadata['sample_text']}"
    return summary


def group_events(events: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group events by fingerprint, keeping first-seen order of fingerprints."""
    clusters: Dict[str, List[Dict[str, Any]]] = {}
    for event in events:
        clusters.setdefault(derive_fingerprint(event), []).append(event)
    return clusters


# ──────────────────────────────────────────────────
# Cluster engine
# ──────────────────────────────────────────────────

# Fixed pool shared by every engine in the process. A fingerprint always maps
# to the same lock; unrelated fingerprints may share one.
FINGERPRINT_LOCK_STRIPES = 64
_FINGERPRINT_LOCKS = tuple(threading.Lock() for _ in range(FINGERPRINT_LOCK_STRIPES))


def fingerprint_lock(fingerprint: str) -> threading.Lock:
    return _FINGERPRINT_LOCKS[hash(fingerprint) % FINGERPRINT_LOCK_STRIPES]


class ClusterEngine:
    """Create-or-merge observations from batches of unprocessed raw events."""

    def __init__(
        self,
        store,
        settings: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or DEFAULT_SETTINGS
        self.store = store
        self.clock = clock
        self.batch_size = int(settings.get("event_batch_size", DEFAULT_SETTINGS["event_batch_size"]))
        self.max_samples = int(settings.get("max_sample_event_ids", DEFAULT_SETTINGS["max_sample_event_ids"]))
        self.retry_attempts = int(settings.get("merge_retry_attempts", DEFAULT_SETTINGS["merge_retry_attempts"]))

    def process_new_events(self) -> Dict[str, int]:
        """Run one clustering pass.

        Returns:
            Dict with processed_count (events folded and flagged processed),
            cluster_count (groups committed) and failed_groups. An empty
            queue returns zeros, which is a valid idle outcome.
        """
        events = self.store.query_unprocessed(self.batch_size)
        if not events:
            return {"processed_count": 0, "cluster_count": 0, "failed_groups": 0}

        clusters = group_events(events)
        now = self.clock()
        processed_count = 0
        cluster_count = 0
        failed_groups = 0

        for fingerprint, cluster_events in clusters.items():
            try:
                observation, created = self._fold_group(fingerprint, cluster_events, now)
                self._confirm(fingerprint, observation, [e["id"] for e in cluster_events])
            except StoreError as exc:
                failed_groups += 1
                logger.error(
                    "Failed to fold %d event(s) for fingerprint %s: %s",
                    len(cluster_events), fingerprint, exc,
                )
                continue

            processed_count += len(cluster_events)
            cluster_count += 1
            logger.info(
                "%s observation %s for %s (%d event(s))",
                "Created" if created else "Merged into",
                observation.get("id"), fingerprint, len(cluster_events),
            )

        return {
            "processed_count": processed_count,
            "cluster_count": cluster_count,
            "failed_groups": failed_groups,
        }

    # ── fold ──

    def _confirm(self, fingerprint: str, observation: Dict[str, Any], event_ids: List[str]) -> None:
        """Flag folded events processed, then drop them from the pending list.

        A failure to flag raises StoreError and leaves the ids pending, so the
        next pass skips them when it folds the same events again. A failure
        to clear the pending list is only logged.
        """
        self.store.mark_processed(event_ids)
        done = set(event_ids)
        with fingerprint_lock(fingerprint):
            try:
                found = self.store.query_observations(filters={"id": observation["id"]}, limit=1)
                if not found:
                    return
                metadata = dict(found[0].get("metadata") or {})
                metadata["pending_event_ids"] = [
                    i for i in metadata.get("pending_event_ids") or [] if i not in done
                ]
                self.store.update_observation(observation["id"], {"metadata": metadata})
            except StoreError as exc:
                logger.warning("Could not clear pending events on %s: %s", observation["id"], exc)

    def _find_open_observation(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        """Active observation for a fingerprint, else one under investigation."""
        for status in ("active", "investigating"):
            found = self.store.query_observations(
                filters={"fingerprint": fingerprint, "status": status},
                order_by="last_seen",
                descending=True,
                limit=1,
            )
            if found:
                return found[0]
        return None

    def _fold_group(
        self,
        fingerprint: str,
        events: List[Dict[str, Any]],
        now: datetime,
    ) -> Tuple[Dict[str, Any], bool]:
        with fingerprint_lock(fingerprint):
            for attempt in range(self.retry_attempts + 1):
                existing = self._find_open_observation(fingerprint)
                try:
                    if existing:
                        return self._merge(existing, events, now), False
                    return self._create(fingerprint, events, now), True
                except UniqueConstraintError:
                    # Another writer holds the active slot; re-read and merge.
                    logger.warning(
                        "Unique-constraint race on %s (attempt %d), retrying as merge",
                        fingerprint, attempt + 1,
                    )
        raise UniqueConstraintError(
            f"Could not fold events for {fingerprint} after {self.retry_attempts + 1} attempts"
        )

    def _group_metadata(
        self,
        events: List[Dict[str, Any]],
        base: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        base = dict(base or {})
        merchants = set(base.get("affected_merchants") or [])
        merchants.update(e["merchant_id"] for e in events if e.get("merchant_id"))
        source_types = set(base.get("source_types") or [])
        source_types.update(e["event_type"] for e in events if e.get("event_type"))
        samples = list(base.get("sample_event_ids") or []) + [e["id"] for e in events]
        pending = list(base.get("pending_event_ids") or []) + [e["id"] for e in events]

        base.update({
            "affected_merchants": sorted(merchants),
            "sample_event_ids": samples[-self.max_samples:] if self.max_samples > 0 else [],
            "event_count": int(base.get("event_count") or 0) + len(events),
            "source_types": sorted(source_types),
            "pending_event_ids": pending,
        })
        if not base.get("sample_text"):
            base["sample_text"] = _sample_text(events)
        return base

    def _create(self, fingerprint: str, events: List[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
        metadata = self._group_metadata(events)
        observation = {
            "id": new_id(),
            "fingerprint": fingerprint,
            "summary": build_summary(fingerprint, metadata),
            # An observation always stands for at least one (possibly unknown) merchant.
            "merchant_count": max(1, len(metadata["affected_merchants"])),
            "first_seen": now,
            "last_seen": now,
            "status": "active",
            "metadata": metadata,
        }
        return self.store.insert_observation(observation)

    def _merge(self, existing: Dict[str, Any], events: List[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
        # Events already folded but not yet flagged processed are not counted twice.
        already = set((existing.get("metadata") or {}).get("pending_event_ids") or [])
        events = [e for e in events if e["id"] not in already]
        if not events:
            logger.info("Events for observation %s were already folded", existing.get("id"))
            return existing
        metadata = self._group_metadata(events, base=existing.get("metadata"))
        if existing.get("status") != "active":
            logger.info(
                "Reactivating observation %s (%s -> active)",
                existing.get("id"), existing.get("status"),
            )
        changes = {
            "summary": build_summary(existing["fingerprint"], metadata),
            "merchant_count": max(1, len(metadata["affected_merchants"])),
            "last_seen": now,
            "status": "active",
            "metadata": metadata,
        }
        return self.store.update_observation(existing["id"], changes)
