"""Tests for fingerprinting and the create-or-merge cluster engine."""

import threading
from datetime import timedelta

import pytest

from selfheal.cluster import (
    _FINGERPRINT_LOCKS,
    FINGERPRINT_LOCK_STRIPES,
    MESSAGE_FINGERPRINT_LENGTH,
    ClusterEngine,
    build_summary,
    derive_fingerprint,
    fingerprint_lock,
    normalize_message,
)
from selfheal.risk import evaluate
from selfheal.schema import ingest_event
from selfheal.store import InMemoryEventStore, StoreError, UniqueConstraintError

from conftest import T0


# ──────────────────────────────────────────────────
# Test Group 1: Message normalization
# ──────────────────────────────────────────────────

class TestNormalizeMessage:
    """Volatile parts of messages collapse to placeholders."""

    def test_digits_become_placeholder(self):
        assert normalize_message("Order 42 failed") == "order_<n>_failed"

    def test_uuid_date_and_ip_placeholders(self):
        text = "id 123e4567-e89b-12d3-a456-426614174000 on 2026-03-02 via 10.0.0.1"
        normalized = normalize_message(text, max_length=200)
        assert normalized == "id_<uuid>_on_<date>_via_<ip>"

    def test_messages_differing_only_in_ids_collide(self):
        first = normalize_message("Charge 1001 declined at 2026-03-02T10:00:00Z")
        second = normalize_message("Charge 98765 declined at 2026-04-11T23:59:01Z")
        assert first == second

    def test_truncated_to_fixed_length(self):
        assert len(normalize_message("word " * 50)) == MESSAGE_FINGERPRINT_LENGTH

    @pytest.mark.parametrize("text", [
        "Order 42 failed",
        "Timeout for order 12345 at 2026-03-02T12:00:00Z from 10.0.0.1",
        "  Mixed   CASE\tand\nwhitespace 7 ",
        "already_<n>_normalized",
    ])
    def test_normalization_is_idempotent(self, text):
        once = normalize_message(text)
        assert normalize_message(once) == once


# ──────────────────────────────────────────────────
# Test Group 2: Fingerprint derivation
# ──────────────────────────────────────────────────

class TestDeriveFingerprint:
    """Precomputed first, then payload fields in priority order."""

    def test_precomputed_fingerprint_wins(self):
        event = {"source": "api", "fingerprint": "doc_gap:x", "payload": {"error_code": "E1"}}
        assert derive_fingerprint(event) == "doc_gap:x"

    def test_error_code_beats_message(self):
        event = {"source": "api", "payload": {"message": "boom 1", "error_code": "E42"}}
        assert derive_fingerprint(event) == "api:E42"

    def test_named_event_beats_error_text(self):
        event = {"source": "webhook", "payload": {"event": "order.created", "error": "x"}}
        assert derive_fingerprint(event) == "webhook:order.created"

    def test_message_is_normalized(self):
        event = {"source": "log", "payload": {"message": "Retry 3 failed"}}
        assert derive_fingerprint(event) == "log:retry_<n>_failed"

    def test_reason_used_last(self):
        event = {"source": "api", "payload": {"reason": "Card Expired"}}
        assert derive_fingerprint(event) == "api:card_expired"

    def test_empty_payload_is_unclassified(self):
        assert derive_fingerprint({"source": "api", "payload": {}}) == "api:unclassified"

    def test_non_dict_payload_is_unclassified(self):
        assert derive_fingerprint({"source": "api", "payload": "garbage"}) == "api:unclassified"

    def test_structured_values_are_skipped(self):
        event = {"source": "api", "payload": {"error_code": {"nested": 1}, "type": "schema"}}
        assert derive_fingerprint(event) == "api:schema"

    def test_summary_has_no_counts_or_tags(self):
        summary = build_summary("api:E1", {"source_types": ["api_error"], "sample_text": "boom"})
        assert summary == "Detected pattern: api:E1 - boom"

    def test_event_type_tags_do_not_drive_risk(self):
        metadata = {"source_types": ["timeout_error", "checkout_failure"], "sample_text": "slow reply"}
        observation = {
            "fingerprint": "api:E9",
            "summary": build_summary("api:E9", metadata),
            "merchant_count": 1,
        }
        assert "timeout" not in observation["summary"]
        factors = evaluate(observation, {"cause": "Upstream latency", "confidence": 0.7})["factors"]
        assert "checkout_impact" not in factors
        assert "critical_error" not in factors


# ──────────────────────────────────────────────────
# Test Group 3: Create / merge
# ──────────────────────────────────────────────────

class TestClusterEngine:
    """One pass folds the unprocessed batch into observations."""

    def test_empty_queue_is_idle(self, store, clock):
        result = ClusterEngine(store, clock=clock).process_new_events()
        assert result == {"processed_count": 0, "cluster_count": 0, "failed_groups": 0}

    def test_same_fingerprint_makes_one_observation(self, store, clock, add_events, checkout_body):
        add_events(checkout_body, count=30, merchants=["m1", "m2", "m3", "m4", "m5"])
        result = ClusterEngine(store, clock=clock).process_new_events()

        assert result["processed_count"] == 30
        assert result["cluster_count"] == 1
        observations = store.query_observations()
        assert len(observations) == 1
        obs = observations[0]
        assert obs["merchant_count"] == 5
        assert obs["metadata"]["event_count"] == 30
        assert obs["metadata"]["affected_merchants"] == ["m1", "m2", "m3", "m4", "m5"]
        assert obs["first_seen"] == obs["last_seen"] == clock()
        assert obs["status"] == "active"

    def test_sample_event_ids_are_capped(self, store, clock, add_events, checkout_body):
        add_events(checkout_body, count=30, merchants=["m1"])
        ClusterEngine(store, settings={"max_sample_event_ids": 4}, clock=clock).process_new_events()
        assert len(store.query_observations()[0]["metadata"]["sample_event_ids"]) == 4

    def test_unknown_merchant_counts_as_one(self, store, clock, add_events, misconfig_body):
        add_events(misconfig_body, count=2)
        ClusterEngine(store, clock=clock).process_new_events()
        assert store.query_observations()[0]["merchant_count"] == 1

    def test_distinct_fingerprints_make_distinct_observations(self, store, clock, add_events):
        add_events({"event_type": "api_error", "payload": {"error_code": "A"}}, count=2)
        add_events({"event_type": "api_error", "payload": {"error_code": "B"}}, count=3)
        result = ClusterEngine(store, clock=clock).process_new_events()
        assert result["cluster_count"] == 2
        assert sorted(o["fingerprint"] for o in store.query_observations()) == ["api:A", "api:B"]

    def test_rerun_is_a_noop(self, store, clock, add_events, checkout_body):
        add_events(checkout_body, count=5, merchants=["m1", "m2"])
        engine = ClusterEngine(store, clock=clock)
        engine.process_new_events()
        before = store.query_observations()

        assert engine.process_new_events()["processed_count"] == 0
        assert store.query_observations() == before

    def test_later_batch_merges_into_active(self, store, clock, add_events, checkout_body):
        engine = ClusterEngine(store, clock=clock)
        add_events(checkout_body, count=2, merchants=["m1"])
        engine.process_new_events()
        first_seen = store.query_observations()[0]["first_seen"]

        clock.advance(hours=2)
        add_events(checkout_body, count=3, merchants=["m2"], start=T0 + timedelta(hours=2))
        engine.process_new_events()

        observations = store.query_observations()
        assert len(observations) == 1
        assert observations[0]["metadata"]["event_count"] == 5
        assert observations[0]["merchant_count"] == 2
        assert observations[0]["first_seen"] == first_seen
        assert observations[0]["last_seen"] == clock()

    def test_same_result_regardless_of_arrival_order(self, clock):
        bodies = [
            {"event_type": "api_error", "merchant_id": f"m{i % 3}", "payload": {"error_code": "E7"}}
            for i in range(6)
        ]
        outcomes = []
        for ordering in (bodies, list(reversed(bodies))):
            store = InMemoryEventStore()
            for i, body in enumerate(ordering):
                ingest_event(store, dict(body, created_at=T0 + timedelta(seconds=i)))
            ClusterEngine(store, clock=clock).process_new_events()
            obs = store.query_observations()
            outcomes.append((len(obs), obs[0]["merchant_count"], obs[0]["metadata"]["event_count"]))
        assert outcomes[0] == outcomes[1] == (1, 3, 6)

    def test_investigating_observation_is_reactivated(self, store, clock, add_events, checkout_body):
        engine = ClusterEngine(store, clock=clock)
        add_events(checkout_body, count=1, merchants=["m1"])
        engine.process_new_events()
        obs = store.query_observations()[0]
        store.update_observation(obs["id"], {"status": "investigating"})

        add_events(checkout_body, count=1, merchants=["m2"], start=T0 + timedelta(minutes=1))
        engine.process_new_events()

        observations = store.query_observations()
        assert len(observations) == 1
        assert observations[0]["status"] == "active"
        assert observations[0]["merchant_count"] == 2

    def test_resolved_observation_is_not_reopened(self, store, clock, add_events, checkout_body):
        engine = ClusterEngine(store, clock=clock)
        add_events(checkout_body, count=1, merchants=["m1"])
        engine.process_new_events()
        old = store.query_observations()[0]
        store.update_observation(old["id"], {"status": "resolved"})

        add_events(checkout_body, count=1, merchants=["m1"], start=T0 + timedelta(minutes=1))
        engine.process_new_events()

        statuses = sorted(o["status"] for o in store.query_observations())
        assert statuses == ["active", "resolved"]


# ──────────────────────────────────────────────────
# Test Group 4: Failure isolation and races
# ──────────────────────────────────────────────────

class FlakyStore(InMemoryEventStore):
    """Fails every observation insert for one fingerprint."""

    def __init__(self, bad_fingerprint):
        super().__init__()
        self.bad_fingerprint = bad_fingerprint

    def insert_observation(self, observation):
        if observation.get("fingerprint") == self.bad_fingerprint:
            raise StoreError("connection reset")
        return super().insert_observation(observation)


class RacingStore(InMemoryEventStore):
    """Simulates another writer creating the active observation first."""

    def __init__(self):
        super().__init__()
        self.raced = False

    def insert_observation(self, observation):
        if not self.raced:
            self.raced = True
            super().insert_observation({
                "fingerprint": observation["fingerprint"],
                "summary": "created by a competing run",
                "merchant_count": 1,
                "first_seen": T0,
                "last_seen": T0,
                "status": "active",
                "metadata": {"affected_merchants": ["m_other"], "event_count": 5},
            })
            raise UniqueConstraintError("duplicate active fingerprint")
        return super().insert_observation(observation)


class TestFailureIsolation:
    """Groups commit independently; races retry as merges."""

    def test_failed_group_does_not_block_others(self, clock):
        store = FlakyStore("api:BAD")
        ingest_event(store, {"event_type": "api_error", "payload": {"error_code": "BAD"}, "created_at": T0})
        ingest_event(store, {"event_type": "api_error", "payload": {"error_code": "OK"}, "created_at": T0})

        result = ClusterEngine(store, clock=clock).process_new_events()

        assert result == {"processed_count": 1, "cluster_count": 1, "failed_groups": 1}
        assert [o["fingerprint"] for o in store.query_observations()] == ["api:OK"]
        # The failed group's events stay queued for the next run.
        assert [e["payload"]["error_code"] for e in store.query_unprocessed(10)] == ["BAD"]

    def test_unique_constraint_race_retries_as_merge(self, clock):
        store = RacingStore()
        ingest_event(store, {
            "event_type": "api_error", "merchant_id": "m1",
            "payload": {"error_code": "E1"}, "created_at": T0,
        })

        result = ClusterEngine(store, clock=clock).process_new_events()

        assert result["cluster_count"] == 1
        observations = store.query_observations()
        assert len(observations) == 1
        assert observations[0]["metadata"]["event_count"] == 6
        assert observations[0]["metadata"]["affected_merchants"] == ["m1", "m_other"]

    def test_concurrent_folds_keep_one_active_observation(self, store, clock):
        engines = [ClusterEngine(store, clock=clock) for _ in range(4)]
        events = [
            {"id": f"e{i}", "merchant_id": f"m{i}", "event_type": "api_error", "payload": {}}
            for i in range(20)
        ]
        barrier = threading.Barrier(len(engines))
        errors = []

        def worker(engine, chunk):
            barrier.wait()
            for event in chunk:
                try:
                    engine._fold_group("api:race", [event], clock())
                except StoreError as exc:
                    errors.append(exc)

        threads = [
            threading.Thread(target=worker, args=(engine, events[i::len(engines)]))
            for i, engine in enumerate(engines)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        active = store.query_observations({"fingerprint": "api:race", "status": "active"})
        assert len(active) == 1
        assert active[0]["metadata"]["event_count"] == 20
        assert active[0]["merchant_count"] == 20

    def test_lock_per_fingerprint_is_stable_and_bounded(self):
        assert fingerprint_lock("api:E1") is fingerprint_lock("api:E1")
        locks = {id(fingerprint_lock(f"api:E{i}")) for i in range(1000)}
        assert len(locks) <= FINGERPRINT_LOCK_STRIPES
        assert fingerprint_lock("api:E1") in _FINGERPRINT_LOCKS


class UnflaggableStore(InMemoryEventStore):
    """The first mark_processed call fails after the fold committed."""

    def __init__(self):
        super().__init__()
        self.mark_failures = 1

    def mark_processed(self, event_ids):
        if self.mark_failures:
            self.mark_failures -= 1
            raise StoreError("write timeout")
        return super().mark_processed(event_ids)


class TestRefold:
    """Events folded but not flagged processed are not counted twice."""

    def test_failed_flag_then_rerun_counts_once(self, clock):
        store = UnflaggableStore()
        for merchant in ("m1", "m2", "m3"):
            ingest_event(store, {
                "event_type": "api_error", "merchant_id": merchant,
                "payload": {"error_code": "E5"}, "created_at": T0,
            })
        engine = ClusterEngine(store, clock=clock)

        first = engine.process_new_events()
        assert first == {"processed_count": 0, "cluster_count": 0, "failed_groups": 1}
        assert len(store.query_unprocessed(10)) == 3

        second = engine.process_new_events()
        assert second == {"processed_count": 3, "cluster_count": 1, "failed_groups": 0}
        observations = store.query_observations()
        assert len(observations) == 1
        assert observations[0]["metadata"]["event_count"] == 3
        assert observations[0]["merchant_count"] == 3
        assert observations[0]["metadata"]["pending_event_ids"] == []
        assert store.query_unprocessed(10) == []

    def test_merge_skips_pending_events(self, store, clock):
        engine = ClusterEngine(store, clock=clock)
        events = [{"id": "e1", "merchant_id": "m1", "event_type": "api_error", "payload": {}}]
        observation, created = engine._fold_group("api:E6", events, clock())
        assert created is True
        assert observation["metadata"]["pending_event_ids"] == ["e1"]

        again, created = engine._fold_group("api:E6", events, clock())
        assert created is False
        assert again["metadata"]["event_count"] == 1
        assert store.query_observations()[0]["metadata"]["event_count"] == 1
