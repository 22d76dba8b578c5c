#!/usr/bin/env python3
"""Event store contract and an in-memory, thread-safe implementation.

The pipeline treats persistence as an external collaborator: a record store
with typed tables supporting create/read/update/filter-by-field. Production
deployments plug in their own backend by subclassing ``EventStore``; the
in-memory store backs the CLI, the scenario replay harness and the tests.

The one constraint the store itself enforces is the observation uniqueness
rule: at most one ``active`` observation per fingerprint. Inserts or updates
that would break it raise ``UniqueConstraintError`` so callers can retry as
a merge.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Iterable, List, Optional

from selfheal.schema import RECORD_TABLES, new_id, utcnow


class StoreError(Exception):
    """Connectivity or constraint failure raised by an event store."""


class UniqueConstraintError(StoreError):
    """A write would create a second active observation for a fingerprint."""


class RecordNotFoundError(StoreError):
    """The requested record id does not exist in the table."""


class EventStore:
    """Interface the pipeline expects from its persistence engine.

    Every method may raise ``StoreError``. Returned records are copies; a
    caller mutating them does not change stored state.
    """

    def insert_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def query_unprocessed(self, limit: int) -> List[Dict[str, Any]]:
        """Unprocessed raw events, oldest ``created_at`` first."""
        raise NotImplementedError

    def mark_processed(self, event_ids: Iterable[str]) -> int:
        raise NotImplementedError

    def query_observations(
        self,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def insert_observation(self, observation: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update_observation(self, observation_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Append a hypothesis, risk assessment, decision, proposal or audit row."""
        raise NotImplementedError

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError


def _matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """Field equality filter; a list/tuple/set value means "field in values"."""
    if not filters:
        return True
    for field, expected in filters.items():
        value = record.get(field)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _sort_key(field: str):
    # None sorts first; id breaks ties so ordering is stable per snapshot.
    def key(record: Dict[str, Any]):
        value = record.get(field)
        return (value is not None, value if value is not None else 0, str(record.get("id")))
    return key


class InMemoryEventStore(EventStore):
    """Dict-backed store guarded by a single re-entrant lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[str, List[Dict[str, Any]]] = {
            "raw_events": [],
            "observations": [],
        }
        for table in RECORD_TABLES:
            self._tables[table] = []

    # ── helpers ──

    def _table(self, table: str) -> List[Dict[str, Any]]:
        if table not in self._tables:
            raise StoreError(f"Unknown table: {table}")
        return self._tables[table]

    def _find(self, table: str, record_id: str) -> Dict[str, Any]:
        for record in self._table(table):
            if record.get("id") == record_id:
                return record
        raise RecordNotFoundError(f"{table} record not found: {record_id}")

    def _active_holder(self, fingerprint: str, exclude_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        for obs in self._tables["observations"]:
            if (
                obs.get("fingerprint") == fingerprint
                and obs.get("status") == "active"
                and obs.get("id") != exclude_id
            ):
                return obs
        return None

    # ── raw events ──

    def insert_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(event)
        record.setdefault("id", new_id())
        record.setdefault("processed", False)
        record.setdefault("created_at", utcnow())
        with self._lock:
            self._tables["raw_events"].append(record)
        return copy.deepcopy(record)

    def query_unprocessed(self, limit: int) -> List[Dict[str, Any]]:
        with self._lock:
            pending = [e for e in self._tables["raw_events"] if not e.get("processed")]
            # sorted() is stable, so equal timestamps keep insertion order.
            pending = sorted(
                pending,
                key=lambda e: (e.get("created_at") is not None, e.get("created_at") or 0),
            )
            return copy.deepcopy(pending[: max(0, limit)])

    def mark_processed(self, event_ids: Iterable[str]) -> int:
        wanted = set(event_ids)
        count = 0
        with self._lock:
            for event in self._tables["raw_events"]:
                if event.get("id") in wanted and not event.get("processed"):
                    event["processed"] = True
                    count += 1
        return count

    # ── observations ──

    def query_observations(
        self,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return self.query("observations", filters, order_by, descending, limit)

    def insert_observation(self, observation: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(observation)
        record.setdefault("id", new_id())
        with self._lock:
            if record.get("status") == "active" and self._active_holder(record.get("fingerprint")):
                raise UniqueConstraintError(
                    f"Active observation already exists for fingerprint {record.get('fingerprint')!r}"
                )
            self._tables["observations"].append(record)
        return copy.deepcopy(record)

    def update_observation(self, observation_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = self._find("observations", observation_id)
            status = changes.get("status", record.get("status"))
            fingerprint = changes.get("fingerprint", record.get("fingerprint"))
            if status == "active" and self._active_holder(fingerprint, exclude_id=observation_id):
                raise UniqueConstraintError(
                    f"Active observation already exists for fingerprint {fingerprint!r}"
                )
            record.update(copy.deepcopy(changes))
            return copy.deepcopy(record)

    # ── generic tables ──

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if table not in RECORD_TABLES:
            raise StoreError(f"Unknown table: {table}")
        row = copy.deepcopy(record)
        row.setdefault("id", new_id())
        row.setdefault("created_at", utcnow())
        with self._lock:
            self._tables[table].append(row)
        return copy.deepcopy(row)

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if table == "observations":
            return self.update_observation(record_id, changes)
        with self._lock:
            record = self._find(table, record_id)
            record.update(copy.deepcopy(changes))
            return copy.deepcopy(record)

    def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [r for r in self._table(table) if _matches(r, filters)]
            if order_by:
                rows = sorted(rows, key=_sort_key(order_by), reverse=descending)
            if limit is not None:
                rows = rows[: max(0, limit)]
            return copy.deepcopy(rows)
