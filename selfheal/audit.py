#!/usr/bin/env python3
"""Append-only audit trail of pipeline steps.

Each entry is ``{run_id, step, details, timestamp}`` in the audit_logs
table. Audit writes never abort a run: a store failure is logged and the
step carries on.

Steps written by the pipeline: observe, synthesize, hypothesize,
evaluate_risk, decide, recommend, act, learn, skip, error; and
human_review from the review path.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from selfheal.schema import utcnow
from selfheal.store import StoreError

logger = logging.getLogger(__name__)


def log_step(store, run_id: Optional[str], step: str, details: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Persist one audit entry; returns the stored row or None on failure."""
    entry = {
        "run_id": run_id,
        "step": step,
        "details": details,
        "timestamp": utcnow(),
    }
    try:
        return store.insert("audit_logs", entry)
    except StoreError as exc:
        logger.error("Audit log write failed (%s): %s", step, exc)
        return None
