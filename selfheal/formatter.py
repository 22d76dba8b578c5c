#!/usr/bin/env python3
"""Formatter: human-readable text from pipeline results.

Two outputs, both plain text derived from structured records:

1. Learning entries: one entry per phase of the loop (observe, synthesize,
   hypothesize, evaluate, decide, act, learn) for a processed observation.
   They are stored in the agent_learnings table and back the operator's
   activity feed. Wording is informational; nothing downstream parses it.

2. Run summary: a few lines describing one pipeline run, printed by the CLI
   next to the JSON result.

Usage (import):
    from selfheal.formatter import build_learning_entries, format_run_summary
    entries = build_learning_entries(run_id, synthesized, hypothesis, risk,
                                     decision, proposal, needs_approval)
    print(format_run_summary(run_result))
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


# ──────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────

# Learning types, one per phase.
PHASE_LEARNING_TYPES = {
    "observe": "pattern_detected",
    "synthesize": "knowledge_entry",
    "hypothesize": "classification_made",
    "evaluate": "trend_identified",
    "decide": "classification_made",
    "act": "trend_identified",
    "learn": "knowledge_entry",
}

# Blast radius wording by risk score, highest first.
BLAST_RADIUS_LEVELS = (
    (7, "HIGH - multiple merchants potentially affected"),
    (4, "MEDIUM - limited merchant impact"),
)
DEFAULT_BLAST_RADIUS = "LOW - isolated issue"

STATUS_LABELS = {
    "success": "OK",
    "idle": "IDLE",
    "error": "ERROR",
}


# ──────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────

def _pct(value: Any) -> str:
    try:
        return f"{round(float(value) * 100)}%"
    except (TypeError, ValueError):
        return "n/a"


def _blast_radius(score: int) -> str:
    for threshold, label in BLAST_RADIUS_LEVELS:
        if score >= threshold:
            return label
    return DEFAULT_BLAST_RADIUS


def _primary_merchant(observation: Dict[str, Any]) -> str:
    merchants = (observation.get("metadata") or {}).get("affected_merchants") or []
    if merchants:
        return str(merchants[0])
    return "unknown merchant"


def _entry(
    run_id: Optional[str],
    observation: Dict[str, Any],
    phase: str,
    title: str,
    description: str,
    confidence: float,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "run_id": run_id,
        "observation_id": observation.get("id"),
        "phase": phase,
        "learning_type": PHASE_LEARNING_TYPES[phase],
        "title": f"[{phase.upper()}] {title}",
        "description": description,
        "confidence": round(float(confidence), 2),
        "metadata": metadata or {},
    }


# ──────────────────────────────────────────────────
# Learning entries
# ──────────────────────────────────────────────────

def build_learning_entries(
    run_id: Optional[str],
    observation: Dict[str, Any],
    hypothesis: Dict[str, Any],
    risk: Dict[str, Any],
    decision: Dict[str, Any],
    proposal: Dict[str, Any],
    needs_approval: bool,
) -> List[Dict[str, Any]]:
    """Build the seven per-phase learning entries for one observation.

    Args:
        run_id: Pipeline run id.
        observation: SynthesizedObservation dict.
        hypothesis: The best (highest-risk) hypothesis.
        risk: Its RiskAssessment.
        decision: Decision from the classifier.
        proposal: The persisted ActionProposal.
        needs_approval: Output of the approval gate.

    Returns:
        List of dicts ready for the agent_learnings table, in phase order.
    """
    metadata = observation.get("metadata") or {}
    merchant = _primary_merchant(observation)
    fingerprint = observation.get("fingerprint")
    score = int(risk.get("score") or 0)
    classification = decision.get("classification")
    confidence = decision.get("confidence") or 0.0
    pattern = observation.get("historical_pattern") or "new"
    action_type = proposal.get("action_type")
    status = proposal.get("status")

    entries = [
        _entry(
            run_id, observation, "observe",
            f"Grouped {metadata.get('event_count', 0)} event(s)",
            f"Fingerprint {fingerprint} seen across {observation.get('merchant_count') or 1} "
            f"merchant(s), first affecting {merchant}. Signal types: "
            f"{', '.join(metadata.get('source_types') or []) or 'unknown'}.",
            0.9,
            {"fingerprint": fingerprint},
        ),
        _entry(
            run_id, observation, "synthesize",
            f"Context for {merchant}",
            f"Migration stage: {observation.get('migration_stage') or 'none'}. "
            f"Open for {observation.get('time_since_first_hours', 0.0):.1f}h. "
            f"History: {'none (new issue)' if pattern == 'new' else pattern}.",
            0.85,
            {"migration_stage": observation.get("migration_stage"), "historical_pattern": pattern},
        ),
        _entry(
            run_id, observation, "hypothesize",
            "Root cause candidate",
            f'Highest-risk hypothesis: "{hypothesis.get("cause")}" at '
            f"{_pct(hypothesis.get('confidence'))} confidence.",
            hypothesis.get("confidence") or 0.0,
            {"cause": hypothesis.get("cause")},
        ),
        _entry(
            run_id, observation, "evaluate",
            f"Risk {score}/10",
            f"Blast radius: {_blast_radius(score)}. Factors: "
            f"{', '.join(risk.get('factors') or []) or 'none'}. "
            f"{'Human approval required.' if needs_approval else 'Auto-execution permitted.'}",
            0.9,
            {"score": score, "factors": list(risk.get("factors") or [])},
        ),
        _entry(
            run_id, observation, "decide",
            f'Classified as "{classification}"',
            f"Confidence {_pct(confidence)}. {decision.get('reasoning') or ''}".strip(),
            confidence,
            {"classification": classification, "rule": decision.get("rule")},
        ),
        _entry(
            run_id, observation, "act",
            f"{(action_type or 'action').replace('_', ' ')} for {merchant}",
            f"Action {action_type} is {status}. "
            f"{'Auto-executed.' if proposal.get('auto_executed') else 'Awaiting human review.'}",
            confidence,
            {"action_type": action_type, "status": status, "proposal_id": proposal.get("id")},
        ),
        _entry(
            run_id, observation, "learn",
            "Pattern recorded",
            f"Fingerprint {fingerprint} will be recognized in future runs; "
            f"a recurrence raises its risk through the historical pattern.",
            0.95,
            {"fingerprint": fingerprint},
        ),
    ]
    return entries


# ──────────────────────────────────────────────────
# Run summary
# ──────────────────────────────────────────────────

def format_run_summary(result: Dict[str, Any]) -> str:
    """Render a pipeline run result as a short text block.

    Args:
        result: Dict returned by PipelineOrchestrator.run().

    Returns:
        Multi-line string; first line carries status, run id and duration.
    """
    status = result.get("status", "unknown")
    label = STATUS_LABELS.get(status, status.upper())
    lines = [
        f"[{label}] run {result.get('run_id')} finished in {result.get('duration_ms', 0)} ms",
    ]

    if status == "error":
        lines.append(f"Error: {result.get('error')}")
        return "\n".join(lines)
    if status == "idle":
        lines.append("No new events to process.")
        return "\n".join(lines)

    counts = result.get("results") or {}
    lines.append(
        f"Events processed: {counts.get('processed', 0)} | "
        f"observations analyzed: {counts.get('analyzed', 0)} | "
        f"skipped: {counts.get('skipped', 0)}"
    )
    lines.append(
        f"Decisions: {counts.get('decisions', 0)} | actions: {counts.get('actions', 0)} | "
        f"auto-executed: {counts.get('auto_executed', 0)}"
    )
    return "\n".join(lines)
