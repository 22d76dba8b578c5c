#!/usr/bin/env python3
"""Pipeline orchestrator: one Observe -> Decide -> Act pass.

    Observe      cluster unprocessed events into observations
                 (no new events -> status "idle", nothing else runs)
    per active observation (newest last_seen first, then id; bounded):
      Synthesize   add migration stage, history, age
      Hypothesize  ask the hypothesis source (timeout-bounded)
                   (none -> "skip" audit entry, next observation)
      Evaluate     score every hypothesis, keep the highest score
      Decide       classify the best one, run the approval gate
      Act          route to a tool (may run it, may hold it for review)
      Learn        audit the outcome; an auto-executed action moves the
                   observation to "investigating"

Terminal states: "success", "idle", "error". An unexpected exception
aborts the run with an "error" audit entry (message and traceback);
everything already committed stays committed, so the next run converges.
A hypothesis-source or tool timeout, or a store failure while handling a
single observation, only skips that observation.

Usage (CLI):
    python -m selfheal.pipeline --events events.json
    python -m selfheal.pipeline --events events.json --summary --log-level DEBUG

Usage (import):
    from selfheal.pipeline import PipelineOrchestrator
    result = PipelineOrchestrator(store).run()

Output: JSON to stdout with status, run_id, results and duration_ms.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from selfheal.audit import log_step
from selfheal.classifier import classify
from selfheal.cluster import ClusterEngine
from selfheal.config import DEFAULT_SETTINGS, load_settings
from selfheal.context import ContextSynthesizer
from selfheal.formatter import build_learning_entries, format_run_summary
from selfheal.gate import can_auto_execute, requires_approval
from selfheal.hypotheses import TemplateHypothesisSource, normalize_hypotheses
from selfheal.risk import evaluate
from selfheal.router import ActionRouter
from selfheal.schema import InvalidEventError, ingest_event, new_id, utcnow
from selfheal.store import InMemoryEventStore, StoreError
from selfheal.timeouts import CallTimeoutError, call_with_timeout

logger = logging.getLogger(__name__)


class PipelineError(RuntimeError):
    """A pipeline run ended in the "error" state."""


def _empty_results() -> Dict[str, int]:
    return {
        "processed": 0,
        "analyzed": 0,
        "decisions": 0,
        "actions": 0,
        "auto_executed": 0,
        "skipped": 0,
    }


def order_observations(observations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Newest last_seen first; ties broken by ascending id."""
    by_id = sorted(observations, key=lambda o: str(o.get("id")))
    return sorted(
        by_id,
        key=lambda o: (o.get("last_seen") is not None, o.get("last_seen") or 0),
        reverse=True,
    )


class PipelineOrchestrator:
    """Wire the components together and run one pass."""

    def __init__(
        self,
        store,
        hypothesis_source=None,
        tools: Optional[Dict[str, Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update(settings or {})
        self.store = store
        self.clock = clock
        self.cluster = ClusterEngine(store, self.settings, clock=clock)
        self.context = ContextSynthesizer(store, self.settings, clock=clock)
        self.hypothesis_source = hypothesis_source or TemplateHypothesisSource()
        self.router = ActionRouter(store, tools=tools, settings=self.settings)
        self.max_observations = int(self.settings["max_observations_per_run"])
        self.hypothesis_timeout = float(self.settings["hypothesis_timeout_seconds"])

    # ── run ──

    def run(self) -> Dict[str, Any]:
        """Execute one pass and return the run result dict."""
        run_id = new_id()
        started = time.monotonic()
        results = _empty_results()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            observed = self.cluster.process_new_events()
            results["processed"] = observed["processed_count"]
            log_step(self.store, run_id, "observe", {
                "processed": observed["processed_count"],
                "clusters": observed["cluster_count"],
                "failed_groups": observed.get("failed_groups", 0),
            })

            if observed["processed_count"] == 0:
                logger.info("Run %s idle: no new events", run_id)
                return {
                    "status": "idle",
                    "run_id": run_id,
                    "message": "No new events to process",
                    "results": results,
                    "duration_ms": elapsed_ms(),
                }

            active = order_observations(
                self.store.query_observations(filters={"status": "active"})
            )[: self.max_observations]

            for observation in active:
                try:
                    self._process_observation(run_id, observation, results)
                except (CallTimeoutError, StoreError) as exc:
                    results["skipped"] += 1
                    logger.warning("Skipping observation %s: %s", observation.get("id"), exc)
                    log_step(self.store, run_id, "skip", {
                        "observation_id": observation.get("id"),
                        "reason": f"{type(exc).__name__}: {exc}",
                    })

        except Exception as exc:
            logger.exception("Pipeline run %s failed", run_id)
            log_step(self.store, run_id, "error", {
                "message": str(exc),
                "traceback": traceback.format_exc(),
            })
            return {
                "status": "error",
                "run_id": run_id,
                "error": str(exc),
                "results": results,
                "duration_ms": elapsed_ms(),
            }

        logger.info("Run %s finished: %s", run_id, results)
        return {
            "status": "success",
            "run_id": run_id,
            "results": results,
            "duration_ms": elapsed_ms(),
        }

    def run_or_raise(self) -> Dict[str, Any]:
        """Like run(), but raise PipelineError when the run ends in error."""
        result = self.run()
        if result["status"] == "error":
            raise PipelineError(result["error"])
        return result

    # ── per observation ──

    def _hypothesize(self, run_id: str, synthesized: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            raw = call_with_timeout(
                self.hypothesis_source.generate_hypotheses,
                synthesized,
                timeout=self.hypothesis_timeout,
            )
        except CallTimeoutError:
            raise
        except Exception as exc:
            # An external source failing is "no opinion" for this run.
            logger.warning(
                "Hypothesis source failed for observation %s: %s", synthesized.get("id"), exc
            )
            raw = None
        hypotheses = normalize_hypotheses(raw)
        log_step(self.store, run_id, "hypothesize", {
            "observation_id": synthesized.get("id"),
            "hypotheses_count": len(hypotheses),
            "source": raw.get("source") if isinstance(raw, dict) else None,
        })
        return hypotheses

    def _skip(self, run_id: str, observation: Dict[str, Any], reason: str, results: Dict[str, int]):
        results["skipped"] += 1
        logger.info("Skipping observation %s: %s", observation.get("id"), reason)
        log_step(self.store, run_id, "skip", {"observation_id": observation.get("id"), "reason": reason})

    def _process_observation(self, run_id: str, observation: Dict[str, Any], results: Dict[str, int]):
        synthesized = self.context.synthesize(observation)
        log_step(self.store, run_id, "synthesize", {
            "observation_id": synthesized["id"],
            "fingerprint": synthesized.get("fingerprint"),
            "migration_stage": synthesized.get("migration_stage"),
            "historical_pattern": synthesized.get("historical_pattern"),
            "time_since_first_hours": round(synthesized.get("time_since_first_hours", 0.0), 2),
            "merchant_count": synthesized.get("merchant_count"),
        })

        hypotheses = self._hypothesize(run_id, synthesized)
        if not hypotheses:
            self._skip(run_id, synthesized, "No hypotheses generated", results)
            return
        results["analyzed"] += 1

        best = None
        for hypothesis in hypotheses:
            try:
                saved = self.store.insert("hypotheses", {
                    "run_id": run_id,
                    "observation_id": synthesized["id"],
                    **hypothesis,
                })
            except StoreError as exc:
                logger.error("Hypothesis insert failed for %s: %s", synthesized["id"], exc)
                continue
            risk = evaluate(synthesized, hypothesis)
            try:
                risk_id = self.store.insert("risk_assessments", {
                    "run_id": run_id,
                    "hypothesis_id": saved["id"],
                    **risk,
                })["id"]
            except StoreError as exc:
                # The in-memory assessment still competes for best.
                logger.error("Risk assessment insert failed for %s: %s", saved["id"], exc)
                risk_id = None
            log_step(self.store, run_id, "evaluate_risk", {
                "hypothesis_id": saved["id"],
                "score": risk["score"],
                "factors": risk["factors"],
            })
            # Strictly greater: the first hypothesis wins ties.
            if best is None or risk["score"] > best["risk"]["score"]:
                best = {"hypothesis": hypothesis, "risk": risk, "risk_id": risk_id}

        if best is None:
            self._skip(run_id, synthesized, "No best hypothesis", results)
            return

        hypothesis, risk = best["hypothesis"], best["risk"]
        decision = classify(synthesized, hypothesis, risk)
        score = risk["score"]
        needs_approval = requires_approval(score, decision["confidence"], decision["classification"])
        auto_allowed = can_auto_execute(score, decision["confidence"], decision["classification"])

        saved_decision = self.store.insert("decisions", {
            "run_id": run_id,
            "observation_id": synthesized["id"],
            "risk_id": best["risk_id"],
            **decision,
        })
        results["decisions"] += 1
        log_step(self.store, run_id, "decide", {
            "decision_id": saved_decision["id"],
            "classification": decision["classification"],
            "confidence": decision["confidence"],
            "reasoning": decision["reasoning"],
            "requires_approval": needs_approval,
            "can_auto_execute": auto_allowed,
            "risk": score,
        })

        proposal = self.router.route(
            run_id, synthesized, hypothesis, decision, score,
            needs_approval, auto_allowed, decision_id=saved_decision["id"],
        )
        results["actions"] += 1
        if proposal.get("auto_executed"):
            results["auto_executed"] += 1

        self._learn(run_id, synthesized, hypothesis, risk, decision, proposal, needs_approval)

    def _learn(self, run_id, synthesized, hypothesis, risk, decision, proposal, needs_approval):
        if proposal.get("auto_executed") and proposal.get("status") == "executed":
            self.store.update_observation(synthesized["id"], {"status": "investigating"})

        log_step(self.store, run_id, "learn", {
            "observation_id": synthesized["id"],
            "outcome": proposal.get("status"),
            "action_type": proposal.get("action_type"),
            "auto_executed": bool(proposal.get("auto_executed")),
        })

        entries = build_learning_entries(
            run_id, synthesized, hypothesis, risk, decision, proposal, needs_approval
        )
        for entry in entries:
            try:
                self.store.insert("agent_learnings", entry)
            except StoreError as exc:
                logger.error("Learning entry insert failed (%s): %s", entry["phase"], exc)
                break


# ──────────────────────────────────────────────────
# CLI interface
# ──────────────────────────────────────────────────

def load_event_bodies(path: Path) -> List[Dict[str, Any]]:
    """Read signal bodies from a JSON file: a list, or {"events": [...]}."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("events", [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of events in {path}")
    return data


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments for CLI usage."""
    parser = argparse.ArgumentParser(
        description="Ingest signals into an in-memory store and run one pipeline pass"
    )
    parser.add_argument(
        "--events", required=True,
        help="Path to JSON file with raw signal bodies (list or {\"events\": [...]})"
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to a pipeline.yaml settings file (default: data/config/pipeline.yaml)"
    )
    parser.add_argument(
        "--summary", action="store_true",
        help="Print a short text summary instead of JSON"
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity on stderr"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """CLI entry point: ingest events, run the pipeline, print the result."""
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    events_path = Path(args.events)
    if not events_path.exists():
        print(json.dumps({"error": f"File not found: {args.events}"}))
        sys.exit(1)

    settings = load_settings(Path(args.config) if args.config else None)
    store = InMemoryEventStore()

    accepted, rejected = 0, []
    for index, body in enumerate(load_event_bodies(events_path)):
        try:
            ingest_event(store, body)
            accepted += 1
        except InvalidEventError as exc:
            rejected.append({"index": index, "error": str(exc)})

    result = PipelineOrchestrator(store, settings=settings).run()
    result["ingest"] = {"accepted": accepted, "rejected": rejected}

    if args.summary:
        print(format_run_summary(result))
    else:
        print(json.dumps(result, indent=2))

    if result["status"] == "error":
        sys.exit(1)


if __name__ == "__main__":
    main()
