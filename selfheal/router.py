#!/usr/bin/env python3
"""Action router: turn a Decision into a persisted ActionProposal.

Routing by classification:

    platform_regression        -> create_engineering_incident
    migration_error            -> email_engineering
        held as pending_approval (tool NOT invoked) when approval is
        required or risk >= 7; otherwise the tool runs now.
    documentation_gap          -> request_doc_update
        pending_approval when approval is required; otherwise runs now.
    checkout_failure, auth_failure, webhook_failure, rate_limit
                               -> draft_ticket_reply (always a draft)
        pending_approval when approval is required or risk >= 5, else pending.
    merchant_misconfiguration  -> send_support_response when auto-execution
        is allowed and approval is not required; otherwise a draft
        (pending_approval / pending).

An invoked tool's ``success`` flag decides executed vs failed. Every
proposal gets a ``recommend`` audit entry; every autonomous execution also
gets an ``act`` entry.

Proposals waiting on a human are settled with ``review_proposal``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from selfheal.actions import default_tools
from selfheal.audit import log_step
from selfheal.config import DEFAULT_SETTINGS
from selfheal.store import RecordNotFoundError
from selfheal.timeouts import CallTimeoutError, call_with_timeout

logger = logging.getLogger(__name__)

HOLD_RISK_SCORE = 7
DRAFT_APPROVAL_SCORE = 5

ESCALATION_ACTIONS = {
    "platform_regression": "create_engineering_incident",
    "migration_error": "email_engineering",
}
DRAFT_CLASSIFICATIONS = ("checkout_failure", "auth_failure", "webhook_failure", "rate_limit")

REVIEW_DECISIONS = ("approve", "reject")
REVIEWABLE_STATUSES = ("pending_approval", "pending")


def invoke_tool(tool, action_type: str, payload: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
    """Run one tool call under a timeout and normalize its result.

    A tool exception or a non-dict result becomes ``{"success": False, ...}``.
    CallTimeoutError propagates so the caller decides what a timeout means.
    """
    try:
        result = call_with_timeout(
            tool.invoke,
            payload.get("subject", ""),
            payload.get("body", ""),
            payload.get("context") or {},
            timeout=timeout,
        )
    except CallTimeoutError:
        raise
    except Exception as exc:
        logger.exception("Tool %s raised; treating as failure", action_type)
        return {"success": False, "tool": action_type, "error": str(exc)}
    if not isinstance(result, dict):
        logger.warning("Tool %s returned %r; treating as failure", action_type, result)
        return {"success": False, "tool": action_type, "error": "Malformed tool result"}
    return result


def _tool_context(
    observation: Dict[str, Any],
    hypothesis: Dict[str, Any],
    decision: Dict[str, Any],
    score: int,
) -> Dict[str, Any]:
    metadata = observation.get("metadata") or {}
    return {
        "risk": score,
        "confidence": decision.get("confidence"),
        "classification": decision.get("classification"),
        "observation_id": observation.get("id"),
        "fingerprint": observation.get("fingerprint"),
        "affected_merchants": list(metadata.get("affected_merchants") or []),
        "merchant_count": observation.get("merchant_count"),
        "section": observation.get("migration_stage") or "general",
        "ticket_id": metadata.get("ticket_id") or "UNKNOWN",
        "hypothesis_cause": hypothesis.get("cause"),
    }


def build_message(
    action_type: str,
    observation: Dict[str, Any],
    hypothesis: Dict[str, Any],
) -> Dict[str, str]:
    """Subject and body for a tool. Wording is informational only."""
    fingerprint = observation.get("fingerprint")
    cause = hypothesis.get("cause") or "unknown"
    merchants = observation.get("merchant_count") or 1

    if action_type == "create_engineering_incident":
        return {
            "subject": f"Platform issue: {fingerprint}",
            "body": f"Likely cause: {cause}\nAffected merchants: {merchants}",
        }
    if action_type == "email_engineering":
        return {
            "subject": f"Migration alert: {fingerprint}",
            "body": f"Hypothesis: {cause}\n\nAffected merchants: {merchants}",
        }
    if action_type == "request_doc_update":
        return {
            "subject": observation.get("migration_stage") or "general",
            "body": cause,
        }
    if action_type == "send_support_response":
        return {
            "subject": f"Re: {fingerprint}",
            "body": (
                "Based on our analysis, this appears to be a configuration issue.\n\n"
                f"Likely cause: {cause}\n\nPlease verify your integration settings."
            ),
        }
    return {
        "subject": f"Re: {fingerprint}",
        "body": f"Likely cause: {cause}\n\nThis appears to affect {merchants} merchant(s).",
    }


class ActionRouter:
    """Select, gate and (when allowed) run the action for one decision."""

    def __init__(
        self,
        store,
        tools: Optional[Dict[str, Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        settings = settings or DEFAULT_SETTINGS
        self.store = store
        self.tools = tools if tools is not None else default_tools(settings)
        self.tool_timeout = float(
            settings.get("tool_timeout_seconds", DEFAULT_SETTINGS["tool_timeout_seconds"])
        )

    def _invoke(self, action_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return invoke_tool(self.tools[action_type], action_type, payload, self.tool_timeout)

    def route(
        self,
        run_id: Optional[str],
        observation: Dict[str, Any],
        hypothesis: Dict[str, Any],
        decision: Dict[str, Any],
        score: int,
        needs_approval: bool,
        auto_allowed: bool,
        decision_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build, persist and audit the ActionProposal for one decision.

        Raises:
            CallTimeoutError: a tool did not answer in time.
            StoreError: the proposal could not be persisted.
        """
        classification = decision.get("classification")
        context = _tool_context(observation, hypothesis, decision, score)
        tool_result: Optional[Dict[str, Any]] = None
        autonomous = False

        if classification in ESCALATION_ACTIONS:
            action_type = ESCALATION_ACTIONS[classification]
            hold = needs_approval or score >= HOLD_RISK_SCORE
            autonomous = not hold
        elif classification == "documentation_gap":
            action_type = "request_doc_update"
            hold = needs_approval
            autonomous = not hold
        elif classification in DRAFT_CLASSIFICATIONS:
            action_type = "draft_ticket_reply"
            hold = needs_approval or score >= DRAFT_APPROVAL_SCORE
        elif auto_allowed and not needs_approval:
            action_type = "send_support_response"
            hold = False
            autonomous = True
        else:
            action_type = "draft_ticket_reply"
            hold = needs_approval

        payload = dict(build_message(action_type, observation, hypothesis))
        payload["context"] = context

        if autonomous:
            tool_result = self._invoke(action_type, payload)
            status = "executed" if tool_result.get("success") else "failed"
        elif action_type == "draft_ticket_reply":
            tool_result = self._invoke(action_type, payload)
            if not tool_result.get("success"):
                status = "failed"
            else:
                status = "pending_approval" if hold else "pending"
        else:
            status = "pending_approval"

        auto_executed = autonomous and status == "executed"
        proposal = self.store.insert("action_proposals", {
            "run_id": run_id,
            "decision_id": decision_id,
            "observation_id": observation.get("id"),
            "action_type": action_type,
            "payload": payload,
            "status": status,
            "auto_executed": auto_executed,
            "tool_result": tool_result,
        })

        log_step(self.store, run_id, "recommend", {
            "proposal_id": proposal.get("id"),
            "action_type": action_type,
            "status": status,
            "requires_approval": needs_approval,
            "can_auto_execute": auto_allowed,
            "tool_success": tool_result.get("success") if tool_result else None,
        })
        if autonomous:
            log_step(self.store, run_id, "act", {
                "proposal_id": proposal.get("id"),
                "executed": auto_executed,
                "tool": action_type,
                "result": tool_result,
            })

        logger.info(
            "Routed %s -> %s (%s) for observation %s",
            classification, action_type, status, observation.get("id"),
        )
        return proposal


def review_proposal(
    store,
    proposal_id: str,
    decision: str,
    tools: Optional[Dict[str, Any]] = None,
    notes: str = "",
    run_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Apply a human approve/reject decision to a waiting proposal.

    Approving marks the proposal approved, runs its tool and settles it as
    executed or failed from the tool's success flag. A tool that raises or
    runs past ``timeout`` (default: the tool_timeout_seconds setting) settles
    it as failed. Rejecting marks it rejected. Either way a ``human_review``
    audit entry is written.

    Raises:
        ValueError: unknown decision, or the proposal is not awaiting review.
        RecordNotFoundError: no proposal with that id.
    """
    if decision not in REVIEW_DECISIONS:
        raise ValueError(f"Invalid decision: {decision!r} (must be approve or reject)")

    found = store.query("action_proposals", filters={"id": proposal_id}, limit=1)
    if not found:
        raise RecordNotFoundError(f"Proposal not found: {proposal_id}")
    proposal = found[0]
    if proposal.get("status") not in REVIEWABLE_STATUSES:
        raise ValueError(
            f"Proposal {proposal_id} is {proposal.get('status')}; only "
            f"{' or '.join(REVIEWABLE_STATUSES)} proposals can be reviewed"
        )

    tool_result = None
    if decision == "reject":
        proposal = store.update("action_proposals", proposal_id, {"status": "rejected"})
    else:
        proposal = store.update("action_proposals", proposal_id, {"status": "approved"})
        tools = tools if tools is not None else default_tools()
        if timeout is None:
            timeout = DEFAULT_SETTINGS["tool_timeout_seconds"]
        action_type = proposal["action_type"]
        try:
            tool_result = invoke_tool(tools[action_type], action_type, proposal.get("payload") or {}, timeout)
        except CallTimeoutError as exc:
            logger.warning("Approved proposal %s: %s", proposal_id, exc)
            tool_result = {"success": False, "tool": action_type, "error": str(exc)}
        success = bool(tool_result.get("success"))
        proposal = store.update("action_proposals", proposal_id, {
            "status": "executed" if success else "failed",
            "tool_result": tool_result,
        })

    log_step(store, run_id, "human_review", {
        "proposal_id": proposal_id,
        "decision": decision,
        "notes": notes,
        "status": proposal.get("status"),
        "tool_result": tool_result,
    })
    logger.info("Proposal %s reviewed: %s -> %s", proposal_id, decision, proposal.get("status"))
    return proposal
