#!/usr/bin/env python3
"""Action tools: the side-effecting end of the pipeline.

Every tool exposes ``invoke(subject, body, context) -> {"success": bool, ...}``.
The built-in tools are in-process stand-ins: they log what they would send
and return a result with a generated reference id. Real integrations
(paging, mail, ticketing, docs tracker) replace them by implementing the
same ``invoke`` contract and being passed to the router in a tools mapping.

    action_type                   tool                      notes
    create_engineering_incident   EngineeringIncidentTool   severity from risk
    email_engineering             EngineeringEmailTool      [CRITICAL]/[ALERT]
    request_doc_update            DocUpdateTool
    draft_ticket_reply            TicketDraftTool           never sends
    send_support_response         SupportResponseTool       safety-checked

``context`` carries the numbers a tool may need: risk, confidence,
observation_id, fingerprint, affected_merchants, section, ticket_id.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from selfheal.config import DEFAULT_SETTINGS

logger = logging.getLogger(__name__)

# Body preview length in log lines.
PREVIEW_LENGTH = 100

# Risk thresholds for incident severity, highest first.
SEVERITY_THRESHOLDS = ((9, "p1"), (7, "p2"), (5, "p3"))
DEFAULT_SEVERITY = "p4"

CRITICAL_EMAIL_RISK = 7

# send_support_response refuses to run outside this envelope.
AUTO_SEND_MAX_RISK = 3
AUTO_SEND_MIN_CONFIDENCE = 0.9


def _reference(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def _preview(text: str) -> str:
    text = str(text or "")
    return text if len(text) <= PREVIEW_LENGTH else text[:PREVIEW_LENGTH] + "..."


def _number(context: Dict[str, Any], key: str, default: float = 0.0) -> float:
    try:
        return float(context.get(key, default))
    except (TypeError, ValueError):
        return default


def incident_severity(risk: float) -> str:
    for threshold, severity in SEVERITY_THRESHOLDS:
        if risk >= threshold:
            return severity
    return DEFAULT_SEVERITY


class ActionTool:
    """Base class for action tools."""

    name = "tool"

    def invoke(self, subject: str, body: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError


class EngineeringIncidentTool(ActionTool):
    """Open an engineering incident (paging-system style)."""

    name = "create_engineering_incident"

    def invoke(self, subject, body, context=None):
        context = context or {}
        risk = _number(context, "risk")
        severity = incident_severity(risk)
        incident_id = _reference("INC")
        affected = context.get("affected_merchants") or []
        logger.info("[INCIDENT] Creating %s incident %s: %s", severity.upper(), incident_id, subject)
        logger.info("[INCIDENT] Risk %g/10, %d affected merchant(s)", risk, len(affected))
        return {
            "success": True,
            "tool": self.name,
            "incident_id": incident_id,
            "severity": severity,
        }


class EngineeringEmailTool(ActionTool):
    """Alert the engineering inbox."""

    name = "email_engineering"

    def __init__(self, recipient: Optional[str] = None):
        self.recipient = recipient or DEFAULT_SETTINGS["engineering_email"]

    def invoke(self, subject, body, context=None):
        context = context or {}
        risk = _number(context, "risk")
        prefix = "[CRITICAL]" if risk >= CRITICAL_EMAIL_RISK else "[ALERT]"
        full_subject = f"{prefix} {subject}"
        message_id = _reference("EMAIL")
        logger.info("[EMAIL] To: %s", self.recipient)
        logger.info("[EMAIL] Subject: %s", full_subject)
        logger.info("[EMAIL] Body preview: %s", _preview(body))
        return {
            "success": True,
            "tool": self.name,
            "message_id": message_id,
            "to": self.recipient,
            "subject": full_subject,
        }


class DocUpdateTool(ActionTool):
    """File a documentation update request."""

    name = "request_doc_update"

    def invoke(self, subject, body, context=None):
        context = context or {}
        request_id = _reference("DOC")
        logger.info("[DOCS] Documentation update request %s", request_id)
        logger.info("[DOCS] Section: %s", context.get("section") or subject)
        logger.info("[DOCS] Suggestion: %s", _preview(body))
        return {"success": True, "tool": self.name, "request_id": request_id}


class TicketDraftTool(ActionTool):
    """Draft a support ticket reply for human review. Never sends."""

    name = "draft_ticket_reply"

    def invoke(self, subject, body, context=None):
        context = context or {}
        ticket_id = context.get("ticket_id") or "UNKNOWN"
        draft_id = _reference("DRAFT")
        logger.info("[TICKET-DRAFT] Ticket %s, draft %s", ticket_id, draft_id)
        logger.info("[TICKET-DRAFT] Message: %s", _preview(body))
        return {
            "success": True,
            "tool": self.name,
            "ticket_id": ticket_id,
            "draft_id": draft_id,
        }


class SupportResponseTool(ActionTool):
    """Send a support reply without review, inside a hard safety envelope."""

    name = "send_support_response"

    def invoke(self, subject, body, context=None):
        context = context or {}
        risk = _number(context, "risk", default=float("inf"))
        confidence = _number(context, "confidence")
        ticket_id = context.get("ticket_id") or "UNKNOWN"

        if risk > AUTO_SEND_MAX_RISK:
            logger.warning("[SAFETY] Blocked auto-send: risk %g > %d", risk, AUTO_SEND_MAX_RISK)
            return {"success": False, "tool": self.name, "error": "Risk too high for auto-send"}
        if confidence < AUTO_SEND_MIN_CONFIDENCE:
            logger.warning(
                "[SAFETY] Blocked auto-send: confidence %.2f < %.2f",
                confidence, AUTO_SEND_MIN_CONFIDENCE,
            )
            return {"success": False, "tool": self.name, "error": "Confidence too low for auto-send"}

        logger.info("[TICKET-SEND] Auto-sending to ticket %s (risk %g, confidence %.2f)",
                    ticket_id, risk, confidence)
        logger.info("[TICKET-SEND] Message: %s", _preview(body))
        return {"success": True, "tool": self.name, "ticket_id": ticket_id}


def default_tools(settings: Optional[Dict[str, Any]] = None) -> Dict[str, ActionTool]:
    """Built-in tool registry keyed by action type."""
    settings = settings or DEFAULT_SETTINGS
    return {
        EngineeringIncidentTool.name: EngineeringIncidentTool(),
        EngineeringEmailTool.name: EngineeringEmailTool(settings.get("engineering_email")),
        DocUpdateTool.name: DocUpdateTool(),
        TicketDraftTool.name: TicketDraftTool(),
        SupportResponseTool.name: SupportResponseTool(),
    }
