"""
Built-in tools available to every deployment.

messaging  - send_message (third party)
escalation - flag_issue (internal)
notes      - record_note (no side effect)
"""

from typing import Any, Dict

from ..services.messaging import OutboundMessage, session_reply_token
from ..services.notifications import notify_best_effort
from .registry import ToolRegistry
from .types import AgentTool, RiskClass, ToolContext


async def send_message(arguments: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    to = str(arguments.get("to") or "").strip()
    body = str(arguments.get("body") or "").strip()
    if not to or not body:
        return {"error": "send_message requires 'to' and 'body'"}

    reply_token = session_reply_token(ctx.session_id)
    message_id = await ctx.sender.send(
        OutboundMessage(
            account_id=ctx.account_id,
            to=to,
            subject=str(arguments.get("subject") or "Checking in"),
            body=body,
            reply_token=reply_token,
        )
    )
    return {"message_id": message_id, "reply_token": reply_token, "to": to}


async def flag_issue(arguments: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    summary = str(arguments.get("summary") or "").strip()
    if not summary:
        return {"error": "flag_issue requires 'summary'"}
    severity = str(arguments.get("severity") or "medium")
    delivered = await notify_best_effort(
        ctx.notifier, ctx.account_id, f"Agent flagged an issue ({severity})", summary
    )
    return {"flagged": True, "severity": severity, "owner_notified": delivered}


async def record_note(arguments: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    note = str(arguments.get("note") or "").strip()
    if not note:
        return {"error": "record_note requires 'note'"}
    notes = ctx.session_context.setdefault("notes", [])
    notes.append(note)
    return {"noted": True, "note_count": len(notes)}


SEND_MESSAGE = AgentTool(
    name="send_message",
    description="Send a message to a member or lead. Replies come back into this session.",
    parameters={
        "type": "object",
        "properties": {
            "to": {"type": "string", "description": "Recipient email address or phone number"},
            "subject": {"type": "string"},
            "body": {"type": "string"},
        },
        "required": ["to", "body"],
    },
    risk=RiskClass.THIRD_PARTY,
    execute=send_message,
    target_argument="to",
)

FLAG_ISSUE = AgentTool(
    name="flag_issue",
    description="Flag something that needs the business owner's attention.",
    parameters={
        "type": "object",
        "properties": {
            "summary": {"type": "string"},
            "severity": {"type": "string", "enum": ["low", "medium", "high"]},
        },
        "required": ["summary"],
    },
    risk=RiskClass.INTERNAL,
    execute=flag_issue,
)

RECORD_NOTE = AgentTool(
    name="record_note",
    description="Remember a fact for the rest of this session.",
    parameters={
        "type": "object",
        "properties": {"note": {"type": "string"}},
        "required": ["note"],
    },
    risk=RiskClass.NONE,
    execute=record_note,
)


def build_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_group("messaging", [SEND_MESSAGE])
    registry.register_group("escalation", [FLAG_ISSUE])
    registry.register_group("notes", [RECORD_NOTE])
    return registry
