"""
Inbound Reply Service - routes replies to outbound messages.

The transport (email webhook, SMS callback) extracts a clean
(token, text, contact, name) tuple from its envelope; this service decides
whether the reply belongs to a workflow run or an agent session and hands it
to the right component. Replies that cannot be routed (unknown token, owner
already finished) are reported as not processed instead of failing the
webhook, so the transport does not retry them forever.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..execution.engine import WorkflowRunEngine
from ..execution.events import Message
from ..execution.orchestrator import SessionOrchestrator
from .exceptions import NotFoundError, TerminalStateError, ValidationError
from .messaging import parse_reply_token

logger = logging.getLogger(__name__)


@dataclass
class ReplyOutcome:
    processed: bool
    reason: str
    owner_type: Optional[str] = None
    owner_id: Optional[str] = None
    events: List[str] = field(default_factory=list)


class InboundReplyService:
    def __init__(self, engine: WorkflowRunEngine, orchestrator: SessionOrchestrator):
        self.engine = engine
        self.orchestrator = orchestrator

    async def handle(
        self,
        token: str,
        text: str,
        contact: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ReplyOutcome:
        if not text or not text.strip():
            raise ValidationError("reply text must not be empty")

        parsed = parse_reply_token(token)
        if parsed is None:
            logger.warning(f"Inbound reply with unknown token {token!r} dropped")
            return ReplyOutcome(processed=False, reason="unknown_token")

        owner_type, owner_id = parsed
        try:
            if owner_type == "workflow":
                result = await self.engine.handle_reply(owner_id, text.strip(), contact, name)
                return ReplyOutcome(
                    processed=True,
                    reason=result.reason or result.status.value,
                    owner_type=owner_type,
                    owner_id=owner_id,
                )

            events = []
            async for event in self.orchestrator.resume(owner_id, Message(content=text.strip(), author="subject")):
                events.append(event.type.value)
            return ReplyOutcome(
                processed=True,
                reason=events[-1] if events else "recorded",
                owner_type=owner_type,
                owner_id=owner_id,
                events=events,
            )
        except NotFoundError:
            logger.warning(f"Inbound reply for unknown {owner_type} {owner_id} dropped")
            return ReplyOutcome(processed=False, reason=f"unknown_{owner_type}", owner_type=owner_type, owner_id=owner_id)
        except TerminalStateError:
            logger.info(f"Inbound reply for finished {owner_type} {owner_id} ignored")
            return ReplyOutcome(processed=False, reason=f"{owner_type}_ended", owner_type=owner_type, owner_id=owner_id)
