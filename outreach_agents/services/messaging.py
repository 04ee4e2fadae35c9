"""
Outbound messaging channel.

The core only knows this interface; real email/SMS dispatch lives outside.
Replies to an outbound message come back through the inbound webhook carrying
the reply token embedded in the reply-to address, which routes them to the
workflow run or agent session that sent the message.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

WORKFLOW_TOKEN_PREFIX = "wf_"
SESSION_TOKEN_PREFIX = "as_"


def workflow_reply_token(run_id: str) -> str:
    return f"{WORKFLOW_TOKEN_PREFIX}{run_id}"


def session_reply_token(session_id: str) -> str:
    return f"{SESSION_TOKEN_PREFIX}{session_id}"


def parse_reply_token(token: str) -> Optional[Tuple[str, str]]:
    """Returns ("workflow" | "session", owner_id), or None for unknown tokens."""
    token = (token or "").strip()
    if token.startswith(WORKFLOW_TOKEN_PREFIX) and len(token) > len(WORKFLOW_TOKEN_PREFIX):
        return "workflow", token[len(WORKFLOW_TOKEN_PREFIX):]
    if token.startswith(SESSION_TOKEN_PREFIX) and len(token) > len(SESSION_TOKEN_PREFIX):
        return "session", token[len(SESSION_TOKEN_PREFIX):]
    return None


@dataclass
class OutboundMessage:
    account_id: str
    to: str
    subject: str
    body: str
    reply_token: str


class MessageSender(ABC):
    @abstractmethod
    async def send(self, message: OutboundMessage) -> str:
        """Dispatches the message and returns the channel's message id."""
        pass


class LoggingMessageSender(MessageSender):
    """
    Development sender: logs the message instead of dispatching it.
    """

    def __init__(self, reply_domain: str = "replies.example.com"):
        self.reply_domain = reply_domain

    async def send(self, message: OutboundMessage) -> str:
        message_id = str(uuid.uuid4())
        logger.info(
            f"[outbound] {message_id} to={message.to} "
            f"reply_to=reply+{message.reply_token}@{self.reply_domain} subject={message.subject!r}"
        )
        return message_id
