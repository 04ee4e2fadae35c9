"""
Repositories - Persistence Layer

Each repository is an interface with an in-memory implementation (tests,
local development) and a SQL implementation (SQLModel over PostgreSQL or
SQLite).
"""

from outreach_agents.repositories.conversation import (
    ConversationRepository,
    InMemoryConversationRepository,
    SqlConversationRepository,
)
from outreach_agents.repositories.run import (
    InMemoryWorkflowRunRepository,
    SqlWorkflowRunRepository,
    WorkflowRunRepository,
)
from outreach_agents.repositories.session import (
    InMemorySessionRepository,
    SessionRepository,
    SqlSessionRepository,
)
from outreach_agents.repositories.workflow import (
    InMemoryWorkflowRepository,
    SqlWorkflowRepository,
    WorkflowRepository,
)

__all__ = [
    "ConversationRepository",
    "InMemoryConversationRepository",
    "InMemorySessionRepository",
    "InMemoryWorkflowRepository",
    "InMemoryWorkflowRunRepository",
    "SessionRepository",
    "SqlConversationRepository",
    "SqlSessionRepository",
    "SqlWorkflowRepository",
    "SqlWorkflowRunRepository",
    "WorkflowRepository",
    "WorkflowRunRepository",
]
