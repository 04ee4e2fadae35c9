import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from ..infrastructure.database.connection import get_engine
from ..infrastructure.database.tables import ConversationEntryDBModel
from ..state.models import ConversationEntry, ConversationRole


class ConversationRepository(ABC):
    """
    Append-only conversation threads, keyed by the owning session or run id.

    Entries are never updated or deleted. append() never stores an entry
    dated before the previous entry of the same thread, so (created_at,
    sequence) ordering always matches insertion order.
    """

    @abstractmethod
    def append(self, entry: ConversationEntry) -> ConversationEntry:
        """Stores the entry and returns it with its sequence (and clamped timestamp)."""
        pass

    @abstractmethod
    def list_for_owner(self, owner_id: str) -> List[ConversationEntry]:
        """The owner's thread, oldest first."""
        pass


class InMemoryConversationRepository(ConversationRepository):
    def __init__(self):
        self._threads: Dict[str, List[ConversationEntry]] = defaultdict(list)
        self._sequence = 0
        self._lock = threading.Lock()

    def append(self, entry: ConversationEntry) -> ConversationEntry:
        with self._lock:
            thread = self._threads[entry.owner_id]
            self._sequence += 1
            created_at = entry.created_at
            if thread and created_at < thread[-1].created_at:
                created_at = thread[-1].created_at
            stored = entry.model_copy(update={"sequence": self._sequence, "created_at": created_at})
            thread.append(stored)
            return stored.model_copy()

    def list_for_owner(self, owner_id: str) -> List[ConversationEntry]:
        with self._lock:
            return [entry.model_copy() for entry in self._threads.get(owner_id, [])]


class SqlConversationRepository(ConversationRepository):
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    def append(self, entry: ConversationEntry) -> ConversationEntry:
        with Session(self.engine) as db:
            last = db.exec(
                select(ConversationEntryDBModel)
                .where(ConversationEntryDBModel.owner_id == entry.owner_id)
                .order_by(col(ConversationEntryDBModel.sequence).desc())
            ).first()

            created_at = entry.created_at
            if last is not None and created_at.replace(tzinfo=None) < last.created_at.replace(tzinfo=None):
                created_at = last.created_at

            row = ConversationEntryDBModel(
                entry_id=entry.id,
                owner_id=entry.owner_id,
                role=entry.role.value,
                content=entry.content,
                evaluation=entry.evaluation,
                created_at=created_at,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return self._to_entry(row)

    def list_for_owner(self, owner_id: str) -> List[ConversationEntry]:
        statement = (
            select(ConversationEntryDBModel)
            .where(ConversationEntryDBModel.owner_id == owner_id)
            .order_by(col(ConversationEntryDBModel.created_at), col(ConversationEntryDBModel.sequence))
        )
        with Session(self.engine) as db:
            return [self._to_entry(row) for row in db.exec(statement).all()]

    @staticmethod
    def _to_entry(row: ConversationEntryDBModel) -> ConversationEntry:
        return ConversationEntry(
            id=row.entry_id,
            owner_id=row.owner_id,
            role=ConversationRole(row.role),
            content=row.content,
            evaluation=row.evaluation,
            created_at=row.created_at,
            sequence=row.sequence,
        )
