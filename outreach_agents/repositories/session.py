import copy
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

# Domain & Infra Imports
from ..infrastructure.database.connection import get_engine
from ..infrastructure.database.tables import SessionDBModel
from ..services.exceptions import NotFoundError, SessionBusyError
from ..state.models import TERMINAL_SESSION_STATUSES, AgentSession


class SessionRepository(ABC):
    """
    Defines how the application accesses agent sessions.

    Every write of an existing session happens under a lease: a token plus
    an expiry. At most one caller holds an unexpired lease on a session, so
    concurrent resumes cannot both apply. An expired lease may be taken over.
    """

    @abstractmethod
    def create(self, session: AgentSession, lease_token: Optional[str] = None, lease_seconds: float = 0):
        """Inserts a new session, optionally already leased to lease_token."""
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional[AgentSession]:
        pass

    @abstractmethod
    def save(self, session: AgentSession, lease_token: str):
        """
        Persists the session state.
        Raises SessionBusyError if lease_token no longer holds the lease.
        """
        pass

    @abstractmethod
    def acquire_lease(self, session_id: str, token: str, lease_seconds: float, now: Optional[float] = None) -> bool:
        """Returns False when another unexpired lease is held."""
        pass

    @abstractmethod
    def release_lease(self, session_id: str, token: str):
        pass

    @abstractmethod
    def request_cancel(self, session_id: str) -> bool:
        """Flags a non-terminal session for cancellation. Returns False if it is already terminal."""
        pass

    @abstractmethod
    def is_cancel_requested(self, session_id: str) -> bool:
        pass


class InMemorySessionRepository(SessionRepository):
    """
    Uses in-memory dictionary for session storage for testing/dev purposes.
    Stored states are copied on the way in and out, as a database would.
    """

    def __init__(self):
        self._store: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, session: AgentSession, lease_token: Optional[str] = None, lease_seconds: float = 0):
        with self._lock:
            self._store[session.id] = {
                "state": session.model_dump(),
                "lease_token": lease_token,
                "lease_expires_at": time.time() + lease_seconds if lease_token else None,
                "cancel_requested": False,
            }

    def get(self, session_id: str) -> Optional[AgentSession]:
        with self._lock:
            record = self._store.get(session_id)
            if record is None:
                return None
            return AgentSession.model_validate(copy.deepcopy(record["state"]))

    def save(self, session: AgentSession, lease_token: str):
        with self._lock:
            record = self._require(session.id)
            if record["lease_token"] != lease_token:
                raise SessionBusyError(f"Lease on session {session.id} was lost")
            session.updated_at = datetime.now(timezone.utc)
            record["state"] = session.model_dump()

    def acquire_lease(self, session_id: str, token: str, lease_seconds: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            record = self._require(session_id)
            held = record["lease_token"] is not None and record["lease_expires_at"] > now
            if held and record["lease_token"] != token:
                return False
            record["lease_token"] = token
            record["lease_expires_at"] = now + lease_seconds
            return True

    def release_lease(self, session_id: str, token: str):
        with self._lock:
            record = self._store.get(session_id)
            if record and record["lease_token"] == token:
                record["lease_token"] = None
                record["lease_expires_at"] = None

    def request_cancel(self, session_id: str) -> bool:
        with self._lock:
            record = self._require(session_id)
            if record["state"]["status"] in TERMINAL_SESSION_STATUSES:
                return False
            record["cancel_requested"] = True
            return True

    def is_cancel_requested(self, session_id: str) -> bool:
        with self._lock:
            record = self._store.get(session_id)
            return bool(record and record["cancel_requested"])

    def _require(self, session_id: str) -> dict:
        if session_id not in self._store:
            raise NotFoundError(f"Session {session_id} not found")
        return self._store[session_id]


class SqlSessionRepository(SessionRepository):
    """
    SQL storage for session state (JSONB on PostgreSQL, JSON elsewhere).
    Lease checks are conditional UPDATEs, so they hold across processes.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    def create(self, session: AgentSession, lease_token: Optional[str] = None, lease_seconds: float = 0):
        db_model = SessionDBModel(
            session_id=session.id,
            account_id=session.account_id,
            status=session.status.value,
            state=session.model_dump(mode="json"),
            lease_token=lease_token,
            lease_expires_at=time.time() + lease_seconds if lease_token else None,
        )
        with Session(self.engine) as db:
            db.add(db_model)
            db.commit()

    def get(self, session_id: str) -> Optional[AgentSession]:
        with Session(self.engine) as db:
            result = db.get(SessionDBModel, session_id)
            if not result:
                return None

            # Deserialize JSON back into the Pydantic model
            return AgentSession.model_validate(result.state)

    def save(self, session: AgentSession, lease_token: str):
        session.updated_at = datetime.now(timezone.utc)
        statement = (
            update(SessionDBModel)
            .where(col(SessionDBModel.session_id) == session.id)
            .where(col(SessionDBModel.lease_token) == lease_token)
            .values(
                state=session.model_dump(mode="json"),
                status=session.status.value,
                updated_at=session.updated_at,
            )
        )
        with Session(self.engine) as db:
            result = db.exec(statement)
            db.commit()
            if result.rowcount != 1:
                self._require_exists(db, session.id)
                raise SessionBusyError(f"Lease on session {session.id} was lost")

    def acquire_lease(self, session_id: str, token: str, lease_seconds: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        statement = (
            update(SessionDBModel)
            .where(col(SessionDBModel.session_id) == session_id)
            .where(
                or_(
                    col(SessionDBModel.lease_token).is_(None),
                    col(SessionDBModel.lease_token) == token,
                    col(SessionDBModel.lease_expires_at) <= now,
                )
            )
            .values(lease_token=token, lease_expires_at=now + lease_seconds)
        )
        with Session(self.engine) as db:
            result = db.exec(statement)
            db.commit()
            if result.rowcount == 1:
                return True
            self._require_exists(db, session_id)
            return False

    def release_lease(self, session_id: str, token: str):
        statement = (
            update(SessionDBModel)
            .where(col(SessionDBModel.session_id) == session_id)
            .where(col(SessionDBModel.lease_token) == token)
            .values(lease_token=None, lease_expires_at=None)
        )
        with Session(self.engine) as db:
            db.exec(statement)
            db.commit()

    def request_cancel(self, session_id: str) -> bool:
        terminal = [status.value for status in TERMINAL_SESSION_STATUSES]
        statement = (
            update(SessionDBModel)
            .where(col(SessionDBModel.session_id) == session_id)
            .where(col(SessionDBModel.status).not_in(terminal))
            .values(cancel_requested=True)
        )
        with Session(self.engine) as db:
            result = db.exec(statement)
            db.commit()
            if result.rowcount == 1:
                return True
            self._require_exists(db, session_id)
            return False

    def is_cancel_requested(self, session_id: str) -> bool:
        with Session(self.engine) as db:
            statement = select(SessionDBModel.cancel_requested).where(
                SessionDBModel.session_id == session_id
            )
            return bool(db.exec(statement).first())

    @staticmethod
    def _require_exists(db: Session, session_id: str):
        if db.get(SessionDBModel, session_id) is None:
            raise NotFoundError(f"Session {session_id} not found")
