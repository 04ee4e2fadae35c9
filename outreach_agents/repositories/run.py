import copy
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from ..infrastructure.database.connection import get_engine
from ..infrastructure.database.tables import WorkflowRunDBModel
from ..services.exceptions import NotFoundError
from ..state.models import RunStatus, WorkflowRun


class WorkflowRunRepository(ABC):
    """
    Defines how the application accesses workflow runs.

    Status changes are conditional writes: update() only applies when the
    stored status still equals expected_status, so two actors racing on the
    same run (a reply and the timeout tick) cannot both transition it.
    Leases serialize the longer read-evaluate-write cycles on a run.
    """

    @abstractmethod
    def create(self, run: WorkflowRun, lease_token: Optional[str] = None, lease_seconds: float = 0):
        pass

    @abstractmethod
    def get(self, run_id: str) -> Optional[WorkflowRun]:
        pass

    @abstractmethod
    def list(
        self,
        account_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[WorkflowRun]:
        """Runs matching every given filter, oldest first."""
        pass

    @abstractmethod
    def update(self, run: WorkflowRun, expected_status: RunStatus) -> bool:
        """Writes the run if its stored status is expected_status. Returns whether it applied."""
        pass

    @abstractmethod
    def acquire_lease(self, run_id: str, token: str, lease_seconds: float, now: Optional[float] = None) -> bool:
        pass

    @abstractmethod
    def release_lease(self, run_id: str, token: str):
        pass


class InMemoryWorkflowRunRepository(WorkflowRunRepository):
    def __init__(self):
        self._store: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, run: WorkflowRun, lease_token: Optional[str] = None, lease_seconds: float = 0):
        with self._lock:
            self._store[run.id] = {
                "state": run.model_dump(),
                "lease_token": lease_token,
                "lease_expires_at": time.time() + lease_seconds if lease_token else None,
            }

    def get(self, run_id: str) -> Optional[WorkflowRun]:
        with self._lock:
            record = self._store.get(run_id)
            if record is None:
                return None
            return WorkflowRun.model_validate(copy.deepcopy(record["state"]))

    def list(
        self,
        account_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[WorkflowRun]:
        with self._lock:
            runs = [WorkflowRun.model_validate(copy.deepcopy(r["state"])) for r in self._store.values()]
        runs = [
            run for run in runs
            if (account_id is None or run.account_id == account_id)
            and (status is None or run.status == status)
            and (workflow_id is None or run.workflow_id == workflow_id)
        ]
        return sorted(runs, key=lambda run: run.started_at)

    def update(self, run: WorkflowRun, expected_status: RunStatus) -> bool:
        with self._lock:
            record = self._store.get(run.id)
            if record is None:
                raise NotFoundError(f"Workflow run {run.id} not found")
            if record["state"]["status"] != expected_status:
                return False
            run.updated_at = datetime.now(timezone.utc)
            record["state"] = run.model_dump()
            return True

    def acquire_lease(self, run_id: str, token: str, lease_seconds: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            record = self._store.get(run_id)
            if record is None:
                raise NotFoundError(f"Workflow run {run_id} not found")
            held = record["lease_token"] is not None and record["lease_expires_at"] > now
            if held and record["lease_token"] != token:
                return False
            record["lease_token"] = token
            record["lease_expires_at"] = now + lease_seconds
            return True

    def release_lease(self, run_id: str, token: str):
        with self._lock:
            record = self._store.get(run_id)
            if record and record["lease_token"] == token:
                record["lease_token"] = None
                record["lease_expires_at"] = None


class SqlWorkflowRunRepository(WorkflowRunRepository):
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    def create(self, run: WorkflowRun, lease_token: Optional[str] = None, lease_seconds: float = 0):
        db_model = WorkflowRunDBModel(
            run_id=run.id,
            workflow_id=run.workflow_id,
            account_id=run.account_id,
            status=run.status.value,
            state=run.model_dump(mode="json"),
            lease_token=lease_token,
            lease_expires_at=time.time() + lease_seconds if lease_token else None,
            created_at=run.started_at,
        )
        with Session(self.engine) as db:
            db.add(db_model)
            db.commit()

    def get(self, run_id: str) -> Optional[WorkflowRun]:
        with Session(self.engine) as db:
            result = db.get(WorkflowRunDBModel, run_id)
            if not result:
                return None
            return WorkflowRun.model_validate(result.state)

    def list(
        self,
        account_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[WorkflowRun]:
        statement = select(WorkflowRunDBModel)
        if account_id is not None:
            statement = statement.where(WorkflowRunDBModel.account_id == account_id)
        if status is not None:
            statement = statement.where(WorkflowRunDBModel.status == status.value)
        if workflow_id is not None:
            statement = statement.where(WorkflowRunDBModel.workflow_id == workflow_id)
        statement = statement.order_by(col(WorkflowRunDBModel.created_at))

        with Session(self.engine) as db:
            return [WorkflowRun.model_validate(row.state) for row in db.exec(statement).all()]

    def update(self, run: WorkflowRun, expected_status: RunStatus) -> bool:
        run.updated_at = datetime.now(timezone.utc)
        statement = (
            update(WorkflowRunDBModel)
            .where(col(WorkflowRunDBModel.run_id) == run.id)
            .where(col(WorkflowRunDBModel.status) == expected_status.value)
            .values(
                state=run.model_dump(mode="json"),
                status=run.status.value,
                updated_at=run.updated_at,
            )
        )
        with Session(self.engine) as db:
            result = db.exec(statement)
            db.commit()
            if result.rowcount == 1:
                return True
            if db.get(WorkflowRunDBModel, run.id) is None:
                raise NotFoundError(f"Workflow run {run.id} not found")
            return False

    def acquire_lease(self, run_id: str, token: str, lease_seconds: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        statement = (
            update(WorkflowRunDBModel)
            .where(col(WorkflowRunDBModel.run_id) == run_id)
            .where(
                or_(
                    col(WorkflowRunDBModel.lease_token).is_(None),
                    col(WorkflowRunDBModel.lease_token) == token,
                    col(WorkflowRunDBModel.lease_expires_at) <= now,
                )
            )
            .values(lease_token=token, lease_expires_at=now + lease_seconds)
        )
        with Session(self.engine) as db:
            result = db.exec(statement)
            db.commit()
            if result.rowcount == 1:
                return True
            if db.get(WorkflowRunDBModel, run_id) is None:
                raise NotFoundError(f"Workflow run {run_id} not found")
            return False

    def release_lease(self, run_id: str, token: str):
        statement = (
            update(WorkflowRunDBModel)
            .where(col(WorkflowRunDBModel.run_id) == run_id)
            .where(col(WorkflowRunDBModel.lease_token) == token)
            .values(lease_token=None, lease_expires_at=None)
        )
        with Session(self.engine) as db:
            db.exec(statement)
            db.commit()
