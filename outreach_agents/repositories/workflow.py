import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from pydantic import TypeAdapter
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from ..domain.models import WorkflowTemplate
from ..infrastructure.database.connection import get_engine
from ..infrastructure.database.tables import WorkflowTemplateDBModel
from ..services.exceptions import NotFoundError, ValidationError

_template_adapter = TypeAdapter(WorkflowTemplate)


def template_to_json(template: WorkflowTemplate) -> dict:
    return _template_adapter.dump_python(template, mode="json")


def template_from_json(data: dict) -> WorkflowTemplate:
    return _template_adapter.validate_python(data)


# The Interface
class WorkflowRepository(ABC):
    """
    Defines how the application accesses workflow templates.

    Templates are versioned: add_version() stores an edited copy under the
    next version number and leaves earlier versions readable, so runs that
    pinned an older version keep working against it.
    """

    @abstractmethod
    def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> WorkflowTemplate:
        """
        Retrieves a template by ID; the latest version unless one is given.
        Raises NotFoundError if not found.
        """
        pass

    @abstractmethod
    def add(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Stores a new template as version 1. Raises ValidationError if the id is taken."""
        pass

    @abstractmethod
    def add_version(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Stores template as the next version of an existing id and returns it."""
        pass

    @abstractmethod
    def list_workflows(self, account_id: Optional[str] = None) -> List[WorkflowTemplate]:
        """
        Latest version of every template visible to account_id: its own
        templates plus shared system templates. All templates when None.
        """
        pass


def _validate(template: WorkflowTemplate):
    if not template.id or not template.id.strip():
        raise ValidationError("Template id must not be empty")
    if not template.goal or not template.goal.strip():
        raise ValidationError(f"Template '{template.id}' has no goal")
    if not template.steps:
        raise ValidationError(f"Template '{template.id}' has no steps")
    if template.timeout_days <= 0:
        raise ValidationError(f"Template '{template.id}' timeout_days must be positive")
    step_ids = [step.id for step in template.steps]
    if len(set(step_ids)) != len(step_ids):
        raise ValidationError(f"Template '{template.id}' has duplicate step ids")
    for step in template.steps:
        if step.action == "send_message" and not (step.message or step.prompt):
            raise ValidationError(f"Step '{step.id}' sends a message but has neither message nor prompt")


def _visible(template: WorkflowTemplate, account_id: Optional[str]) -> bool:
    return account_id is None or template.account_id in (None, account_id)


class InMemoryWorkflowRepository(WorkflowRepository):
    """
    Keeps templates in memory, optionally seeded (e.g. with BUILTIN_TEMPLATES).
    """

    def __init__(self, templates: Iterable[WorkflowTemplate] = ()):
        # workflow_id -> {version -> template}
        self._index: Dict[str, Dict[int, WorkflowTemplate]] = {}
        self._lock = threading.Lock()
        for template in templates:
            self.add(template)

    def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> WorkflowTemplate:
        with self._lock:
            versions = self._index.get(workflow_id)
            if not versions:
                raise NotFoundError(f"Workflow '{workflow_id}' not found.")
            if version is None:
                version = max(versions)
            if version not in versions:
                raise NotFoundError(f"Workflow '{workflow_id}' has no version {version}.")
            return template_from_json(template_to_json(versions[version]))

    def add(self, template: WorkflowTemplate) -> WorkflowTemplate:
        _validate(template)
        with self._lock:
            if template.id in self._index:
                raise ValidationError(f"Workflow '{template.id}' already exists.")
            stored = replace(template, version=1)
            self._index[template.id] = {1: stored}
            return stored

    def add_version(self, template: WorkflowTemplate) -> WorkflowTemplate:
        _validate(template)
        with self._lock:
            versions = self._index.get(template.id)
            if not versions:
                raise NotFoundError(f"Workflow '{template.id}' not found.")
            stored = replace(template, version=max(versions) + 1)
            versions[stored.version] = stored
            return stored

    def list_workflows(self, account_id: Optional[str] = None) -> List[WorkflowTemplate]:
        with self._lock:
            latest = [versions[max(versions)] for versions in self._index.values()]
        return sorted((t for t in latest if _visible(t, account_id)), key=lambda t: t.id)


class SqlWorkflowRepository(WorkflowRepository):
    """
    Reads from the 'workflow_templates' table (JSONB on PostgreSQL).
    """

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> WorkflowTemplate:
        with Session(self.engine) as db:
            statement = select(WorkflowTemplateDBModel).where(
                WorkflowTemplateDBModel.workflow_id == workflow_id
            )
            if version is not None:
                statement = statement.where(WorkflowTemplateDBModel.version == version)
            statement = statement.order_by(col(WorkflowTemplateDBModel.version).desc())
            result = db.exec(statement).first()

            if not result:
                raise NotFoundError(f"Workflow '{workflow_id}' not found in database.")

            # Deserialize JSON -> dataclass
            return template_from_json(result.workflow_data)

    def add(self, template: WorkflowTemplate) -> WorkflowTemplate:
        _validate(template)
        stored = replace(template, version=1)
        with Session(self.engine) as db:
            if self._latest_version(db, template.id) is not None:
                raise ValidationError(f"Workflow '{template.id}' already exists.")
            db.add(self._to_row(stored))
            db.commit()
        return stored

    def add_version(self, template: WorkflowTemplate) -> WorkflowTemplate:
        _validate(template)
        with Session(self.engine) as db:
            latest = self._latest_version(db, template.id)
            if latest is None:
                raise NotFoundError(f"Workflow '{template.id}' not found in database.")
            stored = replace(template, version=latest + 1)
            db.add(self._to_row(stored))
            db.commit()
        return stored

    def list_workflows(self, account_id: Optional[str] = None) -> List[WorkflowTemplate]:
        latest = (
            select(
                WorkflowTemplateDBModel.workflow_id,
                func.max(WorkflowTemplateDBModel.version).label("version"),
            )
            .group_by(WorkflowTemplateDBModel.workflow_id)
            .subquery()
        )
        statement = (
            select(WorkflowTemplateDBModel)
            .join(
                latest,
                (col(WorkflowTemplateDBModel.workflow_id) == latest.c.workflow_id)
                & (col(WorkflowTemplateDBModel.version) == latest.c.version),
            )
            .order_by(col(WorkflowTemplateDBModel.workflow_id))
        )
        with Session(self.engine) as db:
            templates = [template_from_json(row.workflow_data) for row in db.exec(statement).all()]
        return [t for t in templates if _visible(t, account_id)]

    @staticmethod
    def _latest_version(db: Session, workflow_id: str) -> Optional[int]:
        statement = select(func.max(WorkflowTemplateDBModel.version)).where(
            WorkflowTemplateDBModel.workflow_id == workflow_id
        )
        return db.exec(statement).first()

    @staticmethod
    def _to_row(template: WorkflowTemplate) -> WorkflowTemplateDBModel:
        return WorkflowTemplateDBModel(
            workflow_id=template.id,
            version=template.version,
            account_id=template.account_id,
            title=template.name,
            workflow_data=template_to_json(template),
        )
