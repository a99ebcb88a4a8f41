"""Repository interfaces the automaton talks to, plus SQLAlchemy backends.

The automaton only needs three narrow collaborators:

    ProjectRepository   fetch_candidates(filter), update(id, fields, expected_version)
    TemplateRepository  find_by_name(name)
    AuditSink           append(entry)

Every SQLAlchemy failure is re-raised as RepositoryError so callers never
depend on the driver.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from .buckets import DEFAULT_BUCKET
from .config import CandidateFilter
from .database import session_scope
from .errors import RepositoryError, StaleProjectError
from .models import DEFAULT_STATUS, LawFirm, Project, Template, WorkflowLog
from .rules import GOVERNED_BUCKETS, STATUS_ERLEDIGT

logger = logging.getLogger(__name__)

# Fields the automaton may write
UPDATABLE_FIELDS = {"bucket", "status", "due_date", "notes"}


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record; kind is "action" or "notification"."""
    project_id: str
    action: str
    details: Optional[dict] = None
    kind: str = "action"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ProjectRepository(Protocol):
    async def fetch_candidates(self, candidate_filter: CandidateFilter) -> list[Project]:
        """Projects the automaton should look at in this run."""
        ...

    async def update(self, project_id: str, fields: dict[str, Any],
                     expected_version: int) -> None:
        """Write a partial update if the stored version still matches."""
        ...


class TemplateRepository(Protocol):
    async def find_by_name(self, name: str) -> Optional[Template]:
        ...


class AuditSink(Protocol):
    async def append(self, entry: AuditEntry) -> None:
        ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------

class SqlProjectRepository:
    """Projects table access. One session per call, safe for concurrent tasks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def fetch_candidates(self, candidate_filter: CandidateFilter) -> list[Project]:
        stmt = select(Project).options(selectinload(Project.law_firm))
        if candidate_filter == CandidateFilter.DUE_DATE_SET:
            stmt = stmt.where(Project.due_date.is_not(None))
        else:
            stmt = stmt.where(
                func.lower(Project.status) != STATUS_ERLEDIGT,
                Project.bucket.in_([b.value for b in GOVERNED_BUCKETS]),
            )
        stmt = stmt.order_by(Project.created_at, Project.id)

        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(stmt)
                projects = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Candidate query failed: {e}") from e

        logger.debug(f"Fetched {len(projects)} candidates (filter={candidate_filter.value})")
        return projects

    async def update(self, project_id: str, fields: dict[str, Any],
                     expected_version: int) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise RepositoryError(f"Refusing to update fields {sorted(unknown)}")

        values = dict(fields)
        if isinstance(values.get("due_date"), date):
            values["due_date"] = values["due_date"].isoformat()

        stmt = (
            update(Project)
            .where(Project.id == project_id, Project.version == expected_version)
            .values(
                **values,
                version=Project.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    exists = await session.scalar(
                        select(func.count(Project.id)).where(Project.id == project_id)
                    )
                    if not exists:
                        raise RepositoryError(f"Project {project_id} not found")
                    raise StaleProjectError(project_id, expected_version)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Update of project {project_id} failed: {e}") from e

    async def get(self, project_id: str) -> Optional[Project]:
        try:
            async with session_scope(self.session_factory) as session:
                return await session.get(
                    Project, project_id, options=[selectinload(Project.law_firm)]
                )
        except SQLAlchemyError as e:
            raise RepositoryError(f"Lookup of project {project_id} failed: {e}") from e

    async def create(
        self,
        title: str,
        bucket: str = DEFAULT_BUCKET.value,
        status: str = DEFAULT_STATUS,
        due_date: Optional[date] = None,
        notes: Optional[str] = None,
        law_firm_id: Optional[str] = None,
        **extra,
    ) -> Project:
        """Insert a project (manual entry / ingestion path)."""
        project = Project(
            title=title,
            bucket=bucket,
            status=status,
            due_date=due_date.isoformat() if isinstance(due_date, date) else due_date,
            notes=notes,
            law_firm_id=law_firm_id,
            **extra,
        )
        try:
            async with session_scope(self.session_factory) as session:
                session.add(project)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Insert of project '{title}' failed: {e}") from e
        return project

    async def create_law_firm(self, name: str) -> LawFirm:
        law_firm = LawFirm(name=name)
        try:
            async with session_scope(self.session_factory) as session:
                session.add(law_firm)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Insert of law firm '{name}' failed: {e}") from e
        return law_firm


class SqlTemplateRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_name(self, name: str) -> Optional[Template]:
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(
                    select(Template).where(Template.name == name)
                )
                return result.scalars().first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Template lookup '{name}' failed: {e}") from e

    async def upsert(self, name: str, subject: Optional[str] = None,
                     body: Optional[str] = None) -> Template:
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(
                    select(Template).where(Template.name == name)
                )
                template = result.scalars().first()
                if template is None:
                    template = Template(name=name)
                    session.add(template)
                template.subject = subject
                template.body = body
        except SQLAlchemyError as e:
            raise RepositoryError(f"Template upsert '{name}' failed: {e}") from e
        return template


class SqlAuditLog:
    """workflow_logs writer. Rows are only ever inserted."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, entry: AuditEntry) -> None:
        row = WorkflowLog(
            project_id=entry.project_id,
            kind=entry.kind,
            action=entry.action,
            details=entry.details,
            created_at=entry.timestamp,
        )
        try:
            async with session_scope(self.session_factory) as session:
                session.add(row)
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Audit append for project {entry.project_id} failed: {e}"
            ) from e

    async def list_for_project(self, project_id: str) -> list[WorkflowLog]:
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(
                    select(WorkflowLog)
                    .where(WorkflowLog.project_id == project_id)
                    .order_by(WorkflowLog.created_at, WorkflowLog.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Audit query for project {project_id} failed: {e}") from e
