"""SQLAlchemy 2.0 models for the Kanzlei pipeline.

Four tables:
- law_firms:      Kanzleien referenced by projects
- projects:       Mandanten-Projekte moving through the board buckets
- templates:      Mail templates (Vorlagen), looked up by exact name
- workflow_logs:  Append-only audit trail of automaton actions
"""
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from .buckets import DEFAULT_BUCKET
from .errors import MalformedProjectError

DEFAULT_STATUS = "Nicht begonnen"

# YYYY-MM-DD, optionally followed by a time part after "T" or a space
_ISO_DUE_DATE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ](\S+))?$")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all pipeline models."""
    pass


class LawFirm(Base):
    """A Kanzlei, the law firm a project belongs to."""
    __tablename__ = "law_firms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)

    projects: Mapped[list["Project"]] = relationship(back_populates="law_firm")

    def __repr__(self) -> str:
        return f"<LawFirm(id={self.id}, name='{self.name}')>"


class Project(Base):
    """A project on the board — the unit the workflow automaton acts on.

    due_date is stored as ISO text (YYYY-MM-DD) and parsed per project, so
    one bad value cannot break the whole candidate query.
    """
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    law_firm_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("law_firms.id", ondelete="SET NULL"), nullable=True
    )
    project_type: Mapped[Optional[str]] = mapped_column(String(50))  # Selbstbucher / Auftragsbuchhaltung

    # --- Pipeline ---
    bucket: Mapped[str] = mapped_column(
        String(100), nullable=False, default=DEFAULT_BUCKET.value
    )
    status: Mapped[str] = mapped_column(String(100), nullable=False, default=DEFAULT_STATUS)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="normal")
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[Optional[str]] = mapped_column(String(32))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    checklist: Mapped[Optional[list]] = mapped_column(JSON)

    # --- Bookkeeping ---
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    law_firm: Mapped[Optional["LawFirm"]] = relationship(back_populates="projects")
    logs: Mapped[list["WorkflowLog"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="WorkflowLog.created_at",
    )

    __table_args__ = (
        Index("ix_projects_bucket", "bucket"),
        Index("ix_projects_status", "status"),
        Index("ix_projects_due_date", "due_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Project(id={self.id}, bucket='{self.bucket}', "
            f"status='{self.status}', due={self.due_date})>"
        )


class Template(Base):
    """Mail template (Vorlage). Only the name matters to the automaton."""
    __tablename__ = "templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    subject: Mapped[Optional[str]] = mapped_column(String(500))
    body: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<Template(name='{self.name}')>"


class WorkflowLog(Base):
    """Audit trail: one row per automaton action or dispatched notification."""
    __tablename__ = "workflow_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="action")  # action / notification
    action: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)

    project: Mapped["Project"] = relationship(back_populates="logs")

    __table_args__ = (
        Index("ix_workflow_logs_project_id", "project_id"),
        Index("ix_workflow_logs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowLog(project_id={self.project_id}, kind='{self.kind}', "
            f"action='{self.action}')>"
        )


# ---------------------------------------------------------------------------
# Snapshot passed to the transition rules
# ---------------------------------------------------------------------------

def parse_due_date(value, project_id: str = "?") -> Optional[date]:
    """Parse a stored due date (ISO date or ISO timestamp) to a date.

    Raises MalformedProjectError for anything that is not an ISO date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    match = _ISO_DUE_DATE.match(text)
    if match is not None:
        try:
            if match.group(2):
                return datetime.fromisoformat(text).date()
            return date.fromisoformat(match.group(1))
        except ValueError:
            pass
    raise MalformedProjectError(project_id, f"unparseable due date {value!r}")


@dataclass(frozen=True)
class ProjectSnapshot:
    """Immutable view of a project as read at the start of a run."""
    id: str
    bucket: str
    status: str = ""
    due_date: Optional[date] = None
    notes: Optional[str] = None
    version: int = 1
    law_firm_id: Optional[str] = None
    law_firm_name: Optional[str] = None
    title: str = ""

    @classmethod
    def from_project(cls, project: "Project") -> "ProjectSnapshot":
        """Build a snapshot from an ORM row, validating the fields rules read."""
        if not project.bucket:
            raise MalformedProjectError(project.id, "missing bucket")
        law_firm = project.law_firm
        return cls(
            id=project.id,
            bucket=project.bucket,
            status=project.status or "",
            due_date=parse_due_date(project.due_date, project.id),
            notes=project.notes,
            version=project.version or 1,
            law_firm_id=project.law_firm_id,
            law_firm_name=law_firm.name if law_firm is not None else None,
            title=project.title or "",
        )
