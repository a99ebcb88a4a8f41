"""Workflow automaton for the Kanzlei pipeline board.

Moves projects through the board buckets on a schedule:
reminders for Konzeptblatt and Angebot mailings, closing projects
without feedback, and the hand-over from Bearbeitung to Nacharbeitung.

rules.py decides, service.py applies. Triggered by the HTTP endpoint
(api.py), the CLI (cli.py) or the CI schedule (scripts/ci).
"""

from .buckets import Bucket, BucketDefinition, BUCKET_DEFINITIONS, group_by_bucket
from .config import CandidateFilter, WorkflowConfig, load_config, get_config
from .errors import MalformedProjectError, RepositoryError, StaleProjectError
from .models import Base, LawFirm, Project, ProjectSnapshot, Template, WorkflowLog
from .repository import (
    AuditEntry,
    SqlAuditLog,
    SqlProjectRepository,
    SqlTemplateRepository,
)
from .rules import TransitionPlan, decide, is_due
from .service import (
    AuditLogger,
    MutationApplier,
    NotificationDispatcher,
    NotificationOutcome,
    RunCoordinator,
    RunStatus,
    RunSummary,
)

__all__ = [
    # Buckets
    "Bucket",
    "BucketDefinition",
    "BUCKET_DEFINITIONS",
    "group_by_bucket",
    # Config
    "CandidateFilter",
    "WorkflowConfig",
    "load_config",
    "get_config",
    # Errors
    "MalformedProjectError",
    "RepositoryError",
    "StaleProjectError",
    # Models
    "Base",
    "LawFirm",
    "Project",
    "ProjectSnapshot",
    "Template",
    "WorkflowLog",
    # Repositories
    "AuditEntry",
    "SqlAuditLog",
    "SqlProjectRepository",
    "SqlTemplateRepository",
    # Rules
    "TransitionPlan",
    "decide",
    "is_due",
    # Service
    "AuditLogger",
    "MutationApplier",
    "NotificationDispatcher",
    "NotificationOutcome",
    "RunCoordinator",
    "RunStatus",
    "RunSummary",
]
