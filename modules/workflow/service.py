"""Workflow automaton: applies transition plans to the project store.

Flow per run:
    fetch_candidates() → per project: snapshot → decide() → apply update
                                       → audit log → notification record
                     → RunSummary

Handles:
- Per-project error isolation (write failures, stale versions, bad data, timeouts)
- Optional concurrency across projects (projects never read each other)
- Cooperative cancellation between projects
- Template lookups cached for the duration of one run
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import CandidateFilter, WorkflowConfig
from .errors import MalformedProjectError, RepositoryError
from .models import Project, ProjectSnapshot, Template
from .repository import (
    AuditEntry,
    AuditSink,
    ProjectRepository,
    SqlAuditLog,
    SqlProjectRepository,
    SqlTemplateRepository,
    TemplateRepository,
)
from .rules import TransitionPlan, append_note, decide

logger = logging.getLogger(__name__)


class NotificationOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"  # template not found


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    LOGGED = "logged"  # audit entry only, no field change
    SKIPPED = "skipped"  # no rule fired
    FAILED = "failed"


class RunStatus(str, Enum):
    COMPLETED = "completed"  # at least one transition, no failures
    NO_DUE_WORK = "no_due_work"  # no field changed, nothing failed
    PARTIAL_FAILURE = "partial_failure"  # some projects failed
    FETCH_FAILED = "fetch_failed"  # the run could not start
    CANCELLED = "cancelled"  # stopped before all projects were visited


@dataclass
class ProjectOutcome:
    project_id: str
    status: OutcomeStatus
    bucket: Optional[str] = None
    plan: Optional[dict] = None
    notification: Optional[NotificationOutcome] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "bucket": self.bucket,
            "plan": self.plan,
            "notification": self.notification.value if self.notification else None,
            "error": self.error,
        }


@dataclass
class RunSummary:
    today: date
    status: RunStatus = RunStatus.NO_DUE_WORK
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    logged: int = 0
    not_started: int = 0
    outcomes: list[ProjectOutcome] = field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.NO_DUE_WORK)

    def add(self, outcome: ProjectOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == OutcomeStatus.APPLIED:
            self.processed += 1
        elif outcome.status == OutcomeStatus.LOGGED:
            self.logged += 1
        elif outcome.status == OutcomeStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def finish(self, status: Optional[RunStatus] = None) -> "RunSummary":
        if status is None:
            if self.not_started:
                status = RunStatus.CANCELLED
            elif self.failed:
                status = RunStatus.PARTIAL_FAILURE
            elif self.processed:
                status = RunStatus.COMPLETED
            else:
                status = RunStatus.NO_DUE_WORK
        self.status = status
        self.finished_at = datetime.now(timezone.utc)
        return self

    def to_dict(self, include_outcomes: bool = True) -> dict:
        data = {
            "today": self.today.isoformat(),
            "status": self.status.value,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "logged": self.logged,
            "not_started": self.not_started,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if include_outcomes:
            # skipped projects are noise in reports
            data["outcomes"] = [
                o.to_dict() for o in self.outcomes if o.status != OutcomeStatus.SKIPPED
            ]
        return data


# ---------------------------------------------------------------------------
# Side-effect components
# ---------------------------------------------------------------------------

class AuditLogger:
    """Appends one immutable entry per automaton action."""

    def __init__(self, sink: AuditSink):
        self.sink = sink

    async def log(self, project_id: str, action: str,
                  details: Optional[dict] = None) -> AuditEntry:
        entry = AuditEntry(project_id=project_id, action=action, details=details)
        await self.sink.append(entry)
        logger.info(f"Project {project_id}: {action}")
        return entry


class NotificationDispatcher:
    """Records template-based mailings in the audit log.

    No mail leaves the system; the audit entry is the record of the dispatch.
    One instance lives for one run, so the template cache is per run.
    """

    def __init__(self, templates: TemplateRepository, sink: AuditSink):
        self.templates = templates
        self.sink = sink
        self._cache: dict[str, Optional[Template]] = {}

    async def _resolve(self, template_name: str) -> Optional[Template]:
        if template_name not in self._cache:
            self._cache[template_name] = await self.templates.find_by_name(template_name)
        return self._cache[template_name]

    async def dispatch(self, project: ProjectSnapshot,
                       template_name: str) -> NotificationOutcome:
        template = await self._resolve(template_name)
        if template is None:
            return NotificationOutcome.SKIPPED

        details: dict[str, Any] = {"templateName": template_name}
        if project.law_firm_name:
            details["lawFirm"] = project.law_firm_name
        await self.sink.append(AuditEntry(
            project_id=project.id,
            action=f"Email {template_name} versendet",
            details=details,
            kind="notification",
        ))
        logger.info(f"Project {project.id}: mail '{template_name}' recorded")
        return NotificationOutcome.SENT


class MutationApplier:
    """Turns a plan into a partial update and writes it with version check."""

    def __init__(self, projects: ProjectRepository):
        self.projects = projects

    @staticmethod
    def build_update(snapshot: ProjectSnapshot, plan: TransitionPlan) -> dict[str, Any]:
        """Only the fields the plan touches."""
        fields: dict[str, Any] = {}
        if plan.next_bucket is not None:
            fields["bucket"] = plan.next_bucket.value
        if plan.next_due_date is not None:
            fields["due_date"] = plan.next_due_date
        if plan.next_status is not None:
            fields["status"] = plan.next_status
        if plan.note_to_append is not None:
            fields["notes"] = append_note(snapshot.notes, plan.note_to_append)
        return fields

    async def apply(self, snapshot: ProjectSnapshot, plan: TransitionPlan) -> None:
        """Raises RepositoryError (StaleProjectError on version mismatch)."""
        fields = self.build_update(snapshot, plan)
        if not fields:
            return
        await self.projects.update(snapshot.id, fields, expected_version=snapshot.version)


# ---------------------------------------------------------------------------
# Run coordinator
# ---------------------------------------------------------------------------

class RunCoordinator:
    """Orchestrates one automaton run over all candidate projects."""

    def __init__(
        self,
        projects: ProjectRepository,
        templates: TemplateRepository,
        audit: AuditSink,
        candidate_filter: CandidateFilter = CandidateFilter.OPEN,
        project_timeout: float = 30.0,
        max_concurrency: int = 1,
    ):
        self.projects = projects
        self.templates = templates
        self.audit_sink = audit
        self.candidate_filter = candidate_filter
        self.project_timeout = project_timeout
        self.max_concurrency = max(1, max_concurrency)
        self.applier = MutationApplier(projects)
        self.audit = AuditLogger(audit)

    @classmethod
    def from_config(
        cls,
        config: WorkflowConfig,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> "RunCoordinator":
        return cls(
            projects=SqlProjectRepository(session_factory),
            templates=SqlTemplateRepository(session_factory),
            audit=SqlAuditLog(session_factory),
            candidate_filter=config.run.candidate_filter,
            project_timeout=config.run.project_timeout_seconds,
            max_concurrency=config.run.max_concurrency,
        )

    async def run_once(
        self,
        today: Optional[date] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> RunSummary:
        """Evaluate and apply at most one transition per candidate project.

        Never raises for per-project problems; a failed candidate query
        yields status FETCH_FAILED.
        """
        today = today or date.today()
        summary = RunSummary(today=today)

        try:
            candidates = await self.projects.fetch_candidates(self.candidate_filter)
        except RepositoryError as e:
            logger.error(f"Workflow run could not start: {e}")
            summary.error = str(e)
            return summary.finish(RunStatus.FETCH_FAILED)

        logger.info(
            f"Workflow run {today.isoformat()}: {len(candidates)} candidates "
            f"(filter={self.candidate_filter.value}, concurrency={self.max_concurrency})"
        )

        dispatcher = NotificationDispatcher(self.templates, self.audit_sink)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _worker(project: Project) -> Optional[ProjectOutcome]:
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    return None
                return await self._process_isolated(project, today, dispatcher)

        results = await asyncio.gather(*(_worker(p) for p in candidates))
        for outcome in results:
            if outcome is None:
                summary.not_started += 1
            else:
                summary.add(outcome)

        summary.finish()
        logger.info(
            f"Workflow run {today.isoformat()} {summary.status.value}: "
            f"{summary.processed} processed, {summary.failed} failed, "
            f"{summary.skipped} skipped, {summary.logged} logged only, "
            f"{summary.not_started} not started"
        )
        return summary

    async def preview(self, today: Optional[date] = None) -> list[tuple[str, TransitionPlan]]:
        """Dry run: plans that would be applied, nothing is written.

        Raises RepositoryError if candidates cannot be fetched.
        """
        today = today or date.today()
        plans = []
        for project in await self.projects.fetch_candidates(self.candidate_filter):
            try:
                snapshot = ProjectSnapshot.from_project(project)
            except MalformedProjectError as e:
                logger.warning(str(e))
                continue
            plan = decide(snapshot, today)
            if plan is not None:
                plans.append((snapshot.id, plan))
        return plans

    async def _process_isolated(self, project: Project, today: date,
                                dispatcher: NotificationDispatcher) -> ProjectOutcome:
        project_id = project.id
        try:
            return await asyncio.wait_for(
                self._process(project, today, dispatcher),
                timeout=self.project_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Project {project_id}: timed out after {self.project_timeout}s")
            return ProjectOutcome(
                project_id=project_id,
                status=OutcomeStatus.FAILED,
                bucket=project.bucket,
                error=f"timeout after {self.project_timeout}s",
            )
        except Exception as e:
            logger.error(f"Project {project_id}: unexpected error: {e}", exc_info=True)
            return ProjectOutcome(
                project_id=project_id,
                status=OutcomeStatus.FAILED,
                bucket=project.bucket,
                error=str(e),
            )

    async def _process(self, project: Project, today: date,
                       dispatcher: NotificationDispatcher) -> ProjectOutcome:
        try:
            snapshot = ProjectSnapshot.from_project(project)
        except MalformedProjectError as e:
            logger.error(str(e))
            return ProjectOutcome(
                project_id=project.id,
                status=OutcomeStatus.FAILED,
                bucket=project.bucket,
                error=str(e),
            )

        plan = decide(snapshot, today)
        if plan is None:
            logger.debug(f"Project {snapshot.id}: no transition ({snapshot.bucket})")
            return ProjectOutcome(
                project_id=snapshot.id,
                status=OutcomeStatus.SKIPPED,
                bucket=snapshot.bucket,
            )

        outcome = ProjectOutcome(
            project_id=snapshot.id,
            status=OutcomeStatus.APPLIED if plan.changes_fields else OutcomeStatus.LOGGED,
            bucket=snapshot.bucket,
            plan=plan.describe(),
        )
        try:
            await self.applier.apply(snapshot, plan)
            if plan.next_bucket is not None:
                logger.info(
                    f"Project {snapshot.id}: {snapshot.bucket} → {plan.next_bucket.value}"
                )
            if plan.log_action:
                await self.audit.log(snapshot.id, plan.log_action)
            if plan.notification_template:
                outcome.notification = await dispatcher.dispatch(
                    snapshot, plan.notification_template
                )
        except RepositoryError as e:
            logger.error(f"Project {snapshot.id}: {e}")
            outcome.status = OutcomeStatus.FAILED
            outcome.error = str(e)
        return outcome
