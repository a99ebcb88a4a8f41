"""Tests for the workflow automaton run (apply layer, SQLite-backed).

Covers:
  - Scenarios: Pool mailing, closing without feedback, status-only Angebot,
    ungoverned bucket
  - No-op for future due dates, idempotence within a day, date boundary
  - Notes are appended, never rewritten
  - Notification dispatch: template hit, template miss, law firm context
  - Failure isolation: stale version, malformed data, timeout
  - Fetch failure, cancellation, concurrency, legacy candidate filter
  - Dry-run preview
"""
import asyncio
from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest

from modules.workflow.buckets import Bucket
from modules.workflow.config import CandidateFilter
from modules.workflow.errors import MalformedProjectError, RepositoryError
from modules.workflow.models import ProjectSnapshot
from modules.workflow.repository import SqlProjectRepository
from modules.workflow.rules import TEMPLATE_KONZEPTBLATT, TransitionPlan
from modules.workflow.service import (
    MutationApplier,
    NotificationDispatcher,
    NotificationOutcome,
    OutcomeStatus,
    ProjectOutcome,
    RunCoordinator,
    RunStatus,
    RunSummary,
)
from tests.fixtures.projects import TODAY, TOMORROW, YESTERDAY, detached_project, snapshot


async def _logs(audit_log, project_id, kind=None):
    rows = await audit_log.list_for_project(project_id)
    return [r for r in rows if kind is None or r.kind == kind]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestScenarios:

    @pytest.mark.asyncio
    async def test_pool_mailing_status_without_due_date(
        self, coordinator, projects, audit_log, mail_templates
    ):
        p = await projects.create("Kanzlei Huber", bucket="Pool", status="Mailing Konzeptblatt")

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.COMPLETED
        assert summary.processed == 1
        stored = await projects.get(p.id)
        assert stored.bucket == "Konzeptblatt gesendet"
        assert stored.due_date == (TODAY + timedelta(days=21)).isoformat()
        assert stored.notes == "19.10.26 - Konzeptblatt versendet"
        assert stored.version == 2

        notifications = await _logs(audit_log, p.id, "notification")
        assert len(notifications) == 1
        assert notifications[0].action == "Email Mailing Konzeptblatt versendet"
        assert notifications[0].details == {"templateName": TEMPLATE_KONZEPTBLATT}
        actions = await _logs(audit_log, p.id, "action")
        assert [a.action for a in actions] == ["Mailing Konzeptblatt gesendet"]

    @pytest.mark.asyncio
    async def test_feedback_missing_closes_project(self, coordinator, projects, audit_log):
        p = await projects.create(
            "Kanzlei Maier", bucket="Feedback Kanzlei abwarten",
            status="negativ", due_date=YESTERDAY,
        )

        await coordinator.run_once(TODAY)

        stored = await projects.get(p.id)
        assert stored.status == "erledigt"
        assert stored.bucket == "Feedback Kanzlei abwarten"
        assert stored.notes is None
        logs = await _logs(audit_log, p.id)
        assert [l.action for l in logs] == ["Projekt geschlossen mangels Feedback"]

    @pytest.mark.asyncio
    async def test_angebot_erstellen_fires_without_due_date(
        self, coordinator, projects, audit_log, mail_templates
    ):
        p = await projects.create(
            "Kanzlei Berger", bucket="Angebot erstellen", status="Konzeptblatt erhalten",
        )

        await coordinator.run_once(TODAY)

        stored = await projects.get(p.id)
        assert stored.bucket == "Angebot gesendet"
        assert stored.due_date == (TODAY + timedelta(days=14)).isoformat()
        notifications = await _logs(audit_log, p.id, "notification")
        assert notifications[0].details["templateName"] == "Mailing Angebot DUo"

    @pytest.mark.asyncio
    async def test_ungoverned_bucket_untouched(self, coordinator, projects, audit_log):
        p = await projects.create(
            "Kanzlei Wolf", bucket="Projekt in Vorbereitung",
            status="Mailing Konzeptblatt", due_date=YESTERDAY,
        )

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.NO_DUE_WORK
        stored = await projects.get(p.id)
        assert stored.bucket == "Projekt in Vorbereitung"
        assert stored.status == "Mailing Konzeptblatt"
        assert stored.due_date == YESTERDAY.isoformat()
        assert stored.version == 1
        assert await _logs(audit_log, p.id) == []


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

class TestRunProperties:

    @pytest.mark.asyncio
    async def test_reminder_appends_note(self, coordinator, projects, mail_templates):
        p = await projects.create(
            "Kanzlei Gruber", bucket="Konzeptblatt gesendet",
            due_date=YESTERDAY, notes="01.10.26 - Konzeptblatt versendet",
        )

        await coordinator.run_once(TODAY)

        stored = await projects.get(p.id)
        assert stored.bucket == "A Erinnerung Konzeptblatt gesendet"
        assert stored.due_date == (TODAY + timedelta(days=14)).isoformat()
        assert stored.notes == (
            "01.10.26 - Konzeptblatt versendet\n"
            "19.10.26 - Erinnerung Konzeptblatt A"
        )

    @pytest.mark.asyncio
    async def test_future_due_dates_are_noop(self, coordinator, projects, audit_log):
        created = []
        for bucket in Bucket:
            created.append(await projects.create(
                f"Projekt {bucket.value}", bucket=bucket.value,
                status="offen", due_date=TOMORROW, notes="n",
            ))

        summary = await coordinator.run_once(TODAY)

        assert summary.processed == 0
        assert summary.failed == 0
        for p in created:
            stored = await projects.get(p.id)
            assert (stored.bucket, stored.status, stored.due_date, stored.notes) == (
                p.bucket, "offen", TOMORROW.isoformat(), "n"
            )
            assert await _logs(audit_log, p.id) == []

    @pytest.mark.asyncio
    async def test_due_today_fires(self, coordinator, projects):
        p = await projects.create("Kanzlei Lang", bucket="Angebot gesendet", due_date=TODAY)
        await coordinator.run_once(TODAY)
        stored = await projects.get(p.id)
        assert stored.bucket == "A Erinnerung Angebot gesendet"

    @pytest.mark.asyncio
    async def test_second_run_same_day_is_noop(self, coordinator, projects, mail_templates):
        a = await projects.create("A", bucket="Pool", status="Mailing Konzeptblatt")
        b = await projects.create("B", bucket="Angebot gesendet", due_date=YESTERDAY)
        c = await projects.create("C", bucket="Projekt in Nacharbeitung", status="abgerechnet")

        first = await coordinator.run_once(TODAY)
        assert first.processed == 3
        before = {p.id: (await projects.get(p.id)).version for p in (a, b, c)}

        second = await coordinator.run_once(TODAY)

        assert second.status == RunStatus.NO_DUE_WORK
        assert second.processed == 0
        after = {p.id: (await projects.get(p.id)).version for p in (a, b, c)}
        assert after == before

    @pytest.mark.asyncio
    async def test_positive_feedback_keeps_project_in_place(self, coordinator, projects, audit_log):
        p = await projects.create(
            "Kanzlei Koch", bucket="Feedback Kanzlei abwarten",
            status="POSITIV", due_date=YESTERDAY,
        )

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.NO_DUE_WORK
        assert (summary.processed, summary.logged) == (0, 1)
        assert summary.outcomes[0].status == OutcomeStatus.LOGGED
        stored = await projects.get(p.id)
        assert stored.status == "POSITIV"
        assert stored.version == 1
        logs = await _logs(audit_log, p.id)
        assert [l.action for l in logs] == ["Positives Feedback - TM informiert"]

    @pytest.mark.asyncio
    async def test_positive_feedback_logged_each_run(self, coordinator, projects, audit_log):
        p = await projects.create(
            "Kanzlei Koch", bucket="Feedback Kanzlei abwarten",
            status="positiv", due_date=YESTERDAY,
        )

        await coordinator.run_once(TODAY)
        second = await coordinator.run_once(TODAY + timedelta(days=1))

        assert second.logged == 1
        assert (await projects.get(p.id)).version == 1
        assert len(await _logs(audit_log, p.id)) == 2

    @pytest.mark.asyncio
    async def test_full_konzeptblatt_track(self, coordinator, projects, mail_templates):
        p = await projects.create("Kanzlei Frank", bucket="Pool", status="Mailing Konzeptblatt")

        day = TODAY
        for _ in range(3):
            await coordinator.run_once(day)
            stored = await projects.get(p.id)
            day = date.fromisoformat(stored.due_date)

        stored = await projects.get(p.id)
        assert stored.bucket == "B Erinnerung Konzeptblatt gesendet"
        assert len(stored.notes.splitlines()) == 3

        await coordinator.run_once(day)
        stored = await projects.get(p.id)
        assert stored.bucket == "Feedback Kanzlei abwarten"
        assert stored.due_date == day.isoformat()

        await coordinator.run_once(day + timedelta(days=1))
        stored = await projects.get(p.id)
        assert stored.status == "erledigt"
        assert len(stored.notes.splitlines()) == 3

    @pytest.mark.asyncio
    async def test_reminder_b_handover_reaches_closing(self, coordinator, projects, audit_log):
        p = await projects.create(
            "Kanzlei Bauer", bucket="B Erinnerung Angebot gesendet",
            status="keine Antwort", due_date=YESTERDAY,
        )

        await coordinator.run_once(TODAY)

        stored = await projects.get(p.id)
        assert stored.bucket == "Feedback Kanzlei abwarten"
        assert stored.due_date == YESTERDAY.isoformat()
        assert stored.status == "keine Antwort"

        await coordinator.run_once(TOMORROW)

        stored = await projects.get(p.id)
        assert stored.status == "erledigt"
        logs = await _logs(audit_log, p.id)
        assert [l.action for l in logs] == ["Projekt geschlossen mangels Feedback"]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class TestNotifications:

    @pytest.mark.asyncio
    async def test_missing_template_is_skipped(self, coordinator, projects, audit_log):
        p = await projects.create("Kanzlei Ott", bucket="Konzeptblatt gesendet", due_date=YESTERDAY)

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.COMPLETED
        assert summary.outcomes[0].notification == NotificationOutcome.SKIPPED
        assert (await projects.get(p.id)).bucket == "A Erinnerung Konzeptblatt gesendet"
        assert await _logs(audit_log, p.id, "notification") == []

    @pytest.mark.asyncio
    async def test_law_firm_in_details(self, coordinator, projects, audit_log, mail_templates):
        firm = await projects.create_law_firm("Kanzlei Huber & Partner")
        p = await projects.create(
            "Huber", bucket="Pool", status="Mailing Konzeptblatt", law_firm_id=firm.id,
        )

        await coordinator.run_once(TODAY)

        notifications = await _logs(audit_log, p.id, "notification")
        assert notifications[0].details == {
            "templateName": TEMPLATE_KONZEPTBLATT,
            "lawFirm": "Kanzlei Huber & Partner",
        }

    @pytest.mark.asyncio
    async def test_template_lookup_cached_per_run(self):
        templates = AsyncMock()
        templates.find_by_name.return_value = None
        dispatcher = NotificationDispatcher(templates, AsyncMock())

        for _ in range(3):
            outcome = await dispatcher.dispatch(snapshot("Pool"), TEMPLATE_KONZEPTBLATT)
            assert outcome == NotificationOutcome.SKIPPED

        templates.find_by_name.assert_awaited_once_with(TEMPLATE_KONZEPTBLATT)


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------

class ConcurrentEditRepository(SqlProjectRepository):
    """Simulates a user editing one project right after the candidate fetch."""

    def __init__(self, session_factory, victim_id):
        super().__init__(session_factory)
        self.victim_id = victim_id

    async def fetch_candidates(self, candidate_filter):
        candidates = await super().fetch_candidates(candidate_filter)
        await self.update(self.victim_id, {"status": "manuell geändert"}, expected_version=1)
        return candidates


class FailingFetchRepository:
    async def fetch_candidates(self, candidate_filter):
        raise RepositoryError("connection refused")

    async def update(self, project_id, fields, expected_version):
        raise AssertionError("update must not be called")


class SlowTemplates:
    async def find_by_name(self, name):
        await asyncio.sleep(1)


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_stale_version_fails_only_that_project(
        self, session_factory, projects, templates, audit_log
    ):
        victim = await projects.create("Victim", bucket="Angebot gesendet", due_date=YESTERDAY)
        other = await projects.create("Other", bucket="Angebot gesendet", due_date=YESTERDAY)
        repo = ConcurrentEditRepository(session_factory, victim.id)
        coordinator = RunCoordinator(repo, templates, audit_log)

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.PARTIAL_FAILURE
        assert summary.failed == 1
        assert summary.processed == 1
        failed = next(o for o in summary.outcomes if o.status == OutcomeStatus.FAILED)
        assert failed.project_id == victim.id
        assert "modified concurrently" in failed.error

        stored_victim = await projects.get(victim.id)
        assert stored_victim.bucket == "Angebot gesendet"
        assert stored_victim.status == "manuell geändert"
        assert (await projects.get(other.id)).bucket == "A Erinnerung Angebot gesendet"

    @pytest.mark.asyncio
    async def test_malformed_due_date_is_isolated(self, coordinator, projects):
        bad = await projects.create("Bad", bucket="Konzeptblatt gesendet", due_date="31.12.2026")
        good = await projects.create("Good", bucket="Konzeptblatt gesendet", due_date=YESTERDAY)

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.PARTIAL_FAILURE
        failed = [o for o in summary.outcomes if o.status == OutcomeStatus.FAILED]
        assert [o.project_id for o in failed] == [bad.id]
        assert "unparseable due date" in failed[0].error
        assert (await projects.get(good.id)).bucket == "A Erinnerung Konzeptblatt gesendet"

    @pytest.mark.asyncio
    async def test_timeout_fails_project(self, projects, audit_log):
        await projects.create("Slow", bucket="Konzeptblatt gesendet", due_date=YESTERDAY)
        coordinator = RunCoordinator(projects, SlowTemplates(), audit_log, project_timeout=0.05)

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.PARTIAL_FAILURE
        assert summary.outcomes[0].status == OutcomeStatus.FAILED
        assert "timeout" in summary.outcomes[0].error

    @pytest.mark.asyncio
    async def test_fetch_failure_is_reported(self, templates, audit_log):
        coordinator = RunCoordinator(FailingFetchRepository(), templates, audit_log)

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.FETCH_FAILED
        assert "connection refused" in summary.error
        assert summary.processed == summary.failed == summary.skipped == 0
        assert summary.ok is False


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------

class CancellingAuditSink:
    def __init__(self, inner, cancel):
        self.inner = inner
        self.cancel = cancel

    async def append(self, entry):
        await self.inner.append(entry)
        self.cancel.set()


class TestRunControl:

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, coordinator, projects):
        await projects.create("A", bucket="Angebot gesendet", due_date=YESTERDAY)
        await projects.create("B", bucket="Angebot gesendet", due_date=YESTERDAY)
        cancel = asyncio.Event()
        cancel.set()

        summary = await coordinator.run_once(TODAY, cancel=cancel)

        assert summary.status == RunStatus.CANCELLED
        assert summary.not_started == 2
        assert summary.processed == 0

    @pytest.mark.asyncio
    async def test_cancel_between_projects(self, projects, templates, audit_log):
        await projects.create("A", bucket="Pool", status="Mailing Konzeptblatt")
        await projects.create("B", bucket="Pool", status="Mailing Konzeptblatt")
        cancel = asyncio.Event()
        coordinator = RunCoordinator(projects, templates, CancellingAuditSink(audit_log, cancel))

        summary = await coordinator.run_once(TODAY, cancel=cancel)

        assert summary.status == RunStatus.CANCELLED
        assert summary.processed == 1
        assert summary.not_started == 1

    @pytest.mark.asyncio
    async def test_concurrent_run(self, projects, templates, audit_log, mail_templates):
        created = [
            await projects.create(f"P{i}", bucket="Angebot gesendet", due_date=YESTERDAY)
            for i in range(3)
        ]
        coordinator = RunCoordinator(projects, templates, audit_log, max_concurrency=3)

        summary = await coordinator.run_once(TODAY)

        assert summary.processed == 3
        for p in created:
            assert (await projects.get(p.id)).bucket == "A Erinnerung Angebot gesendet"

    @pytest.mark.asyncio
    async def test_legacy_filter_skips_status_only_rules(self, projects, templates, audit_log):
        p = await projects.create("Legacy", bucket="Angebot erstellen", status="Konzeptblatt erhalten")
        coordinator = RunCoordinator(
            projects, templates, audit_log, candidate_filter=CandidateFilter.DUE_DATE_SET,
        )

        summary = await coordinator.run_once(TODAY)

        assert summary.status == RunStatus.NO_DUE_WORK
        assert (await projects.get(p.id)).bucket == "Angebot erstellen"

    @pytest.mark.asyncio
    async def test_preview_changes_nothing(self, coordinator, projects, audit_log):
        p = await projects.create("Preview", bucket="Angebot gesendet", due_date=YESTERDAY)

        plans = await coordinator.preview(TODAY)

        assert [pid for pid, _ in plans] == [p.id]
        assert plans[0][1].next_bucket == Bucket.ERINNERUNG_ANGEBOT_A
        stored = await projects.get(p.id)
        assert stored.bucket == "Angebot gesendet"
        assert await _logs(audit_log, p.id) == []


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

class TestMutationApplier:

    def test_build_update_only_touched_fields(self):
        s = snapshot("Feedback Kanzlei abwarten", status="negativ", notes="x")
        fields = MutationApplier.build_update(s, TransitionPlan(next_status="erledigt"))
        assert fields == {"status": "erledigt"}

    def test_build_update_keeps_due_date_on_handover(self):
        s = snapshot("B Erinnerung Angebot gesendet", due_date=YESTERDAY)
        plan = TransitionPlan(next_bucket=Bucket.FEEDBACK_ABWARTEN)
        assert MutationApplier.build_update(s, plan) == {"bucket": "Feedback Kanzlei abwarten"}

    def test_build_update_appends_note(self):
        s = snapshot("Pool", notes="alt")
        plan = TransitionPlan(note_to_append="neu")
        assert MutationApplier.build_update(s, plan) == {"notes": "alt\nneu"}

    @pytest.mark.asyncio
    async def test_log_only_plan_does_not_write(self):
        repo = AsyncMock()
        await MutationApplier(repo).apply(snapshot("Pool"), TransitionPlan(log_action="x"))
        repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_apply_passes_expected_version(self):
        repo = AsyncMock()
        s = snapshot("Pool", version=7)
        await MutationApplier(repo).apply(s, TransitionPlan(next_status="erledigt"))
        repo.update.assert_awaited_once_with("p-1", {"status": "erledigt"}, expected_version=7)


class TestRunSummary:

    def test_empty_run_is_no_due_work(self):
        assert RunSummary(today=TODAY).finish().status == RunStatus.NO_DUE_WORK

    def test_logged_only_run_is_no_due_work(self):
        summary = RunSummary(today=TODAY)
        summary.add(ProjectOutcome(project_id="a", status=OutcomeStatus.LOGGED))
        assert summary.finish().status == RunStatus.NO_DUE_WORK
        assert summary.to_dict()["logged"] == 1

    def test_failures_win_over_processed(self):
        summary = RunSummary(today=TODAY, processed=3, failed=1)
        assert summary.finish().status == RunStatus.PARTIAL_FAILURE

    def test_to_dict_hides_skipped_outcomes(self):
        summary = RunSummary(today=TODAY)
        summary.add(ProjectOutcome(project_id="a", status=OutcomeStatus.SKIPPED))
        summary.add(ProjectOutcome(project_id="b", status=OutcomeStatus.APPLIED))
        data = summary.finish().to_dict()
        assert data["status"] == "completed"
        assert data["skipped"] == 1
        assert [o["project_id"] for o in data["outcomes"]] == ["b"]


class TestProjectSnapshot:

    def test_from_project_parses_iso_due_date(self):
        p = detached_project("x", bucket="Angebot gesendet", due_date="2026-10-18T09:30:00", version=4)
        s = ProjectSnapshot.from_project(p)
        assert s.due_date == YESTERDAY
        assert s.version == 4
        assert s.law_firm_name is None

    def test_from_project_rejects_missing_bucket(self):
        with pytest.raises(MalformedProjectError):
            ProjectSnapshot.from_project(detached_project("x", bucket=""))

    @pytest.mark.parametrize("value", ["2026-10-1999", "2026-10-19x", "2026-10-19 morgen", "19.10.2026"])
    def test_from_project_rejects_trailing_garbage(self, value):
        with pytest.raises(MalformedProjectError):
            ProjectSnapshot.from_project(detached_project("x", bucket="Angebot gesendet", due_date=value))

    def test_from_project_accepts_space_separated_timestamp(self):
        p = detached_project("x", bucket="Angebot gesendet", due_date="2026-10-18 09:30:00+00:00")
        assert ProjectSnapshot.from_project(p).due_date == YESTERDAY
