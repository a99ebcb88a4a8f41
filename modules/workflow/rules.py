"""Transition rules for the workflow automaton.

Pure decision layer: every rule takes a ProjectSnapshot and "today" and
returns an optional TransitionPlan. Nothing here touches the database,
the clock or a logger; service.py applies the plans.

Rule catalogue (bucket → condition → effect):

    Pool                                status "Mailing Konzeptblatt" or due → Konzeptblatt gesendet (+21d)
    Konzeptblatt gesendet               due → A Erinnerung Konzeptblatt (+14d)
    A Erinnerung Konzeptblatt gesendet  due → B Erinnerung Konzeptblatt (+14d)
    B Erinnerung Konzeptblatt gesendet  due → Feedback Kanzlei abwarten (due date kept)
    Feedback Kanzlei abwarten           due → log positive feedback / close as "erledigt"
    Angebot erstellen                   status "konzeptblatt erhalten" → Angebot gesendet (+14d)
    Angebot gesendet                    due → A Erinnerung Angebot (+14d)
    A Erinnerung Angebot gesendet       due → B Erinnerung Angebot (+14d)
    B Erinnerung Angebot gesendet       due → Feedback Kanzlei abwarten (due date kept)
    Projekt in Bearbeitung              status "duo eingeführt" + due date → Nacharbeitung (due date +14d)
    Projekt in Nacharbeitung            status "abgerechnet" → status "erledigt"
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Optional

from .buckets import Bucket, parse_bucket
from .models import ProjectSnapshot

# Offsets in days
KONZEPTBLATT_FOLLOW_UP_DAYS = 21
REMINDER_DAYS = 14
NACHARBEITUNG_DAYS = 14

# Template names (exact match against templates.name)
TEMPLATE_KONZEPTBLATT = "Mailing Konzeptblatt"
TEMPLATE_ANGEBOT = "Mailing Angebot DUo"

# Status values
STATUS_MAILING_KONZEPTBLATT = "Mailing Konzeptblatt"
STATUS_POSITIV = "positiv"
STATUS_KONZEPTBLATT_ERHALTEN = "konzeptblatt erhalten"
STATUS_DUO_EINGEFUEHRT = "duo eingeführt"
STATUS_ABGERECHNET = "abgerechnet"
STATUS_ERLEDIGT = "erledigt"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def is_due(due_date: Optional[date], today: date) -> bool:
    """True iff a due date is set and not after today (inclusive boundary)."""
    if due_date is None:
        return False
    return due_date <= today


def format_note_date(day: date) -> str:
    """German short date used in notes: 19.10.26"""
    return day.strftime("%d.%m.%y")


def dated_note(day: date, description: str) -> str:
    return f"{format_note_date(day)} - {description}"


def append_note(existing: Optional[str], note: str) -> str:
    """Append one line to the notes log, never touching earlier lines."""
    return f"{existing}\n{note}" if existing else note


def status_is(snapshot: ProjectSnapshot, expected: str) -> bool:
    """Case-insensitive status comparison."""
    return (snapshot.status or "").lower() == expected.lower()


def is_terminal(snapshot: ProjectSnapshot) -> bool:
    return status_is(snapshot, STATUS_ERLEDIGT)


# ---------------------------------------------------------------------------
# Transition plan
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionPlan:
    """Field changes and side effects one rule proposes for one project.

    All fields are optional. A plan without field changes only writes
    its audit entry.
    """
    next_bucket: Optional[Bucket] = None
    next_due_date: Optional[date] = None
    next_status: Optional[str] = None
    note_to_append: Optional[str] = None
    log_action: Optional[str] = None
    notification_template: Optional[str] = None

    @property
    def changes_fields(self) -> bool:
        """Whether applying the plan writes to the project row."""
        return (
            self.next_bucket is not None
            or self.next_due_date is not None
            or self.next_status is not None
            or self.note_to_append is not None
        )

    def describe(self) -> dict:
        """JSON-friendly summary for previews and run outcomes."""
        data = {}
        if self.next_bucket is not None:
            data["bucket"] = self.next_bucket.value
        if self.next_due_date is not None:
            data["due_date"] = self.next_due_date.isoformat()
        if self.next_status is not None:
            data["status"] = self.next_status
        if self.note_to_append is not None:
            data["note"] = self.note_to_append
        if self.log_action is not None:
            data["log"] = self.log_action
        if self.notification_template is not None:
            data["notify"] = self.notification_template
        return data


Rule = Callable[[ProjectSnapshot, date], Optional[TransitionPlan]]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def _advance(today: date, bucket: Bucket, note: str, template: str,
             days: int = REMINDER_DAYS) -> TransitionPlan:
    return TransitionPlan(
        next_bucket=bucket,
        next_due_date=today + timedelta(days=days),
        note_to_append=dated_note(today, note),
        notification_template=template,
    )


def pool_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    # exact status match: set by the mailing list export, not typed by hand
    if p.status != STATUS_MAILING_KONZEPTBLATT and not is_due(p.due_date, today):
        return None
    return TransitionPlan(
        next_bucket=Bucket.KONZEPTBLATT_GESENDET,
        next_due_date=today + timedelta(days=KONZEPTBLATT_FOLLOW_UP_DAYS),
        note_to_append=dated_note(today, "Konzeptblatt versendet"),
        log_action="Mailing Konzeptblatt gesendet",
        notification_template=TEMPLATE_KONZEPTBLATT,
    )


def konzeptblatt_gesendet_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    if not is_due(p.due_date, today):
        return None
    return _advance(today, Bucket.ERINNERUNG_KONZEPTBLATT_A,
                    "Erinnerung Konzeptblatt A", TEMPLATE_KONZEPTBLATT)


def erinnerung_konzeptblatt_a_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    if not is_due(p.due_date, today):
        return None
    return _advance(today, Bucket.ERINNERUNG_KONZEPTBLATT_B,
                    "Erinnerung Konzeptblatt B", TEMPLATE_KONZEPTBLATT)


def erinnerung_b_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    """Both B reminders hand over to the feedback stage; no note, no mail.

    The due date is left as is, so the feedback rule evaluates the project
    on the next run.
    """
    if not is_due(p.due_date, today):
        return None
    return TransitionPlan(next_bucket=Bucket.FEEDBACK_ABWARTEN)


def feedback_abwarten_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    if not is_due(p.due_date, today):
        return None
    if status_is(p, STATUS_POSITIV):
        return TransitionPlan(log_action="Positives Feedback - TM informiert")
    return TransitionPlan(
        next_status=STATUS_ERLEDIGT,
        log_action="Projekt geschlossen mangels Feedback",
    )


def angebot_erstellen_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    if not status_is(p, STATUS_KONZEPTBLATT_ERHALTEN):
        return None
    return _advance(today, Bucket.ANGEBOT_GESENDET, "Angebot gesendet", TEMPLATE_ANGEBOT)


def angebot_gesendet_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    if not is_due(p.due_date, today):
        return None
    return _advance(today, Bucket.ERINNERUNG_ANGEBOT_A,
                    "Erinnerung Angebot A", TEMPLATE_ANGEBOT)


def erinnerung_angebot_a_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    if not is_due(p.due_date, today):
        return None
    return _advance(today, Bucket.ERINNERUNG_ANGEBOT_B,
                    "Erinnerung Angebot B", TEMPLATE_ANGEBOT)


def projekt_bearbeitung_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    # offset is relative to the stored due date, not to today
    if not status_is(p, STATUS_DUO_EINGEFUEHRT) or p.due_date is None:
        return None
    return TransitionPlan(
        next_bucket=Bucket.PROJEKT_NACHARBEITUNG,
        next_due_date=p.due_date + timedelta(days=NACHARBEITUNG_DAYS),
    )


def projekt_nacharbeitung_rule(p: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    if not status_is(p, STATUS_ABGERECHNET):
        return None
    return TransitionPlan(next_status=STATUS_ERLEDIGT)


# Every bucket is listed; None marks a bucket that needs manual progression.
TRANSITION_TABLE: dict[Bucket, Optional[Rule]] = {
    Bucket.POOL: pool_rule,
    Bucket.KONZEPTBLATT_GESENDET: konzeptblatt_gesendet_rule,
    Bucket.ERINNERUNG_KONZEPTBLATT_A: erinnerung_konzeptblatt_a_rule,
    Bucket.ERINNERUNG_KONZEPTBLATT_B: erinnerung_b_rule,
    Bucket.FEEDBACK_ABWARTEN: feedback_abwarten_rule,
    Bucket.ANGEBOT_ERSTELLEN: angebot_erstellen_rule,
    Bucket.ANGEBOT_GESENDET: angebot_gesendet_rule,
    Bucket.ERINNERUNG_ANGEBOT_A: erinnerung_angebot_a_rule,
    Bucket.ERINNERUNG_ANGEBOT_B: erinnerung_b_rule,
    Bucket.PROJEKT_VORBEREITUNG: None,
    Bucket.PROJEKT_BEARBEITUNG: projekt_bearbeitung_rule,
    Bucket.PROJEKT_NACHARBEITUNG: projekt_nacharbeitung_rule,
    Bucket.FEEDBACK_POSITIV: None,
}

_missing = set(Bucket) - set(TRANSITION_TABLE)
if _missing:
    raise RuntimeError(
        f"Transition table does not cover buckets: {sorted(b.value for b in _missing)}"
    )

GOVERNED_BUCKETS: frozenset[Bucket] = frozenset(
    bucket for bucket, rule in TRANSITION_TABLE.items() if rule is not None
)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def rule_for(bucket_value: str) -> Optional[Rule]:
    """Rule governing a stored bucket string, or None if ungoverned/unknown."""
    bucket = parse_bucket(bucket_value)
    if bucket is None:
        return None
    return TRANSITION_TABLE[bucket]


def decide(snapshot: ProjectSnapshot, today: date) -> Optional[TransitionPlan]:
    """Evaluate the rule for the snapshot's bucket.

    Returns None for closed projects, unknown or ungoverned buckets, and
    when the rule does not fire.
    """
    if is_terminal(snapshot):
        return None
    rule = rule_for(snapshot.bucket)
    if rule is None:
        return None
    return rule(snapshot, today)
