"""Pipeline buckets for the Kanzlei board.

The board order is the enumeration order. Some stages branch by status,
so the sequence is ordered but not strictly linear.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional


class Bucket(str, Enum):
    """Closed set of pipeline stages known to the board."""

    POOL = "Pool"
    KONZEPTBLATT_GESENDET = "Konzeptblatt gesendet"
    ERINNERUNG_KONZEPTBLATT_A = "A Erinnerung Konzeptblatt gesendet"
    ERINNERUNG_KONZEPTBLATT_B = "B Erinnerung Konzeptblatt gesendet"
    FEEDBACK_ABWARTEN = "Feedback Kanzlei abwarten"
    ANGEBOT_ERSTELLEN = "Angebot erstellen"
    ANGEBOT_GESENDET = "Angebot gesendet"
    ERINNERUNG_ANGEBOT_A = "A Erinnerung Angebot gesendet"
    ERINNERUNG_ANGEBOT_B = "B Erinnerung Angebot gesendet"
    PROJEKT_VORBEREITUNG = "Projekt in Vorbereitung"
    PROJEKT_BEARBEITUNG = "Projekt in Bearbeitung"
    PROJEKT_NACHARBEITUNG = "Projekt in Nacharbeitung"
    FEEDBACK_POSITIV = "Feedback Kanzlei positiv"


DEFAULT_BUCKET = Bucket.POOL


@dataclass(frozen=True)
class BucketDefinition:
    """Display metadata for one board column."""
    bucket: Bucket
    title: str
    description: str

    def to_dict(self) -> dict:
        return {
            "id": self.bucket.value,
            "title": self.title,
            "description": self.description,
        }


BUCKET_DEFINITIONS: tuple[BucketDefinition, ...] = (
    BucketDefinition(Bucket.POOL, "Pool", "Neue Mandanten und Uploads"),
    BucketDefinition(Bucket.KONZEPTBLATT_GESENDET, "Konzeptblatt gesendet",
                     "Konzeptblatt an Mandanten versendet"),
    BucketDefinition(Bucket.ERINNERUNG_KONZEPTBLATT_A, "A Erinnerung Konzeptblatt",
                     "1. Follow-Up offen"),
    BucketDefinition(Bucket.ERINNERUNG_KONZEPTBLATT_B, "B Erinnerung Konzeptblatt",
                     "2. Follow-Up offen"),
    BucketDefinition(Bucket.FEEDBACK_ABWARTEN, "Feedback Kanzlei",
                     "Auf Rückmeldung warten"),
    BucketDefinition(Bucket.ANGEBOT_ERSTELLEN, "Angebot erstellen",
                     "Konzeptblatt liegt vor"),
    BucketDefinition(Bucket.ANGEBOT_GESENDET, "Angebot gesendet",
                     "Angebot beim Mandanten"),
    BucketDefinition(Bucket.ERINNERUNG_ANGEBOT_A, "A Erinnerung Angebot",
                     "Erste Angebots-Erinnerung"),
    BucketDefinition(Bucket.ERINNERUNG_ANGEBOT_B, "B Erinnerung Angebot",
                     "Zweite Angebots-Erinnerung"),
    BucketDefinition(Bucket.PROJEKT_VORBEREITUNG, "Projekt in Vorbereitung",
                     "Onboarding und Setup"),
    BucketDefinition(Bucket.PROJEKT_BEARBEITUNG, "Projekt in Bearbeitung",
                     "Umsetzung läuft"),
    BucketDefinition(Bucket.PROJEKT_NACHARBEITUNG, "Projekt in Nacharbeitung",
                     "Abrechnung und Abschluss"),
    BucketDefinition(Bucket.FEEDBACK_POSITIV, "Feedback Kanzlei positiv",
                     "Bestätigung erhalten"),
)


def parse_bucket(value: Optional[str]) -> Optional[Bucket]:
    """Map a stored bucket string to a Bucket, or None if unknown."""
    if value is None:
        return None
    try:
        return Bucket(value)
    except ValueError:
        return None


def group_by_bucket(projects: Iterable, key=lambda p: p.bucket) -> dict[str, list]:
    """Group projects by bucket value in board order.

    Unknown bucket strings land in the first column (Pool), the same
    fallback the board uses when rendering.
    """
    grouped: dict[str, list] = {d.bucket.value: [] for d in BUCKET_DEFINITIONS}
    for project in projects:
        bucket = parse_bucket(key(project)) or DEFAULT_BUCKET
        grouped[bucket.value].append(project)
    return grouped
