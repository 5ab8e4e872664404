"""
Pattern/Lexicon Matcher.

Case- and diacritic-insensitive phrase containment shared by safety rules,
differential templates, the language lexicon and the turn guard.
Also gathers the free text of an intake into per-field evidence sources.
"""

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass

from intake_reasoning.models.intake_models import StructuredIntake

_WHITESPACE = re.compile(r"\s+")
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
_MINUTES = re.compile(r"\b(\d{1,3})\s*(?:minuten|minutes|minute|min)\b")
_HOURS = re.compile(r"\b(\d{1,2})\s*(?:stunden|stunde|hours|hour|std|h)\b")
_ONE_HOUR_PHRASES = ("eine stunde", "einer stunde", "an hour", "one hour")

SNIPPET_RADIUS = 30


def normalize_text(value: str | None) -> str:
    """
    Normalize text for matching.

    Lowercases, folds 'ß' to 'ss', strips combining marks (so 'ü' matches 'u'),
    and collapses whitespace.
    """
    if not value:
        return ""
    folded = value.lower().replace("ß", "ss")
    decomposed = unicodedata.normalize("NFKD", folded)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", stripped).strip()


def contains_phrase(text: str | None, phrase: str | None) -> bool:
    """True when the normalized phrase occurs in the normalized text."""
    needle = normalize_text(phrase)
    if not needle:
        return False
    return needle in normalize_text(text)


def find_phrases(text: str | None, phrases: Iterable[str]) -> list[str]:
    """Return the phrases contained in text, in declaration order."""
    haystack = normalize_text(text)
    if not haystack:
        return []
    matches = []
    for phrase in phrases:
        needle = normalize_text(phrase)
        if needle and needle in haystack:
            matches.append(phrase)
    return matches


def extract_duration_minutes(value: str | None) -> int | None:
    """
    Longest duration stated in text, in minutes.

    Understands "35 Minuten", "90 min", "2 Stunden", "1 hour", "3h",
    "eine Stunde" and "halbe Stunde". Days and weeks are not converted.
    Returns None when no duration is found.
    """
    text = normalize_text(value)
    if not text:
        return None

    found = [int(match) for match in _MINUTES.findall(text)]
    found.extend(int(match) * 60 for match in _HOURS.findall(text))
    if any(phrase in text for phrase in _ONE_HOUR_PHRASES):
        found.append(60)
    if "halb" in text and "stunde" in text:
        found.append(30)
    return max(found) if found else None


def slugify(value: str | None, fallback: str = "general") -> str:
    """Stable a-z0-9 slug; identical input always yields the identical slug."""
    slug = _SLUG_STRIP.sub("-", normalize_text(value)).strip("-")
    return slug or fallback


def tokenize(value: str | None) -> list[str]:
    """Split normalized text into word tokens."""
    return re.findall(r"[a-z0-9]+", normalize_text(value))


@dataclass(frozen=True)
class EvidenceSource:
    """Free text from one intake field or verbatim message."""
    ref: str
    text: str

    @property
    def normalized(self) -> str:
        return normalize_text(self.text)

    def snippet(self, phrase: str) -> str:
        """Literal window of normalized text around the first occurrence of phrase."""
        haystack = self.normalized
        needle = normalize_text(phrase)
        index = haystack.find(needle)
        if index < 0:
            return ""
        start = max(0, index - SNIPPET_RADIUS)
        end = min(len(haystack), index + len(needle) + SNIPPET_RADIUS)
        return haystack[start:end]


def collect_evidence_sources(intake: StructuredIntake | None) -> list[EvidenceSource]:
    """
    Collect every free-text source of an intake.

    Missing or blank fields contribute nothing. The order is fixed so that
    evidence lists are deterministic.
    """
    if intake is None:
        return []

    sources: list[EvidenceSource] = []

    def push(ref: str, value: str | None) -> None:
        if isinstance(value, str) and value.strip():
            sources.append(EvidenceSource(ref=ref, text=value.strip()))

    def push_list(ref: str, values: list[str]) -> None:
        for index, value in enumerate(values or []):
            push(f"{ref}[{index}]", value)

    push("chief_complaint", intake.chief_complaint)
    hpi = intake.history_of_present_illness
    push("history_of_present_illness.onset", hpi.onset)
    push("history_of_present_illness.duration", hpi.duration)
    push("history_of_present_illness.course", hpi.course)
    push_list("history_of_present_illness.associated_symptoms", hpi.associated_symptoms)
    push_list("history_of_present_illness.relieving_factors", hpi.relieving_factors)
    push_list("history_of_present_illness.aggravating_factors", hpi.aggravating_factors)
    push_list("past_medical_history", intake.past_medical_history)
    push_list("medication", intake.medication)
    push_list("psychosocial_factors", intake.psychosocial_factors)
    push_list("uncertainties", intake.uncertainties)
    for message in intake.patient_messages:
        push(f"message:{message.id}", message.text)

    return sources


def collect_intake_text(intake: StructuredIntake | None) -> str:
    """Combined free text of an intake, joined with ' | '."""
    return " | ".join(source.text for source in collect_evidence_sources(intake))
