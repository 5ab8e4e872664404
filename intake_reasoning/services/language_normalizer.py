"""
Language Normalization Unit.

Maps free-text patient phrases (German or English) onto canonical clinical
entities. Turns without a confident mapping register a pending
clarification. Every call appends exactly one immutable turn record.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from intake_reasoning.config.engine_config import DEFAULT_ENGINE_SETTINGS, EngineSettings
from intake_reasoning.config.logging_config import get_logger
from intake_reasoning.models.intake_models import (
    LanguageNormalizationBlock,
    LanguageNormalizationTurn,
    MappedEntity,
    PendingClarification,
)
from intake_reasoning.services.text_matcher import normalize_text, tokenize

logger = get_logger(__name__)


CONFIDENCE_EXACT = 1.0
CONFIDENCE_CONTAINED = 0.85
CONFIDENCE_PREFIX = 0.6
PREFIX_MIN_LENGTH = 4

SUPPORTED_LANGUAGES = ("de", "en")


class DuplicateTurnError(ValueError):
    """Raised when a turn id is already present in the normalization log."""


class UnknownClarificationError(ValueError):
    """Raised when resolving a clarification that is not pending."""


@dataclass(frozen=True)
class LexiconEntry:
    """Canonical entity with its German and English surface phrases."""
    canonical: str
    entity_type: str
    label_de: str
    label_en: str
    de: tuple[str, ...] = ()
    en: tuple[str, ...] = ()

    @property
    def phrases(self) -> tuple[str, ...]:
        return self.de + self.en

    def label(self, language: str) -> str:
        return self.label_en if language == "en" else self.label_de


@dataclass(frozen=True)
class AmbiguousTerm:
    """Term that maps to several entities and needs a targeted follow-up."""
    term: str
    candidates: tuple[str, ...]
    prompt_de: str
    prompt_en: str

    def prompt(self, language: str) -> str:
        return self.prompt_en if language == "en" else self.prompt_de


# Phrases are stored diacritic-free; matching normalizes both sides.
DEFAULT_LEXICON: tuple[LexiconEntry, ...] = (
    LexiconEntry(
        canonical="chest_pain",
        entity_type="symptom",
        label_de="Brustschmerzen",
        label_en="chest pain",
        de=("brustschmerz", "schmerzen in der brust", "druck auf der brust", "engegefuhl in der brust",
            "brustenge", "stechen in der brust"),
        en=("chest pain", "chest tightness", "pressure in my chest"),
    ),
    LexiconEntry(
        canonical="dizziness",
        entity_type="symptom",
        label_de="Schwindel",
        label_en="dizziness",
        de=("schwindel", "schwarz vor augen"),
        en=("dizzy", "dizziness", "lightheaded"),
    ),
    LexiconEntry(
        canonical="dyspnea",
        entity_type="symptom",
        label_de="Atemnot",
        label_en="shortness of breath",
        de=("atemnot", "luftnot", "kurzatmig"),
        en=("shortness of breath", "breathless", "short of breath"),
    ),
    LexiconEntry(
        canonical="palpitations",
        entity_type="symptom",
        label_de="Herzrasen",
        label_en="palpitations",
        de=("herzrasen", "herzstolpern", "herzklopfen"),
        en=("palpitations", "racing heart", "heart racing"),
    ),
    LexiconEntry(
        canonical="headache",
        entity_type="symptom",
        label_de="Kopfschmerzen",
        label_en="headache",
        de=("kopfschmerz", "kopfweh", "migrane"),
        en=("headache", "migraine"),
    ),
    LexiconEntry(
        canonical="nausea",
        entity_type="symptom",
        label_de="Uebelkeit",
        label_en="nausea",
        de=("ubelkeit", "erbrechen"),
        en=("nausea", "nauseous", "vomiting"),
    ),
    LexiconEntry(
        canonical="fever",
        entity_type="symptom",
        label_de="Fieber",
        label_en="fever",
        de=("fieber", "schuttelfrost"),
        en=("fever", "chills"),
    ),
    LexiconEntry(
        canonical="fatigue",
        entity_type="symptom",
        label_de="Muedigkeit",
        label_en="fatigue",
        de=("mudigkeit", "mude", "erschopft", "erschopfung"),
        en=("fatigue", "tired", "exhausted"),
    ),
    LexiconEntry(
        canonical="syncope",
        entity_type="symptom",
        label_de="Ohnmacht",
        label_en="fainting",
        de=("ohnmacht", "ohnmachtig", "bewusstlos", "umgekippt", "kollabiert"),
        en=("fainted", "passed out", "syncope"),
    ),
    LexiconEntry(
        canonical="anxiety",
        entity_type="psychosocial",
        label_de="Angst",
        label_en="anxiety",
        de=("angst", "panik", "nervos"),
        en=("anxiety", "anxious", "panic"),
    ),
    LexiconEntry(
        canonical="sleep_disturbance",
        entity_type="psychosocial",
        label_de="Schlafstoerungen",
        label_en="sleep problems",
        de=("schlafstorung", "schlaflos", "schlecht schlafen", "kann nicht schlafen"),
        en=("insomnia", "trouble sleeping", "sleep problems"),
    ),
    LexiconEntry(
        canonical="omega_3",
        entity_type="medication",
        label_de="Omega-3",
        label_en="omega-3",
        de=("omega 3", "omega-3", "fischol"),
        en=("fish oil",),
    ),
    LexiconEntry(
        canonical="ibuprofen",
        entity_type="medication",
        label_de="Ibuprofen",
        label_en="ibuprofen",
        de=("ibuprofen",),
        en=("advil",),
    ),
    LexiconEntry(
        canonical="paracetamol",
        entity_type="medication",
        label_de="Paracetamol",
        label_en="paracetamol",
        de=("paracetamol",),
        en=("acetaminophen", "tylenol"),
    ),
)

DEFAULT_AMBIGUOUS_TERMS: tuple[AmbiguousTerm, ...] = (
    AmbiguousTerm(
        term="druck",
        candidates=("chest_pain", "headache"),
        prompt_de="Wo genau spueren Sie den Druck, eher in der Brust oder im Kopf?",
        prompt_en="Where exactly do you feel the pressure, in your chest or in your head?",
    ),
    AmbiguousTerm(
        term="pressure",
        candidates=("chest_pain", "headache"),
        prompt_de="Wo genau spueren Sie den Druck, eher in der Brust oder im Kopf?",
        prompt_en="Where exactly do you feel the pressure, in your chest or in your head?",
    ),
    AmbiguousTerm(
        term="schwach",
        candidates=("fatigue", "dizziness"),
        prompt_de="Meinen Sie mit schwach eher muede und erschoepft oder eher schwindelig?",
        prompt_en="When you say weak, do you mean tired or rather dizzy?",
    ),
    AmbiguousTerm(
        term="weak",
        candidates=("fatigue", "dizziness"),
        prompt_de="Meinen Sie mit schwach eher muede und erschoepft oder eher schwindelig?",
        prompt_en="When you say weak, do you mean tired or rather dizzy?",
    ),
)

FUNCTION_WORDS: dict[str, frozenset[str]] = {
    "de": frozenset({
        "ich", "und", "der", "die", "das", "habe", "hab", "seit", "nicht", "mit", "mir", "mich",
        "mein", "meine", "ist", "bin", "ein", "eine", "auf", "tagen", "wochen", "auch", "sehr",
        "schon", "wenn", "beim", "oder", "aber", "ja", "nein",
    }),
    "en": frozenset({
        "i", "and", "the", "have", "since", "not", "with", "me", "my", "is", "am", "a", "an",
        "on", "days", "weeks", "also", "very", "when", "feel", "it", "or", "but", "yes", "no",
    }),
}

NO_MATCH_PROMPTS = {
    "de": "Ich konnte Ihre Angabe noch nicht zuordnen. Koennen Sie Ihre Beschwerden mit anderen Worten beschreiben?",
    "en": "I could not place your answer yet. Could you describe your symptoms in other words?",
}

LOW_CONFIDENCE_PROMPTS = {
    "de": "Meinen Sie {labels}?",
    "en": "Do you mean {labels}?",
}

LABEL_JOINERS = {"de": " oder ", "en": " or "}


@dataclass
class _Match:
    entry: LexiconEntry
    phrase: str
    confidence: float


@dataclass
class _Analysis:
    language: str
    entities: list[MappedEntity] = field(default_factory=list)
    low_confidence: list[MappedEntity] = field(default_factory=list)
    ambiguous: list[AmbiguousTerm] = field(default_factory=list)


class LanguageNormalizer:
    """
    Lexicon-based entity mapping with clarification tracking.

    Confidence per entity is the best of its phrases:
    - exact: the whole turn is the phrase (1.0)
    - contained: the phrase occurs in the turn (0.85)
    - prefix: a single-word phrase starts with a turn token of ≥ 4 chars (0.6)
    """

    def __init__(
        self,
        lexicon: Iterable[LexiconEntry] | None = None,
        ambiguous_terms: Iterable[AmbiguousTerm] | None = None,
        settings: EngineSettings | None = None,
    ):
        self.lexicon = tuple(lexicon) if lexicon is not None else DEFAULT_LEXICON
        self.ambiguous_terms = (
            tuple(ambiguous_terms) if ambiguous_terms is not None else DEFAULT_AMBIGUOUS_TERMS
        )
        self.settings = settings or DEFAULT_ENGINE_SETTINGS
        self._by_canonical = {entry.canonical: entry for entry in self.lexicon}

    # ------------------------------------------------------------------
    # Detection & matching
    # ------------------------------------------------------------------

    def detect_language(self, text: str | None) -> str:
        """
        Detect 'de' or 'en' by hit ratio of function words and lexicon phrases.

        Falls back to the configured default language when there is no signal
        or both languages score equally.
        """
        tokens = tokenize(text)
        if not tokens:
            return self.settings.default_language

        normalized = normalize_text(text)
        scores = {}
        for language in SUPPORTED_LANGUAGES:
            hits = sum(1 for token in tokens if token in FUNCTION_WORDS[language])
            for entry in self.lexicon:
                phrases = entry.de if language == "de" else entry.en
                hits += sum(1 for phrase in phrases if normalize_text(phrase) in normalized)
            scores[language] = hits / len(tokens)

        if scores["de"] == scores["en"]:
            return self.settings.default_language
        return max(SUPPORTED_LANGUAGES, key=lambda language: scores[language])

    def _match_entry(self, entry: LexiconEntry, normalized: str, tokens: list[str]) -> _Match | None:
        joined = " ".join(tokens)
        best: _Match | None = None
        for phrase in entry.phrases:
            needle = normalize_text(phrase)
            if not needle:
                continue
            if joined == " ".join(tokenize(phrase)):
                confidence = CONFIDENCE_EXACT
            elif needle in normalized:
                confidence = CONFIDENCE_CONTAINED
            elif " " not in needle and any(
                len(token) >= PREFIX_MIN_LENGTH and needle.startswith(token) for token in tokens
            ):
                confidence = CONFIDENCE_PREFIX
            else:
                continue
            if best is None or confidence > best.confidence:
                best = _Match(entry=entry, phrase=phrase, confidence=confidence)
        return best

    def analyze(self, text: str | None) -> _Analysis:
        normalized = normalize_text(text)
        tokens = tokenize(text)
        analysis = _Analysis(language=self.detect_language(text))

        matches = [
            match
            for match in (self._match_entry(entry, normalized, tokens) for entry in self.lexicon)
            if match is not None
        ]
        # Stable sort keeps lexicon order among equal confidences.
        matches.sort(key=lambda match: -match.confidence)

        threshold = self.settings.normalization_min_confidence
        for match in matches:
            entity = MappedEntity(
                canonical=match.entry.canonical,
                entity_type=match.entry.entity_type,
                matched_phrase=match.phrase,
                confidence=match.confidence,
            )
            if match.confidence >= threshold:
                analysis.entities.append(entity)
            else:
                analysis.low_confidence.append(entity)

        confident = {entity.canonical for entity in analysis.entities}
        for term in self.ambiguous_terms:
            if normalize_text(term.term) in tokens and not confident.intersection(term.candidates):
                analysis.ambiguous.append(term)

        return analysis

    def _clarification(self, turn_id: str, analysis: _Analysis) -> PendingClarification | None:
        language = analysis.language
        if analysis.ambiguous:
            term = analysis.ambiguous[0]
            return PendingClarification(
                turn_id=turn_id,
                prompt=term.prompt(language),
                candidates=list(term.candidates),
                reason="ambiguous",
            )
        if analysis.entities:
            return None
        if analysis.low_confidence:
            candidates = [entity.canonical for entity in analysis.low_confidence]
            labels = LABEL_JOINERS[language].join(
                self._by_canonical[canonical].label(language) for canonical in candidates
            )
            return PendingClarification(
                turn_id=turn_id,
                prompt=LOW_CONFIDENCE_PROMPTS[language].format(labels=labels),
                candidates=candidates,
                reason="low_confidence",
            )
        return PendingClarification(
            turn_id=turn_id,
            prompt=NO_MATCH_PROMPTS[language],
            candidates=[],
            reason="no_match",
        )

    # ------------------------------------------------------------------
    # Turn log
    # ------------------------------------------------------------------

    def normalize_turn(
        self,
        block: LanguageNormalizationBlock | None,
        turn_id: str,
        text: str | None,
        now: datetime,
    ) -> tuple[LanguageNormalizationBlock, LanguageNormalizationTurn]:
        """
        Normalize one patient turn and append its record.

        Args:
            block: Current normalization block (None for a fresh intake).
            turn_id: Unique id of the patient turn.
            text: Raw patient text.
            now: Caller-supplied timestamp.

        Returns:
            (new block, appended turn). The input block is not modified.

        Raises:
            DuplicateTurnError: If turn_id was already recorded.
        """
        block = block or LanguageNormalizationBlock()
        if block.get_turn(turn_id) is not None:
            raise DuplicateTurnError(f"Turn '{turn_id}' is already recorded")

        analysis = self.analyze(text)
        pending = self._clarification(turn_id, analysis)

        turn = LanguageNormalizationTurn(
            turn_id=turn_id,
            original_text=text or "",
            detected_language=analysis.language,
            mapped_entities=analysis.entities,
            clarification_required=pending is not None,
            clarification=pending.prompt if pending is not None else None,
            created_at=now,
        )
        updated = LanguageNormalizationBlock(
            turns=[*block.turns, turn],
            pending_clarifications=[
                *block.pending_clarifications,
                *([pending] if pending is not None else []),
            ],
        )

        logger.info(
            "Turn normalized",
            turn_id=turn_id,
            language=analysis.language,
            entities=[entity.canonical for entity in analysis.entities],
            clarification_reason=pending.reason if pending is not None else None,
        )
        return updated, turn

    def resolve_clarification(
        self,
        block: LanguageNormalizationBlock,
        turn_id: str,
        canonical: str,
        now: datetime,
        resolution_turn_id: str | None = None,
    ) -> tuple[LanguageNormalizationBlock, LanguageNormalizationTurn]:
        """
        Resolve a pending clarification with the entity the patient confirmed.

        The original turn stays untouched; a new turn record referencing it via
        `resolves_turn_id` is appended and the pending entry is removed.

        Raises:
            UnknownClarificationError: If no clarification is pending for turn_id,
                or canonical is neither a candidate nor a lexicon entity.
            DuplicateTurnError: If the resolution turn id is already recorded.
        """
        pending = next((p for p in block.pending_clarifications if p.turn_id == turn_id), None)
        if pending is None:
            raise UnknownClarificationError(f"No clarification pending for turn '{turn_id}'")

        entry = self._by_canonical.get(canonical)
        if entry is None or (pending.candidates and canonical not in pending.candidates):
            raise UnknownClarificationError(
                f"'{canonical}' is not a valid resolution for turn '{turn_id}'"
            )

        resolution_turn_id = resolution_turn_id or f"{turn_id}:resolution"
        if block.get_turn(resolution_turn_id) is not None:
            raise DuplicateTurnError(f"Turn '{resolution_turn_id}' is already recorded")

        original = block.get_turn(turn_id)
        language = original.detected_language if original is not None else self.settings.default_language
        turn = LanguageNormalizationTurn(
            turn_id=resolution_turn_id,
            original_text=entry.label(language),
            detected_language=language,
            mapped_entities=[
                MappedEntity(
                    canonical=entry.canonical,
                    entity_type=entry.entity_type,
                    matched_phrase=entry.label(language),
                    confidence=CONFIDENCE_EXACT,
                )
            ],
            resolves_turn_id=turn_id,
            created_at=now,
        )
        updated = LanguageNormalizationBlock(
            turns=[*block.turns, turn],
            pending_clarifications=[p for p in block.pending_clarifications if p.turn_id != turn_id],
        )

        logger.info("Clarification resolved", turn_id=turn_id, canonical=canonical)
        return updated, turn


_default_normalizer = LanguageNormalizer()


def detect_language(text: str | None) -> str:
    return _default_normalizer.detect_language(text)


def normalize_turn(
    block: LanguageNormalizationBlock | None,
    turn_id: str,
    text: str | None,
    now: datetime,
) -> tuple[LanguageNormalizationBlock, LanguageNormalizationTurn]:
    """Normalize a turn with the default lexicon. See `LanguageNormalizer.normalize_turn`."""
    return _default_normalizer.normalize_turn(block, turn_id, text, now)


def resolve_clarification(
    block: LanguageNormalizationBlock,
    turn_id: str,
    canonical: str,
    now: datetime,
    resolution_turn_id: str | None = None,
) -> tuple[LanguageNormalizationBlock, LanguageNormalizationTurn]:
    return _default_normalizer.resolve_clarification(block, turn_id, canonical, now, resolution_turn_id)
