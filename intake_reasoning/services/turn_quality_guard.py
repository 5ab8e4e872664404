"""
Turn Quality Guard.

Upstream filter that decides whether an inbound patient turn is worth
processing. Only boundary-testing and noise turns are redirected; everything
else, including short replies like "ja", passes as clinical_or_ambiguous.
"""

from intake_reasoning.config.engine_config import DEFAULT_ENGINE_SETTINGS, EngineSettings
from intake_reasoning.config.logging_config import get_logger
from intake_reasoning.models.intake_models import TurnQualityAssessment, TurnQualityLabel
from intake_reasoning.services.language_normalizer import DEFAULT_LEXICON
from intake_reasoning.services.text_matcher import find_phrases, normalize_text

logger = get_logger(__name__)


BOUNDARY_PATTERNS = [
    "system prompt",
    "systemprompt",
    "ignoriere den system",
    "ignoriere alle",
    "ignoriere deine",
    "ignoriere vorherige",
    "ignoriere die anweisungen",
    "ignore previous",
    "ignore all",
    "ignore your",
    "jailbreak",
    "teste nur",
    "ich teste dich",
    "just testing",
    "deine grenzen",
    "your limits",
    "developer mode",
    "entwicklermodus",
    "deine anweisungen",
    "your instructions",
    "bist du eine ki",
    "are you an ai",
    "prompt injection",
]

CLINICAL_MARKERS = [
    "schmerz",
    "pain",
    "beschwerde",
    "symptom",
    "medikament",
    "tablette",
    "medication",
    "arzt",
    "doctor",
    "fieber",
    "blutdruck",
    *(phrase for entry in DEFAULT_LEXICON for phrase in entry.phrases),
]

REDIRECT_REPLIES: dict[TurnQualityLabel, str] = {
    TurnQualityLabel.BOUNDARY_TEST: (
        "Ich bin hier, um Ihre Beschwerden fuer Ihre Aerztin oder Ihren Arzt vorzubereiten. "
        "Erzaehlen Sie mir gern, was Sie gesundheitlich gerade beschaeftigt."
    ),
    TurnQualityLabel.NONSENSE_NOISE: (
        "Das habe ich leider nicht verstanden. Koennen Sie Ihre Beschwerden in ein paar Worten beschreiben?"
    ),
}


def _longest_run(text: str) -> int:
    longest = 0
    current = 0
    previous = None
    for char in text:
        current = current + 1 if char == previous else 1
        previous = char
        longest = max(longest, current)
    return longest


def _density_signals(text: str) -> dict[str, float | int]:
    compact = "".join(char for char in text if not char.isspace())
    length = len(compact)
    if not length:
        return {"length": 0, "alpha_ratio": 0.0, "symbol_ratio": 0.0, "max_run": 0}
    alpha = sum(1 for char in compact if char.isalpha())
    symbols = sum(1 for char in compact if not char.isalnum())
    return {
        "length": length,
        "alpha_ratio": round(alpha / length, 3),
        "symbol_ratio": round(symbols / length, 3),
        "max_run": _longest_run(compact),
    }


def assess_turn_quality(text: str | None, settings: EngineSettings | None = None) -> TurnQualityAssessment:
    """
    Classify one inbound turn.

    - boundary_test: boundary or jailbreak phrasing without clinical markers
    - nonsense_noise: low alphabetic share with dominant symbols or long
      repeated-character runs
    - clinical_or_ambiguous: everything else

    Args:
        text: Raw turn text.
        settings: Engine settings carrying the noise thresholds.

    Returns:
        TurnQualityAssessment; `should_redirect` is true only for the two
        non-clinical labels.
    """
    settings = settings or DEFAULT_ENGINE_SETTINGS
    raw = text or ""
    normalized = normalize_text(raw)

    boundary_hits = find_phrases(normalized, BOUNDARY_PATTERNS)
    clinical_hits = find_phrases(normalized, CLINICAL_MARKERS)
    density = _density_signals(raw)

    signals: dict[str, float | int | bool | str] = {
        **density,
        "boundary_hits": len(boundary_hits),
        "clinical_hits": len(clinical_hits),
    }

    if boundary_hits and not clinical_hits:
        label = TurnQualityLabel.BOUNDARY_TEST
    elif (
        density["length"] >= settings.noise_min_length
        and density["alpha_ratio"] < settings.noise_alpha_ratio
        and (
            density["symbol_ratio"] >= settings.noise_symbol_ratio
            or density["max_run"] >= settings.noise_max_run
        )
    ):
        label = TurnQualityLabel.NONSENSE_NOISE
    else:
        label = TurnQualityLabel.CLINICAL_OR_AMBIGUOUS

    assessment = TurnQualityAssessment(
        label=label,
        should_redirect=label != TurnQualityLabel.CLINICAL_OR_AMBIGUOUS,
        signals=signals,
    )
    if assessment.should_redirect:
        logger.info("Turn redirected", label=label.value, **density)
    return assessment


def build_redirect_reply(assessment: TurnQualityAssessment) -> str | None:
    """Fixed patient-facing reply for a redirected turn, or None when no redirect applies."""
    if not assessment.should_redirect:
        return None
    return REDIRECT_REPLIES[assessment.label]
