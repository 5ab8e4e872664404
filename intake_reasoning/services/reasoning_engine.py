"""
Differential Reasoning Engine.

Pure function (intake, config) -> ReasoningPack. No randomness, no clock
reads, no I/O: identical input always yields an identical pack.

Produces non-diagnostic hypothesis labels for clinician review, a
weighted risk estimation and the open questions attached to surfaced
differentials. Open questions are neither deduplicated nor
capped here; the follow-up generator owns that.
"""

import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from intake_reasoning.config.engine_config import DEFAULT_ENGINE_SETTINGS, EngineSettings
from intake_reasoning.config.logging_config import get_logger
from intake_reasoning.models.intake_models import StructuredIntake
from intake_reasoning.models.models import (
    LIKELIHOOD_ORDER,
    EscalationLevel,
    Likelihood,
    ValidationIssue,
    ValidationResult,
    issues_from_pydantic,
)
from intake_reasoning.models.reasoning_models import (
    Differential,
    OpenQuestion,
    ReasoningConfig,
    ReasoningConflict,
    ReasoningPack,
    RiskComponents,
    RiskEstimation,
    SafetyAlignment,
)
from intake_reasoning.services.text_matcher import collect_intake_text, find_phrases, normalize_text

logger = get_logger(__name__)


# Matched trigger count -> likelihood steps above base, checked in order.
MATCH_STRENGTH_STEPS: tuple[tuple[int, int], ...] = (
    (3, 2),
    (2, 1),
    (1, 0),
)

CHRONICITY_LONG = re.compile(r"jahr|monat|woche|year|month|week")
CHRONICITY_SHORT = re.compile(r"\btag|\bday")

ANXIETY_MARKERS = ["angst", "panik", "nervos", "anxiety", "panic"]

HARD_RISK_MARKERS = [
    "brustschmerz seit 30",
    "ich will mich umbringen",
    "habe einen plan",
    "starke atemnot",
    "cannot breathe",
]

NO_DIFFERENTIAL_UNCERTAINTY = (
    "Keine Differentialdiagnose konnte auf konfigurierte Trigger-Terms zurueckgefuehrt werden."
)


def escalate_likelihood(base: Likelihood, steps: int) -> Likelihood:
    """Move `steps` tiers up from base, capped at the highest tier."""
    index = LIKELIHOOD_ORDER.index(base)
    return LIKELIHOOD_ORDER[max(0, min(len(LIKELIHOOD_ORDER) - 1, index + steps))]


def match_strength_steps(matched_count: int) -> int:
    for minimum, steps in MATCH_STRENGTH_STEPS:
        if matched_count >= minimum:
            return steps
    return 0


def effective_safety_level(intake: StructuredIntake) -> EscalationLevel | None:
    """Effective level > policy level > computed level."""
    safety = intake.safety
    if safety is None:
        return None
    if safety.effective is not None:
        return safety.effective.level
    if safety.policy_result is not None:
        return safety.policy_result.escalation_level
    return safety.escalation_level


def count_verified_red_flags(intake: StructuredIntake) -> int:
    if intake.safety is None:
        return 0
    return sum(
        1
        for rule in intake.safety.triggered_rules
        if rule.verified and rule.level in (EscalationLevel.A, EscalationLevel.B)
    )


def chronicity_signal(intake: StructuredIntake) -> int:
    """0 = none/unknown, 1 = days, 2 = weeks or longer."""
    hpi = intake.history_of_present_illness
    duration = normalize_text(hpi.duration or hpi.onset)
    if not duration:
        return 0
    if CHRONICITY_LONG.search(duration):
        return 2
    if CHRONICITY_SHORT.search(duration):
        return 1
    return 0


def anxiety_signal(evidence_text: str) -> int:
    return 1 if find_phrases(evidence_text, ANXIETY_MARKERS) else 0


class ReasoningEngine:
    """Deterministic differential reasoning over one active config."""

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or DEFAULT_ENGINE_SETTINGS

    def generate(self, intake: StructuredIntake, config: ReasoningConfig | None) -> ReasoningPack:
        """
        Build the reasoning pack for an intake.

        Args:
            intake: Intake including its resolved safety block (if any).
            config: Active reasoning config; None yields an empty pack.

        Returns:
            ReasoningPack; structurally equal for structurally equal input.
        """
        if config is None:
            logger.warning("No active reasoning config, returning empty reasoning pack")
            return ReasoningPack()

        # Relevant negatives are denials and never count as evidence.
        evidence_text = collect_intake_text(intake)
        verified_red_flags = count_verified_red_flags(intake)
        chronicity = chronicity_signal(intake)
        anxiety = anxiety_signal(evidence_text)
        weights = config.risk_weighting

        raw_score = (
            verified_red_flags * weights.red_flag_weight
            + chronicity * weights.chronicity_weight
            + anxiety * weights.anxiety_modifier
        )
        score = max(0.0, round(raw_score, 2))
        risk_level = self._band(score)

        safety_level = effective_safety_level(intake)
        if safety_level == EscalationLevel.A:
            risk_level = Likelihood.HIGH
        elif (
            risk_level == Likelihood.HIGH
            and verified_red_flags == 0
            and not find_phrases(evidence_text, HARD_RISK_MARKERS)
        ):
            risk_level = Likelihood.MEDIUM

        differentials = self._differentials(config, evidence_text, risk_level)
        open_questions = self._open_questions(config, differentials)

        uncertainties = list(intake.uncertainties)
        if not differentials:
            uncertainties.append(NO_DIFFERENTIAL_UNCERTAINTY)

        pack = ReasoningPack(
            config_id=config.config_id,
            config_version=config.version,
            differentials=differentials,
            risk_estimation=RiskEstimation(
                score=score,
                level=risk_level,
                components=RiskComponents(
                    verified_red_flags=verified_red_flags,
                    chronicity_signal=chronicity,
                    anxiety_signal=anxiety,
                ),
            ),
            open_questions=open_questions,
            recommended_next_steps=self._next_steps(risk_level, verified_red_flags, open_questions),
            uncertainties=uncertainties,
            conflicts=self._conflicts(intake, safety_level, risk_level),
            safety_alignment=SafetyAlignment(
                blocked_by_safety=safety_level == EscalationLevel.A,
                effective_level=safety_level,
            ),
        )

        logger.info(
            "Reasoning pack generated",
            config_id=config.config_id,
            config_version=config.version,
            differentials=[entry.label for entry in differentials],
            risk_score=score,
            risk_level=risk_level.value,
            open_questions=len(open_questions),
        )
        return pack

    def _band(self, score: float) -> Likelihood:
        if score >= self.settings.risk_high_threshold:
            return Likelihood.HIGH
        if score >= self.settings.risk_medium_threshold:
            return Likelihood.MEDIUM
        return Likelihood.LOW

    @staticmethod
    def _differentials(
        config: ReasoningConfig,
        evidence_text: str,
        risk_level: Likelihood,
    ) -> list[Differential]:
        results: list[Differential] = []
        for template in config.differential_templates:
            matched = find_phrases(evidence_text, template.trigger_terms)
            if not matched:
                continue
            required = [term for term in template.required_terms if term.strip()]
            if len(find_phrases(evidence_text, required)) != len(required):
                continue
            if find_phrases(evidence_text, template.exclusions):
                continue

            steps = match_strength_steps(len(matched))
            if risk_level == Likelihood.HIGH:
                steps += 1
            results.append(
                Differential(
                    label=template.label,
                    likelihood=escalate_likelihood(template.base_likelihood, steps),
                    matched_triggers=matched,
                    base_likelihood=template.base_likelihood,
                )
            )

        # Stable sort keeps declaration order for ties.
        results.sort(
            key=lambda entry: (
                -LIKELIHOOD_ORDER.index(entry.likelihood),
                -len(entry.matched_triggers),
            )
        )
        return results

    @staticmethod
    def _open_questions(
        config: ReasoningConfig,
        differentials: list[Differential],
    ) -> list[OpenQuestion]:
        surfaced = {normalize_text(entry.label) for entry in differentials}
        questions: list[OpenQuestion] = []
        for template in config.open_question_templates:
            if normalize_text(template.condition_label) not in surfaced:
                continue
            for entry in template.questions:
                questions.append(
                    OpenQuestion(
                        condition_label=template.condition_label,
                        text=entry.text,
                        priority=entry.priority,
                    )
                )
        return questions

    @staticmethod
    def _next_steps(
        risk_level: Likelihood,
        verified_red_flags: int,
        open_questions: list[OpenQuestion],
    ) -> list[str]:
        steps: list[str] = []
        if risk_level == Likelihood.HIGH:
            steps.append("Zeitnahe klinische Priorisierung und unmittelbare Red-Flag-Abklaerung.")
        elif risk_level == Likelihood.MEDIUM:
            steps.append("Gezielte zeitnahe Verlaufsklaerung und differenzialdiagnostische Vertiefung.")
        else:
            steps.append("Strukturierte ambulante Abklaerung und Symptomverlauf dokumentieren.")
        if verified_red_flags > 0:
            steps.append("Verifizierte Red Flags priorisiert erneut pruefen und dokumentieren.")
        if open_questions:
            steps.append("Priorisierte offene Fragen im naechsten Kontakt systematisch klaeren.")
        return steps

    @staticmethod
    def _conflicts(
        intake: StructuredIntake,
        safety_level: EscalationLevel | None,
        risk_level: Likelihood,
    ) -> list[ReasoningConflict]:
        conflicts: list[ReasoningConflict] = []
        if intake.safety is not None and intake.safety.contradictions_present:
            conflicts.append(
                ReasoningConflict(
                    code="safety_contradictions_present",
                    message="Safety meldet Widerspruch zwischen positiven Aussagen und expliziten Negativa.",
                    related_fields=["safety.contradictions_present", "relevant_negatives"],
                )
            )
        if safety_level == EscalationLevel.A and risk_level != Likelihood.HIGH:
            conflicts.append(
                ReasoningConflict(
                    code="risk_below_safety_escalation",
                    message="Reasoning-Risiko unterschreitet Safety-Level A.",
                    related_fields=["reasoning.risk_estimation.level", "safety.effective.level"],
                )
            )
        return conflicts


def generate_reasoning_pack(
    intake: StructuredIntake,
    config: ReasoningConfig | None,
    settings: EngineSettings | None = None,
) -> ReasoningPack:
    """Build a reasoning pack. See `ReasoningEngine.generate`."""
    return ReasoningEngine(settings).generate(intake, config)


# ============================================================================
# Structural Validation & Activation Guard
# ============================================================================

_LIKELIHOOD_VALUES = {tier.value for tier in Likelihood}


def _non_blank_strings(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [value for value in values if isinstance(value, str) and value.strip()]


def validate_reasoning_config(raw: Mapping[str, Any] | ReasoningConfig) -> ValidationResult:
    """
    Structural validation of a reasoning config payload. Never raises.

    A template with zero questions is structurally valid; it is the
    activation guard that blocks it.
    """
    data = raw.model_dump() if isinstance(raw, ReasoningConfig) else dict(raw or {})
    issues: list[ValidationIssue] = []

    templates = data.get("differential_templates", [])
    if not isinstance(templates, list):
        issues.append(
            ValidationIssue(
                field="differential_templates",
                code="invalid_differential_templates",
                message="Differential templates must be a list",
            )
        )
        templates = []
    for index, template in enumerate(templates):
        path = f"differential_templates[{index}]"
        if not isinstance(template, Mapping):
            issues.append(ValidationIssue(field=path, code="invalid_template", message="Template must be an object"))
            continue
        label = template.get("label")
        if not isinstance(label, str) or not label.strip():
            issues.append(ValidationIssue(field=f"{path}.label", code="missing_label", message="Label is required"))
        if not _non_blank_strings(template.get("trigger_terms")):
            issues.append(
                ValidationIssue(
                    field=f"{path}.trigger_terms",
                    code="missing_trigger_terms",
                    message="At least one trigger term is required",
                )
            )
        base = template.get("base_likelihood", Likelihood.LOW.value)
        if getattr(base, "value", base) not in _LIKELIHOOD_VALUES:
            issues.append(
                ValidationIssue(
                    field=f"{path}.base_likelihood",
                    code="invalid_likelihood",
                    message=f"Base likelihood must be one of {sorted(_LIKELIHOOD_VALUES)}",
                )
            )

    weighting = data.get("risk_weighting") or {}
    if isinstance(weighting, Mapping):
        for name in ("red_flag_weight", "chronicity_weight"):
            value = weighting.get(name, 0)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                issues.append(
                    ValidationIssue(
                        field=f"risk_weighting.{name}",
                        code="invalid_weight",
                        message="Weights must be non-negative numbers",
                    )
                )
        modifier = weighting.get("anxiety_modifier", 0)
        if not isinstance(modifier, (int, float)) or isinstance(modifier, bool):
            issues.append(
                ValidationIssue(
                    field="risk_weighting.anxiety_modifier",
                    code="invalid_weight",
                    message="Anxiety modifier must be a number",
                )
            )

    question_templates = data.get("open_question_templates", [])
    if not isinstance(question_templates, list):
        issues.append(
            ValidationIssue(
                field="open_question_templates",
                code="invalid_open_question_templates",
                message="Open question templates must be a list",
            )
        )
        question_templates = []
    for index, template in enumerate(question_templates):
        path = f"open_question_templates[{index}]"
        if not isinstance(template, Mapping):
            issues.append(ValidationIssue(field=path, code="invalid_template", message="Template must be an object"))
            continue
        label = template.get("condition_label")
        if not isinstance(label, str) or not label.strip():
            issues.append(
                ValidationIssue(
                    field=f"{path}.condition_label",
                    code="missing_condition_label",
                    message="Condition label is required",
                )
            )
        for q_index, question in enumerate(template.get("questions") or []):
            q_path = f"{path}.questions[{q_index}]"
            if not isinstance(question, Mapping) or not str(question.get("text") or "").strip():
                issues.append(
                    ValidationIssue(field=f"{q_path}.text", code="missing_question_text", message="Question text is required")
                )
                continue
            if question.get("priority", 2) not in (1, 2, 3):
                issues.append(
                    ValidationIssue(
                        field=f"{q_path}.priority",
                        code="invalid_priority",
                        message="Priority must be 1, 2 or 3",
                    )
                )

    if issues:
        return ValidationResult.from_issues(issues)

    try:
        ReasoningConfig.model_validate(data)
    except ValidationError as exc:
        return ValidationResult.from_issues(issues_from_pydantic(exc))
    return ValidationResult.success()


def load_reasoning_config(raw: Mapping[str, Any]) -> tuple[ReasoningConfig | None, ValidationResult]:
    """
    Parse a raw reasoning config at the load boundary.

    Returns:
        (config, result) where config is None whenever result is not ok.
    """
    result = validate_reasoning_config(raw)
    if not result.ok:
        return None, result
    return ReasoningConfig.model_validate(dict(raw)), result


def guard_reasoning_activation(config: ReasoningConfig) -> ValidationResult:
    """Refuse activation when any open question template has zero questions."""
    issues = [
        ValidationIssue(
            field=f"open_question_templates[{index}].questions",
            code="open_question_template_without_questions",
            message=f"Template '{template.condition_label}' has no questions",
        )
        for index, template in enumerate(config.open_question_templates)
        if not template.questions
    ]
    if issues:
        logger.warning(
            "Reasoning config activation blocked",
            config_id=config.config_id,
            version=config.version,
            codes=[issue.code for issue in issues],
        )
    return ValidationResult.from_issues(issues)
