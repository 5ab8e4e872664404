"""
Intake turn orchestrator.

Runs one patient turn through the full deterministic pipeline:

    turn quality guard -> language normalization -> safety rules
    -> policy/override resolution -> differential reasoning -> follow-up

Redirected turns stop after the guard and leave the intake unchanged.
The orchestrator performs no I/O; callers load the active configs (see
`config_store`) and persist the returned intake version.
"""

from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from intake_reasoning.config.engine_config import DEFAULT_ENGINE_SETTINGS, EngineSettings
from intake_reasoning.config.logging_config import get_logger, intake_log_context
from intake_reasoning.models.intake_models import (
    FollowupState,
    LanguageNormalizationTurn,
    PatientMessage,
    StructuredIntake,
    TurnQualityAssessment,
)
from intake_reasoning.models.reasoning_models import ReasoningConfig, ReasoningPack
from intake_reasoning.models.rule_models import SafetyEvaluation, SafetyRule
from intake_reasoning.services.config_store import (
    ReasoningConfigStore,
    SafetyRuleStore,
    load_active_reasoning_config,
    load_active_rules,
)
from intake_reasoning.services.followup_generator import generate_followup_questions
from intake_reasoning.services.language_normalizer import LanguageNormalizer
from intake_reasoning.services.policy_resolver import OrgSafetyPolicy, apply_policy
from intake_reasoning.services.reasoning_engine import ReasoningEngine
from intake_reasoning.services.safety_rule_engine import SafetyRuleEngine, format_safety_summary_line
from intake_reasoning.services.turn_quality_guard import assess_turn_quality, build_redirect_reply

logger = get_logger(__name__)


class TurnOutcome(BaseModel):
    """Result of processing one patient turn."""
    model_config = ConfigDict(frozen=True)

    intake: StructuredIntake
    assessment: TurnQualityAssessment
    redirect_reply: str | None = None
    normalization: LanguageNormalizationTurn | None = None
    safety: SafetyEvaluation | None = None
    reasoning: ReasoningPack | None = None
    followup: FollowupState | None = None

    @property
    def redirected(self) -> bool:
        return self.assessment.should_redirect

    @property
    def safety_summary(self) -> str | None:
        """Clinician-facing red flag line; None for redirected turns."""
        return format_safety_summary_line(self.safety) if self.safety is not None else None


class IntakeReasoningEngine:
    """
    Deterministic intake pipeline bound to one active rule set and config.

    Build a new instance after an activation event; the engine does not
    cache or reload configuration on its own.
    """

    def __init__(
        self,
        rules: Iterable[SafetyRule],
        reasoning_config: ReasoningConfig | None,
        policy: OrgSafetyPolicy | None = None,
        settings: EngineSettings | None = None,
        normalizer: LanguageNormalizer | None = None,
    ):
        self.settings = settings or DEFAULT_ENGINE_SETTINGS
        self.rules = list(rules)
        self.reasoning_config = reasoning_config
        self.policy = policy or OrgSafetyPolicy()
        self.normalizer = normalizer or LanguageNormalizer(settings=self.settings)
        self._safety = SafetyRuleEngine(self.settings)
        self._reasoning = ReasoningEngine(self.settings)

    @classmethod
    def from_stores(
        cls,
        rule_store: SafetyRuleStore,
        config_store: ReasoningConfigStore,
        config_id: str | None = None,
        policy: OrgSafetyPolicy | None = None,
        settings: EngineSettings | None = None,
    ) -> "IntakeReasoningEngine":
        """Build an engine from the active versions in the given stores (fail closed)."""
        return cls(
            rules=load_active_rules(rule_store),
            reasoning_config=load_active_reasoning_config(config_store, config_id),
            policy=policy,
            settings=settings,
        )

    def evaluate(self, intake: StructuredIntake, now: datetime) -> StructuredIntake:
        """
        Recompute safety, reasoning and follow-up for an intake version.

        An existing clinician override is carried over and re-applied on top
        of the freshly computed evaluation.
        """
        previous_override = intake.safety.override if intake.safety is not None else None
        evaluation = apply_policy(
            self._safety.evaluate(intake, self.rules),
            self.policy,
            previous_override,
        )
        updated = intake.model_copy(update={"safety": evaluation})
        updated = updated.model_copy(
            update={"reasoning": self._reasoning.generate(updated, self.reasoning_config)}
        )
        return updated.model_copy(
            update={"followup": generate_followup_questions(updated, now, self.settings)}
        )

    def process_turn(
        self,
        intake: StructuredIntake,
        turn_id: str,
        text: str,
        now: datetime,
    ) -> TurnOutcome:
        """
        Process one inbound patient turn.

        Args:
            intake: Current intake version.
            turn_id: Unique turn id; reused as the patient message id.
            text: Raw patient text.
            now: Caller-supplied timestamp.

        Returns:
            TurnOutcome with the new intake version. Redirected turns return
            the unchanged intake and a fixed redirect reply.

        Raises:
            DuplicateTurnError: If turn_id was already normalized for this intake.
        """
        with intake_log_context(intake.intake_id, turn_id=turn_id):
            assessment = assess_turn_quality(text, self.settings)
            if assessment.should_redirect:
                return TurnOutcome(
                    intake=intake,
                    assessment=assessment,
                    redirect_reply=build_redirect_reply(assessment),
                )

            block, turn = self.normalizer.normalize_turn(
                intake.language_normalization, turn_id, text, now
            )
            updated = intake.model_copy(
                update={
                    "language_normalization": block,
                    "patient_messages": [
                        *intake.patient_messages,
                        PatientMessage(id=turn_id, text=text),
                    ],
                }
            )
            updated = self.evaluate(updated, now)

            effective = updated.safety.effective
            logger.info(
                "Turn processed",
                escalation_level=effective.level.value if effective.level else None,
                chat_action=effective.action.value,
                next_questions=[question.id for question in updated.followup.next_questions],
            )
            return TurnOutcome(
                intake=updated,
                assessment=assessment,
                normalization=turn,
                safety=updated.safety,
                reasoning=updated.reasoning,
                followup=updated.followup,
            )
