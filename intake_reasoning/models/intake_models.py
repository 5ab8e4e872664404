"""
Pydantic models for the structured intake record and its per-turn blocks.

The intake is owned by the surrounding session. The engine never mutates
it in place: every update returns a new copy (`model_copy(update=...)`),
which the caller persists as the next version.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from intake_reasoning.models.reasoning_models import ReasoningPack
from intake_reasoning.models.rule_models import SafetyEvaluation


# ============================================================================
# Clinical Content
# ============================================================================

class HistoryOfPresentIllness(BaseModel):
    """History of present illness."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    onset: str | None = Field(default=None, description="When symptoms started")
    duration: str | None = Field(default=None, description="How long symptoms last")
    course: str | None = Field(default=None, description="Better, worse or unchanged")
    associated_symptoms: list[str] = Field(default_factory=list)
    relieving_factors: list[str] = Field(default_factory=list)
    aggravating_factors: list[str] = Field(default_factory=list)


class PatientMessage(BaseModel):
    """Verbatim patient message kept as literal evidence source."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Message id")
    text: str = Field(default="", description="Verbatim text")


# ============================================================================
# Follow-up
# ============================================================================

class QuestionSource(str, Enum):
    CLINICIAN_REQUEST = "clinician_request"
    REASONING = "reasoning"
    GAP_RULE = "gap_rule"


class FollowupQuestion(BaseModel):
    """Question candidate with a stable id."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable id, e.g. 'gap:onset' or 'reasoning:<label>:<text>'")
    question: str = Field(..., description="Question text")
    why: str = Field(default="", description="Clinician-facing reason")
    priority: Literal[1, 2, 3] = Field(default=2, description="1 = highest")
    source: QuestionSource = Field(..., description="Candidate source")
    objective_id: str | None = Field(default=None, description="Gap objective this question fills")


class ObjectiveStatus(str, Enum):
    ANSWERED = "answered"
    MISSING = "missing"
    BLOCKED_BY_SAFETY = "blocked_by_safety"


class FollowupObjective(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    field_path: str
    status: ObjectiveStatus


class LifecycleState(str, Enum):
    ACTIVE = "active"
    NEEDS_REVIEW = "needs_review"
    COMPLETED = "completed"


class FollowupLifecycle(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: LifecycleState = LifecycleState.ACTIVE
    completed_question_ids: list[str] = Field(default_factory=list)
    skipped_question_ids: list[str] = Field(default_factory=list)
    resumed_at: datetime | None = None
    completed_at: datetime | None = None


class FollowupState(BaseModel):
    """Follow-up block. `asked_question_ids` only grows within a session."""
    model_config = ConfigDict(frozen=True)

    next_questions: list[FollowupQuestion] = Field(default_factory=list)
    queue: list[FollowupQuestion] = Field(default_factory=list)
    asked_question_ids: list[str] = Field(default_factory=list)
    last_generated_at: datetime | None = None
    objectives: list[FollowupObjective] = Field(default_factory=list)
    lifecycle: FollowupLifecycle = Field(default_factory=FollowupLifecycle)


class AnswerStatus(str, Enum):
    ANSWERED = "answered"
    PARTIAL = "partial"
    CONTRADICTION = "contradiction"
    UNANSWERED = "unanswered"


# ============================================================================
# Language Normalization
# ============================================================================

class MappedEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    canonical: str = Field(..., description="Canonical entity id (e.g., 'chest_pain')")
    entity_type: str = Field(..., description="symptom | medication | psychosocial | ...")
    matched_phrase: str = Field(..., description="Lexicon phrase that matched")
    confidence: float = Field(..., ge=0.0, le=1.0)


class PendingClarification(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn_id: str
    prompt: str
    candidates: list[str] = Field(default_factory=list, description="Canonical candidates, may be empty")
    reason: Literal["no_match", "low_confidence", "ambiguous"]


class LanguageNormalizationTurn(BaseModel):
    """One append-only normalization record."""
    model_config = ConfigDict(frozen=True)

    turn_id: str
    original_text: str
    detected_language: str
    mapped_entities: list[MappedEntity] = Field(default_factory=list)
    clarification_required: bool = False
    clarification: str | None = None
    resolves_turn_id: str | None = Field(default=None, description="Turn whose clarification this resolves")
    created_at: datetime


class LanguageNormalizationBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    turns: list[LanguageNormalizationTurn] = Field(default_factory=list)
    pending_clarifications: list[PendingClarification] = Field(default_factory=list)

    def get_turn(self, turn_id: str) -> LanguageNormalizationTurn | None:
        for turn in self.turns:
            if turn.turn_id == turn_id:
                return turn
        return None


# ============================================================================
# Turn Quality
# ============================================================================

class TurnQualityLabel(str, Enum):
    CLINICAL_OR_AMBIGUOUS = "clinical_or_ambiguous"
    BOUNDARY_TEST = "boundary_test"
    NONSENSE_NOISE = "nonsense_noise"


class TurnQualityAssessment(BaseModel):
    """Classification of one inbound turn. Signals are internal only."""
    model_config = ConfigDict(frozen=True)

    label: TurnQualityLabel
    should_redirect: bool
    signals: dict[str, float | int | bool | str] = Field(default_factory=dict)


# ============================================================================
# Structured Intake
# ============================================================================

class StructuredIntake(BaseModel):
    """Nested intake record. Every field is optional; absent data is no signal."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    intake_id: str | None = Field(default=None, description="Intake record id")
    chief_complaint: str | None = Field(default=None)
    history_of_present_illness: HistoryOfPresentIllness = Field(default_factory=HistoryOfPresentIllness)
    relevant_negatives: list[str] = Field(default_factory=list)
    past_medical_history: list[str] = Field(default_factory=list)
    medication: list[str] = Field(default_factory=list)
    psychosocial_factors: list[str] = Field(default_factory=list)
    uncertainties: list[str] = Field(default_factory=list)
    patient_messages: list[PatientMessage] = Field(default_factory=list)

    safety: SafetyEvaluation | None = Field(default=None)
    reasoning: ReasoningPack | None = Field(default=None)
    followup: FollowupState | None = Field(default=None)
    language_normalization: LanguageNormalizationBlock = Field(
        default_factory=LanguageNormalizationBlock
    )
