"""
Pydantic models for the differential reasoning configuration and output.

A `ReasoningConfig` is versioned with the same draft/active/archived
lifecycle as safety rules. A `ReasoningPack` is derived data: a pure
function of the intake and the active config.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from intake_reasoning.models.models import ConfigStatus, EscalationLevel, Likelihood


# ============================================================================
# Configuration
# ============================================================================

class DifferentialTemplate(BaseModel):
    """Candidate hypothesis with its trigger vocabulary."""
    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1, description="Hypothesis label for clinician review")
    trigger_terms: list[str] = Field(..., min_length=1, description="Any match surfaces the template")
    required_terms: list[str] = Field(default_factory=list, description="All must be present")
    exclusions: list[str] = Field(default_factory=list, description="Any match suppresses the template")
    base_likelihood: Likelihood = Field(default=Likelihood.LOW, description="Starting tier")


class RiskWeighting(BaseModel):
    """Weights for the deterministic risk score."""
    model_config = ConfigDict(frozen=True)

    red_flag_weight: float = Field(default=3.0, ge=0.0, description="Per verified A/B red flag")
    chronicity_weight: float = Field(default=1.0, ge=0.0, description="Per chronicity signal point")
    anxiety_modifier: float = Field(default=1.0, description="Per anxiety signal point")


class OpenQuestionEntry(BaseModel):
    """Question text with priority (1 = highest)."""
    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1, description="Question text")
    priority: Literal[1, 2, 3] = Field(default=2, description="1 = highest")


class OpenQuestionTemplate(BaseModel):
    """Questions attached to a differential label."""
    model_config = ConfigDict(frozen=True)

    condition_label: str = Field(..., min_length=1, description="Differential label this applies to")
    questions: list[OpenQuestionEntry] = Field(default_factory=list, description="Questions")


class ReasoningConfig(BaseModel):
    """Versioned reasoning configuration."""
    model_config = ConfigDict(frozen=True)

    config_id: str = Field(default="default", min_length=1, description="Config identifier")
    version: int = Field(default=1, ge=1, description="Monotonic version per config id")
    status: ConfigStatus = Field(default=ConfigStatus.DRAFT, description="Lifecycle status")
    differential_templates: list[DifferentialTemplate] = Field(default_factory=list)
    risk_weighting: RiskWeighting = Field(default_factory=RiskWeighting)
    open_question_templates: list[OpenQuestionTemplate] = Field(default_factory=list)


# ============================================================================
# Reasoning Pack
# ============================================================================

class Differential(BaseModel):
    """Surfaced hypothesis. Never a diagnosis."""
    model_config = ConfigDict(frozen=True)

    label: str
    likelihood: Likelihood
    matched_triggers: list[str] = Field(default_factory=list)
    base_likelihood: Likelihood


class RiskComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    verified_red_flags: int = 0
    chronicity_signal: int = 0
    anxiety_signal: int = 0


class RiskEstimation(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = 0.0
    level: Likelihood = Likelihood.LOW
    components: RiskComponents = Field(default_factory=RiskComponents)


class OpenQuestion(BaseModel):
    """Reasoning-sourced question candidate."""
    model_config = ConfigDict(frozen=True)

    condition_label: str
    text: str
    priority: Literal[1, 2, 3]


class ReasoningConflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    related_fields: list[str] = Field(default_factory=list)


class SafetyAlignment(BaseModel):
    model_config = ConfigDict(frozen=True)

    blocked_by_safety: bool = False
    effective_level: EscalationLevel | None = None


class ReasoningPack(BaseModel):
    """Derived reasoning output for clinician review."""
    model_config = ConfigDict(frozen=True)

    config_id: str | None = Field(default=None, description="Config the pack was derived from")
    config_version: int | None = Field(default=None, description="Config version")
    differentials: list[Differential] = Field(default_factory=list)
    risk_estimation: RiskEstimation = Field(default_factory=RiskEstimation)
    open_questions: list[OpenQuestion] = Field(default_factory=list)
    recommended_next_steps: list[str] = Field(default_factory=list)
    uncertainties: list[str] = Field(default_factory=list)
    conflicts: list[ReasoningConflict] = Field(default_factory=list)
    safety_alignment: SafetyAlignment = Field(default_factory=SafetyAlignment)

    @property
    def is_empty(self) -> bool:
        return not self.differentials and not self.open_questions
