"""
Pydantic models for versioned safety rules and safety evaluation.

This module defines the structured representation of safety rules,
per-rule evidence, the evaluation verdict, clinician policy overrides and
the resolved effective decision consumed by chat gating.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from intake_reasoning.models.models import ConfigStatus, EscalationLevel


# ============================================================================
# Rule Definition
# ============================================================================

class ExclusionMode(str, Enum):
    """How exclusion patterns suppress a rule."""
    ALWAYS = "always"
    CONDITIONAL = "conditional"  # only when no qualifier group matched


class SafetyRule(BaseModel):
    """Single versioned safety rule. Immutable once active."""
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1, description="Stable rule key (e.g., 'CHEST_PAIN')")
    version: int = Field(default=1, ge=1, description="Monotonic version per key")
    status: ConfigStatus = Field(default=ConfigStatus.DRAFT, description="Lifecycle status")
    title: str = Field(..., min_length=1, description="Clinician-facing title")
    category: str = Field(default="general", description="Clinical category (e.g., 'cardio', 'self_harm')")
    level: EscalationLevel = Field(..., description="Default escalation level when the rule contributes")
    patterns: list[str] = Field(..., min_length=1, description="Trigger phrases; any one suffices")
    requires_any_of: list[list[str]] = Field(
        default_factory=list,
        description="Qualifier groups; when present at least one group must match"
    )
    min_duration_minutes: int | None = Field(
        default=None,
        ge=1,
        description="When set, the rule also needs a stated duration of at least this many minutes"
    )
    exclusions: list[str] = Field(default_factory=list, description="Phrases that suppress the rule")
    exclusion_mode: ExclusionMode = Field(
        default=ExclusionMode.ALWAYS,
        description="Whether exclusions always apply or only without qualifier support"
    )
    requires_verified_evidence: bool = Field(
        default=False,
        description="Only verified firings contribute to escalation"
    )
    rationale: str = Field(default="", description="Why the rule exists (audit text)")

    @property
    def rule_id(self) -> str:
        """Versioned identifier used in evidence and audit trails."""
        return f"{self.key}@v{self.version}"


# ============================================================================
# Evaluation
# ============================================================================

class RuleEvidence(BaseModel):
    """Literal evidence for a fired rule. Audit only, never shown to the patient."""
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="Evidence source (e.g., 'chief_complaint', 'message:m1')")
    pattern: str = Field(..., description="Matched pattern or qualifier")
    snippet: str = Field(..., description="Literal text window around the match")
    kind: str = Field(default="pattern", description="'pattern', 'qualifier' or 'duration'")


class TriggeredRule(BaseModel):
    """A rule that fired during evaluation."""
    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., description="Versioned rule id")
    rule_key: str = Field(..., description="Rule key")
    title: str = Field(..., description="Rule title")
    category: str = Field(..., description="Rule category")
    level: EscalationLevel = Field(..., description="Rule level")
    verified: bool = Field(..., description="Pattern and qualifier found in the same source")
    contributes: bool = Field(..., description="Whether the firing counts toward escalation")
    evidence: list[RuleEvidence] = Field(default_factory=list, description="Literal evidence")


class ChatAction(str, Enum):
    """Action applied to the patient conversation."""
    NONE = "none"
    WARN = "warn"
    REQUIRE_CONFIRM = "require_confirm"
    HARD_STOP = "hard_stop"


OVERRIDE_ACTIONS: tuple[ChatAction, ...] = (
    ChatAction.WARN,
    ChatAction.REQUIRE_CONFIRM,
    ChatAction.HARD_STOP,
)


class PolicyOverride(BaseModel):
    """Clinician-entered manual adjustment. Supersedes computed action until cleared."""
    model_config = ConfigDict(frozen=True)

    override_level: EscalationLevel | None = Field(default=None, description="Overridden level")
    override_action: ChatAction | None = Field(default=None, description="Overridden chat action")
    reason: str = Field(..., min_length=1, description="Mandatory justification")
    created_by: str = Field(..., min_length=1, description="Actor id")
    created_at: datetime = Field(..., description="Caller-supplied timestamp")


class PolicyResult(BaseModel):
    """Decision after applying the organisation/funnel policy to an evaluation."""
    model_config = ConfigDict(frozen=True)

    escalation_level: EscalationLevel | None = Field(default=None, description="Policy level")
    chat_action: ChatAction = Field(default=ChatAction.NONE, description="Policy action")
    policy_id: str = Field(default="default", description="Policy that produced the result")


class DecisionSource(str, Enum):
    """Which layer produced the effective decision."""
    OVERRIDE = "override"
    POLICY = "policy"
    RULE_DEFAULT = "rule_default"


class EffectiveSafety(BaseModel):
    """Final decision after override > policy_result > rule defaults."""
    model_config = ConfigDict(frozen=True)

    level: EscalationLevel | None = Field(default=None, description="Effective level")
    action: ChatAction = Field(default=ChatAction.NONE, description="Effective chat action")
    source: DecisionSource = Field(default=DecisionSource.RULE_DEFAULT, description="Deciding layer")
    chat_blocked: bool = Field(default=False, description="True iff action is hard_stop")
    clinician_review_required: bool = Field(default=False, description="True iff level is B")


class SafetyEvaluation(BaseModel):
    """Safety verdict for one intake version."""
    model_config = ConfigDict(frozen=True)

    red_flag_present: bool = Field(default=False, description="Level A or B present")
    escalation_level: EscalationLevel | None = Field(default=None, description="Computed level")
    triggered_rules: list[TriggeredRule] = Field(default_factory=list, description="Fired rules")
    contradictions_present: bool = Field(
        default=False,
        description="Relevant negatives contradict a contributing rule"
    )
    safety_questions: list[str] = Field(
        default_factory=list,
        description="Safety questions attached to level C evaluations"
    )
    rules_loaded: bool = Field(default=True, description="False when no active rule set was available")
    override: PolicyOverride | None = Field(default=None, description="Active clinician override")
    policy_result: PolicyResult | None = Field(default=None, description="Policy decision")
    effective: EffectiveSafety | None = Field(default=None, description="Resolved decision")

    @property
    def verified_rule_ids(self) -> list[str]:
        return [rule.rule_id for rule in self.triggered_rules if rule.verified]
