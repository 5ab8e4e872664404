"""
Policy Override & Effective-Safety Resolver.

Combines a computed SafetyEvaluation with the organisation/funnel policy
and an optional clinician override into the effective decision that gates
the patient conversation.

Precedence: override > policy_result > rule defaults.

UI contract derived from the effective decision:
- chat is blocked iff the effective action is `hard_stop`
- clinician review is flagged iff the effective level is B
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from intake_reasoning.config.engine_config import EngineSettings
from intake_reasoning.config.logging_config import get_logger
from intake_reasoning.models.intake_models import StructuredIntake
from intake_reasoning.models.models import (
    AuditRecord,
    EscalationLevel,
    ValidationIssue,
    ValidationResult,
)
from intake_reasoning.models.reasoning_models import ReasoningConfig
from intake_reasoning.models.rule_models import (
    OVERRIDE_ACTIONS,
    ChatAction,
    DecisionSource,
    EffectiveSafety,
    PolicyOverride,
    PolicyResult,
    SafetyEvaluation,
)
from intake_reasoning.services.reasoning_engine import generate_reasoning_pack

logger = get_logger(__name__)


RULE_DEFAULT_ACTIONS: dict[EscalationLevel, ChatAction] = {
    EscalationLevel.A: ChatAction.HARD_STOP,
    EscalationLevel.B: ChatAction.REQUIRE_CONFIRM,
    EscalationLevel.C: ChatAction.WARN,
}


class OrgSafetyPolicy(BaseModel):
    """Organisation or funnel level mapping from escalation level to chat action."""
    model_config = ConfigDict(frozen=True)

    policy_id: str = Field(default="default", description="Policy identifier (org or funnel)")
    level_actions: dict[EscalationLevel, ChatAction] = Field(
        default_factory=lambda: dict(RULE_DEFAULT_ACTIONS),
        description="Action applied per escalation level"
    )

    def action_for(self, level: EscalationLevel | None) -> ChatAction:
        if level is None:
            return ChatAction.NONE
        return self.level_actions.get(level, RULE_DEFAULT_ACTIONS[level])


def _default_action(level: EscalationLevel | None) -> ChatAction:
    return RULE_DEFAULT_ACTIONS[level] if level is not None else ChatAction.NONE


def compute_policy_result(evaluation: SafetyEvaluation, policy: OrgSafetyPolicy) -> PolicyResult:
    """Apply the policy mapping to the computed level."""
    return PolicyResult(
        escalation_level=evaluation.escalation_level,
        chat_action=policy.action_for(evaluation.escalation_level),
        policy_id=policy.policy_id,
    )


def resolve_effective_safety(
    evaluation: SafetyEvaluation,
    policy: OrgSafetyPolicy | None = None,
    override: PolicyOverride | None = None,
) -> EffectiveSafety:
    """
    Resolve the effective decision.

    Args:
        evaluation: Computed evaluation, possibly carrying a policy result and override.
        policy: Policy used when the evaluation has no stored policy result.
        override: Explicit override; falls back to `evaluation.override`.

    Returns:
        EffectiveSafety with the derived chat-block and review flags.
    """
    override = override if override is not None else evaluation.override
    policy_result = evaluation.policy_result
    if policy_result is None and policy is not None:
        policy_result = compute_policy_result(evaluation, policy)

    if policy_result is not None:
        level = policy_result.escalation_level
        action = policy_result.chat_action
        source = DecisionSource.POLICY
    else:
        level = evaluation.escalation_level
        action = _default_action(level)
        source = DecisionSource.RULE_DEFAULT

    if override is not None:
        if override.override_level is not None:
            level = override.override_level
            if override.override_action is None:
                action = policy.action_for(level) if policy is not None else _default_action(level)
        if override.override_action is not None:
            action = override.override_action
        source = DecisionSource.OVERRIDE

    return EffectiveSafety(
        level=level,
        action=action,
        source=source,
        chat_blocked=action == ChatAction.HARD_STOP,
        clinician_review_required=level == EscalationLevel.B,
    )


def apply_policy(
    evaluation: SafetyEvaluation,
    policy: OrgSafetyPolicy | None = None,
    override: PolicyOverride | None = None,
) -> SafetyEvaluation:
    """
    Attach policy result, override and effective decision to an evaluation.

    A new policy recomputes `policy_result`; without one the stored result
    is kept. The given override replaces the stored one.
    """
    policy_result = (
        compute_policy_result(evaluation, policy) if policy is not None else evaluation.policy_result
    )
    staged = evaluation.model_copy(update={"policy_result": policy_result, "override": override})
    return staged.model_copy(update={"effective": resolve_effective_safety(staged, policy)})


# ============================================================================
# Override Authoring
# ============================================================================

def _coerce(enum_type, value):
    if value is None or isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        return None


def validate_policy_override(
    override_level: Any,
    override_action: Any,
    reason: str | None,
    created_by: str | None = "system",
) -> ValidationResult:
    """Validate enum membership and the reason requirement. Never raises."""
    issues: list[ValidationIssue] = []

    if override_level is not None and _coerce(EscalationLevel, override_level) is None:
        issues.append(
            ValidationIssue(
                field="override_level",
                code="invalid_override_level",
                message="Override level must be one of A, B, C or null",
            )
        )

    if override_action is not None:
        action = _coerce(ChatAction, override_action)
        if action not in OVERRIDE_ACTIONS:
            issues.append(
                ValidationIssue(
                    field="override_action",
                    code="invalid_override_action",
                    message="Override action must be one of warn, require_confirm, hard_stop or null",
                )
            )

    setting = override_level is not None or override_action is not None
    if setting and not (reason or "").strip():
        issues.append(
            ValidationIssue(
                field="reason",
                code="missing_override_reason",
                message="A reason is required when setting an override",
            )
        )

    if not (created_by or "").strip():
        issues.append(
            ValidationIssue(field="created_by", code="missing_actor", message="Actor id is required")
        )

    return ValidationResult.from_issues(issues)


class OverrideOutcome(BaseModel):
    """Result of setting or clearing an override, including the audit draft."""
    model_config = ConfigDict(frozen=True)

    ok: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    intake: StructuredIntake | None = None
    override: PolicyOverride | None = None
    evaluation: SafetyEvaluation | None = None
    effective_before: EffectiveSafety | None = None
    effective_after: EffectiveSafety | None = None
    audit: AuditRecord | None = None


def _snapshot(override: PolicyOverride | None, effective: EffectiveSafety) -> dict[str, Any]:
    return {
        "override": override.model_dump(mode="json") if override is not None else None,
        "effective": effective.model_dump(mode="json"),
    }


def set_policy_override(
    intake: StructuredIntake,
    *,
    override_level: EscalationLevel | str | None,
    override_action: ChatAction | str | None,
    reason: str | None,
    created_by: str,
    now: datetime,
    reasoning_config: ReasoningConfig | None = None,
    policy: OrgSafetyPolicy | None = None,
    settings: EngineSettings | None = None,
) -> OverrideOutcome:
    """
    Set (or clear, when level and action are both None) a clinician override.

    Validates the input, re-resolves the effective decision, recomputes the
    reasoning pack (which depends on safety) when a config is supplied, and
    returns the updated intake together with an audit record draft. The
    caller persists both.
    """
    validation = validate_policy_override(override_level, override_action, reason, created_by)
    if not validation.ok:
        logger.warning(
            "Policy override rejected",
            intake_id=intake.intake_id,
            codes=validation.codes,
        )
        return OverrideOutcome(ok=False, errors=validation.errors, intake=intake)

    base = intake.safety or SafetyEvaluation(rules_loaded=False)
    previous_override = base.override
    effective_before = base.effective or resolve_effective_safety(base, policy)

    clearing = override_level is None and override_action is None
    new_override = None
    if not clearing:
        new_override = PolicyOverride(
            override_level=_coerce(EscalationLevel, override_level),
            override_action=_coerce(ChatAction, override_action),
            reason=reason.strip(),
            created_by=created_by,
            created_at=now,
        )

    evaluation = apply_policy(base, policy, new_override)
    updated = intake.model_copy(update={"safety": evaluation})
    if reasoning_config is not None:
        updated = updated.model_copy(
            update={"reasoning": generate_reasoning_pack(updated, reasoning_config, settings)}
        )

    audit = AuditRecord(
        event="safety_override_cleared" if clearing else "safety_override_set",
        actor=created_by,
        reason=(reason or "").strip() or None,
        subject_id=intake.intake_id,
        before=_snapshot(previous_override, effective_before),
        after=_snapshot(new_override, evaluation.effective),
        created_at=now,
    )

    logger.info(
        "Policy override applied",
        intake_id=intake.intake_id,
        cleared=clearing,
        level_before=effective_before.level.value if effective_before.level else None,
        level_after=evaluation.effective.level.value if evaluation.effective.level else None,
        action_after=evaluation.effective.action.value,
    )

    return OverrideOutcome(
        ok=True,
        intake=updated,
        override=new_override,
        evaluation=evaluation,
        effective_before=effective_before,
        effective_after=evaluation.effective,
        audit=audit,
    )


def clear_policy_override(
    intake: StructuredIntake,
    *,
    created_by: str,
    now: datetime,
    reason: str | None = None,
    reasoning_config: ReasoningConfig | None = None,
    policy: OrgSafetyPolicy | None = None,
    settings: EngineSettings | None = None,
) -> OverrideOutcome:
    """Clear the active override; the effective decision reverts to the computed one."""
    return set_policy_override(
        intake,
        override_level=None,
        override_action=None,
        reason=reason,
        created_by=created_by,
        now=now,
        reasoning_config=reasoning_config,
        policy=policy,
        settings=settings,
    )
