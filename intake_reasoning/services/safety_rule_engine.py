"""
Safety Rule Engine.

Evaluates versioned safety rules against a structured intake and yields an
escalation level plus per-rule evidence. Deterministic: no I/O, no clock,
no LLM. Also hosts the structural validator and the activation guard used
by the rule authoring workflow.

Precedence is strict: any contributing level A rule makes the evaluation
level A regardless of what else fired.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from intake_reasoning.config.engine_config import DEFAULT_ENGINE_SETTINGS, EngineSettings
from intake_reasoning.config.logging_config import get_logger
from intake_reasoning.models.intake_models import StructuredIntake
from intake_reasoning.models.models import (
    ConfigStatus,
    EscalationLevel,
    ValidationIssue,
    ValidationResult,
    escalate_level,
    issues_from_pydantic,
)
from intake_reasoning.models.rule_models import (
    ExclusionMode,
    RuleEvidence,
    SafetyEvaluation,
    SafetyRule,
    TriggeredRule,
)
from intake_reasoning.services.safety_rule_catalog import SAFETY_QUESTIONS_LEVEL_C
from intake_reasoning.services.text_matcher import (
    EvidenceSource,
    collect_evidence_sources,
    extract_duration_minutes,
    find_phrases,
    normalize_text,
)

logger = get_logger(__name__)

DURATION_FIELD_REF = "history_of_present_illness.duration"
DURATION_SNIPPET_LENGTH = 80


class SafetyRuleEngine:
    """
    Deterministic red-flag evaluation.

    A rule fires when:
    - any pattern occurs in the combined intake text, AND
    - it has no qualifier groups, or at least one group has a match, AND
    - it is not excluded (see `ExclusionMode`).

    A fired rule is `verified` when a pattern and a matched qualifier occur in
    the same evidence source. It contributes to escalation when verified or
    when the rule does not require verified evidence.

    Rules with `min_duration_minutes` also need a parsed duration at or above
    the threshold, stated either in a source carrying a pattern or in the
    structured HPI duration field.
    """

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or DEFAULT_ENGINE_SETTINGS

    def evaluate(
        self,
        intake: StructuredIntake | None,
        rules: Iterable[SafetyRule],
    ) -> SafetyEvaluation:
        """
        Evaluate rules against an intake.

        Args:
            intake: Intake to evaluate. Missing fields are treated as no signal.
            rules: The active rule set. An empty set yields a neutral evaluation.

        Returns:
            SafetyEvaluation without override or policy result; those are
            attached by the policy resolver.
        """
        rule_list = list(rules)
        if not rule_list:
            logger.warning("No safety rules loaded, returning neutral evaluation")
            return SafetyEvaluation(rules_loaded=False)

        sources = collect_evidence_sources(intake)
        combined = " | ".join(source.normalized for source in sources)

        triggered: list[TriggeredRule] = []
        level: EscalationLevel | None = None

        for rule in rule_list:
            result = self._evaluate_rule(rule, sources, combined)
            if result is None:
                continue
            triggered.append(result)
            if result.contributes:
                level = escalate_level(level, result.level)

        contradictions = False
        if intake is not None and self.settings.contradiction_check_enabled:
            contradictions = self._has_contradictions(intake, rule_list, triggered)
            if contradictions and level != EscalationLevel.A:
                level = EscalationLevel.B

        uncertainty_count = len(intake.uncertainties) if intake is not None else 0
        if level is None and uncertainty_count >= self.settings.uncertainty_escalation_count:
            level = EscalationLevel.C

        evaluation = SafetyEvaluation(
            red_flag_present=level in (EscalationLevel.A, EscalationLevel.B),
            escalation_level=level,
            triggered_rules=triggered,
            contradictions_present=contradictions,
            safety_questions=list(SAFETY_QUESTIONS_LEVEL_C) if level == EscalationLevel.C else [],
        )

        logger.info(
            "Safety evaluation complete",
            rules_evaluated=len(rule_list),
            triggered=[rule.rule_id for rule in triggered],
            escalation_level=level.value if level else None,
            contradictions=contradictions,
        )
        return evaluation

    def _evaluate_rule(
        self,
        rule: SafetyRule,
        sources: list[EvidenceSource],
        combined: str,
    ) -> TriggeredRule | None:
        """Evaluate one rule. Returns None when the rule does not fire."""
        if not find_phrases(combined, rule.patterns):
            return None

        groups = [group for group in rule.requires_any_of if group]
        qualifier_hits = [find_phrases(combined, group) for group in groups]
        duration_evidence = self._duration_evidence(rule, sources)
        qualified = (not groups or any(qualifier_hits)) and (
            rule.min_duration_minutes is None or bool(duration_evidence)
        )

        if rule.exclusions and find_phrases(combined, rule.exclusions):
            if rule.exclusion_mode == ExclusionMode.ALWAYS:
                return None
            has_qualifiers = bool(groups) or rule.min_duration_minutes is not None
            if not (has_qualifiers and qualified):
                return None

        if not qualified:
            return None

        evidence: list[RuleEvidence] = []
        verified = False
        for source in sources:
            patterns_here = find_phrases(source.normalized, rule.patterns)
            if not patterns_here:
                continue
            qualifiers_here = [
                phrase
                for group in groups
                for phrase in find_phrases(source.normalized, group)
            ]
            if not groups or qualifiers_here:
                verified = True
            for pattern in patterns_here:
                evidence.append(
                    RuleEvidence(source=source.ref, pattern=pattern, snippet=source.snippet(pattern))
                )
            for qualifier in qualifiers_here:
                evidence.append(
                    RuleEvidence(
                        source=source.ref,
                        pattern=qualifier,
                        snippet=source.snippet(qualifier),
                        kind="qualifier",
                    )
                )

        if groups and not verified:
            # Qualifier support came from a different source than the pattern.
            for source in sources:
                for group in groups:
                    for qualifier in find_phrases(source.normalized, group):
                        evidence.append(
                            RuleEvidence(
                                source=source.ref,
                                pattern=qualifier,
                                snippet=source.snippet(qualifier),
                                kind="qualifier",
                            )
                        )

        # A duration counts when stated next to the complaint or in the structured duration field.
        evidence.extend(duration_evidence)

        return TriggeredRule(
            rule_id=rule.rule_id,
            rule_key=rule.key,
            title=rule.title,
            category=rule.category,
            level=rule.level,
            verified=verified,
            contributes=verified or not rule.requires_verified_evidence,
            evidence=evidence,
        )

    @staticmethod
    def _duration_evidence(rule: SafetyRule, sources: list[EvidenceSource]) -> list[RuleEvidence]:
        """Durations at or above the rule threshold, from pattern sources and the duration field."""
        if rule.min_duration_minutes is None:
            return []
        evidence: list[RuleEvidence] = []
        for source in sources:
            if source.ref != DURATION_FIELD_REF and not find_phrases(source.normalized, rule.patterns):
                continue
            minutes = extract_duration_minutes(source.text)
            if minutes is None or minutes < rule.min_duration_minutes:
                continue
            evidence.append(
                RuleEvidence(
                    source=source.ref,
                    pattern=f">={rule.min_duration_minutes} min ({minutes} min)",
                    snippet=source.normalized[:DURATION_SNIPPET_LENGTH],
                    kind="duration",
                )
            )
        return evidence

    @staticmethod
    def _has_contradictions(
        intake: StructuredIntake,
        rules: list[SafetyRule],
        triggered: list[TriggeredRule],
    ) -> bool:
        """True when a relevant negative denies a pattern of a contributing rule."""
        contributing = {entry.rule_id for entry in triggered if entry.contributes}
        if not contributing or not intake.relevant_negatives:
            return False
        for rule in rules:
            if rule.rule_id not in contributing:
                continue
            for negative in intake.relevant_negatives:
                if find_phrases(negative, rule.patterns):
                    return True
        return False


def evaluate_safety(
    intake: StructuredIntake | None,
    rules: Iterable[SafetyRule],
    settings: EngineSettings | None = None,
) -> SafetyEvaluation:
    """Evaluate a rule set against an intake. See `SafetyRuleEngine.evaluate`."""
    return SafetyRuleEngine(settings).evaluate(intake, rules)


def format_safety_summary_line(evaluation: SafetyEvaluation) -> str:
    """
    One-line clinician summary, e.g. "Red Flags: Level A (CHEST_PAIN_PROLONGED)."

    Lists the contributing rules; level C appends the open safety questions.
    """
    level = evaluation.escalation_level
    if level is None:
        return "Red Flags: keine."

    keys = ", ".join(rule.rule_key for rule in evaluation.triggered_rules if rule.contributes)
    line = f"Red Flags: Level {level.value} ({keys})." if keys else f"Red Flags: Level {level.value}."
    if level == EscalationLevel.C and evaluation.safety_questions:
        return f"{line} Offene Sicherheitsfragen: {' '.join(evaluation.safety_questions)}"
    return line


# ============================================================================
# Structural Validation & Activation Guard
# ============================================================================

_LEVEL_VALUES = {level.value for level in EscalationLevel}
_MODE_VALUES = {mode.value for mode in ExclusionMode}
_STATUS_VALUES = {status.value for status in ConfigStatus}


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def validate_rule_config(raw: Mapping[str, Any] | SafetyRule) -> ValidationResult:
    """
    Structural validation of a rule payload. Never raises.

    Args:
        raw: Raw authoring payload or an already typed rule.

    Returns:
        ValidationResult with one issue per structural defect.
    """
    data = raw.model_dump() if isinstance(raw, SafetyRule) else dict(raw or {})
    issues: list[ValidationIssue] = []

    key = data.get("key")
    if not isinstance(key, str) or not key.strip():
        issues.append(ValidationIssue(field="key", code="missing_key", message="Rule key is required"))

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        issues.append(ValidationIssue(field="title", code="missing_title", message="Rule title is required"))

    patterns = data.get("patterns")
    if not isinstance(patterns, list) or not any(isinstance(p, str) and p.strip() for p in patterns):
        issues.append(
            ValidationIssue(
                field="patterns",
                code="missing_patterns",
                message="At least one non-empty pattern is required",
            )
        )
    else:
        for index, pattern in enumerate(patterns):
            if not isinstance(pattern, str) or not pattern.strip():
                issues.append(
                    ValidationIssue(
                        field=f"patterns[{index}]",
                        code="blank_pattern",
                        message="Patterns must be non-empty strings",
                    )
                )

    if _enum_value(data.get("level")) not in _LEVEL_VALUES:
        issues.append(
            ValidationIssue(field="level", code="invalid_level", message="Level must be one of A, B, C")
        )

    mode = data.get("exclusion_mode", ExclusionMode.ALWAYS.value)
    if _enum_value(mode) not in _MODE_VALUES:
        issues.append(
            ValidationIssue(
                field="exclusion_mode",
                code="invalid_exclusion_mode",
                message=f"Exclusion mode must be one of {sorted(_MODE_VALUES)}",
            )
        )

    status = data.get("status", ConfigStatus.DRAFT.value)
    if _enum_value(status) not in _STATUS_VALUES:
        issues.append(
            ValidationIssue(
                field="status",
                code="invalid_status",
                message=f"Status must be one of {sorted(_STATUS_VALUES)}",
            )
        )

    groups = data.get("requires_any_of") or []
    if not isinstance(groups, list):
        issues.append(
            ValidationIssue(
                field="requires_any_of",
                code="invalid_qualifier_groups",
                message="Qualifier groups must be a list of pattern lists",
            )
        )
    else:
        for index, group in enumerate(groups):
            if not isinstance(group, list) or not any(isinstance(p, str) and p.strip() for p in group):
                issues.append(
                    ValidationIssue(
                        field=f"requires_any_of[{index}]",
                        code="empty_qualifier_group",
                        message="Qualifier groups must contain at least one pattern",
                    )
                )

    if issues:
        return ValidationResult.from_issues(issues)

    try:
        SafetyRule.model_validate(data)
    except ValidationError as exc:
        return ValidationResult.from_issues(issues_from_pydantic(exc))
    return ValidationResult.success()


def load_safety_rule(raw: Mapping[str, Any]) -> tuple[SafetyRule | None, ValidationResult]:
    """
    Parse a raw rule at the load boundary.

    Returns:
        (rule, result) where rule is None whenever result is not ok.
    """
    result = validate_rule_config(raw)
    if not result.ok:
        return None, result
    return SafetyRule.model_validate(dict(raw)), result


def guard_rule_activation(
    rule: SafetyRule,
    settings: EngineSettings | None = None,
) -> ValidationResult:
    """
    Activation guardrail, distinct from structural validity.

    A structurally valid draft can always be saved; this guard decides
    whether it may be promoted to active.

    Rejects:
    - level A rules that do not require verified evidence
    - rules in sensitive categories without an intent qualifier group
    """
    settings = settings or DEFAULT_ENGINE_SETTINGS
    issues: list[ValidationIssue] = []

    if rule.level == EscalationLevel.A and not rule.requires_verified_evidence:
        issues.append(
            ValidationIssue(
                field="requires_verified_evidence",
                code="a_level_requires_verified_evidence",
                message="Level A rules must require verified evidence before activation",
            )
        )

    sensitive = {normalize_text(category) for category in settings.sensitive_rule_categories}
    if normalize_text(rule.category) in sensitive:
        has_intent = any(
            any(isinstance(p, str) and p.strip() for p in group) for group in rule.requires_any_of
        )
        if not has_intent:
            issues.append(
                ValidationIssue(
                    field="requires_any_of",
                    code="sensitive_category_requires_intent_qualifiers",
                    message=f"Rules in category '{rule.category}' need explicit intent qualifier patterns",
                )
            )

    if issues:
        logger.warning(
            "Rule activation blocked",
            rule_id=rule.rule_id,
            codes=[issue.code for issue in issues],
        )
    return ValidationResult.from_issues(issues)
