"""Pin red-flag evaluation, structural validation and the activation guard."""

import pytest

from intake_reasoning.config.engine_config import EngineSettings
from intake_reasoning.models.intake_models import (
    HistoryOfPresentIllness,
    PatientMessage,
    StructuredIntake,
)
from intake_reasoning.models.models import EscalationLevel
from intake_reasoning.models.rule_models import ExclusionMode, SafetyEvaluation
from intake_reasoning.services.safety_rule_catalog import SAFETY_QUESTIONS_LEVEL_C
from intake_reasoning.services.safety_rule_engine import (
    evaluate_safety,
    format_safety_summary_line,
    guard_rule_activation,
    load_safety_rule,
    validate_rule_config,
)


def _triggered(evaluation, rule_key):
    return next(rule for rule in evaluation.triggered_rules if rule.rule_key == rule_key)


# =============================================================================
# EVALUATION
# =============================================================================

class TestEvaluateSafety:
    def test_verified_prolonged_chest_pain_is_level_a(self, chest_pain_intake, rules):
        evaluation = evaluate_safety(chest_pain_intake, rules)
        assert evaluation.escalation_level == EscalationLevel.A
        assert evaluation.red_flag_present is True
        triggered = _triggered(evaluation, "CHEST_PAIN_PROLONGED")
        assert triggered.verified is True
        assert triggered.contributes is True
        assert triggered.rule_id == "CHEST_PAIN_PROLONGED@v1"

    def test_evidence_references_the_message(self, chest_pain_intake, rules):
        evaluation = evaluate_safety(chest_pain_intake, rules)
        triggered = _triggered(evaluation, "CHEST_PAIN_PROLONGED")
        sources = {entry.source for entry in triggered.evidence}
        assert "message:m1" in sources
        kinds = {entry.kind for entry in triggered.evidence if entry.source == "message:m1"}
        assert kinds == {"pattern", "duration"}

    def test_structured_duration_field_counts_for_prolonged_chest_pain(self, rules):
        intake = StructuredIntake(
            chief_complaint="Brustschmerzen",
            history_of_present_illness=HistoryOfPresentIllness(duration="30 Minuten"),
        )
        evaluation = evaluate_safety(intake, rules)
        triggered = _triggered(evaluation, "CHEST_PAIN_PROLONGED")
        assert triggered.verified is True
        assert triggered.contributes is True
        duration = [entry for entry in triggered.evidence if entry.kind == "duration"]
        assert [entry.source for entry in duration] == ["history_of_present_illness.duration"]
        assert evaluation.escalation_level == EscalationLevel.A
        assert evaluation.red_flag_present is True

    def test_duration_in_unrelated_field_does_not_count(self, rules):
        intake = StructuredIntake(
            chief_complaint="Brustschmerzen",
            medication=["Ibuprofen seit 2 Stunden"],
        )
        evaluation = evaluate_safety(intake, rules)
        assert "CHEST_PAIN_PROLONGED" not in [rule.rule_key for rule in evaluation.triggered_rules]
        assert evaluation.escalation_level == EscalationLevel.B

    def test_unverified_rule_contributes_when_verification_not_required(self, make_rule):
        rule = make_rule(requires_any_of=[["plotzlich"]], requires_verified_evidence=False)
        intake = StructuredIntake(
            chief_complaint="Kopfschmerzen",
            history_of_present_illness=HistoryOfPresentIllness(onset="ganz plötzlich"),
        )
        evaluation = evaluate_safety(intake, [rule])
        triggered = _triggered(evaluation, "TEST_RULE")
        assert triggered.verified is False
        assert triggered.contributes is True
        assert evaluation.escalation_level == EscalationLevel.B

    def test_level_a_dominates_b_and_c(self, make_rule):
        rules = [
            make_rule(key="C_RULE", level=EscalationLevel.C, patterns=["husten"]),
            make_rule(key="B_RULE", level=EscalationLevel.B, patterns=["fieber"]),
            make_rule(key="A_RULE", level=EscalationLevel.A, patterns=["atemnot"]),
        ]
        intake = StructuredIntake(chief_complaint="Husten, Fieber und Atemnot")
        evaluation = evaluate_safety(intake, rules)
        assert evaluation.escalation_level == EscalationLevel.A
        assert [rule.rule_key for rule in evaluation.triggered_rules] == ["C_RULE", "B_RULE", "A_RULE"]

    def test_only_c_is_not_a_red_flag(self, make_rule):
        evaluation = evaluate_safety(
            StructuredIntake(chief_complaint="Husten"),
            [make_rule(level=EscalationLevel.C, patterns=["husten"])],
        )
        assert evaluation.escalation_level == EscalationLevel.C
        assert evaluation.red_flag_present is False
        assert evaluation.safety_questions == SAFETY_QUESTIONS_LEVEL_C

    def test_missing_qualifier_does_not_fire(self, make_rule):
        rule = make_rule(requires_any_of=[["plotzlich"]])
        evaluation = evaluate_safety(StructuredIntake(chief_complaint="Kopfschmerzen"), [rule])
        assert evaluation.triggered_rules == []

    def test_empty_rule_set_is_neutral(self, chest_pain_intake):
        evaluation = evaluate_safety(chest_pain_intake, [])
        assert evaluation.rules_loaded is False
        assert evaluation.escalation_level is None
        assert evaluation.triggered_rules == []

    def test_missing_intake_is_no_signal(self, rules):
        evaluation = evaluate_safety(None, rules)
        assert evaluation.escalation_level is None
        assert evaluation.rules_loaded is True

    def test_evaluation_is_deterministic(self, chest_pain_intake, rules):
        assert evaluate_safety(chest_pain_intake, rules) == evaluate_safety(chest_pain_intake, rules)


class TestDefaultCatalog:
    def test_chest_pain_without_duration_is_level_b(self, rules):
        intake = StructuredIntake(
            patient_messages=[
                PatientMessage(id="m1", text="Ich habe seit 3 Tagen Brustschmerzen und Schwindel."),
            ],
        )
        evaluation = evaluate_safety(intake, rules)
        assert [rule.rule_key for rule in evaluation.triggered_rules] == ["CHEST_PAIN"]
        assert evaluation.escalation_level == EscalationLevel.B
        assert evaluation.red_flag_present is True

    def test_chest_pain_in_chief_complaint_alone_is_level_b(self, rules):
        evaluation = evaluate_safety(StructuredIntake(chief_complaint="Druckgefühl, Brustschmerzen"), rules)
        assert evaluation.escalation_level == EscalationLevel.B
        assert _triggered(evaluation, "CHEST_PAIN").verified is True

    @pytest.mark.parametrize(
        "text",
        [
            "Brustschmerzen seit 1 Stunde",
            "Brustschmerzen seit 35 Minuten",
            "chest pain for 90 minutes",
            "chest pain for 1 hour",
            "Brustschmerzen seit einer halben Stunde",
            "Seit 2h Brustdruck",
        ],
    )
    def test_prolonged_chest_pain_forms_are_level_a(self, rules, text):
        intake = StructuredIntake(patient_messages=[PatientMessage(id="m1", text=text)])
        evaluation = evaluate_safety(intake, rules)
        assert evaluation.escalation_level == EscalationLevel.A
        assert _triggered(evaluation, "CHEST_PAIN_PROLONGED").verified is True

    @pytest.mark.parametrize("duration", ["10 Minuten", "wenige Minuten", "seit 3 Tagen"])
    def test_short_or_unparsed_duration_stays_level_b(self, rules, duration):
        intake = StructuredIntake(
            chief_complaint="Brustschmerzen",
            history_of_present_illness=HistoryOfPresentIllness(duration=duration),
        )
        evaluation = evaluate_safety(intake, rules)
        assert [rule.rule_key for rule in evaluation.triggered_rules] == ["CHEST_PAIN"]
        assert evaluation.escalation_level == EscalationLevel.B

    def test_denied_chest_pain_is_excluded(self, rules):
        intake = StructuredIntake(chief_complaint="Keine Brustschmerzen, nur Husten seit 2 Stunden")
        assert evaluate_safety(intake, rules).triggered_rules == []

    def test_uncontrolled_symptoms_are_level_a(self, rules):
        intake = StructuredIntake(
            chief_complaint="Bauchschmerzen",
            history_of_present_illness=HistoryOfPresentIllness(course="seit heute unerträglich"),
        )
        evaluation = evaluate_safety(intake, rules)
        triggered = _triggered(evaluation, "SEVERE_UNCONTROLLED_SYMPTOMS")
        assert triggered.contributes is True
        assert triggered.evidence[0].source == "history_of_present_illness.course"
        assert evaluation.escalation_level == EscalationLevel.A

    def test_negated_uncontrolled_symptoms_do_not_fire(self, rules):
        intake = StructuredIntake(chief_complaint="Rueckenschmerzen, nicht unerträglich")
        assert evaluate_safety(intake, rules).escalation_level is None


class TestSafetySummaryLine:
    def test_no_level(self):
        assert format_safety_summary_line(SafetyEvaluation()) == "Red Flags: keine."

    def test_lists_contributing_rules(self, chest_pain_intake, rules):
        line = format_safety_summary_line(evaluate_safety(chest_pain_intake, rules))
        assert line == "Red Flags: Level A (CHEST_PAIN_PROLONGED, CHEST_PAIN)."

    def test_level_c_appends_safety_questions(self, rules):
        evaluation = evaluate_safety(StructuredIntake(uncertainties=["Beginn unklar", "Dauer unklar"]), rules)
        line = format_safety_summary_line(evaluation)
        assert line.startswith("Red Flags: Level C. Offene Sicherheitsfragen: ")
        assert line.endswith(SAFETY_QUESTIONS_LEVEL_C[-1])

    def test_unverified_rules_are_not_listed(self, make_rule):
        rule = make_rule(requires_any_of=[["plotzlich"]], requires_verified_evidence=True)
        intake = StructuredIntake(
            chief_complaint="Kopfschmerzen",
            history_of_present_illness=HistoryOfPresentIllness(onset="plötzlich"),
            uncertainties=["Dauer unklar", "Medikation unklar"],
        )
        evaluation = evaluate_safety(intake, [rule])
        assert evaluation.escalation_level == EscalationLevel.C
        assert format_safety_summary_line(evaluation).startswith("Red Flags: Level C. ")


class TestExclusions:
    def test_always_mode_suppresses_rule(self, make_rule):
        rule = make_rule(exclusions=["spannungskopfschmerz"])
        evaluation = evaluate_safety(StructuredIntake(chief_complaint="Spannungskopfschmerz"), [rule])
        assert evaluation.triggered_rules == []

    def test_always_mode_suppresses_even_with_qualifier(self, make_rule):
        rule = make_rule(requires_any_of=[["plotzlich"]], exclusions=["bekannt"])
        intake = StructuredIntake(chief_complaint="Plötzlich Kopfschmerzen, bekannt seit Jahren")
        assert evaluate_safety(intake, [rule]).triggered_rules == []

    def test_conditional_mode_keeps_qualified_rule(self, make_rule):
        rule = make_rule(
            requires_any_of=[["plotzlich"]],
            exclusions=["bekannt"],
            exclusion_mode=ExclusionMode.CONDITIONAL,
        )
        intake = StructuredIntake(chief_complaint="Plötzlich Kopfschmerzen, bekannt seit Jahren")
        evaluation = evaluate_safety(intake, [rule])
        assert [rule.rule_key for rule in evaluation.triggered_rules] == ["TEST_RULE"]

    def test_conditional_mode_without_groups_suppresses(self, make_rule):
        rule = make_rule(exclusions=["bekannt"], exclusion_mode=ExclusionMode.CONDITIONAL)
        intake = StructuredIntake(chief_complaint="Kopfschmerzen, bekannt")
        assert evaluate_safety(intake, [rule]).triggered_rules == []


class TestContradictionsAndUncertainty:
    def test_relevant_negative_contradiction_raises_to_b(self, make_rule):
        rule = make_rule(level=EscalationLevel.C)
        intake = StructuredIntake(
            chief_complaint="Kopfschmerzen",
            relevant_negatives=["keine Kopfschmerzen am Morgen"],
        )
        evaluation = evaluate_safety(intake, [rule])
        assert evaluation.contradictions_present is True
        assert evaluation.escalation_level == EscalationLevel.B
        assert evaluation.red_flag_present is True

    def test_contradiction_check_can_be_disabled(self, make_rule):
        rule = make_rule(level=EscalationLevel.C)
        intake = StructuredIntake(
            chief_complaint="Kopfschmerzen",
            relevant_negatives=["keine Kopfschmerzen am Morgen"],
        )
        evaluation = evaluate_safety(intake, [rule], EngineSettings(contradiction_check_enabled=False))
        assert evaluation.contradictions_present is False
        assert evaluation.escalation_level == EscalationLevel.C

    def test_contradiction_never_lowers_a(self, rules):
        intake = StructuredIntake(
            patient_messages=[PatientMessage(id="m1", text="Seit 30 Minuten Brustschmerzen")],
            relevant_negatives=["vorher nie Brustschmerzen"],
        )
        evaluation = evaluate_safety(intake, rules)
        assert evaluation.contradictions_present is True
        assert evaluation.escalation_level == EscalationLevel.A

    def test_relevant_negatives_alone_do_not_fire(self, rules):
        intake = StructuredIntake(relevant_negatives=["keine Atemnot", "keine Brustschmerzen"])
        evaluation = evaluate_safety(intake, rules)
        assert evaluation.triggered_rules == []
        assert evaluation.escalation_level is None

    def test_two_uncertainties_yield_level_c(self, rules):
        intake = StructuredIntake(uncertainties=["Beginn unklar", "Medikation unklar"])
        evaluation = evaluate_safety(intake, rules)
        assert evaluation.escalation_level == EscalationLevel.C
        assert evaluation.safety_questions == SAFETY_QUESTIONS_LEVEL_C

    def test_one_uncertainty_is_silent(self, rules):
        intake = StructuredIntake(uncertainties=["Beginn unklar"])
        assert evaluate_safety(intake, rules).escalation_level is None


# =============================================================================
# VALIDATION & GUARD
# =============================================================================

VALID_PAYLOAD = {
    "key": "NEW_RULE",
    "title": "Neue Regel",
    "level": "B",
    "patterns": ["fieber"],
    "requires_any_of": [["hoch", "40 grad"]],
}


class TestValidateRuleConfig:
    def test_valid_payload(self):
        result = validate_rule_config(VALID_PAYLOAD)
        assert result.ok is True
        assert result.errors == []

    def test_typed_rule_is_valid(self, rules):
        assert all(validate_rule_config(rule).ok for rule in rules)

    def test_missing_fields_are_reported(self):
        result = validate_rule_config({"level": "B"})
        assert result.ok is False
        assert result.codes == ["missing_key", "missing_title", "missing_patterns"]

    def test_blank_pattern(self):
        result = validate_rule_config({**VALID_PAYLOAD, "patterns": ["fieber", " "]})
        assert result.codes == ["blank_pattern"]
        assert result.errors[0].field == "patterns[1]"

    def test_invalid_enums(self):
        result = validate_rule_config({**VALID_PAYLOAD, "level": "D", "exclusion_mode": "sometimes"})
        assert result.codes == ["invalid_level", "invalid_exclusion_mode"]

    def test_empty_qualifier_group(self):
        result = validate_rule_config({**VALID_PAYLOAD, "requires_any_of": [["hoch"], []]})
        assert result.codes == ["empty_qualifier_group"]
        assert result.errors[0].field == "requires_any_of[1]"

    def test_never_raises_on_garbage(self):
        result = validate_rule_config({"key": 5, "patterns": "fieber", "requires_any_of": "x"})
        assert result.ok is False
        assert "invalid_qualifier_groups" in result.codes

    def test_load_boundary_returns_typed_rule(self):
        rule, result = load_safety_rule(VALID_PAYLOAD)
        assert result.ok is True
        assert rule.level == EscalationLevel.B
        assert rule.rule_id == "NEW_RULE@v1"

    def test_load_boundary_rejects_invalid(self):
        rule, result = load_safety_rule({"key": "X"})
        assert rule is None
        assert result.ok is False


class TestGuardRuleActivation:
    def test_level_a_without_verified_evidence_is_rejected(self, make_rule):
        rule = make_rule(level=EscalationLevel.A, requires_verified_evidence=False)
        result = guard_rule_activation(rule)
        assert result.ok is False
        assert result.codes == ["a_level_requires_verified_evidence"]

    def test_level_a_with_verification_and_intent_is_accepted(self, make_rule):
        rule = make_rule(
            level=EscalationLevel.A,
            category="suicidal_ideation",
            patterns=["suizid"],
            requires_any_of=[["plan", "heute"]],
            requires_verified_evidence=True,
        )
        assert guard_rule_activation(rule).ok is True

    def test_sensitive_category_needs_intent_qualifiers(self, make_rule):
        rule = make_rule(category="self_harm", patterns=["ritze mich"])
        result = guard_rule_activation(rule)
        assert result.codes == ["sensitive_category_requires_intent_qualifiers"]

    def test_sensitive_categories_follow_settings(self, make_rule):
        rule = make_rule(category="cardio")
        settings = EngineSettings(sensitive_rule_categories=("cardio",))
        assert guard_rule_activation(rule, settings).ok is False

    def test_structurally_valid_draft_can_still_be_blocked(self, make_rule):
        rule = make_rule(level=EscalationLevel.A)
        assert validate_rule_config(rule).ok is True
        assert guard_rule_activation(rule).ok is False

    def test_default_catalog_passes_guard(self, rules):
        blocked = [rule.rule_id for rule in rules if not guard_rule_activation(rule).ok]
        assert blocked == []

    @pytest.mark.parametrize("category", ["self_harm", "Suicidal_Ideation"])
    def test_sensitive_category_match_is_case_insensitive(self, make_rule, category):
        rule = make_rule(category=category)
        assert "sensitive_category_requires_intent_qualifiers" in guard_rule_activation(rule).codes
