"""Pin follow-up selection, id stability, lifecycle and answer classification."""

import pytest

from intake_reasoning.config.engine_config import EngineSettings
from intake_reasoning.models.intake_models import (
    AnswerStatus,
    FollowupState,
    HistoryOfPresentIllness,
    LifecycleState,
    ObjectiveStatus,
    QuestionSource,
    StructuredIntake,
)
from intake_reasoning.models.models import EscalationLevel
from intake_reasoning.models.rule_models import ChatAction, SafetyEvaluation
from intake_reasoning.services.followup_generator import (
    UnknownLifecycleActionError,
    append_asked_question_ids,
    build_gap_question_id,
    build_reasoning_question_id,
    classify_followup_answer,
    generate_followup_questions,
    is_followup_blocked_by_safety,
    merge_clinician_requests,
    transition_followup_lifecycle,
)
from intake_reasoning.services.policy_resolver import OrgSafetyPolicy, apply_policy
from intake_reasoning.services.reasoning_engine import generate_reasoning_pack
from intake_reasoning.services.safety_rule_engine import evaluate_safety

MEDICATION_QUESTION = "Nehmen Sie aktuell Medikamente oder relevante Nahrungsergaenzungsmittel ein?"


@pytest.fixture
def reasoned_intake(panic_intake, reasoning_config):
    pack = generate_reasoning_pack(panic_intake, reasoning_config)
    return panic_intake.model_copy(update={"reasoning": pack})


@pytest.fixture
def blocked_intake(chest_pain_intake, rules):
    evaluation = apply_policy(evaluate_safety(chest_pain_intake, rules), OrgSafetyPolicy())
    return chest_pain_intake.model_copy(update={"safety": evaluation})


def _with_followup(intake, followup):
    return intake.model_copy(update={"followup": followup})


def _ids(questions):
    return [question.id for question in questions]


# =============================================================================
# IDS
# =============================================================================

class TestQuestionIds:
    def test_reasoning_id_is_slugged(self):
        question_id = build_reasoning_question_id(
            "Stress reactivity",
            "Wie erholsam ist Ihr Schlaf in den letzten Wochen?",
        )
        assert question_id == "reasoning:stress-reactivity:wie-erholsam-ist-ihr-schlaf-in-den-letzten-wochen"

    def test_gap_id(self):
        assert build_gap_question_id("onset") == "gap:onset"


# =============================================================================
# GENERATION
# =============================================================================

class TestGenerateFollowupQuestions:
    def test_reasoning_questions_come_first(self, reasoned_intake, now):
        followup = generate_followup_questions(reasoned_intake, now)
        assert len(followup.next_questions) == 3
        assert all(question.source == QuestionSource.REASONING for question in followup.next_questions)
        assert followup.next_questions[-1].id == build_reasoning_question_id(
            "Stress reactivity",
            "Wie erholsam ist Ihr Schlaf in den letzten Wochen?",
        )
        assert followup.last_generated_at == now
        assert followup.lifecycle.state == LifecycleState.ACTIVE

    def test_gap_rules_without_reasoning(self, empty_intake, now):
        followup = generate_followup_questions(empty_intake, now)
        assert _ids(followup.next_questions) == ["gap:chief-complaint", "gap:onset", "gap:duration"]
        assert _ids(followup.queue) == ["gap:course", "gap:medication", "gap:psychosocial"]
        assert followup.next_questions[0].objective_id == "objective:chief-complaint"

    def test_asked_ids_are_never_offered(self, empty_intake, now):
        intake = _with_followup(empty_intake, FollowupState(asked_question_ids=["gap:chief-complaint"]))
        followup = generate_followup_questions(intake, now)
        assert _ids(followup.next_questions) == ["gap:onset", "gap:duration", "gap:course"]
        assert followup.asked_question_ids == ["gap:chief-complaint"]

    def test_gap_fallback_once_reasoning_is_exhausted(self, reasoned_intake, now):
        first = generate_followup_questions(reasoned_intake, now)
        intake = append_asked_question_ids(reasoned_intake, _ids(first.next_questions))
        followup = generate_followup_questions(intake, now)
        assert _ids(followup.next_questions) == ["gap:course", "gap:medication"]
        assert not set(_ids(followup.next_questions)) & set(followup.asked_question_ids)

    def test_regeneration_yields_identical_ids(self, reasoned_intake, now, later):
        first = generate_followup_questions(reasoned_intake, now)
        second = generate_followup_questions(reasoned_intake, later)
        assert _ids(first.next_questions) == _ids(second.next_questions)

    def test_cap_comes_from_settings(self, empty_intake, now):
        followup = generate_followup_questions(empty_intake, now, EngineSettings(max_next_questions=1))
        assert _ids(followup.next_questions) == ["gap:chief-complaint"]
        assert len(followup.queue) == 5

    def test_nothing_left_completes_lifecycle(self, now):
        intake = StructuredIntake(
            chief_complaint="Husten",
            history_of_present_illness=HistoryOfPresentIllness(
                onset="gestern",
                duration="ganztags",
                course="unveraendert",
            ),
            medication=["keine"],
            psychosocial_factors=["keine Belastung"],
        )
        followup = generate_followup_questions(intake, now)
        assert followup.next_questions == []
        assert followup.lifecycle.state == LifecycleState.COMPLETED
        assert followup.lifecycle.completed_at == now

    def test_completed_lifecycle_stays_quiet(self, empty_intake, now):
        completed = generate_followup_questions(
            StructuredIntake(
                chief_complaint="x",
                history_of_present_illness=HistoryOfPresentIllness(onset="a", duration="b", course="c"),
                medication=["d"],
                psychosocial_factors=["e"],
            ),
            now,
        )
        followup = generate_followup_questions(_with_followup(empty_intake, completed), now)
        assert followup.next_questions == []
        assert followup.lifecycle.state == LifecycleState.COMPLETED


class TestSafetyBlock:
    def test_level_a_blocks_generation(self, blocked_intake, now):
        assert is_followup_blocked_by_safety(blocked_intake) is True
        followup = generate_followup_questions(blocked_intake, now)
        assert followup.next_questions == []
        assert followup.queue == []
        statuses = {objective.id: objective.status for objective in followup.objectives}
        assert statuses["objective:chief-complaint"] == ObjectiveStatus.ANSWERED
        assert statuses["objective:onset"] == ObjectiveStatus.BLOCKED_BY_SAFETY

    def test_policy_hard_stop_blocks_level_b(self):
        evaluation = apply_policy(
            SafetyEvaluation(escalation_level=EscalationLevel.B),
            OrgSafetyPolicy(level_actions={EscalationLevel.B: ChatAction.HARD_STOP}),
        )
        intake = StructuredIntake(safety=evaluation)
        assert is_followup_blocked_by_safety(intake) is True
        assert is_followup_blocked_by_safety(intake, EngineSettings(block_followup_on_hard_stop=False)) is False

    def test_level_c_does_not_block(self):
        evaluation = apply_policy(SafetyEvaluation(escalation_level=EscalationLevel.C))
        assert is_followup_blocked_by_safety(StructuredIntake(safety=evaluation)) is False


# =============================================================================
# ASKED IDS & CLINICIAN REQUESTS
# =============================================================================

class TestAppendAskedQuestionIds:
    def test_append_is_idempotent(self, empty_intake):
        once = append_asked_question_ids(empty_intake, ["gap:onset", "gap:duration"])
        twice = append_asked_question_ids(once, ["gap:onset", " ", "gap:course"])
        assert twice.followup.asked_question_ids == ["gap:onset", "gap:duration", "gap:course"]
        assert append_asked_question_ids(twice, ["gap:onset"]).followup == twice.followup


class TestMergeClinicianRequests:
    def test_requests_rank_first(self, reasoned_intake, now, later):
        generated = _with_followup(reasoned_intake, generate_followup_questions(reasoned_intake, now))
        merged = merge_clinician_requests(generated, ["Blutdruck selbst gemessen", "  "], later)
        followup = merged.followup
        assert followup.lifecycle.state == LifecycleState.NEEDS_REVIEW
        assert followup.next_questions[0].id == "clinician-request:blutdruck-selbst-gemessen"
        assert followup.next_questions[0].question == "Blutdruck selbst gemessen?"
        assert len(followup.next_questions) == 3
        assert len(followup.queue) == 1

    def test_regeneration_keeps_request(self, reasoned_intake, now, later):
        merged = merge_clinician_requests(reasoned_intake, ["Allergien?"], now)
        followup = generate_followup_questions(merged, later)
        assert followup.next_questions[0].source == QuestionSource.CLINICIAN_REQUEST
        assert followup.lifecycle.state == LifecycleState.ACTIVE


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycleTransitions:
    def test_skip_moves_id_to_asked(self, empty_intake, now):
        intake = _with_followup(empty_intake, generate_followup_questions(empty_intake, now))
        skipped = transition_followup_lifecycle(intake, "skip", "gap:onset", now)
        assert "gap:onset" not in _ids(skipped.followup.next_questions)
        assert skipped.followup.lifecycle.skipped_question_ids == ["gap:onset"]
        assert "gap:onset" in skipped.followup.asked_question_ids

    def test_completing_last_question_completes(self, now, later):
        intake = StructuredIntake(
            chief_complaint="Husten",
            history_of_present_illness=HistoryOfPresentIllness(onset="gestern", duration="kurz", course="gleich"),
            medication=["keine"],
        )
        intake = _with_followup(intake, generate_followup_questions(intake, now))
        assert _ids(intake.followup.next_questions) == ["gap:psychosocial"]

        done = transition_followup_lifecycle(intake, "complete", "gap:psychosocial", later)
        assert done.followup.lifecycle.state == LifecycleState.COMPLETED
        assert done.followup.lifecycle.completed_question_ids == ["gap:psychosocial"]
        assert done.followup.lifecycle.completed_at == later

        resumed = transition_followup_lifecycle(done, "resume", now=later)
        assert resumed.followup.lifecycle.state == LifecycleState.ACTIVE
        assert resumed.followup.lifecycle.resumed_at == later

    def test_skip_without_id_is_noop(self, empty_intake):
        assert transition_followup_lifecycle(empty_intake, "skip") is empty_intake

    def test_unknown_action_raises(self, empty_intake):
        with pytest.raises(UnknownLifecycleActionError):
            transition_followup_lifecycle(empty_intake, "pause")


# =============================================================================
# ANSWER CLASSIFICATION
# =============================================================================

class TestClassifyFollowupAnswer:
    def test_named_medication_is_answered(self):
        status = classify_followup_answer("gap:medication", MEDICATION_QUESTION, "Ich nehme Omega 3.")
        assert status == AnswerStatus.ANSWERED

    def test_bare_affirmation_is_partial(self):
        assert classify_followup_answer("gap:medication", MEDICATION_QUESTION, "Ja") == AnswerStatus.PARTIAL

    @pytest.mark.parametrize("answer", ["nein", "nei", "nope", "Nein, nichts."])
    def test_plain_negation_is_answered(self, answer):
        assert classify_followup_answer("gap:medication", MEDICATION_QUESTION, answer) == AnswerStatus.ANSWERED

    def test_negation_with_substance_is_contradiction(self):
        status = classify_followup_answer("gap:medication", MEDICATION_QUESTION, "none, only omega 3")
        assert status == AnswerStatus.CONTRADICTION

    @pytest.mark.parametrize("answer", ["", "   ", None, "Weiß nicht", "not sure"])
    def test_empty_or_unsure_is_unanswered(self, answer):
        assert classify_followup_answer("gap:onset", "Seit wann?", answer) == AnswerStatus.UNANSWERED

    def test_vague_medication_answer_is_partial(self):
        assert classify_followup_answer("gap:medication", MEDICATION_QUESTION, "Tabletten") == AnswerStatus.PARTIAL

    def test_single_word_elsewhere_is_answered(self):
        assert classify_followup_answer("gap:onset", "Seit wann?", "gestern") == AnswerStatus.ANSWERED
