"""
Follow-up Question Generator.

Derives at most `max_next_questions` (≤ 3) next questions for the patient
from the reasoning pack, falling back to a fixed gap-rule checklist when the
pack has nothing left to ask. Ids are stable so repeated generation yields
identical ids for the same logical question; an id already asked is never
offered again (exact id match only).
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from intake_reasoning.config.engine_config import DEFAULT_ENGINE_SETTINGS, EngineSettings
from intake_reasoning.config.logging_config import get_logger
from intake_reasoning.models.intake_models import (
    AnswerStatus,
    FollowupLifecycle,
    FollowupObjective,
    FollowupQuestion,
    FollowupState,
    LifecycleState,
    ObjectiveStatus,
    QuestionSource,
    StructuredIntake,
)
from intake_reasoning.models.models import EscalationLevel
from intake_reasoning.models.rule_models import ChatAction
from intake_reasoning.services.reasoning_engine import effective_safety_level
from intake_reasoning.services.text_matcher import normalize_text, slugify, tokenize

logger = get_logger(__name__)


SOURCE_PRIORITY: dict[QuestionSource, int] = {
    QuestionSource.CLINICIAN_REQUEST: 0,
    QuestionSource.REASONING: 1,
    QuestionSource.GAP_RULE: 2,
}

CLINICIAN_REQUEST_WHY = "Rueckfrage aus aerztlicher Pruefung"
REASONING_FALLBACK_WHY = "Gezielte Verlaufsklaerung"

LIFECYCLE_ACTIONS = ("resume", "skip", "complete")


class UnknownLifecycleActionError(ValueError):
    """Raised for a lifecycle action other than resume, skip or complete."""


# ============================================================================
# Question Ids
# ============================================================================

def build_reasoning_question_id(condition_label: str, text: str) -> str:
    return f"reasoning:{slugify(condition_label)}:{slugify(text, fallback='question')}"


def build_gap_question_id(slot_key: str) -> str:
    return f"gap:{slot_key}"


def build_clinician_request_id(text: str) -> str:
    return f"clinician-request:{slugify(text, fallback='request')}"


# ============================================================================
# Gap Rules
# ============================================================================

def _has_text(value: str | None) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _has_items(values: list[str]) -> bool:
    return any(_has_text(value) for value in values or [])


@dataclass(frozen=True)
class ObjectiveSlot:
    """One entry of the gap-rule checklist."""
    key: str
    label: str
    field_path: str
    question: str
    why: str
    priority: int
    is_filled: Callable[[StructuredIntake], bool]

    @property
    def objective_id(self) -> str:
        return f"objective:{self.key}"

    @property
    def question_id(self) -> str:
        return build_gap_question_id(self.key)


OBJECTIVE_SLOTS: tuple[ObjectiveSlot, ...] = (
    ObjectiveSlot(
        key="chief-complaint",
        label="Leitsymptom",
        field_path="chief_complaint",
        question="Was ist aktuell Ihr Hauptanliegen oder das wichtigste Symptom?",
        why="Leitsymptom fuer die Einordnung fehlt",
        priority=1,
        is_filled=lambda intake: _has_text(intake.chief_complaint),
    ),
    ObjectiveSlot(
        key="onset",
        label="Beschwerdebeginn",
        field_path="history_of_present_illness.onset",
        question="Seit wann bestehen die Beschwerden?",
        why="Beginn der Beschwerden fehlt",
        priority=1,
        is_filled=lambda intake: _has_text(intake.history_of_present_illness.onset),
    ),
    ObjectiveSlot(
        key="duration",
        label="Beschwerdedauer",
        field_path="history_of_present_illness.duration",
        question="Wie lange halten die Beschwerden typischerweise an?",
        why="Dauer ist fuer Verlauf und Risiko relevant",
        priority=2,
        is_filled=lambda intake: _has_text(intake.history_of_present_illness.duration),
    ),
    ObjectiveSlot(
        key="course",
        label="Beschwerdeverlauf",
        field_path="history_of_present_illness.course",
        question=(
            "Haben sich die Beschwerden zuletzt eher verbessert, verschlechtert "
            "oder sind sie unveraendert?"
        ),
        why="Verlaufseinschaetzung fehlt",
        priority=2,
        is_filled=lambda intake: _has_text(intake.history_of_present_illness.course),
    ),
    ObjectiveSlot(
        key="medication",
        label="Medikationsangaben",
        field_path="medication",
        question="Nehmen Sie aktuell Medikamente oder relevante Nahrungsergaenzungsmittel ein?",
        why="Medikationskontext fehlt",
        priority=3,
        is_filled=lambda intake: _has_items(intake.medication),
    ),
    ObjectiveSlot(
        key="psychosocial",
        label="Psychosoziale Einflussfaktoren",
        field_path="psychosocial_factors",
        question=(
            "Gibt es derzeit Belastungen im Alltag, Schlaf oder Stress, "
            "die die Beschwerden beeinflussen koennten?"
        ),
        why="Psychosoziale Einflussfaktoren fehlen",
        priority=3,
        is_filled=lambda intake: _has_items(intake.psychosocial_factors),
    ),
)


def is_followup_blocked_by_safety(
    intake: StructuredIntake,
    settings: EngineSettings | None = None,
) -> bool:
    """True while the effective decision is level A or a hard stop."""
    settings = settings or DEFAULT_ENGINE_SETTINGS
    if not settings.block_followup_on_hard_stop or intake.safety is None:
        return False

    safety = intake.safety
    if safety.effective is not None:
        action = safety.effective.action
    elif safety.policy_result is not None:
        action = safety.policy_result.chat_action
    else:
        action = ChatAction.NONE

    return effective_safety_level(intake) == EscalationLevel.A or action == ChatAction.HARD_STOP


def build_followup_objectives(intake: StructuredIntake, blocked_by_safety: bool) -> list[FollowupObjective]:
    """Status of every gap-rule slot for this intake version."""
    objectives = []
    for slot in OBJECTIVE_SLOTS:
        if slot.is_filled(intake):
            status = ObjectiveStatus.ANSWERED
        elif blocked_by_safety:
            status = ObjectiveStatus.BLOCKED_BY_SAFETY
        else:
            status = ObjectiveStatus.MISSING
        objectives.append(
            FollowupObjective(
                id=slot.objective_id,
                label=slot.label,
                field_path=slot.field_path,
                status=status,
            )
        )
    return objectives


# ============================================================================
# Candidates
# ============================================================================

def build_reasoning_candidates(intake: StructuredIntake) -> list[FollowupQuestion]:
    """One candidate per open question of the reasoning pack, in pack order."""
    if intake.reasoning is None:
        return []
    candidates = []
    for entry in intake.reasoning.open_questions:
        text = entry.text.strip()
        if not text:
            continue
        candidates.append(
            FollowupQuestion(
                id=build_reasoning_question_id(entry.condition_label, text),
                question=text,
                why=entry.condition_label.strip() or REASONING_FALLBACK_WHY,
                priority=entry.priority,
                source=QuestionSource.REASONING,
            )
        )
    return candidates


def build_gap_rule_candidates(objectives: list[FollowupObjective]) -> list[FollowupQuestion]:
    """Checklist questions for every objective still missing."""
    missing = {objective.id for objective in objectives if objective.status == ObjectiveStatus.MISSING}
    return [
        FollowupQuestion(
            id=slot.question_id,
            question=slot.question,
            why=slot.why,
            priority=slot.priority,
            source=QuestionSource.GAP_RULE,
            objective_id=slot.objective_id,
        )
        for slot in OBJECTIVE_SLOTS
        if slot.objective_id in missing
    ]


def build_clinician_candidates(items: Iterable[str]) -> list[FollowupQuestion]:
    """Turn free-text clinician requests into priority-1 questions."""
    candidates = []
    for item in items:
        text = (item or "").strip()
        if not text:
            continue
        candidates.append(
            FollowupQuestion(
                id=build_clinician_request_id(text),
                question=text if text.endswith("?") else f"{text}?",
                why=CLINICIAN_REQUEST_WHY,
                priority=1,
                source=QuestionSource.CLINICIAN_REQUEST,
            )
        )
    return candidates


def rank_candidates(
    candidates: Iterable[FollowupQuestion],
    asked_ids: Iterable[str],
) -> list[FollowupQuestion]:
    """
    Dedupe, filter and order candidates.

    Drops ids already asked, keeps the first of duplicate ids, then sorts by
    priority and source. The sort is stable, so declaration order breaks ties.
    """
    asked = set(asked_ids)
    seen: set[str] = set()
    kept = []
    for candidate in candidates:
        if candidate.id in asked or candidate.id in seen or not candidate.question.strip():
            continue
        seen.add(candidate.id)
        kept.append(candidate)
    return sorted(kept, key=lambda c: (c.priority, SOURCE_PRIORITY[c.source]))


def _merge_ids(*groups: Iterable[str]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for value in group:
            value = (value or "").strip()
            if value and value not in merged:
                merged.append(value)
    return merged


def _asked_ids(state: FollowupState) -> list[str]:
    return _merge_ids(
        state.asked_question_ids,
        state.lifecycle.completed_question_ids,
        state.lifecycle.skipped_question_ids,
    )


# ============================================================================
# Generation
# ============================================================================

def generate_followup_questions(
    intake: StructuredIntake,
    now: datetime,
    settings: EngineSettings | None = None,
) -> FollowupState:
    """
    Generate the next follow-up questions.

    Args:
        intake: Intake including the reasoning pack and prior follow-up state.
        now: Caller-supplied timestamp stamped into `last_generated_at`.
        settings: Engine settings; only the question cap and safety block apply.

    Returns:
        New FollowupState. `next_questions` never contains an asked id and
        holds at most `settings.max_next_questions` entries; the remaining
        ranked candidates are kept in `queue`.
    """
    settings = settings or DEFAULT_ENGINE_SETTINGS
    existing = intake.followup or FollowupState()
    lifecycle = existing.lifecycle
    asked = _asked_ids(existing)
    blocked = is_followup_blocked_by_safety(intake, settings)
    objectives = build_followup_objectives(intake, blocked)

    if lifecycle.state == LifecycleState.COMPLETED:
        return FollowupState(
            asked_question_ids=asked,
            last_generated_at=now,
            objectives=objectives,
            lifecycle=lifecycle,
        )

    if blocked:
        logger.info("Follow-up generation blocked by safety", intake_id=intake.intake_id)
        return FollowupState(
            asked_question_ids=asked,
            last_generated_at=now,
            objectives=objectives,
            lifecycle=lifecycle.model_copy(update={"state": LifecycleState.ACTIVE}),
        )

    clinician = [
        question
        for question in [*existing.next_questions, *existing.queue]
        if question.source == QuestionSource.CLINICIAN_REQUEST
    ]
    reasoning = [question for question in build_reasoning_candidates(intake) if question.id not in asked]
    primary = reasoning or build_gap_rule_candidates(objectives)

    ranked = rank_candidates([*clinician, *primary], asked)
    cap = settings.max_next_questions
    finished = not ranked

    logger.info(
        "Follow-up questions generated",
        intake_id=intake.intake_id,
        source="reasoning" if reasoning else "gap_rule",
        next_question_ids=[question.id for question in ranked[:cap]],
        queued=len(ranked[cap:]),
    )

    return FollowupState(
        next_questions=ranked[:cap],
        queue=ranked[cap:],
        asked_question_ids=asked,
        last_generated_at=now,
        objectives=objectives,
        lifecycle=lifecycle.model_copy(
            update={
                "state": LifecycleState.COMPLETED if finished else LifecycleState.ACTIVE,
                "completed_at": now if finished else lifecycle.completed_at,
            }
        ),
    )


def append_asked_question_ids(intake: StructuredIntake, ids: Iterable[str]) -> StructuredIntake:
    """
    Record question ids as asked.

    Idempotent: re-appending an existing id is a no-op, and the set only grows.
    """
    existing = intake.followup or FollowupState()
    asked = _merge_ids(existing.asked_question_ids, ids)
    return intake.model_copy(
        update={"followup": existing.model_copy(update={"asked_question_ids": asked})}
    )


def merge_clinician_requests(
    intake: StructuredIntake,
    items: Iterable[str],
    now: datetime,
    settings: EngineSettings | None = None,
) -> StructuredIntake:
    """
    Merge clinician-requested items into the pending questions.

    Requests rank ahead of reasoning and gap questions of equal priority.
    The lifecycle moves to `needs_review` until the next generation.
    """
    settings = settings or DEFAULT_ENGINE_SETTINGS
    existing = intake.followup or FollowupState()
    asked = _asked_ids(existing)
    blocked = is_followup_blocked_by_safety(intake, settings)

    ranked = rank_candidates(
        [*build_clinician_candidates(items), *existing.next_questions, *existing.queue],
        asked,
    )
    cap = settings.max_next_questions

    followup = FollowupState(
        next_questions=ranked[:cap],
        queue=ranked[cap:],
        asked_question_ids=asked,
        last_generated_at=now,
        objectives=build_followup_objectives(intake, blocked),
        lifecycle=existing.lifecycle.model_copy(update={"state": LifecycleState.NEEDS_REVIEW}),
    )
    logger.info(
        "Clinician requests merged",
        intake_id=intake.intake_id,
        pending=len(ranked),
    )
    return intake.model_copy(update={"followup": followup})


def transition_followup_lifecycle(
    intake: StructuredIntake,
    action: str,
    question_id: str | None = None,
    now: datetime | None = None,
) -> StructuredIntake:
    """
    Apply a lifecycle transition.

    Args:
        intake: Intake with follow-up state.
        action: 'resume', 'skip' or 'complete'.
        question_id: Required for skip and complete; ignored otherwise.
        now: Timestamp recorded on the transition.

    Returns:
        Updated intake. Skip and complete without a question id are no-ops.

    Raises:
        UnknownLifecycleActionError: If action is not a known transition.
    """
    if action not in LIFECYCLE_ACTIONS:
        raise UnknownLifecycleActionError(
            f"Unknown follow-up lifecycle action '{action}', expected one of {LIFECYCLE_ACTIONS}"
        )

    question_id = (question_id or "").strip()
    if action in ("skip", "complete") and not question_id:
        return intake

    existing = intake.followup or FollowupState()
    lifecycle = existing.lifecycle
    next_questions = list(existing.next_questions)
    queue = list(existing.queue)
    asked = list(existing.asked_question_ids)
    completed = list(lifecycle.completed_question_ids)
    skipped = list(lifecycle.skipped_question_ids)

    if question_id:
        asked = _merge_ids(asked, [question_id])
        next_questions = [q for q in next_questions if q.id != question_id]
        queue = [q for q in queue if q.id != question_id]
        if action == "skip":
            skipped = _merge_ids(skipped, [question_id])
        elif action == "complete":
            completed = _merge_ids(completed, [question_id])

    if action == "resume" or next_questions or queue:
        state = LifecycleState.ACTIVE
    else:
        state = LifecycleState.COMPLETED

    followup = existing.model_copy(
        update={
            "next_questions": next_questions,
            "queue": queue,
            "asked_question_ids": asked,
            "last_generated_at": now or existing.last_generated_at,
            "lifecycle": FollowupLifecycle(
                state=state,
                completed_question_ids=completed,
                skipped_question_ids=skipped,
                resumed_at=now if action == "resume" else lifecycle.resumed_at,
                completed_at=now if state == LifecycleState.COMPLETED else None,
            ),
        }
    )
    return intake.model_copy(update={"followup": followup})


# ============================================================================
# Answer Classification
# ============================================================================

NEGATION_TOKENS = frozenset(
    {"nein", "nei", "nee", "no", "nope", "none", "kein", "keine", "keinen", "keiner", "nichts", "nix", "nothing"}
)
AFFIRMATION_TOKENS = frozenset({"ja", "jo", "jep", "yes", "yep", "yeah", "genau", "ok", "okay", "stimmt"})
FILLER_TOKENS = frozenset({"ich", "i", "also", "aehm", "hm", "na", "und", "and", "nur", "only"})
INTAKE_VERBS = frozenset({"nehme", "nimm", "nehmen", "take", "taking", "takes"})

UNSURE_PHRASES = [
    "weiss nicht",
    "weiss ich nicht",
    "keine ahnung",
    "nicht sicher",
    "unsicher",
    "dont know",
    "don't know",
    "not sure",
]

SUBSTANCE_LEXICON = [
    "omega",
    "ibuprofen",
    "paracetamol",
    "aspirin",
    "ass",
    "metamizol",
    "novalgin",
    "diclofenac",
    "pantoprazol",
    "omeprazol",
    "metformin",
    "insulin",
    "ramipril",
    "bisoprolol",
    "metoprolol",
    "amlodipin",
    "candesartan",
    "thyroxin",
    "levothyroxin",
    "sertralin",
    "citalopram",
    "escitalopram",
    "venlafaxin",
    "mirtazapin",
    "lorazepam",
    "pille",
    "vitamin",
    "magnesium",
    "eisen",
    "johanniskraut",
    "melatonin",
    "baldrian",
    "ginkgo",
]


def _named_substances(tokens: list[str]) -> list[str]:
    found = [token for token in tokens if token in SUBSTANCE_LEXICON]
    for index, token in enumerate(tokens[:-1]):
        following = tokens[index + 1]
        if token in INTAKE_VERBS and following not in NEGATION_TOKENS and following not in FILLER_TOKENS:
            if following not in found:
                found.append(following)
    return found


def classify_followup_answer(question_id: str, question_text: str, answer: str | None) -> AnswerStatus:
    """
    Classify a patient reply to a follow-up question.

    - empty, or only "don't know" → unanswered
    - a negation together with a named substance → contradiction
    - a plain negation ("nein", "nope") → answered
    - a bare affirmation ("ja") → partial
    - anything else with content → answered
    """
    normalized = normalize_text(answer)
    tokens = tokenize(answer)
    if not tokens:
        return AnswerStatus.UNANSWERED

    if any(phrase in normalized for phrase in UNSURE_PHRASES):
        return AnswerStatus.UNANSWERED

    negated = any(token in NEGATION_TOKENS for token in tokens)
    substances = _named_substances(tokens)

    if negated and substances:
        return AnswerStatus.CONTRADICTION
    if negated:
        return AnswerStatus.ANSWERED

    content = [token for token in tokens if token not in FILLER_TOKENS]
    if not content or all(token in AFFIRMATION_TOKENS for token in content):
        return AnswerStatus.PARTIAL

    asks_for_medication = (
        question_id == build_gap_question_id("medication")
        or "medikament" in normalize_text(question_text)
    )
    if asks_for_medication and not substances and len(content) == 1:
        return AnswerStatus.PARTIAL
    return AnswerStatus.ANSWERED
