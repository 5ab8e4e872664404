"""
Default general-practice reasoning config.

Seed content for a fresh reasoning-config store: version 1, active and
accepted by `guard_reasoning_activation`.
"""

from intake_reasoning.models.models import ConfigStatus, Likelihood
from intake_reasoning.models.reasoning_models import (
    DifferentialTemplate,
    OpenQuestionEntry,
    OpenQuestionTemplate,
    ReasoningConfig,
    RiskWeighting,
)

DEFAULT_REASONING_CONFIG = ReasoningConfig(
    config_id="gp-default",
    version=1,
    status=ConfigStatus.ACTIVE,
    differential_templates=[
        DifferentialTemplate(
            label="Panic-like autonomic episode",
            trigger_terms=["herzrasen", "angst", "panik", "zittern", "palpitations", "panic"],
            base_likelihood=Likelihood.MEDIUM,
        ),
        DifferentialTemplate(
            label="Stress reactivity",
            trigger_terms=["stress", "belastung", "uberforder", "erschopf", "schlaflos", "overwhelmed"],
            base_likelihood=Likelihood.LOW,
        ),
        DifferentialTemplate(
            label="Musculoskeletal chest pain",
            trigger_terms=["brustschmerz", "stechen", "verspann", "chest pain"],
            required_terms=[],
            exclusions=["ausstrahlung in den arm", "kaltschweiss"],
            base_likelihood=Likelihood.MEDIUM,
        ),
        DifferentialTemplate(
            label="Orthostatic dysregulation",
            trigger_terms=["schwindel", "schwarz vor augen", "beim aufstehen", "dizzy", "lightheaded"],
            base_likelihood=Likelihood.LOW,
        ),
        DifferentialTemplate(
            label="Viral respiratory syndrome",
            trigger_terms=["husten", "fieber", "halsschmerz", "schnupfen", "cough", "fever"],
            base_likelihood=Likelihood.LOW,
        ),
    ],
    risk_weighting=RiskWeighting(red_flag_weight=3.0, chronicity_weight=1.0, anxiety_modifier=1.0),
    open_question_templates=[
        OpenQuestionTemplate(
            condition_label="Panic-like autonomic episode",
            questions=[
                OpenQuestionEntry(text="Gab es in den letzten Tagen wiederkehrende Ausloeser im Alltag?", priority=2),
                OpenQuestionEntry(text="Welche Koerperzeichen treten waehrend der Episode zuerst auf?", priority=2),
            ],
        ),
        OpenQuestionTemplate(
            condition_label="Musculoskeletal chest pain",
            questions=[
                OpenQuestionEntry(text="Ist der Schmerz durch Bewegung, Druck oder Lagewechsel reproduzierbar?", priority=1),
                OpenQuestionEntry(text="Gab es ungewohnte koerperliche Belastungen vor Symptombeginn?", priority=2),
            ],
        ),
        OpenQuestionTemplate(
            condition_label="Orthostatic dysregulation",
            questions=[
                OpenQuestionEntry(text="Tritt der Schwindel vor allem beim Aufstehen auf?", priority=1),
                OpenQuestionEntry(text="Trinken Sie ueber den Tag ausreichend?", priority=3),
            ],
        ),
        OpenQuestionTemplate(
            condition_label="Stress reactivity",
            questions=[
                OpenQuestionEntry(text="Wie erholsam ist Ihr Schlaf in den letzten Wochen?", priority=2),
            ],
        ),
    ],
)


def get_default_reasoning_config() -> ReasoningConfig:
    return DEFAULT_REASONING_CONFIG
