"""
Default red-flag rule catalog (German and English).

Seed content for a fresh rule store. Every rule here is version 1 and
active, and passes `guard_rule_activation`. Hosts replace or extend it
through the draft/activate workflow in `config_store`.
"""

from intake_reasoning.models.models import ConfigStatus, EscalationLevel
from intake_reasoning.models.rule_models import SafetyRule

RED_FLAG_CATALOG_VERSION = "1.0.0"

CHEST_PAIN_PATTERNS = [
    "brustschmerz",
    "herzschmerz",
    "schmerzen in der brust",
    "schmerz in der brust",
    "brustdruck",
    "brust druck",
    "herzenge",
    "angina pectoris",
    "engegefuhl in der brust",
    "stechen in der brust",
    "brennen in der brust",
    "chest pain",
    "chest discomfort",
    "chest pressure",
    "heart pain",
    "tightness in chest",
    "crushing chest",
    "squeezing chest",
]

CHEST_PAIN_EXCLUSIONS = ["kein brustschmerz", "keine brustschmerzen", "no chest pain"]

PROLONGED_CHEST_PAIN_MINUTES = 20

SAFETY_QUESTIONS_LEVEL_C = [
    "Haben Sie aktuell Brustschmerzen oder Druck in der Brust?",
    "Gab es Ohnmacht, starke Benommenheit oder Bewusstseinsverlust?",
    "Haben Sie Gedanken, sich selbst etwas anzutun?",
]


def _rule(**fields) -> SafetyRule:
    return SafetyRule(version=1, status=ConfigStatus.ACTIVE, **fields)


DEFAULT_SAFETY_RULES: list[SafetyRule] = [
    _rule(
        key="CHEST_PAIN_PROLONGED",
        title="Brustschmerz seit mindestens 20 Minuten",
        category="cardio",
        level=EscalationLevel.A,
        patterns=CHEST_PAIN_PATTERNS,
        min_duration_minutes=PROLONGED_CHEST_PAIN_MINUTES,
        exclusions=CHEST_PAIN_EXCLUSIONS,
        requires_verified_evidence=True,
        rationale="Brustschmerz seit >= 20 Minuten erfordert sofortige Abklaerung.",
    ),
    _rule(
        key="CHEST_PAIN",
        title="Brustschmerz",
        category="cardio",
        level=EscalationLevel.B,
        patterns=CHEST_PAIN_PATTERNS,
        exclusions=CHEST_PAIN_EXCLUSIONS,
        requires_verified_evidence=True,
        rationale="Brustschmerz erfordert eine priorisierte aerztliche Abklaerung.",
    ),
    _rule(
        key="SYNCOPE",
        title="Synkope oder Bewusstseinsverlust",
        category="cardio",
        level=EscalationLevel.B,
        patterns=[
            "ohnmacht", "ohnmachtig", "bewusstlos", "umgekippt", "kollabiert",
            "schwarz vor augen", "synkope", "fainted", "passed out", "lost consciousness",
        ],
        exclusions=["keine ohnmacht", "nicht ohnmachtig", "no fainting"],
        requires_verified_evidence=True,
        rationale="Synkope oder Bewusstseinsverlust erfordert eine dringende Abklaerung.",
    ),
    _rule(
        key="SEVERE_DYSPNEA",
        title="Schwere Atemnot",
        category="respiratory",
        level=EscalationLevel.A,
        patterns=[
            "atemnot", "luftnot", "kann nicht atmen", "bekomme keine luft",
            "shortness of breath", "cannot breathe", "difficulty breathing",
        ],
        requires_any_of=[[
            "stark", "schwer", "in ruhe", "keine luft", "kann nicht atmen",
            "severe", "at rest", "cannot breathe", "gasping",
        ]],
        exclusions=["keine atemnot", "keine luftnot", "no shortness of breath"],
        requires_verified_evidence=True,
        rationale="Schwere Atemnot erfordert sofortige medizinische Abklaerung.",
    ),
    _rule(
        key="SUICIDAL_IDEATION",
        title="Suizidale Gedanken mit Absicht",
        category="suicidal_ideation",
        level=EscalationLevel.A,
        patterns=[
            "suizid", "selbstmord", "umbringen", "leben beenden", "nicht mehr leben",
            "suicide", "kill myself", "end my life", "suicidal", "want to die",
        ],
        requires_any_of=[[
            "plan", "vorhaben", "will mich", "werde mich", "heute", "jetzt",
            "i will", "going to", "tonight", "intend",
        ]],
        exclusions=["keine suizidgedanken", "kein suizid", "not suicidal", "no suicidal"],
        requires_verified_evidence=True,
        rationale="Suizidale Gedanken erfordern sofortige Hilfe und Unterbrechung des digitalen Prozesses.",
    ),
    _rule(
        key="SELF_HARM",
        title="Aktuelle Selbstverletzung",
        category="self_harm",
        level=EscalationLevel.B,
        patterns=[
            "selbstverletzung", "verletze mich", "ritze mich",
            "self-harm", "self harm", "hurt myself", "cutting myself",
        ],
        requires_any_of=[[
            "aktuell", "gerade", "wieder", "heute", "drang",
            "currently", "again", "today", "urge",
        ]],
        requires_verified_evidence=True,
        rationale="Aktuelle Selbstverletzung erfordert priorisierte aerztliche Ruecksprache.",
    ),
    _rule(
        key="ACUTE_PSYCHIATRIC_CRISIS",
        title="Akute psychische Krise",
        category="mental_health",
        level=EscalationLevel.B,
        patterns=[
            "panikattacke", "nervenzusammenbruch", "psychose", "halluzination",
            "panic attack", "breakdown", "psychosis", "hallucination",
        ],
        rationale="Akute psychische Krise erfordert priorisierte aerztliche Ruecksprache.",
    ),
    _rule(
        key="SEVERE_PALPITATIONS",
        title="Palpitationen mit Begleitsymptomen",
        category="cardio",
        level=EscalationLevel.B,
        patterns=["herzrasen", "herzstolpern", "palpitationen", "palpitations", "racing heart"],
        requires_any_of=[[
            "ohnmacht", "umgekippt", "schwindel", "brustschmerz", "atemnot",
            "fainted", "dizzy", "chest pain",
        ]],
        exclusions=["kein herzrasen", "keine palpitationen", "no palpitations"],
        requires_verified_evidence=True,
        rationale="Ausgepraegte Palpitationen erfordern priorisierte Abklaerung.",
    ),
    _rule(
        key="ACUTE_NEUROLOGICAL",
        title="Akute neurologische Ausfaelle",
        category="neurology",
        level=EscalationLevel.A,
        patterns=[
            "lahmung", "gelahmt", "sprachstorung", "kann nicht sprechen", "gesicht hangt",
            "taubheit", "slurred speech", "facial droop", "paralysis", "numbness",
        ],
        requires_any_of=[["plotzlich", "seit heute", "akut", "einseitig", "sudden", "one side"]],
        requires_verified_evidence=True,
        rationale="Akute neurologische Ausfaelle erfordern sofortige Abklaerung.",
    ),
    _rule(
        key="SEVERE_UNCONTROLLED_SYMPTOMS",
        title="Schwere unkontrollierbare Symptome",
        category="general",
        level=EscalationLevel.A,
        patterns=[
            "unertraglich", "unkontrollierbar", "nicht auszuhalten", "akute gefahr",
            "sofort hilfe", "dringend hilfe", "brauche einen krankenwagen", "rettungsdienst",
            "unbearable", "uncontrollable", "acute danger", "immediate help", "urgent help",
            "need an ambulance",
        ],
        exclusions=["nicht unertraglich", "not unbearable"],
        requires_verified_evidence=True,
        rationale="Schwere unkontrollierbare Symptome erfordern eine sofortige Abklaerung.",
    ),
    _rule(
        key="SLEEP_DISTURBANCE",
        title="Schlafstoerung",
        category="general",
        level=EscalationLevel.C,
        patterns=["schlafstorung", "schlaflos", "kann nicht schlafen", "insomnia", "cannot sleep"],
        rationale="Schlafstoerungen werden informativ dokumentiert.",
    ),
]


def get_default_safety_rules() -> list[SafetyRule]:
    """Return a fresh copy of the default catalog."""
    return list(DEFAULT_SAFETY_RULES)
