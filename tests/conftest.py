"""Shared fixtures for the intake reasoning test suite.

Uses the real default rule catalog and GP reasoning config so the tests pin
actual catalog behavior.
"""

from datetime import datetime, timezone

import pytest

from intake_reasoning.config.engine_config import EngineSettings
from intake_reasoning.models.intake_models import (
    HistoryOfPresentIllness,
    PatientMessage,
    StructuredIntake,
)
from intake_reasoning.models.models import ConfigStatus, EscalationLevel
from intake_reasoning.models.rule_models import SafetyRule
from intake_reasoning.services.reasoning_catalog import get_default_reasoning_config
from intake_reasoning.services.safety_rule_catalog import get_default_safety_rules


NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
LATER = datetime(2026, 3, 1, 9, 45, tzinfo=timezone.utc)


# =============================================================================
# CONFIG FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def rules():
    return get_default_safety_rules()


@pytest.fixture
def reasoning_config():
    return get_default_reasoning_config()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def later():
    return LATER


def _make_rule(**overrides) -> SafetyRule:
    """Active level B rule with one pattern; override any field."""
    fields = {
        "key": "TEST_RULE",
        "version": 1,
        "status": ConfigStatus.ACTIVE,
        "title": "Test rule",
        "level": EscalationLevel.B,
        "patterns": ["kopfschmerz"],
    }
    fields.update(overrides)
    return SafetyRule(**fields)


# =============================================================================
# INTAKE FIXTURES
# =============================================================================

@pytest.fixture
def empty_intake():
    return StructuredIntake(intake_id="intake-empty")


@pytest.fixture
def chest_pain_intake():
    """Chest pain with a 30-minute duration stated in the same message (level A)."""
    return StructuredIntake(
        intake_id="intake-chest",
        chief_complaint="Brustschmerzen",
        patient_messages=[
            PatientMessage(id="m1", text="Ich habe seit 30 Minuten starke Brustschmerzen."),
        ],
    )


@pytest.fixture
def panic_intake():
    """Palpitations and anxiety without red flags, onset and duration filled."""
    return StructuredIntake(
        intake_id="intake-panic",
        chief_complaint="Herzrasen und Angst",
        history_of_present_illness=HistoryOfPresentIllness(
            onset="seit 3 Wochen",
            duration="wenige Minuten",
            associated_symptoms=["Zittern"],
        ),
        psychosocial_factors=["Stress bei der Arbeit"],
    )


@pytest.fixture
def make_rule():
    """Factory for ad-hoc rules: `make_rule(level=EscalationLevel.A, ...)`."""
    return _make_rule
