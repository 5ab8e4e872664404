"""
Explicit tunables for the deterministic engine.

An `EngineSettings` instance is passed to every engine entry point. Nothing
in the engine reads environment variables or module-level flags, so every
combination of settings is reproducible in tests.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EngineSettings(BaseModel):
    """
    Configuration for safety gating, reasoning and follow-up generation.

    All fields have defaults that satisfy the documented conformance
    scenarios; hosts override them through `Settings.engine`.
    """

    model_config = ConfigDict(frozen=True)

    # Follow-up generation
    max_next_questions: int = Field(
        default=3,
        ge=1,
        le=3,
        description="Upper bound on follow-up questions surfaced per generation"
    )
    block_followup_on_hard_stop: bool = Field(
        default=True,
        description="Suppress follow-up questions while a hard stop or level A is active"
    )

    # Risk banding
    risk_high_threshold: float = Field(
        default=7.0,
        ge=0.0,
        description="Minimum risk score for the 'high' band"
    )
    risk_medium_threshold: float = Field(
        default=3.0,
        ge=0.0,
        description="Minimum risk score for the 'medium' band"
    )

    # Safety rules
    sensitive_rule_categories: tuple[str, ...] = Field(
        default=("self_harm", "suicidal_ideation"),
        description="Rule categories that need explicit intent qualifiers before activation"
    )
    uncertainty_escalation_count: int = Field(
        default=2,
        ge=1,
        description="Number of open uncertainties that raise an otherwise silent evaluation to level C"
    )
    contradiction_check_enabled: bool = Field(
        default=True,
        description="Raise non-A evaluations to level B when relevant negatives contradict a fired rule"
    )

    # Turn quality
    noise_alpha_ratio: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Alphabetic share below which a turn may be classified as noise"
    )
    noise_symbol_ratio: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Punctuation share at or above which a low-alpha turn is noise"
    )
    noise_max_run: int = Field(
        default=5,
        ge=2,
        description="Repeated-character run length at or above which a low-alpha turn is noise"
    )
    noise_min_length: int = Field(
        default=4,
        ge=1,
        description="Turns shorter than this (non-whitespace chars) are never noise"
    )

    # Language normalization
    default_language: str = Field(
        default="de",
        description="Language assumed when detection has no signal"
    )
    normalization_min_confidence: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Mapped entities below this confidence require clarification"
    )

    @model_validator(mode="after")
    def validate_risk_thresholds(self) -> "EngineSettings":
        """Ensure the risk bands are ordered."""
        if self.risk_medium_threshold > self.risk_high_threshold:
            raise ValueError(
                "risk_medium_threshold must not exceed risk_high_threshold "
                f"({self.risk_medium_threshold} > {self.risk_high_threshold})"
            )
        return self


DEFAULT_ENGINE_SETTINGS = EngineSettings()
