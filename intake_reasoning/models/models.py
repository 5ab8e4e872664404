"""
Shared enums and validation result models.

Structural validation and activation guards never raise; they return a
`ValidationResult` so authoring tools can render field-level feedback.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class EscalationLevel(str, Enum):
    """Safety severity tier. A = immediate danger, B = clinician review, C = informational."""
    A = "A"
    B = "B"
    C = "C"


class ConfigStatus(str, Enum):
    """Lifecycle of a versioned configuration entry."""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class Likelihood(str, Enum):
    """Ordinal tier used for differentials and risk bands."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


LIKELIHOOD_ORDER: tuple[Likelihood, ...] = (Likelihood.LOW, Likelihood.MEDIUM, Likelihood.HIGH)

LEVEL_RANK: dict[EscalationLevel, int] = {
    EscalationLevel.A: 3,
    EscalationLevel.B: 2,
    EscalationLevel.C: 1,
}


def escalate_level(
    current: EscalationLevel | None,
    candidate: EscalationLevel | None,
) -> EscalationLevel | None:
    """Return the more severe of two levels; A always dominates."""
    if current is None:
        return candidate
    if candidate is None:
        return current
    return current if LEVEL_RANK[current] >= LEVEL_RANK[candidate] else candidate


# ============================================================================
# Validation Results
# ============================================================================

class ValidationIssue(BaseModel):
    """Single field-level validation or guard failure."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Dotted path of the offending field")
    code: str = Field(..., description="Machine-readable failure code")
    message: str = Field(..., description="Human-readable explanation")


class ValidationResult(BaseModel):
    """Outcome of a structural validation or an activation guard."""
    model_config = ConfigDict(frozen=True)

    ok: bool = Field(..., description="True when no issues were found")
    errors: list[ValidationIssue] = Field(default_factory=list, description="Issues found")

    @classmethod
    def from_issues(cls, issues: list[ValidationIssue]) -> "ValidationResult":
        return cls(ok=not issues, errors=list(issues))

    @classmethod
    def success(cls) -> "ValidationResult":
        return cls(ok=True, errors=[])

    @property
    def codes(self) -> list[str]:
        """Failure codes in report order."""
        return [issue.code for issue in self.errors]


def issues_from_pydantic(error: ValidationError, prefix: str = "") -> list[ValidationIssue]:
    """
    Convert a pydantic ValidationError into ValidationIssue entries.

    Args:
        error: The error raised while parsing a raw payload.
        prefix: Optional dotted path prepended to each field location.

    Returns:
        One issue per pydantic error, in pydantic's order.
    """
    issues: list[ValidationIssue] = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ()))
        if prefix:
            location = f"{prefix}.{location}" if location else prefix
        issues.append(
            ValidationIssue(
                field=location or "<root>",
                code=f"invalid_{detail.get('type', 'value')}",
                message=detail.get("msg", "Invalid value"),
            )
        )
    return issues


# ============================================================================
# Audit
# ============================================================================

class AuditRecord(BaseModel):
    """
    Audit entry drafted by the engine and written by the caller.

    The engine never persists audit records; it returns enough structured
    detail (actor, reason, before/after) for an append-only log.
    """
    model_config = ConfigDict(frozen=True)

    event: str = Field(..., description="e.g. 'safety_override_set', 'rule_activated'")
    actor: str = Field(..., description="Actor id")
    reason: str | None = Field(default=None, description="Justification")
    subject_id: str | None = Field(default=None, description="Intake id, rule key or config id")
    before: dict[str, Any] | None = Field(default=None, description="State before the change")
    after: dict[str, Any] | None = Field(default=None, description="State after the change")
    created_at: datetime = Field(..., description="Caller-supplied timestamp")
