"""
Configuration Store & Versioning guardrails.

Repository interfaces for safety rules, reasoning configs and the audit log,
in-memory reference implementations, active-version selection that fails
closed, and the draft/activate authoring workflow.

The host system owns persistence. It implements the store interfaces and
must guarantee at most one active version per rule key or config id; the
selectors below treat any violation as "nothing loaded".
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from intake_reasoning.config.engine_config import EngineSettings
from intake_reasoning.config.logging_config import get_logger
from intake_reasoning.models.models import (
    AuditRecord,
    ConfigStatus,
    ValidationIssue,
    ValidationResult,
)
from intake_reasoning.models.reasoning_models import ReasoningConfig
from intake_reasoning.models.rule_models import SafetyRule
from intake_reasoning.services.reasoning_engine import (
    guard_reasoning_activation,
    load_reasoning_config,
    validate_reasoning_config,
)
from intake_reasoning.services.safety_rule_engine import (
    guard_rule_activation,
    load_safety_rule,
    validate_rule_config,
)

logger = get_logger(__name__)

# Fields a draft update may never change.
_IDENTITY_FIELDS = ("key", "config_id", "version", "status")


class ConfigNotFoundError(ValueError):
    """Raised when a rule key, config id or version does not exist."""


# ============================================================================
# Repository Interfaces
# ============================================================================

class SafetyRuleStore(ABC):
    """Versioned safety rule repository."""

    @abstractmethod
    def list_rules(self) -> list[SafetyRule]:
        """All versions of all rules."""
        ...

    @abstractmethod
    def list_versions(self, key: str) -> list[SafetyRule]:
        """All versions of one rule key, ascending by version."""
        ...

    @abstractmethod
    def save(self, rule: SafetyRule) -> None:
        """Insert or replace the version identified by (key, version)."""
        ...


class ReasoningConfigStore(ABC):
    """Versioned reasoning config repository."""

    @abstractmethod
    def list_configs(self) -> list[ReasoningConfig]:
        ...

    @abstractmethod
    def list_versions(self, config_id: str) -> list[ReasoningConfig]:
        ...

    @abstractmethod
    def save(self, config: ReasoningConfig) -> None:
        ...


class AuditLog(ABC):
    """Append-only audit trail."""

    @abstractmethod
    def append(self, record: AuditRecord) -> None:
        ...

    @abstractmethod
    def records(self) -> list[AuditRecord]:
        ...


class InMemorySafetyRuleStore(SafetyRuleStore):
    def __init__(self, rules: Iterable[SafetyRule] = ()):
        self._rules: dict[tuple[str, int], SafetyRule] = {}
        for rule in rules:
            self.save(rule)

    def list_rules(self) -> list[SafetyRule]:
        return list(self._rules.values())

    def list_versions(self, key: str) -> list[SafetyRule]:
        return sorted(
            (rule for rule in self._rules.values() if rule.key == key),
            key=lambda rule: rule.version,
        )

    def save(self, rule: SafetyRule) -> None:
        self._rules[(rule.key, rule.version)] = rule


class InMemoryReasoningConfigStore(ReasoningConfigStore):
    def __init__(self, configs: Iterable[ReasoningConfig] = ()):
        self._configs: dict[tuple[str, int], ReasoningConfig] = {}
        for config in configs:
            self.save(config)

    def list_configs(self) -> list[ReasoningConfig]:
        return list(self._configs.values())

    def list_versions(self, config_id: str) -> list[ReasoningConfig]:
        return sorted(
            (config for config in self._configs.values() if config.config_id == config_id),
            key=lambda config: config.version,
        )

    def save(self, config: ReasoningConfig) -> None:
        self._configs[(config.config_id, config.version)] = config


class InMemoryAuditLog(AuditLog):
    def __init__(self):
        self._records: list[AuditRecord] = []

    def append(self, record: AuditRecord) -> None:
        self._records.append(record)

    def records(self) -> list[AuditRecord]:
        return list(self._records)


# ============================================================================
# Active Selection (fail closed)
# ============================================================================

def select_active_rules(rules: Iterable[SafetyRule]) -> list[SafetyRule]:
    """
    Pick the active rule set.

    Returns an empty list when no rule is active, or when any key has more
    than one active version. An ambiguous set is never partially loaded.
    """
    active: dict[str, list[SafetyRule]] = {}
    for rule in rules:
        if rule.status == ConfigStatus.ACTIVE:
            active.setdefault(rule.key, []).append(rule)

    if not active:
        logger.error("No active safety rules available, failing closed")
        return []

    ambiguous = sorted(key for key, versions in active.items() if len(versions) > 1)
    if ambiguous:
        logger.error(
            "Multiple active versions for safety rules, failing closed",
            rule_keys=ambiguous,
        )
        return []

    return [versions[0] for versions in active.values()]


def select_active_reasoning_config(
    configs: Iterable[ReasoningConfig],
    config_id: str | None = None,
) -> ReasoningConfig | None:
    """Return the single active config (optionally for one id), else None."""
    active = [
        config
        for config in configs
        if config.status == ConfigStatus.ACTIVE and (config_id is None or config.config_id == config_id)
    ]
    if len(active) == 1:
        return active[0]

    if not active:
        logger.error("No active reasoning config available, failing closed", config_id=config_id)
    else:
        logger.error(
            "Multiple active reasoning configs, failing closed",
            config_id=config_id,
            versions=[f"{config.config_id}@v{config.version}" for config in active],
        )
    return None


def load_active_rules(store: SafetyRuleStore) -> list[SafetyRule]:
    return select_active_rules(store.list_rules())


def load_active_reasoning_config(
    store: ReasoningConfigStore,
    config_id: str | None = None,
) -> ReasoningConfig | None:
    return select_active_reasoning_config(store.list_configs(), config_id)


# ============================================================================
# Authoring Workflow
# ============================================================================

class ActivationResult(BaseModel):
    """
    Outcome of an activation attempt.

    `validation` (structural) and `guard` (publication guardrails) are kept
    apart; `guard` is None when structural validation already failed.
    """
    model_config = ConfigDict(frozen=True)

    ok: bool
    validation: ValidationResult
    guard: ValidationResult | None = None
    activated_version: int | None = None
    archived_versions: list[int] = Field(default_factory=list)
    audit: AuditRecord | None = None


def _draft_payload(current: BaseModel, changes: Mapping[str, Any] | None) -> dict[str, Any]:
    payload = current.model_dump(mode="json")
    for name, value in (changes or {}).items():
        if name not in _IDENTITY_FIELDS:
            payload[name] = value
    return payload


def _not_a_draft(identifier: str, version: int) -> ValidationResult:
    return ValidationResult.from_issues([
        ValidationIssue(
            field="status",
            code="not_a_draft",
            message=f"{identifier}@v{version} is not a draft and cannot be edited",
        )
    ])


def _find_version(versions: list, version: int, identifier: str):
    for entry in versions:
        if entry.version == version:
            return entry
    raise ConfigNotFoundError(f"{identifier}@v{version} does not exist")


def create_draft_rule(store: SafetyRuleStore, key: str) -> SafetyRule:
    """
    Copy the latest version of a rule into a new draft version.

    Raises:
        ConfigNotFoundError: If the rule key has no versions.
    """
    versions = store.list_versions(key)
    if not versions:
        raise ConfigNotFoundError(f"Safety rule '{key}' does not exist")
    latest = versions[-1]
    draft = latest.model_copy(update={"version": latest.version + 1, "status": ConfigStatus.DRAFT})
    store.save(draft)
    logger.info("Safety rule draft created", rule_id=draft.rule_id, copied_from=latest.rule_id)
    return draft


def update_draft_rule(
    store: SafetyRuleStore,
    key: str,
    version: int,
    changes: Mapping[str, Any],
) -> tuple[SafetyRule | None, ValidationResult]:
    """
    Edit a draft rule.

    Identity fields (key, version, status) are ignored. Only structural
    validity is required to save; activation guardrails are not applied.
    """
    current = _find_version(store.list_versions(key), version, key)
    if current.status != ConfigStatus.DRAFT:
        return None, _not_a_draft(key, version)

    rule, result = load_safety_rule(_draft_payload(current, changes))
    if rule is None:
        return None, result
    store.save(rule)
    logger.info("Safety rule draft updated", rule_id=rule.rule_id, fields=sorted(changes))
    return rule, result


def activate_rule_version(
    store: SafetyRuleStore,
    key: str,
    version: int,
    *,
    actor: str,
    now: datetime,
    reason: str | None = None,
    settings: EngineSettings | None = None,
    audit_log: AuditLog | None = None,
) -> ActivationResult:
    """
    Promote a rule version to active.

    Runs structural validation, then the activation guard. On success every
    other active version of the key is archived and an audit record is
    returned (and appended to `audit_log` when given).

    Raises:
        ConfigNotFoundError: If the version does not exist.
    """
    versions = store.list_versions(key)
    target = _find_version(versions, version, key)

    validation = validate_rule_config(target)
    if not validation.ok:
        return ActivationResult(ok=False, validation=validation)

    guard = guard_rule_activation(target, settings)
    if not guard.ok:
        return ActivationResult(ok=False, validation=validation, guard=guard)

    previous = [rule for rule in versions if rule.status == ConfigStatus.ACTIVE and rule.version != version]
    for rule in previous:
        store.save(rule.model_copy(update={"status": ConfigStatus.ARCHIVED}))
    store.save(target.model_copy(update={"status": ConfigStatus.ACTIVE}))

    audit = AuditRecord(
        event="safety_rule_activated",
        actor=actor,
        reason=reason,
        subject_id=key,
        before={"active_versions": [rule.version for rule in previous]},
        after={"active_versions": [version]},
        created_at=now,
    )
    if audit_log is not None:
        audit_log.append(audit)

    logger.info(
        "Safety rule activated",
        rule_key=key,
        version=version,
        archived=[rule.version for rule in previous],
    )
    return ActivationResult(
        ok=True,
        validation=validation,
        guard=guard,
        activated_version=version,
        archived_versions=[rule.version for rule in previous],
        audit=audit,
    )


def create_draft_reasoning_config(store: ReasoningConfigStore, config_id: str) -> ReasoningConfig:
    """Copy the latest version of a reasoning config into a new draft version."""
    versions = store.list_versions(config_id)
    if not versions:
        raise ConfigNotFoundError(f"Reasoning config '{config_id}' does not exist")
    latest = versions[-1]
    draft = latest.model_copy(update={"version": latest.version + 1, "status": ConfigStatus.DRAFT})
    store.save(draft)
    logger.info(
        "Reasoning config draft created",
        config_id=config_id,
        version=draft.version,
        copied_from=latest.version,
    )
    return draft


def update_draft_reasoning_config(
    store: ReasoningConfigStore,
    config_id: str,
    version: int,
    changes: Mapping[str, Any],
) -> tuple[ReasoningConfig | None, ValidationResult]:
    current = _find_version(store.list_versions(config_id), version, config_id)
    if current.status != ConfigStatus.DRAFT:
        return None, _not_a_draft(config_id, version)

    config, result = load_reasoning_config(_draft_payload(current, changes))
    if config is None:
        return None, result
    store.save(config)
    logger.info(
        "Reasoning config draft updated",
        config_id=config_id,
        version=version,
        fields=sorted(changes),
    )
    return config, result


def activate_reasoning_config_version(
    store: ReasoningConfigStore,
    config_id: str,
    version: int,
    *,
    actor: str,
    now: datetime,
    reason: str | None = None,
    audit_log: AuditLog | None = None,
) -> ActivationResult:
    """Promote a reasoning config version to active. See `activate_rule_version`."""
    versions = store.list_versions(config_id)
    target = _find_version(versions, version, config_id)

    validation = validate_reasoning_config(target)
    if not validation.ok:
        return ActivationResult(ok=False, validation=validation)

    guard = guard_reasoning_activation(target)
    if not guard.ok:
        return ActivationResult(ok=False, validation=validation, guard=guard)

    previous = [
        config for config in versions if config.status == ConfigStatus.ACTIVE and config.version != version
    ]
    for config in previous:
        store.save(config.model_copy(update={"status": ConfigStatus.ARCHIVED}))
    store.save(target.model_copy(update={"status": ConfigStatus.ACTIVE}))

    audit = AuditRecord(
        event="reasoning_config_activated",
        actor=actor,
        reason=reason,
        subject_id=config_id,
        before={"active_versions": [config.version for config in previous]},
        after={"active_versions": [version]},
        created_at=now,
    )
    if audit_log is not None:
        audit_log.append(audit)

    logger.info(
        "Reasoning config activated",
        config_id=config_id,
        version=version,
        archived=[config.version for config in previous],
    )
    return ActivationResult(
        ok=True,
        validation=validation,
        guard=guard,
        activated_version=version,
        archived_versions=[config.version for config in previous],
        audit=audit,
    )
