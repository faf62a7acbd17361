from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from uploadguard.models.findings import Severity

MIB = 1024 * 1024


class Outcome(str, Enum):
    ALLOW = "ALLOW"
    WARN = "WARN"
    DENY = "DENY"

    @property
    def rank(self) -> int:
        return _OUTCOME_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Outcome":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise ValueError(f"unknown outcome {value!r}; expected one of allow, warn, deny")


_OUTCOME_RANK = {Outcome.ALLOW: 0, Outcome.WARN: 1, Outcome.DENY: 2}


def _as_tuple(value: Any) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


class Predicate(BaseModel):
    """
    Conjunction of optional conditions over a file's attributes.

    Every condition that is set must hold. ``any_of``/``all_of``/``not``
    compose nested predicates. A predicate with no condition at all is
    rejected at load time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    media_type: Optional[Tuple[str, ...]] = None
    not_media_type: Optional[Tuple[str, ...]] = None
    size_gt: Optional[int] = Field(default=None, ge=0)
    size_lt: Optional[int] = Field(default=None, ge=0)
    finding_kind: Optional[Tuple[str, ...]] = None
    finding_limit: Optional[Tuple[str, ...]] = None
    min_finding_severity: Optional[Severity] = None
    sha256: Optional[Tuple[str, ...]] = None
    extension_mismatch: Optional[bool] = None
    any_of: Optional[Tuple["Predicate", ...]] = None
    all_of: Optional[Tuple["Predicate", ...]] = None
    not_: Optional["Predicate"] = Field(default=None, alias="not")

    @field_validator(
        "media_type", "not_media_type", "finding_kind", "finding_limit", mode="before"
    )
    @classmethod
    def _coerce_str_list(cls, value: Any) -> Optional[Tuple[str, ...]]:
        return _as_tuple(value)

    @field_validator("sha256", mode="before")
    @classmethod
    def _coerce_digests(cls, value: Any) -> Optional[Tuple[str, ...]]:
        digests = _as_tuple(value)
        if digests is None:
            return None
        return tuple(d.strip().lower() for d in digests)

    @field_validator("min_finding_severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def declared_conditions(self) -> Tuple[str, ...]:
        """Names of the conditions that carry a value; explicit nulls do not count."""
        return tuple(sorted(name for name in self.model_fields_set if getattr(self, name) is not None))

    @model_validator(mode="after")
    def _require_condition(self) -> "Predicate":
        if not self.declared_conditions():
            raise ValueError("predicate must declare at least one condition")
        if self.any_of is not None and not self.any_of:
            raise ValueError("any_of must list at least one predicate")
        if self.all_of is not None and not self.all_of:
            raise ValueError("all_of must list at least one predicate")
        return self


Predicate.model_rebuild()


class PolicyRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    when: Predicate
    outcome: Outcome
    description: str = ""

    @field_validator("outcome", mode="before")
    @classmethod
    def _coerce_outcome(cls, value: Any) -> Outcome:
        return Outcome.parse(value)


class FailOn(str, Enum):
    """Lowest outcome that makes an otherwise successful run exit non-zero."""

    WARN = "warn"
    DENY = "deny"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Any) -> "FailOn":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "none":
                return cls.ERROR
            try:
                return cls(normalized)
            except ValueError:
                pass
        raise ValueError(f"unknown fail-on value {value!r}; expected warn, deny, error or none")


class PolicyDefaults(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_size_bytes: int = Field(default=10 * MIB, gt=0)
    default_decision: Outcome = Outcome.ALLOW
    oversize_decision: Outcome = Outcome.DENY
    allow_types: Tuple[str, ...] = ()
    deny_types: Tuple[str, ...] = ()
    fail_on: FailOn = FailOn.DENY

    @model_validator(mode="before")
    @classmethod
    def _accept_megabytes(cls, data: Any) -> Any:
        if isinstance(data, dict) and "max_size_mb" in data:
            data = dict(data)
            megabytes = data.pop("max_size_mb")
            data.setdefault("max_size_bytes", int(float(megabytes) * MIB))
        return data

    @field_validator("default_decision", "oversize_decision", mode="before")
    @classmethod
    def _coerce_outcome(cls, value: Any) -> Outcome:
        return Outcome.parse(value)

    @field_validator("allow_types", "deny_types", mode="before")
    @classmethod
    def _coerce_types(cls, value: Any) -> Tuple[str, ...]:
        return _as_tuple(value) or ()

    @field_validator("fail_on", mode="before")
    @classmethod
    def _coerce_fail_on(cls, value: Any) -> FailOn:
        return FailOn.parse(value)


class ResourceLimits(BaseModel):
    """Numeric ceilings applied around and inside validator invocations."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_seconds: float = Field(default=5.0, gt=0)
    max_bytes_processed: int = Field(default=256 * MIB, gt=0)
    max_expansion_ratio: float = Field(default=100.0, gt=0)
    max_nested_depth: int = Field(default=3, ge=0)
    max_archive_entries: int = Field(default=10000, gt=0)
    entropy_threshold: float = Field(default=7.95, gt=0, le=8.0)
    entropy_window: int = Field(default=4096, ge=64)
    max_pdf_objects: int = Field(default=100000, gt=0)
    max_pdf_pages: int = Field(default=200, gt=0)
    max_image_pixels: int = Field(default=178956970, gt=0)
    max_image_frames: int = Field(default=1000, gt=0)
    max_file_size_bytes: int = Field(default=10 * MIB, gt=0)
    isolate_high_risk: bool = False
    isolated_memory_bytes: int = Field(default=1024 * MIB, gt=0)
    validators: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_validator_overrides(self) -> "ResourceLimits":
        known = set(type(self).model_fields) - {"validators"}
        for name, overrides in self.validators.items():
            unknown = set(overrides) - known
            if unknown:
                raise ValueError(
                    f"unknown limit(s) {sorted(unknown)} for validator '{name}'"
                )
        return self

    def for_validator(self, name: str) -> "ResourceLimits":
        overrides = self.validators.get(name)
        if not overrides:
            return self
        # Re-validate so per-validator values obey the same bounds.
        merged = self.model_dump()
        merged.update(overrides)
        return ResourceLimits.model_validate(merged)


class Policy(BaseModel):
    """An immutable rule set plus defaults and resource limits."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rules: Dict[str, PolicyRule] = Field(default_factory=dict)
    defaults: PolicyDefaults = Field(default_factory=PolicyDefaults)
    limits: ResourceLimits = Field(default_factory=ResourceLimits)

    @model_validator(mode="after")
    def _check_rule_ids(self) -> "Policy":
        for key, rule in self.rules.items():
            if key != rule.id:
                raise ValueError(f"rule stored under '{key}' declares id '{rule.id}'")
        return self

    def limits_for(self, validator_name: str) -> ResourceLimits:
        limits = self.limits.for_validator(validator_name)
        return limits.model_copy(update={"max_file_size_bytes": self.defaults.max_size_bytes})


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    triggered_rules: Tuple[str, ...] = ()
    deciding_rule: Optional[str] = None
