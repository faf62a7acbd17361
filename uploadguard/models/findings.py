from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def highest(cls, severities) -> "Severity":
        return max(severities, key=lambda s: s.rank, default=cls.INFO)


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class FindingKind:
    """Finding kinds emitted by validators and the resource guard."""

    OVERSIZED = "oversized"
    MALFORMED_STRUCTURE = "malformed-structure"
    MALFORMED_XREF = "malformed-xref"
    EXCESSIVE_OBJECTS = "excessive-objects"
    SUSPICIOUS_FILTER_CHAIN = "suspicious-filter-chain"
    ACTIVE_CONTENT = "active-content"
    EMBEDDED_FILE = "embedded-file"
    ENCRYPTED_CONTENT = "encrypted-content"
    HEADER_MISMATCH = "header-mismatch"
    DIMENSION_SIZE_MISMATCH = "dimension-size-mismatch"
    APPENDED_DATA = "appended-data"
    HIGH_ENTROPY_REGION = "high-entropy-region"
    OVERSIZED_DIMENSIONS = "oversized-dimensions"
    NESTED_DEPTH_EXCEEDED = "nested-archive-depth-exceeded"
    PATH_TRAVERSAL = "path-traversal"
    SYMLINK_ENTRY = "symlink-entry"
    TOO_MANY_ENTRIES = "too-many-entries"
    RESOURCE_LIMIT_EXCEEDED = "resource-limit-exceeded"
    VALIDATOR_INCONCLUSIVE = "validator-inconclusive"
    VALIDATOR_ERROR = "validator-error"
    EXTENSION_MISMATCH = "extension-mismatch"


class ResourceLimitKind:
    TIMEOUT = "timeout"
    MEMORY = "memory"
    EXPANSION = "expansion"


class Finding(BaseModel):
    """A single structured observation about an inspected file."""

    model_config = ConfigDict(frozen=True)

    kind: str
    severity: Severity = Severity.INFO
    detail: Optional[str] = None
    validator: str = "pipeline"
    limit: Optional[str] = None
    offset: Optional[int] = None

    @classmethod
    def resource_limit(
        cls, limit: str, detail: str, validator: str = "resource-guard"
    ) -> "Finding":
        return cls(
            kind=FindingKind.RESOURCE_LIMIT_EXCEEDED,
            severity=Severity.HIGH,
            detail=detail,
            validator=validator,
            limit=limit,
        )

    @classmethod
    def inconclusive(cls, validator: str, detail: Optional[str] = None) -> "Finding":
        return cls(
            kind=FindingKind.VALIDATOR_INCONCLUSIVE,
            severity=Severity.INFO,
            detail=detail,
            validator=validator,
        )
