from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from uploadguard.models.findings import Finding, Severity
from uploadguard.models.policy import Decision, Outcome

UNKNOWN_MEDIA_TYPE = "unknown/octet-stream"


class SniffResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    media_type: str = UNKNOWN_MEDIA_TYPE
    magic: str = ""
    description: str = "No matching signature found"
    source: str = "none"

    @property
    def is_unknown(self) -> bool:
        return self.media_type == UNKNOWN_MEDIA_TYPE


class HashResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    algorithm: str = "sha256"
    digest: str
    size: int


class ValidationOutcome(BaseModel):
    """What a single validator invocation produced."""

    model_config = ConfigDict(frozen=True)

    validator: str
    findings: Tuple[Finding, ...] = ()
    bytes_processed: int = 0
    elapsed_ms: float = 0.0

    @property
    def inconclusive(self) -> bool:
        return any(f.kind == "validator-inconclusive" for f in self.findings)


class Timings(BaseModel):
    model_config = ConfigDict(frozen=True)

    sniff_hash_ms: float = 0.0
    validate_ms: float = 0.0
    decide_ms: float = 0.0
    total_ms: float = 0.0


class InspectedFile(BaseModel):
    """Everything known about one input once the pipeline has finished."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    size: int
    sha256: str
    sniff: SniffResult
    extension: Optional[str] = None
    validator: str = "generic"
    findings: Tuple[Finding, ...] = ()
    decision: Optional[Decision] = None
    timings: Timings = Field(default_factory=Timings)

    @property
    def severity(self) -> Severity:
        return Severity.highest(f.severity for f in self.findings)


class FindingEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    severity: Severity
    detail: Optional[str] = None
    validator: str
    limit: Optional[str] = None
    offset: Optional[int] = None


class DecisionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    triggered_rules: Tuple[str, ...] = ()
    deciding_rule: Optional[str] = None


class FileReport(BaseModel):
    """Per-file record emitted as one JSON line."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    status: str = "decided"
    size: Optional[int] = None
    sha256: Optional[str] = None
    media_type: Optional[str] = None
    magic: Optional[str] = None
    extension: Optional[str] = None
    validator: Optional[str] = None
    severity: Optional[Severity] = None
    findings: Tuple[FindingEntry, ...] = ()
    decision: Optional[DecisionEntry] = None
    error: Optional[str] = None
    timings_ms: Optional[Timings] = None


class FileFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    error: str


class SummaryReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_files: int = 0
    decided_files: int = 0
    operational_errors: int = 0
    by_decision: Dict[str, int] = Field(
        default_factory=lambda: {o.value: 0 for o in Outcome}
    )
    by_media_type: Dict[str, int] = Field(default_factory=dict)
    highest_outcome: Optional[Outcome] = None
    highest_finding_severity: Optional[Severity] = None
