import threading
import time
from typing import Callable, List, Optional, Tuple

from uploadguard.models.findings import Finding, FindingKind, ResourceLimitKind, Severity
from uploadguard.models.policy import ResourceLimits
from uploadguard.models.reports import ValidationOutcome
from uploadguard.utils.logger import get_logger

logger = get_logger(__name__)


class ValidationBudget:
    """
    Cooperative deadline plus cumulative byte ceiling for one validator run.

    Validators call ``charge(n)`` before processing ``n`` more bytes (read,
    decompressed or scanned) and stop as soon as it returns False. The first
    breach is recorded and never overwritten.
    """

    def __init__(
        self,
        timeout_seconds: float,
        max_bytes: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.timeout_seconds = timeout_seconds
        self.deadline = clock() + timeout_seconds
        self.max_bytes = max_bytes
        self.bytes_processed = 0
        self.breach: Optional[str] = None
        self.breach_detail: Optional[str] = None
        self._lock = threading.Lock()

    @classmethod
    def from_limits(cls, limits: ResourceLimits) -> "ValidationBudget":
        return cls(limits.timeout_seconds, limits.max_bytes_processed)

    @property
    def exhausted(self) -> bool:
        return self.breach is not None

    def charge(self, amount: int) -> bool:
        if self.breach is not None:
            return False
        self.bytes_processed += amount
        if self.bytes_processed > self.max_bytes:
            self.trip(
                ResourceLimitKind.MEMORY,
                f"processed {self.bytes_processed} bytes, ceiling is {self.max_bytes}",
            )
            return False
        return not self.expired()

    def expired(self) -> bool:
        if self.breach is not None:
            return True
        if self._clock() >= self.deadline:
            self.trip(
                ResourceLimitKind.TIMEOUT,
                f"validation exceeded {self.timeout_seconds:g}s deadline",
            )
            return True
        return False

    def trip(self, limit: str, detail: str) -> None:
        with self._lock:
            if self.breach is None:
                self.breach = limit
                self.breach_detail = detail
                logger.debug("Budget breached | limit=%s | %s", limit, detail)

    def breach_finding(self, validator: str) -> Optional[Finding]:
        if self.breach is None:
            return None
        return Finding.resource_limit(self.breach, self.breach_detail or "", validator=validator)


class FindingCollector:
    """Append-only finding sink that another thread may snapshot at any time."""

    def __init__(self, validator: str) -> None:
        self.validator = validator
        self._findings: List[Finding] = []
        self._lock = threading.Lock()

    def add(self, finding: Finding) -> None:
        with self._lock:
            self._findings.append(finding)

    def emit(
        self,
        kind: str,
        severity: Severity,
        detail: Optional[str] = None,
        offset: Optional[int] = None,
    ) -> Finding:
        finding = Finding(
            kind=kind, severity=severity, detail=detail, validator=self.validator, offset=offset
        )
        self.add(finding)
        return finding

    def has(self, kind: str) -> bool:
        with self._lock:
            return any(f.kind == kind for f in self._findings)

    def snapshot(self) -> Tuple[Finding, ...]:
        with self._lock:
            return tuple(self._findings)

    def __len__(self) -> int:
        with self._lock:
            return len(self._findings)


class BaseValidator:
    """
    Shared capability of every structural validator.

    Subclasses implement ``inspect`` and report through the collector. They
    must be total over adversarial input: parse errors, truncation and
    limit breaches become findings, never exceptions.
    """

    name = "generic"

    def validate(
        self,
        data: bytes,
        limits: ResourceLimits,
        budget: Optional[ValidationBudget] = None,
        collector: Optional[FindingCollector] = None,
    ) -> ValidationOutcome:
        budget = budget if budget is not None else ValidationBudget.from_limits(limits)
        collector = collector if collector is not None else FindingCollector(self.name)
        started = time.perf_counter()

        try:
            self.inspect(data, limits, budget, collector)
        except MemoryError:
            budget.trip(ResourceLimitKind.MEMORY, "validator ran out of memory")
        except Exception as exc:
            logger.error("Validator %s failed: %s", self.name, exc, exc_info=True)
            collector.emit(FindingKind.VALIDATOR_ERROR, Severity.MEDIUM, f"{type(exc).__name__}: {exc}")
            self.inconclusive(collector, "validator failed before completing")

        breach = budget.breach_finding(self.name)
        if breach is not None:
            collector.add(breach)

        return ValidationOutcome(
            validator=self.name,
            findings=collector.snapshot(),
            bytes_processed=budget.bytes_processed,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )

    def inspect(
        self,
        data: bytes,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
    ) -> None:
        raise NotImplementedError

    def inconclusive(self, collector: FindingCollector, detail: str) -> None:
        if not collector.has(FindingKind.VALIDATOR_INCONCLUSIVE):
            collector.add(Finding.inconclusive(self.name, detail))
