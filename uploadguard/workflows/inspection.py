import asyncio
import time
from typing import Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from uploadguard.errors import OperationalError
from uploadguard.models.findings import Finding, FindingKind, Severity
from uploadguard.models.policy import FailOn, Policy
from uploadguard.models.reports import (
    FileFailure,
    FileReport,
    InspectedFile,
    SummaryReport,
    Timings,
)
from uploadguard.services.file_data import ByteSource, FileDataService, SourceLike
from uploadguard.services.file_hashing import FileHashingService
from uploadguard.services.mime_sniffing import (
    SNIFF_PREFIX_BYTES,
    MimeSniffingService,
    extension_mismatch,
)
from uploadguard.services.policy_engine import PolicyEngine
from uploadguard.services.report_generator import (
    ReportGeneratorService,
    SummaryAccumulator,
    exit_status,
)
from uploadguard.services.resource_guard import ResourceGuard
from uploadguard.utils.logger import get_logger
from uploadguard.validators import select_validator
from uploadguard.validators.generic import oversized_finding

logger = get_logger(__name__)

DEFAULT_WORKERS = 4

InputItem = Union[ByteSource, Tuple[str, SourceLike]]
FileResult = Union[InspectedFile, FileFailure]


class RunResult(BaseModel):
    """Outcome of one pipeline run, in input order."""

    model_config = ConfigDict(frozen=True)

    results: Tuple[Union[InspectedFile, FileFailure], ...]
    reports: Tuple[FileReport, ...]
    summary: SummaryReport
    exit_status: int


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


class InspectionWorkflow:
    """
    Drive every input through sniff + hash, guarded validation and the
    policy decision with a fixed pool of asyncio workers.

    Completed results go to a single aggregator task, the only writer of the
    run's SummaryAccumulator.
    """

    def __init__(
        self,
        policy: Policy,
        workers: int = DEFAULT_WORKERS,
        fail_on: Optional[FailOn] = None,
        guard: Optional[ResourceGuard] = None,
    ):
        self.policy = policy
        self.workers = max(1, workers)
        self.fail_on = fail_on if fail_on is not None else policy.defaults.fail_on

        self.file_data_service = FileDataService()
        self.file_hashing_service = FileHashingService()
        self.mime_sniffing_service = MimeSniffingService()
        self.report_generator_service = ReportGeneratorService()
        self.policy_engine = PolicyEngine(policy)

        self._owns_guard = guard is None
        self.guard = guard if guard is not None else ResourceGuard()

    # ---------------- per file ----------------

    async def _sniff(self, source: ByteSource):
        prefix = await self.file_data_service.fetch_prefix(source, SNIFF_PREFIX_BYTES)
        return await self.mime_sniffing_service.sniff_mime(prefix)

    async def inspect(self, identifier: str, raw_source: SourceLike) -> InspectedFile:
        """Inspect and decide one input. Unreadable inputs raise OperationalError."""
        started = time.perf_counter()
        source = self.file_data_service.resolve(identifier, raw_source)

        sniff, hashed = await asyncio.gather(
            self._sniff(source),
            self.file_hashing_service.hash_file(source),
        )
        sniff_hash_ms = _elapsed_ms(started)

        findings: List[Finding] = []
        if extension_mismatch(sniff.media_type, source.extension):
            findings.append(
                Finding(
                    kind=FindingKind.EXTENSION_MISMATCH,
                    severity=Severity.LOW,
                    detail=f"extension {source.extension} does not match {sniff.media_type}",
                )
            )

        validate_started = time.perf_counter()
        ceiling = self.policy.defaults.max_size_bytes
        validator = select_validator(sniff.media_type)
        truncated = hashed.size > ceiling
        if not truncated:
            data, truncated = await self.file_data_service.fetch_bounded(source, ceiling)

        if truncated:
            # Content past the ceiling is never parsed; the size alone decides
            logger.info("Skipping structural validation for %s: %d bytes > %d", identifier, hashed.size, ceiling)
            validator_name = "generic"
            findings.append(oversized_finding(hashed.size, ceiling))
        else:
            validator_name = validator.name
            outcome = await self.guard.run(validator, data, self.policy.limits_for(validator.name))
            findings.extend(outcome.findings)
        validate_ms = _elapsed_ms(validate_started)

        inspected = InspectedFile(
            identifier=identifier,
            size=hashed.size,
            sha256=hashed.digest,
            sniff=sniff,
            extension=source.extension,
            validator=validator_name,
            findings=tuple(findings),
        )

        decide_started = time.perf_counter()
        decision = self.policy_engine.decide(inspected)
        timings = Timings(
            sniff_hash_ms=sniff_hash_ms,
            validate_ms=validate_ms,
            decide_ms=_elapsed_ms(decide_started),
            total_ms=_elapsed_ms(started),
        )
        logger.info(
            "Decided %s: %s (type=%s, findings=%d)",
            identifier,
            decision.outcome.value,
            sniff.media_type,
            len(findings),
        )
        return inspected.model_copy(update={"decision": decision, "timings": timings})

    async def _process(self, identifier: str, raw_source: SourceLike) -> FileResult:
        try:
            return await self.inspect(identifier, raw_source)
        except OperationalError as exc:
            logger.warning("Operational error for %s: %s", identifier, exc)
            return FileFailure(identifier=identifier, error=str(exc))
        except Exception as exc:
            logger.error("Unexpected failure inspecting %s: %s", identifier, exc, exc_info=True)
            return FileFailure(identifier=identifier, error=f"{type(exc).__name__}: {exc}")

    # ---------------- run ----------------

    async def run(self, inputs: Iterable[InputItem]) -> RunResult:
        items = [self._unpack(item) for item in inputs]
        logger.info("Inspecting %d input(s) with %d worker(s)", len(items), self.workers)

        pending: asyncio.Queue = asyncio.Queue()
        completed: asyncio.Queue = asyncio.Queue()
        for index, (identifier, raw_source) in enumerate(items):
            pending.put_nowait((index, identifier, raw_source))

        accumulator = SummaryAccumulator()
        results: List[Optional[FileResult]] = [None] * len(items)

        async def worker() -> None:
            while True:
                try:
                    index, identifier, raw_source = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                result = await self._process(identifier, raw_source)
                await completed.put((index, result))

        async def aggregate() -> None:
            for _ in range(len(items)):
                index, result = await completed.get()
                accumulator.record(result)
                results[index] = result

        pool = [asyncio.create_task(worker()) for _ in range(min(self.workers, len(items)) or 1)]
        await asyncio.gather(aggregate(), *pool)

        summary = accumulator.finalize()
        ordered = tuple(r for r in results if r is not None)
        status = exit_status(summary, self.fail_on)
        logger.info(
            "Run finished: %d decided, %d operational error(s), exit status %d",
            summary.decided_files,
            summary.operational_errors,
            status,
        )
        return RunResult(
            results=ordered,
            reports=tuple(self.report_generator_service.build(r) for r in ordered),
            summary=summary,
            exit_status=status,
        )

    def run_sync(self, inputs: Iterable[InputItem]) -> RunResult:
        return asyncio.run(self.run(inputs))

    @staticmethod
    def _unpack(item: InputItem) -> Tuple[str, SourceLike]:
        if isinstance(item, ByteSource):
            return item.identifier, item
        identifier, raw_source = item
        return str(identifier), raw_source

    def close(self) -> None:
        if self._owns_guard:
            self.guard.close()

    async def __aenter__(self) -> "InspectionWorkflow":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()
