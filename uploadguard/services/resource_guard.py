"""
Resource Guard - bounded execution of validators

Every validator call gets a fresh ValidationBudget (cooperative deadline and
byte ceiling checked inside the validator) plus a hard wall-clock deadline
enforced here. A breach is reported as a resource-limit-exceeded finding
appended to whatever the validator already emitted; the file still reaches
policy evaluation.

Validators run on daemon threads, so one that never reaches a checkpoint is
abandoned at the deadline and cannot hold the host process open at exit.
High-risk validators (archive expansion, PDF parsing) can instead run in a
separate process with an address-space rlimit; that process is terminated
when the deadline passes.
"""

import asyncio
import multiprocessing
import threading
import time
from typing import Any, Callable, Dict, Tuple

from uploadguard.models.findings import Finding, FindingKind, ResourceLimitKind, Severity
from uploadguard.models.policy import ResourceLimits
from uploadguard.models.reports import ValidationOutcome
from uploadguard.utils.logger import get_logger
from uploadguard.validators import VALIDATORS
from uploadguard.validators.base import BaseValidator, FindingCollector, ValidationBudget

logger = get_logger(__name__)

DEFAULT_GRACE_SECONDS = 1.0
HIGH_RISK_VALIDATORS = frozenset({"archive", "pdf"})


def _isolated_entry(conn, validator_name: str, data: bytes, limits_dump: Dict[str, Any], memory_bytes: int) -> None:
    """Child-process body for isolated validation."""
    try:
        import resource

        resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
    except (ImportError, ValueError, OSError):
        # Not available on this platform; the deadline still applies
        pass

    try:
        limits = ResourceLimits.model_validate(limits_dump)
        outcome = VALIDATORS[validator_name].validate(data, limits)
        conn.send(("ok", outcome.model_dump(mode="json")))
    except MemoryError:
        conn.send(("memory", None))
    except Exception as exc:
        conn.send(("error", f"{type(exc).__name__}: {exc}"))
    finally:
        conn.close()


def _settle(future: asyncio.Future, result: Any, error: Any) -> None:
    # wait_for may already have cancelled the future
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


def run_in_daemon_thread(loop: asyncio.AbstractEventLoop, func: Callable[..., Any], *args: Any) -> asyncio.Future:
    """
    Run ``func`` on a fresh daemon thread and return a future on ``loop``.

    Unlike executor threads, a daemon thread is never joined at interpreter
    exit, so an abandoned call cannot block shutdown.
    """
    future = loop.create_future()

    def target() -> None:
        try:
            result, error = func(*args), None
        except Exception as exc:
            result, error = None, exc
        try:
            loop.call_soon_threadsafe(_settle, future, result, error)
        except RuntimeError:
            # The loop closed while the call was still running
            logger.debug("Dropped late result of %s; event loop is closed", getattr(func, "__name__", func))

    threading.Thread(target=target, name="uploadguard-validator", daemon=True).start()
    return future


class ResourceGuard:
    """Run validators under a deadline, a byte budget and optional process isolation."""

    def __init__(self, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> None:
        self.grace_seconds = grace_seconds
        self._abandoned = 0
        self._lock = threading.Lock()

    @property
    def abandoned(self) -> int:
        """Validator calls abandoned at their deadline."""
        with self._lock:
            return self._abandoned

    async def run(self, validator: BaseValidator, data: bytes, limits: ResourceLimits) -> ValidationOutcome:
        started = time.perf_counter()
        loop = asyncio.get_running_loop()

        if limits.isolate_high_risk and validator.name in HIGH_RISK_VALIDATORS:
            return await run_in_daemon_thread(loop, self._run_isolated_sync, validator, data, limits)

        budget = ValidationBudget.from_limits(limits)
        collector = FindingCollector(validator.name)
        future = run_in_daemon_thread(loop, validator.validate, data, limits, budget, collector)
        hard_deadline = limits.timeout_seconds + self.grace_seconds

        try:
            return await asyncio.wait_for(future, timeout=hard_deadline)
        except asyncio.TimeoutError:
            # The thread cannot be killed; make its next checkpoint fail
            budget.trip(ResourceLimitKind.TIMEOUT, f"validator did not finish within {hard_deadline:g}s")
            with self._lock:
                self._abandoned += 1
            logger.warning("Validator %s exceeded hard deadline of %.2fs", validator.name, hard_deadline)
            extra: Tuple[Finding, ...] = (
                Finding.resource_limit(
                    ResourceLimitKind.TIMEOUT,
                    f"validator did not finish within {hard_deadline:g}s",
                    validator=validator.name,
                ),
            )
        except Exception as exc:
            logger.error("Validator %s failed: %s", validator.name, exc, exc_info=True)
            extra = self._failure_findings(validator.name, f"{type(exc).__name__}: {exc}")

        return ValidationOutcome(
            validator=validator.name,
            findings=collector.snapshot() + extra,
            bytes_processed=budget.bytes_processed,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )

    def _run_isolated_sync(self, validator: BaseValidator, data: bytes, limits: ResourceLimits) -> ValidationOutcome:
        started = time.perf_counter()
        hard_deadline = limits.timeout_seconds + self.grace_seconds
        ctx = multiprocessing.get_context("spawn")
        receiver, sender = ctx.Pipe(duplex=False)
        process = ctx.Process(
            target=_isolated_entry,
            args=(sender, validator.name, data, limits.model_dump(mode="json"), limits.isolated_memory_bytes),
            daemon=True,
        )
        process.start()
        sender.close()

        try:
            if receiver.poll(hard_deadline):
                status, payload = receiver.recv()
            else:
                status, payload = "timeout", None
        except (EOFError, OSError):
            status, payload = "crashed", None
        finally:
            if process.is_alive():
                process.terminate()
                process.join(1.0)
            if process.is_alive():
                process.kill()
                process.join(1.0)
            receiver.close()

        if status == "ok":
            return ValidationOutcome.model_validate(payload)

        logger.warning(
            "Isolated validator %s ended with status=%s exitcode=%s", validator.name, status, process.exitcode
        )
        if status == "timeout":
            findings: Tuple[Finding, ...] = (
                Finding.resource_limit(
                    ResourceLimitKind.TIMEOUT,
                    f"isolated validator terminated after {hard_deadline:g}s",
                    validator=validator.name,
                ),
            )
        elif status == "memory":
            findings = (
                Finding.resource_limit(
                    ResourceLimitKind.MEMORY,
                    f"isolated validator exceeded {limits.isolated_memory_bytes} bytes of address space",
                    validator=validator.name,
                ),
            )
        elif status == "crashed":
            findings = self._failure_findings(
                validator.name, f"isolated validator exited unexpectedly (exit code {process.exitcode})"
            )
        else:
            findings = self._failure_findings(validator.name, str(payload))

        return ValidationOutcome(
            validator=validator.name,
            findings=findings,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )

    def _failure_findings(self, validator_name: str, detail: str) -> Tuple[Finding, ...]:
        return (
            Finding(
                kind=FindingKind.VALIDATOR_ERROR,
                severity=Severity.MEDIUM,
                detail=detail,
                validator=validator_name,
            ),
            Finding.inconclusive(validator_name, "validator failed before completing"),
        )

    def close(self) -> None:
        abandoned = self.abandoned
        if abandoned:
            logger.warning("Closing guard; %d validator thread(s) were abandoned at their deadline", abandoned)
