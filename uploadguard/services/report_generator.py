from __future__ import annotations

import json
from typing import Iterable, List, Optional, Sequence, Union

from uploadguard.models.findings import Finding, Severity
from uploadguard.models.policy import FailOn, Outcome
from uploadguard.models.reports import (
	DecisionEntry,
	FileFailure,
	FileReport,
	FindingEntry,
	InspectedFile,
	SummaryReport,
)

EXIT_OK = 0
EXIT_DENY = 1
EXIT_OPERATIONAL_ERROR = 2
EXIT_WARN = 3
EXIT_INVALID_POLICY = 4

FileResult = Union[InspectedFile, FileFailure]


def _finding_entry(finding: Finding) -> FindingEntry:
	return FindingEntry(
		kind=finding.kind,
		severity=finding.severity,
		detail=finding.detail,
		validator=finding.validator,
		limit=finding.limit,
		offset=finding.offset,
	)


def build_file_report(file: InspectedFile) -> FileReport:
	decision = None
	if file.decision is not None:
		decision = DecisionEntry(
			outcome=file.decision.outcome,
			triggered_rules=file.decision.triggered_rules,
			deciding_rule=file.decision.deciding_rule,
		)
	return FileReport(
		identifier=file.identifier,
		status="decided",
		size=file.size,
		sha256=file.sha256,
		media_type=file.sniff.media_type,
		magic=file.sniff.magic,
		extension=file.extension,
		validator=file.validator,
		severity=file.severity,
		findings=tuple(_finding_entry(f) for f in file.findings),
		decision=decision,
		timings_ms=file.timings,
	)


def build_failure_report(failure: FileFailure) -> FileReport:
	return FileReport(identifier=failure.identifier, status="error", error=failure.error)


def exit_status(summary: SummaryReport, fail_on: FailOn = FailOn.DENY) -> int:
	"""
	Map a finished run to a process exit status.

	Operational errors win over any decision. ``warn`` fails on WARN and
	DENY, ``deny`` on DENY only, ``error`` only on operational errors.
	"""
	if summary.operational_errors:
		return EXIT_OPERATIONAL_ERROR
	if fail_on is FailOn.ERROR:
		return EXIT_OK
	if summary.by_decision.get(Outcome.DENY.value, 0):
		return EXIT_DENY
	if fail_on is FailOn.WARN and summary.by_decision.get(Outcome.WARN.value, 0):
		return EXIT_WARN
	return EXIT_OK


class SummaryAccumulator:
	"""
	Run-scoped counters. Only the aggregator task writes to it; once
	``finalize`` is called the summary is frozen and further records fail.
	"""

	def __init__(self) -> None:
		self._total = 0
		self._decided = 0
		self._errors = 0
		self._by_decision = {outcome.value: 0 for outcome in Outcome}
		self._by_media_type: dict = {}
		self._highest_outcome: Optional[Outcome] = None
		self._highest_severity: Optional[Severity] = None
		self._final: Optional[SummaryReport] = None

	def _ensure_open(self) -> None:
		if self._final is not None:
			raise RuntimeError("summary already finalized")

	def record_decided(self, file: InspectedFile) -> None:
		self._ensure_open()
		self._total += 1
		self._decided += 1
		media_type = file.sniff.media_type
		self._by_media_type[media_type] = self._by_media_type.get(media_type, 0) + 1

		if file.decision is not None:
			outcome = file.decision.outcome
			self._by_decision[outcome.value] += 1
			if self._highest_outcome is None or outcome.rank > self._highest_outcome.rank:
				self._highest_outcome = outcome

		severity = file.severity
		if self._highest_severity is None or severity.rank > self._highest_severity.rank:
			self._highest_severity = severity

	def record_failure(self, failure: FileFailure) -> None:
		self._ensure_open()
		self._total += 1
		self._errors += 1

	def record(self, result: FileResult) -> None:
		if isinstance(result, FileFailure):
			self.record_failure(result)
		else:
			self.record_decided(result)

	def finalize(self) -> SummaryReport:
		if self._final is None:
			self._final = SummaryReport(
				total_files=self._total,
				decided_files=self._decided,
				operational_errors=self._errors,
				by_decision=dict(self._by_decision),
				by_media_type=dict(sorted(self._by_media_type.items())),
				highest_outcome=self._highest_outcome,
				highest_finding_severity=self._highest_severity,
			)
		return self._final

	@property
	def finalized(self) -> bool:
		return self._final is not None


class _ReportBuilder:
	"""Utility to keep the text report within a strict line budget."""

	def __init__(self, max_lines: int, max_line_length: int = 200) -> None:
		self.max_lines = max(1, max_lines)
		self.max_line_length = max(40, max_line_length)
		self.lines: List[str] = []
		self.truncated = False

	def add_section(self, title: str, entries: Sequence[str]) -> None:
		entries = [entry for entry in entries if entry]
		if not entries:
			return
		if not self._append_line(f"[{title}]"):
			return
		for entry in entries:
			if not self._append_line(entry):
				break

	def _append_line(self, text: str) -> bool:
		if len(self.lines) >= self.max_lines:
			self.truncated = True
			return False
		cleaned = self._sanitize(text)
		if cleaned:
			self.lines.append(cleaned)
		return True

	def _sanitize(self, text: str) -> str:
		collapsed = " ".join(str(text).strip().split())
		if len(collapsed) > self.max_line_length:
			return collapsed[: self.max_line_length - 3] + "..."
		return collapsed

	def render(self) -> str:
		if not self.lines:
			return "no_report_data"
		final_lines = list(self.lines)
		if self.truncated:
			final_lines[-1] = "... trimmed to stay within line budget ..."
		return "\n".join(final_lines)


class ReportGeneratorService:
	"""Turn inspection results into JSON lines, a summary document and a text report."""

	DEFAULT_MAX_LINES = 400
	DETAIL_LIMIT = 120

	def __init__(self, *, max_lines: int = DEFAULT_MAX_LINES) -> None:
		self.max_lines = max(1, max_lines)

	def build(self, result: FileResult) -> FileReport:
		if isinstance(result, FileFailure):
			return build_failure_report(result)
		return build_file_report(result)

	def render_jsonl(self, reports: Iterable[FileReport]) -> str:
		lines = [report.model_dump_json(exclude_none=True) for report in reports]
		return "".join(line + "\n" for line in lines)

	def render_summary(self, summary: SummaryReport) -> str:
		return json.dumps(summary.model_dump(mode="json"), sort_keys=True)

	def render_text(
		self, reports: Sequence[FileReport], summary: Optional[SummaryReport] = None
	) -> str:
		builder = _ReportBuilder(max_lines=self.max_lines)
		for report in reports:
			builder.add_section(report.identifier, self._build_file_lines(report))
		if summary is not None:
			builder.add_section("Summary", self._build_summary_lines(summary))
		return builder.render()

	# ------------------------------------------------------------------
	# Section builders
	# ------------------------------------------------------------------

	def _build_file_lines(self, report: FileReport) -> List[str]:
		if report.status == "error":
			return [f"status: error | {self._truncate_text(report.error, self.DETAIL_LIMIT)}"]

		lines: List[str] = []
		if report.decision is not None:
			decision_line = f"decision: {report.decision.outcome.value}"
			if report.decision.deciding_rule:
				decision_line += f" via {report.decision.deciding_rule}"
			lines.append(decision_line)
			if len(report.decision.triggered_rules) > 1:
				lines.append("triggered: " + ", ".join(report.decision.triggered_rules))

		lines.append(
			f"type={report.media_type} | magic={report.magic or 'n/a'} | size={report.size}"
		)
		if report.sha256:
			lines.append(f"sha256: {report.sha256}")

		for finding in report.findings:
			lines.append(self._format_finding(finding))

		if report.timings_ms is not None:
			lines.append(f"elapsed_ms={self._format_float(report.timings_ms.total_ms)}")
		return lines

	def _format_finding(self, finding: FindingEntry) -> str:
		text = f"- {finding.severity.value} {finding.kind}"
		if finding.limit:
			text += f" ({finding.limit})"
		text += f" [{finding.validator}]"
		if finding.offset is not None:
			text += f" @{finding.offset}"
		if finding.detail:
			text += f": {self._truncate_text(finding.detail, self.DETAIL_LIMIT)}"
		return text

	def _build_summary_lines(self, summary: SummaryReport) -> List[str]:
		lines = [
			f"files={summary.total_files} | decided={summary.decided_files} | errors={summary.operational_errors}",
			" | ".join(f"{outcome}={count}" for outcome, count in summary.by_decision.items()),
		]
		if summary.by_media_type:
			lines.append(
				"types: " + ", ".join(f"{name}={count}" for name, count in summary.by_media_type.items())
			)
		if summary.highest_outcome is not None:
			lines.append(f"worst_decision: {summary.highest_outcome.value}")
		if summary.highest_finding_severity is not None:
			lines.append(f"worst_severity: {summary.highest_finding_severity.value}")
		return lines

	def _truncate_text(self, text: Optional[str], limit: int) -> str:
		if not text:
			return ""
		collapsed = " ".join(text.split())
		if len(collapsed) > limit:
			return collapsed[: limit - 3] + "..."
		return collapsed

	def _format_float(self, value) -> str:
		if isinstance(value, (int, float)):
			return f"{float(value):.3f}".rstrip("0").rstrip(".")
		return "n/a"
