"""Unit tests for per-file reports, the summary accumulator and exit status."""

import json

import pytest

from uploadguard.models.findings import Finding, FindingKind, Severity
from uploadguard.models.policy import Decision, FailOn, Outcome
from uploadguard.models.reports import FileFailure, InspectedFile, SniffResult, SummaryReport
from uploadguard.services.report_generator import (
    EXIT_DENY,
    EXIT_OK,
    EXIT_OPERATIONAL_ERROR,
    EXIT_WARN,
    ReportGeneratorService,
    SummaryAccumulator,
    build_file_report,
    exit_status,
)


def decided(identifier="a.txt", outcome=Outcome.ALLOW, media_type="text/plain", findings=()):
    return InspectedFile(
        identifier=identifier,
        size=10,
        sha256="0" * 64,
        sniff=SniffResult(media_type=media_type, magic="68 65 6C 6C 6F"),
        findings=tuple(findings),
        decision=Decision(outcome=outcome),
    )


def summary(allow=0, warn=0, deny=0, errors=0) -> SummaryReport:
    return SummaryReport(
        total_files=allow + warn + deny + errors,
        decided_files=allow + warn + deny,
        operational_errors=errors,
        by_decision={"ALLOW": allow, "WARN": warn, "DENY": deny},
    )


class TestExitStatus:
    @pytest.mark.parametrize(
        "counts, fail_on, expected",
        [
            ({}, FailOn.DENY, EXIT_OK),
            ({"allow": 2}, FailOn.WARN, EXIT_OK),
            ({"deny": 1}, FailOn.DENY, EXIT_DENY),
            ({"deny": 1, "warn": 1}, FailOn.WARN, EXIT_DENY),
            ({"warn": 1}, FailOn.WARN, EXIT_WARN),
            ({"warn": 1}, FailOn.DENY, EXIT_OK),
            ({"deny": 1}, FailOn.ERROR, EXIT_OK),
            ({"deny": 1, "errors": 1}, FailOn.DENY, EXIT_OPERATIONAL_ERROR),
            ({"errors": 1}, FailOn.ERROR, EXIT_OPERATIONAL_ERROR),
        ],
    )
    def test_mapping(self, counts, fail_on, expected) -> None:
        assert exit_status(summary(**counts), fail_on) == expected

    def test_none_is_an_alias_for_error(self) -> None:
        assert FailOn.parse("none") is FailOn.ERROR


class TestSummaryAccumulator:
    def test_counts(self) -> None:
        acc = SummaryAccumulator()
        acc.record(decided("a", Outcome.ALLOW))
        acc.record(decided("b", Outcome.DENY, "application/x-executable",
                           [Finding(kind=FindingKind.ACTIVE_CONTENT, severity=Severity.HIGH)]))
        acc.record(FileFailure(identifier="c", error="unreadable"))
        result = acc.finalize()
        assert result.total_files == 3
        assert result.decided_files == 2
        assert result.operational_errors == 1
        assert result.by_decision == {"ALLOW": 1, "WARN": 0, "DENY": 1}
        assert result.by_media_type == {"application/x-executable": 1, "text/plain": 1}
        assert result.highest_outcome == Outcome.DENY
        assert result.highest_finding_severity == Severity.HIGH

    def test_read_only_after_finalize(self) -> None:
        acc = SummaryAccumulator()
        first = acc.finalize()
        with pytest.raises(RuntimeError):
            acc.record_decided(decided())
        assert acc.finalize() is first
        assert acc.finalized


class TestReports:
    def test_file_report_fields(self) -> None:
        finding = Finding(kind=FindingKind.APPENDED_DATA, severity=Severity.MEDIUM, validator="image", offset=42)
        report = build_file_report(decided(findings=[finding]))
        assert report.status == "decided"
        assert report.media_type == "text/plain"
        assert report.magic == "68 65 6C 6C 6F"
        assert report.severity == Severity.MEDIUM
        assert report.findings[0].offset == 42
        assert report.decision.outcome == Outcome.ALLOW

    def test_jsonl_one_object_per_line(self) -> None:
        service = ReportGeneratorService()
        reports = [service.build(decided("a")), service.build(FileFailure(identifier="b", error="boom"))]
        lines = service.render_jsonl(reports).splitlines()
        assert [json.loads(line)["identifier"] for line in lines] == ["a", "b"]
        assert json.loads(lines[1]) == {"identifier": "b", "status": "error", "findings": [], "error": "boom"}

    def test_summary_document(self) -> None:
        document = json.loads(ReportGeneratorService().render_summary(summary(deny=1)))
        assert document["by_decision"]["DENY"] == 1

    def test_text_report(self) -> None:
        service = ReportGeneratorService()
        finding = Finding(kind=FindingKind.ACTIVE_CONTENT, severity=Severity.HIGH, detail="/JS", validator="pdf")
        text = service.render_text([service.build(decided("doc.pdf", Outcome.DENY, findings=[finding]))], summary(deny=1))
        assert "[doc.pdf]" in text
        assert "decision: DENY" in text
        assert "- high active-content [pdf]: /JS" in text
        assert "[Summary]" in text

    def test_text_report_respects_line_budget(self) -> None:
        service = ReportGeneratorService(max_lines=5)
        reports = [service.build(decided(f"f{i}")) for i in range(10)]
        text = service.render_text(reports)
        assert len(text.splitlines()) == 5
        assert text.splitlines()[-1].startswith("... trimmed")
