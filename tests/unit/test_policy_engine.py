"""Unit tests for rule evaluation, tie-breaking and policy layering."""

import pytest
from pydantic import ValidationError

from uploadguard.models.findings import Finding, FindingKind, ResourceLimitKind, Severity
from uploadguard.models.policy import Outcome, Policy, PolicyDefaults, PolicyRule, Predicate, ResourceLimits
from uploadguard.models.reports import InspectedFile, SniffResult
from uploadguard.services.policy_engine import (
    MAX_SIZE_RULE_ID,
    PolicyEngine,
    decide,
    merge_policies,
    predicate_matches,
)


def inspected(media_type="text/plain", size=10, findings=(), sha256="ab" * 32) -> InspectedFile:
    return InspectedFile(
        identifier="sample",
        size=size,
        sha256=sha256,
        sniff=SniffResult(media_type=media_type),
        findings=tuple(findings),
    )


def rule(rule_id: str, outcome: str, **when) -> PolicyRule:
    return PolicyRule(id=rule_id, when=Predicate(**when), outcome=outcome)


def policy(*rules: PolicyRule, **defaults) -> Policy:
    return Policy(rules={r.id: r for r in rules}, defaults=PolicyDefaults(**defaults))


class TestDecide:
    def test_default_decision_when_nothing_matches(self) -> None:
        decision = decide(inspected(), policy())
        assert decision.outcome == Outcome.ALLOW
        assert decision.triggered_rules == ()
        assert decision.deciding_rule is None

    def test_configured_default_decision(self) -> None:
        assert decide(inspected(), policy(default_decision="warn")).outcome == Outcome.WARN

    def test_highest_severity_wins(self) -> None:
        p = policy(
            rule("a-warn", "warn", media_type="text/*"),
            rule("z-deny", "deny", size_gt=5),
            rule("m-allow", "allow", size_lt=100),
        )
        decision = decide(inspected(), p)
        assert decision.outcome == Outcome.DENY
        assert decision.deciding_rule == "z-deny"
        assert decision.triggered_rules == ("a-warn", "m-allow", "z-deny")

    def test_equal_severity_smallest_id_wins(self) -> None:
        p = policy(rule("b-rule", "deny", size_gt=1), rule("a-rule", "deny", size_gt=2))
        assert decide(inspected(), p).deciding_rule == "a-rule"

    def test_rule_order_does_not_matter(self) -> None:
        rules = [
            rule("r1", "warn", media_type="text/plain"),
            rule("r2", "deny", finding_kind=FindingKind.ACTIVE_CONTENT),
            rule("r3", "warn", size_lt=50),
        ]
        file = inspected(findings=[Finding(kind=FindingKind.ACTIVE_CONTENT, severity=Severity.HIGH)])
        forward = decide(file, policy(*rules))
        backward = decide(file, policy(*reversed(rules)))
        assert forward == backward
        assert forward == decide(file, policy(*rules))

    def test_implicit_max_size_rule(self) -> None:
        decision = decide(inspected(size=11 * 1024 * 1024), policy())
        assert decision.outcome == Outcome.DENY
        assert decision.deciding_rule == MAX_SIZE_RULE_ID

    def test_configured_rule_replaces_implicit_max_size(self) -> None:
        p = policy(rule(MAX_SIZE_RULE_ID, "warn", size_gt=10 * 1024 * 1024))
        assert decide(inspected(size=11 * 1024 * 1024), p).outcome == Outcome.WARN

    def test_deny_and_allow_type_lists(self) -> None:
        p = policy(deny_types=["application/x-*"], allow_types=["text/*", "application/x-*"])
        assert decide(inspected("application/x-executable"), p).deciding_rule == "deny-types"
        assert decide(inspected("image/png"), p).deciding_rule == "allow-types"
        assert decide(inspected("text/plain"), p).outcome == Outcome.ALLOW

    def test_engine_exposes_sorted_rules(self) -> None:
        engine = PolicyEngine(policy(rule("b", "warn", size_gt=1), rule("a", "warn", size_gt=1)))
        assert [r.id for r in engine.rules] == ["a", "b", MAX_SIZE_RULE_ID]


class TestPredicates:
    def test_finding_limit(self) -> None:
        file = inspected(findings=[Finding.resource_limit(ResourceLimitKind.EXPANSION, "bomb")])
        assert predicate_matches(Predicate(finding_limit="expansion"), file)
        assert not predicate_matches(Predicate(finding_limit="timeout"), file)

    def test_min_severity(self) -> None:
        file = inspected(findings=[Finding(kind="x", severity=Severity.MEDIUM)])
        assert predicate_matches(Predicate(min_finding_severity="medium"), file)
        assert not predicate_matches(Predicate(min_finding_severity="HIGH"), file)

    def test_hash_match_is_case_insensitive(self) -> None:
        assert predicate_matches(Predicate(sha256="AB" * 32), inspected())

    def test_media_type_glob_is_case_insensitive(self) -> None:
        assert predicate_matches(Predicate(media_type="IMAGE/*"), inspected("image/png"))

    def test_conditions_are_conjunctive(self) -> None:
        predicate = Predicate(media_type="text/plain", size_gt=100)
        assert not predicate_matches(predicate, inspected(size=10))

    def test_combinators(self) -> None:
        predicate = Predicate.model_validate(
            {"any_of": [{"size_gt": 1000}, {"media_type": "text/*"}], "not": {"size_lt": 5}}
        )
        assert predicate_matches(predicate, inspected(size=10))
        assert not predicate_matches(predicate, inspected(size=1))

    def test_extension_mismatch(self) -> None:
        file = inspected(findings=[Finding(kind=FindingKind.EXTENSION_MISMATCH, severity=Severity.LOW)])
        assert predicate_matches(Predicate(extension_mismatch=True), file)
        assert predicate_matches(Predicate(extension_mismatch=False), inspected())

    def test_empty_predicate_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Predicate()

    def test_explicit_nulls_do_not_count_as_conditions(self) -> None:
        with pytest.raises(ValidationError):
            Predicate(media_type=None)
        with pytest.raises(ValidationError):
            Predicate.model_validate({"size_gt": None, "not": None})

    def test_predicate_without_values_matches_nothing(self) -> None:
        unchecked = Predicate.model_construct(_fields_set={"media_type"}, media_type=None)
        assert unchecked.declared_conditions() == ()
        assert not predicate_matches(unchecked, inspected())


class TestMergePolicies:
    def test_override_replaces_rule_entirely(self) -> None:
        base = Policy(rules={
            "r": PolicyRule.model_validate(
                {"id": "r", "when": {"media_type": "text/*"}, "outcome": "deny", "description": "base"}
            )
        })
        override = Policy(rules={"r": rule("r", "warn", size_gt=1)})
        merged = merge_policies(base, override)
        replaced = merged.rules["r"]
        assert replaced.outcome == Outcome.WARN
        assert replaced.when.media_type is None
        assert replaced.description == ""

    def test_rules_from_both_documents_survive(self) -> None:
        merged = merge_policies(policy(rule("a", "warn", size_gt=1)), policy(rule("b", "deny", size_gt=1)))
        assert set(merged.rules) == {"a", "b"}

    def test_defaults_merge_field_by_field(self) -> None:
        base = Policy(defaults=PolicyDefaults(max_size_bytes=1000, default_decision="warn"))
        override = Policy(defaults=PolicyDefaults.model_validate({"max_size_mb": 1}))
        merged = merge_policies(base, override)
        assert merged.defaults.max_size_bytes == 1024 * 1024
        assert merged.defaults.default_decision == Outcome.WARN

    def test_limits_and_validator_overrides_merge(self) -> None:
        base = Policy(limits=ResourceLimits(timeout_seconds=9, validators={"archive": {"max_nested_depth": 1}}))
        override = Policy(limits=ResourceLimits.model_validate(
            {"max_expansion_ratio": 10, "validators": {"archive": {"max_archive_entries": 5}}}
        ))
        merged = merge_policies(base, override)
        assert merged.limits.timeout_seconds == 9
        assert merged.limits.max_expansion_ratio == 10
        archive = merged.limits_for("archive")
        assert archive.max_nested_depth == 1 and archive.max_archive_entries == 5
