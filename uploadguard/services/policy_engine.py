"""
Policy Engine

Evaluates every rule of the effective policy against an inspected file and
picks the deciding rule by (outcome severity desc, rule id asc). Evaluation
is pure: no I/O, no mutation, independent of rule order.
"""

from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, Tuple

from uploadguard.models.findings import Finding, FindingKind
from uploadguard.models.policy import (
    Decision,
    Outcome,
    Policy,
    PolicyDefaults,
    PolicyRule,
    Predicate,
    ResourceLimits,
)
from uploadguard.models.reports import InspectedFile
from uploadguard.utils.logger import get_logger

logger = get_logger(__name__)

MAX_SIZE_RULE_ID = "max-size"
DENY_TYPES_RULE_ID = "deny-types"
ALLOW_TYPES_RULE_ID = "allow-types"


def merge_policies(base: Policy, override: Policy) -> Policy:
    """
    Layer ``override`` on top of ``base``.

    Rules with the same id are replaced whole. Defaults and limits merge
    field by field; only fields the override sets explicitly win.
    """
    rules = dict(base.rules)
    rules.update(override.rules)

    defaults = PolicyDefaults.model_validate(
        {**base.defaults.model_dump(), **_explicit_fields(override.defaults)}
    )

    limits_data = {**base.limits.model_dump(), **_explicit_fields(override.limits)}
    validators: Dict[str, Dict[str, Any]] = {
        name: dict(values) for name, values in base.limits.validators.items()
    }
    for name, values in override.limits.validators.items():
        validators.setdefault(name, {}).update(values)
    limits_data["validators"] = validators
    limits = ResourceLimits.model_validate(limits_data)

    return Policy(rules=rules, defaults=defaults, limits=limits)


def _explicit_fields(model) -> Dict[str, Any]:
    dumped = model.model_dump()
    return {name: dumped[name] for name in model.model_fields_set if name != "validators"}


def _any_glob(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(value, pattern.lower()) for pattern in patterns)


def _has_finding(findings: Tuple[Finding, ...], kinds: Iterable[str]) -> bool:
    wanted = set(kinds)
    return any(f.kind in wanted for f in findings)


def predicate_matches(predicate: Predicate, file: InspectedFile) -> bool:
    """True when every condition the predicate sets holds for ``file``."""
    if not predicate.declared_conditions():
        return False

    media_type = file.sniff.media_type.lower()
    findings = file.findings

    if predicate.media_type is not None and not _any_glob(media_type, predicate.media_type):
        return False
    if predicate.not_media_type is not None and _any_glob(media_type, predicate.not_media_type):
        return False
    if predicate.size_gt is not None and not file.size > predicate.size_gt:
        return False
    if predicate.size_lt is not None and not file.size < predicate.size_lt:
        return False
    if predicate.finding_kind is not None and not _has_finding(findings, predicate.finding_kind):
        return False
    if predicate.finding_limit is not None:
        limits = set(predicate.finding_limit)
        if not any(
            f.kind == FindingKind.RESOURCE_LIMIT_EXCEEDED and f.limit in limits for f in findings
        ):
            return False
    if predicate.min_finding_severity is not None:
        floor = predicate.min_finding_severity.rank
        if not any(f.severity.rank >= floor for f in findings):
            return False
    if predicate.sha256 is not None and file.sha256.lower() not in predicate.sha256:
        return False
    if predicate.extension_mismatch is not None:
        mismatched = _has_finding(findings, (FindingKind.EXTENSION_MISMATCH,))
        if mismatched != predicate.extension_mismatch:
            return False
    if predicate.any_of is not None and not any(predicate_matches(p, file) for p in predicate.any_of):
        return False
    if predicate.all_of is not None and not all(predicate_matches(p, file) for p in predicate.all_of):
        return False
    if predicate.not_ is not None and predicate_matches(predicate.not_, file):
        return False
    return True


def implicit_rules(defaults: PolicyDefaults) -> Dict[str, PolicyRule]:
    """
    Rules derived from the defaults section. A configured rule with the
    same id replaces the derived one.
    """
    rules = {
        MAX_SIZE_RULE_ID: PolicyRule(
            id=MAX_SIZE_RULE_ID,
            when=Predicate(size_gt=defaults.max_size_bytes),
            outcome=defaults.oversize_decision,
            description="file exceeds the configured size ceiling",
        )
    }
    if defaults.deny_types:
        rules[DENY_TYPES_RULE_ID] = PolicyRule(
            id=DENY_TYPES_RULE_ID,
            when=Predicate(media_type=defaults.deny_types),
            outcome=Outcome.DENY,
            description="media type is on the deny list",
        )
    if defaults.allow_types:
        rules[ALLOW_TYPES_RULE_ID] = PolicyRule(
            id=ALLOW_TYPES_RULE_ID,
            when=Predicate(not_media_type=defaults.allow_types),
            outcome=Outcome.DENY,
            description="media type is not on the allow list",
        )
    return rules


class PolicyEngine:
    """Decide ALLOW / WARN / DENY for inspected files under one effective policy."""

    def __init__(self, policy: Policy) -> None:
        self.policy = policy
        rules = dict(implicit_rules(policy.defaults))
        rules.update(policy.rules)
        self._rules: Tuple[PolicyRule, ...] = tuple(sorted(rules.values(), key=lambda r: r.id))

    @property
    def rules(self) -> Tuple[PolicyRule, ...]:
        return self._rules

    def decide(self, file: InspectedFile) -> Decision:
        matched = [rule for rule in self._rules if predicate_matches(rule.when, file)]
        if not matched:
            return Decision(outcome=self.policy.defaults.default_decision)

        deciding = min(matched, key=lambda rule: (-rule.outcome.rank, rule.id))
        decision = Decision(
            outcome=deciding.outcome,
            triggered_rules=tuple(sorted(rule.id for rule in matched)),
            deciding_rule=deciding.id,
        )
        logger.debug(
            "Decision for %s: %s via %s (triggered=%s)",
            file.identifier,
            decision.outcome.value,
            decision.deciding_rule,
            ",".join(decision.triggered_rules),
        )
        return decision


def decide(file: InspectedFile, policy: Policy) -> Decision:
    return PolicyEngine(policy).decide(file)
