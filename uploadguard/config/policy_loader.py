"""Policy document loading.

Reads YAML policy documents, rejects duplicate keys and rule ids, and
validates them into immutable ``Policy`` models. A base and an optional
override document are merged once into the effective policy before any
file is processed. Every failure surfaces as ``PolicyConfigError``.

Document layout::

    defaults:
      max_size_mb: 10            # or max_size_bytes
      default_decision: allow
      oversize_decision: deny
      deny_types: ["application/x-dosexec"]
      fail_on: deny
    limits:
      timeout_seconds: 5
      max_expansion_ratio: 100
      validators:
        archive: {max_expansion_ratio: 50}
    rules:
      deny-executables:
        when: {media_type: "application/x-executable"}
        outcome: deny
        description: native executables are never accepted
"""

from importlib import resources
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from uploadguard.errors import PolicyConfigError
from uploadguard.models.policy import Policy
from uploadguard.services.policy_engine import merge_policies
from uploadguard.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_POLICY_RESOURCE = "default_policy.yaml"
_TOP_LEVEL_KEYS = frozenset({"defaults", "limits", "rules"})


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                # Unhashable key; the base constructor reports it
                continue
            if duplicate:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_policy_text(text: str, source: str = "<string>") -> Policy:
    try:
        raw = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise PolicyConfigError(f"{source}: invalid YAML: {exc}") from exc
    return build_policy(raw, source)


def build_policy(raw: Any, source: str = "<policy>") -> Policy:
    """Validate a parsed document into a Policy."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise PolicyConfigError(f"{source}: policy document must be a mapping, got {type(raw).__name__}")

    unknown = set(raw) - _TOP_LEVEL_KEYS
    if unknown:
        raise PolicyConfigError(f"{source}: unknown top-level key(s): {', '.join(sorted(map(str, unknown)))}")

    document: Dict[str, Any] = {key: raw[key] for key in ("defaults", "limits") if raw.get(key) is not None}
    document["rules"] = _normalize_rules(raw.get("rules"), source)

    try:
        return Policy.model_validate(document)
    except ValidationError as exc:
        raise PolicyConfigError(f"{source}: {_summarize(exc)}") from exc


def _normalize_rules(rules: Any, source: str) -> Dict[str, Dict[str, Any]]:
    """Accept rules as ``{id: body}`` or as a list of bodies carrying ``id``."""
    if rules is None:
        return {}

    normalized: Dict[str, Dict[str, Any]] = {}
    if isinstance(rules, dict):
        for rule_id, body in rules.items():
            if not isinstance(body, dict):
                raise PolicyConfigError(f"{source}: rule '{rule_id}' must be a mapping")
            declared = body.get("id", rule_id)
            if declared != rule_id:
                raise PolicyConfigError(f"{source}: rule '{rule_id}' declares a different id '{declared}'")
            normalized[str(rule_id)] = {**body, "id": str(rule_id)}
        return normalized

    if isinstance(rules, list):
        for index, body in enumerate(rules):
            if not isinstance(body, dict) or not body.get("id"):
                raise PolicyConfigError(f"{source}: rule #{index + 1} must be a mapping with an 'id'")
            rule_id = str(body["id"])
            if rule_id in normalized:
                raise PolicyConfigError(f"{source}: duplicate rule id '{rule_id}'")
            normalized[rule_id] = dict(body)
        return normalized

    raise PolicyConfigError(f"{source}: 'rules' must be a mapping or a list")


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def load_policy(path: Union[str, Path]) -> Policy:
    policy_path = Path(path)
    try:
        text = policy_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise PolicyConfigError(f"{policy_path}: cannot read policy: {exc}") from exc
    policy = parse_policy_text(text, str(policy_path))
    logger.info("Loaded policy %s (%d rules)", policy_path, len(policy.rules))
    return policy


def load_default_policy() -> Policy:
    text = resources.files("uploadguard.config").joinpath(DEFAULT_POLICY_RESOURCE).read_text(encoding="utf-8")
    return parse_policy_text(text, DEFAULT_POLICY_RESOURCE)


def load_effective_policy(
    base_path: Optional[Union[str, Path]] = None,
    override_path: Optional[Union[str, Path]] = None,
) -> Policy:
    """
    Load the base policy (packaged default when no path is given) and layer
    the override on top. The result is immutable and shared by every worker.
    """
    base = load_policy(base_path) if base_path else load_default_policy()
    if not override_path:
        return base
    effective = merge_policies(base, load_policy(override_path))
    logger.info("Effective policy has %d rules after override", len(effective.rules))
    return effective
