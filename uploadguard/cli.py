"""
Command-line entry point.

``uploadguard scan`` inspects files and directories against the effective
policy and exits with the run's status; ``uploadguard serve`` starts the
HTTP surface.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from uploadguard.config.policy_loader import load_effective_policy
from uploadguard.config.settings import settings
from uploadguard.errors import PolicyConfigError
from uploadguard.models.policy import FailOn, Policy
from uploadguard.services.report_generator import EXIT_INVALID_POLICY
from uploadguard.utils.logger import configure_logging, get_logger
from uploadguard.workflows.inspection import InspectionWorkflow, RunResult

logger = get_logger(__name__)


def _fail_on(value: str) -> FailOn:
    try:
        return FailOn.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than zero")
    return number


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level (default: %(default)s).")
    common.add_argument("--log-json", action="store_true", default=settings.LOG_JSON, help="Emit logs as JSON lines.")

    p = argparse.ArgumentParser(prog="uploadguard", description="Content validation and policy decisions for uploads.")
    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", parents=[common], help="Inspect files or directories (recursive).")
    scan.add_argument("paths", nargs="+", help="Files or directories to inspect.")
    scan.add_argument("--policy", default=settings.POLICY_PATH, help="Base policy YAML (default: packaged policy).")
    scan.add_argument("--override", default=settings.OVERRIDE_POLICY_PATH, help="Override policy YAML layered on top.")
    scan.add_argument("--json", dest="json_path", help="Write per-file JSON lines here instead of stdout.")
    scan.add_argument("--summary", dest="summary_path", help="Write the summary JSON document here.")
    scan.add_argument("--format", choices=("jsonl", "text"), default="jsonl", help="Stdout format (default: %(default)s).")
    scan.add_argument("--fail-on", type=_fail_on, default=settings.FAIL_ON, help="warn, deny, error or none (default: policy).")
    scan.add_argument("--timeout", type=_positive_float, help="Per-validator timeout in seconds.")
    scan.add_argument("--workers", type=int, default=settings.WORKERS, help="Concurrent workers (default: %(default)s).")

    serve = sub.add_parser("serve", parents=[common], help="Run the HTTP service.")
    serve.add_argument("--host", default=settings.HOST)
    serve.add_argument("--port", type=int, default=settings.PORT)
    return p


def expand_paths(paths: Sequence[str]) -> List[Tuple[str, Path]]:
    """Files stay as given; directories expand to their files, sorted."""
    inputs: List[Tuple[str, Path]] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            for child in sorted(p for p in path.rglob("*") if p.is_file()):
                inputs.append((str(child), child))
        else:
            # Missing paths surface as per-file operational errors
            inputs.append((raw, path))
    return inputs


def _with_timeout(policy: Policy, timeout: Optional[float]) -> Policy:
    if timeout is None:
        return policy
    limits = policy.limits.model_copy(update={"timeout_seconds": timeout})
    return policy.model_copy(update={"limits": limits})


def _write_outputs(args: argparse.Namespace, workflow: InspectionWorkflow, result: RunResult) -> None:
    reports = workflow.report_generator_service
    jsonl = reports.render_jsonl(result.reports)

    if args.json_path:
        Path(args.json_path).write_text(jsonl, encoding="utf-8")
    if args.summary_path:
        Path(args.summary_path).write_text(reports.render_summary(result.summary) + "\n", encoding="utf-8")

    if args.format == "text":
        sys.stdout.write(reports.render_text(result.reports, result.summary) + "\n")
    elif not args.json_path:
        sys.stdout.write(jsonl)
    sys.stdout.flush()


def run_scan(args: argparse.Namespace) -> int:
    try:
        policy = load_effective_policy(args.policy, args.override)
    except PolicyConfigError as exc:
        logger.error("Invalid policy: %s", exc)
        print(f"uploadguard: invalid policy: {exc}", file=sys.stderr)
        return EXIT_INVALID_POLICY

    fail_on = args.fail_on
    if isinstance(fail_on, str):
        fail_on = FailOn.parse(fail_on)

    workflow = InspectionWorkflow(_with_timeout(policy, args.timeout), workers=args.workers, fail_on=fail_on)
    try:
        result = workflow.run_sync(expand_paths(args.paths))
    finally:
        workflow.close()

    _write_outputs(args, workflow, result)
    return result.exit_status


def run_serve(args: argparse.Namespace) -> int:
    try:
        from uploadguard.main import serve
    except PolicyConfigError as exc:
        print(f"uploadguard: invalid policy: {exc}", file=sys.stderr)
        return EXIT_INVALID_POLICY
    serve(host=args.host, port=args.port)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_json)
    if args.command == "scan":
        return run_scan(args)
    return run_serve(args)


if __name__ == "__main__":
    raise SystemExit(main())
