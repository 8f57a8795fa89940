#!/usr/bin/env python3
"""
infraflow - workflow CLI
"""

import argparse
import asyncio
import importlib
import json
import sys
from typing import Any, List, Optional, Tuple

import yaml

from infraflow.models.rollback_models import RollbackStrategyType
from infraflow.models.workflow_models import (
    ErrorRecoveryStrategy,
    ManualInterventionRequest,
    RecoveryType,
    WorkflowExecutionOptions,
)
from infraflow.models.workflow_schema import definition_to_dict
from infraflow.services.backends import OperationBackend, StateBackend
from infraflow.services.workflow_engine import WorkflowEngine
from infraflow.utils.config import EngineConfig, load_engine_config
from infraflow.utils.errors import ErrorKind, InfraflowError
from infraflow.utils.logging_config import configure_logging
from infraflow.utils.workflow_loader import (
    DEFAULT_WORKFLOW_FILE,
    dump_workflow,
    load_workflow,
    sample_workflow,
)

DEFAULT_ROLLBACK_HISTORY_PATH = ".infraflow/rollback-history.jsonl"


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="infraflow", description="Infrastructure workflow orchestration"
    )
    parser.add_argument("--config", help="Engine configuration file (YAML or JSON)")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--working-dir", help="Working directory for file conditions")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def add_file_option(sub):
        sub.add_argument(
            "-f", "--file", default=DEFAULT_WORKFLOW_FILE, help="Workflow file path"
        )

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow file")
    add_file_option(validate_parser)

    analyze_parser = subparsers.add_parser(
        "analyze", help="Analyze parallel execution potential"
    )
    add_file_option(analyze_parser)
    analyze_parser.add_argument("--json", action="store_true", help="Print JSON")

    optimize_parser = subparsers.add_parser(
        "optimize", help="Add parallel groups and default timeouts"
    )
    add_file_option(optimize_parser)
    optimize_parser.add_argument(
        "-o", "--output", help="Write the optimized workflow here instead of stdout"
    )

    create_parser_ = subparsers.add_parser("create", help="Create a sample workflow file")
    add_file_option(create_parser_)
    create_parser_.add_argument("-n", "--name", default="sample-workflow", help="Workflow name")

    run_parser = subparsers.add_parser("run", help="Execute a workflow")
    add_file_option(run_parser)
    run_parser.add_argument(
        "--backend", help="Operation backend factory as module:callable"
    )
    run_parser.add_argument(
        "--state-backend", help="State backend factory as module:callable"
    )
    run_parser.add_argument("--dry-run", action="store_true", help="Do not call the backend")
    run_parser.add_argument("--continue-on-error", action="store_true")
    run_parser.add_argument("--rollback-on-error", action="store_true")
    run_parser.add_argument("--timeout", type=int, help="Workflow timeout in milliseconds")
    run_parser.add_argument(
        "--no-parallel", action="store_true", help="Run one step at a time"
    )
    run_parser.add_argument("--max-concurrency", type=int)
    run_parser.add_argument("--save-checkpoints", action="store_true")
    run_parser.add_argument("--checkpoint-dir")
    run_parser.add_argument("--resume-from-checkpoint", metavar="ID")
    run_parser.add_argument(
        "--allow-manual-intervention",
        action="store_true",
        help="Prompt for a decision when a step needs manual intervention",
    )
    run_parser.add_argument("--max-manual-interventions", type=int, default=3)
    run_parser.add_argument("--json", action="store_true", help="Print JSON")

    rollback_parser = subparsers.add_parser("rollback", help="Roll a workflow back")
    add_file_option(rollback_parser)
    rollback_parser.add_argument("--backend", help="Operation backend factory")
    rollback_parser.add_argument("--state-backend", help="State backend factory")
    rollback_parser.add_argument(
        "--reason", default="Manual rollback requested", help="Rollback reason"
    )
    rollback_parser.add_argument(
        "--strategy",
        choices=[s.value for s in RollbackStrategyType],
        help="Override the rollback strategy type",
    )

    history_parser = subparsers.add_parser(
        "rollback-history", help="Show rollback history"
    )
    history_parser.add_argument("--workflow", help="Filter by workflow name")
    history_parser.add_argument("--json", action="store_true", help="Print JSON")
    history_parser.add_argument(
        "--report", action="store_true", help="Print the rollback report"
    )

    checkpoints_parser = subparsers.add_parser("checkpoints", help="List checkpoints")
    checkpoints_parser.add_argument("--workflow", help="Filter by workflow name")
    checkpoints_parser.add_argument("--checkpoint-dir")
    checkpoints_parser.add_argument("--json", action="store_true", help="Print JSON")

    return parser


def load_factory(target: str) -> Any:
    """Import ``module:callable`` and call it."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise InfraflowError(
            f"Backend factory must look like module:callable, got {target!r}",
            ErrorKind.VALIDATION,
            "INVALID_BACKEND",
        )
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise InfraflowError(
            f"Cannot load backend factory {target}: {e}",
            ErrorKind.VALIDATION,
            "INVALID_BACKEND",
        ) from e
    return factory()


def load_backends(
    args: argparse.Namespace,
) -> Tuple[Optional[OperationBackend], Optional[StateBackend]]:
    operation_backend = None
    state_backend = None
    if getattr(args, "backend", None):
        loaded = load_factory(args.backend)
        if isinstance(loaded, tuple):
            operation_backend, state_backend = loaded
        else:
            operation_backend = loaded
    if getattr(args, "state_backend", None):
        state_backend = load_factory(args.state_backend)
    return operation_backend, state_backend


def build_engine(config: EngineConfig, args: argparse.Namespace, **kwargs) -> WorkflowEngine:
    operation_backend, state_backend = load_backends(args)
    return WorkflowEngine.from_config(config, operation_backend, state_backend, **kwargs)


async def prompt_for_intervention(
    request: ManualInterventionRequest,
) -> Optional[ErrorRecoveryStrategy]:
    """Ask the operator on stdin how to continue after a failed step."""
    print(f"\nManual intervention needed for step {request.step_name}")
    print(f"  Error: {request.error}")
    for action in request.suggested_actions:
        print(f"  Suggested: {action}")

    choices = [t.value for t in RecoveryType if t != RecoveryType.MANUAL]
    loop = asyncio.get_running_loop()
    while True:
        answer = await loop.run_in_executor(
            None, input, f"Choose {'/'.join(choices)}: "
        )
        answer = answer.strip().lower()
        if answer in choices:
            return ErrorRecoveryStrategy(RecoveryType(answer), "Operator decision")
        print(f"Unknown choice: {answer}")


def print_lines(title: str, items: List[str]) -> None:
    if items:
        print(f"\n{title}:")
        for item in items:
            print(f"  - {item}")


async def handle_validate(args, config: EngineConfig) -> int:
    """Handle validate command."""
    definition = load_workflow(args.file)
    validation = WorkflowEngine.from_config(config).validate_workflow(definition)
    if validation.is_valid:
        print(f"Workflow {definition.name} is valid ({len(definition.steps)} steps)")
        return 0
    print("Workflow validation failed:")
    for issue in validation.issues:
        print(f"  - {issue}")
    return 1


async def handle_analyze(args, config: EngineConfig) -> int:
    """Handle analyze command."""
    definition = load_workflow(args.file)
    analysis = WorkflowEngine.from_config(config).analyze_workflow_parallelization(
        definition
    )
    if args.json:
        print(json.dumps(analysis.to_dict(), indent=2))
        return 0 if not analysis.issues else 1

    print(f"Parallelization analysis for {analysis.workflow_name}")
    print(f"  Can run in parallel: {analysis.can_run_in_parallel}")
    for number, names in enumerate(analysis.batches, 1):
        print(f"  Batch {number}: {', '.join(names)}")
    if analysis.critical_path:
        print(f"  Critical path: {' -> '.join(analysis.critical_path)}")
    print_lines("Issues", analysis.issues)
    print_lines("Recommendations", analysis.recommendations)
    return 0 if not analysis.issues else 1


async def handle_optimize(args, config: EngineConfig) -> int:
    """Handle optimize command."""
    definition = load_workflow(args.file)
    optimized = WorkflowEngine.from_config(
        config
    ).optimize_workflow_for_parallel_execution(definition)
    if args.output:
        path = dump_workflow(optimized, args.output)
        print(f"Optimized workflow written to {path}")
    else:
        print(yaml.safe_dump(definition_to_dict(optimized), sort_keys=False), end="")
    return 0


async def handle_create(args, config: EngineConfig) -> int:
    """Handle create command."""
    path = dump_workflow(sample_workflow(args.name), args.file)
    print(f"Sample workflow created: {path}")
    print("Workflow includes:")
    print("  - Pre-hook for state backup")
    print("  - Main deployment steps with retry logic")
    print("  - Post-hook for verification")
    print("  - Rollback steps for error recovery")
    return 0


async def handle_run(args, config: EngineConfig) -> int:
    """Handle run command."""
    if args.checkpoint_dir:
        config.checkpoint_dir = args.checkpoint_dir
    definition = load_workflow(args.file)
    if not args.backend and not args.dry_run:
        raise InfraflowError(
            "An operation backend is required to run a workflow",
            ErrorKind.VALIDATION,
            "BACKEND_REQUIRED",
            suggestions=["Pass --backend module:callable", "Use --dry-run"],
        )

    handler = prompt_for_intervention if args.allow_manual_intervention else None
    engine = build_engine(config, args, intervention_handler=handler)
    options = WorkflowExecutionOptions(
        dry_run=args.dry_run,
        timeout_ms=args.timeout,
        parallel=not args.no_parallel,
        max_concurrency=args.max_concurrency,
        continue_on_error=args.continue_on_error,
        rollback_on_error=args.rollback_on_error,
        save_checkpoints=args.save_checkpoints,
        resume_from_checkpoint=args.resume_from_checkpoint,
        allow_manual_intervention=args.allow_manual_intervention,
        max_manual_interventions=args.max_manual_interventions,
    )
    result = await engine.execute_workflow(definition, options)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1

    print(f"\nWorkflow {result.workflow_name}: {result.status.value}")
    print(f"  Success: {result.success}")
    print(f"  Duration: {result.duration_ms:.0f}ms")
    print(f"  Completed: {len(result.completed_steps)} steps")
    print(f"  Failed: {len(result.failed_steps)} steps")
    print(f"  Skipped: {len(result.skipped_steps)} steps")
    print_lines("Completed steps", result.completed_steps)
    print_lines("Failed steps", result.failed_steps)
    print_lines("Skipped steps", result.skipped_steps)
    print_lines("Errors", result.errors)
    print_lines("Warnings", result.warnings)
    if result.rollback_performed:
        print("\nRollback was performed")
    if result.checkpoints_saved:
        print(f"\nCheckpoints saved: {', '.join(result.checkpoints_saved)}")
    print_lines(
        "Pending interventions",
        [f"{r.id} ({r.step_name}): {r.error}" for r in result.pending_interventions],
    )
    stats = result.parallel_execution_stats
    print(
        f"\nBatches: {stats.batch_count}, max concurrent steps: "
        f"{stats.max_concurrent_steps}, average concurrency: "
        f"{stats.average_concurrency:.2f}"
    )
    return 0 if result.success else 1


async def handle_rollback(args, config: EngineConfig) -> int:
    """Handle rollback command."""
    definition = load_workflow(args.file)
    engine = build_engine(config, args)
    strategy = RollbackStrategyType(args.strategy) if args.strategy else None
    details = await engine.execute_manual_rollback(definition, args.reason, strategy)

    print(f"Rollback of {definition.name}: {'success' if details.success else 'failed'}")
    print(f"  Duration: {details.duration_ms:.0f}ms")
    print_lines("Rolled back steps", details.rollback_steps)
    print_lines("Failed rollback steps", details.failed_rollback_steps)
    print_lines("Errors", details.errors)
    print_lines("Warnings", details.warnings)
    return 0 if details.success else 1


async def handle_rollback_history(args, config: EngineConfig) -> int:
    """Handle rollback-history command."""
    engine = WorkflowEngine.from_config(config)
    if args.report:
        print(engine.generate_rollback_report(args.workflow))
        return 0

    history = engine.get_rollback_history(args.workflow)
    if args.json:
        print(json.dumps([h.to_dict() for h in history], indent=2, default=str))
        return 0
    if not history:
        print("No rollbacks recorded")
        return 0
    for entry in history:
        status = "success" if entry.execution_result.success else "failed"
        print(
            f"{entry.rollback_timestamp.isoformat()} {entry.workflow_name} "
            f"[{entry.rollback_strategy}] {status}: {entry.trigger_reason}"
        )
    return 0


async def handle_checkpoints(args, config: EngineConfig) -> int:
    """Handle checkpoints command."""
    if args.checkpoint_dir:
        config.checkpoint_dir = args.checkpoint_dir
    checkpoints = WorkflowEngine.from_config(config).list_checkpoints(args.workflow)
    if args.json:
        print(json.dumps([c.to_dict() for c in checkpoints], indent=2, default=str))
        return 0
    if not checkpoints:
        print("No checkpoints found")
        return 0
    for checkpoint in checkpoints:
        print(
            f"{checkpoint.id}  {checkpoint.workflow_name}  "
            f"step {checkpoint.step_index} ({checkpoint.step_name})  "
            f"{checkpoint.timestamp.isoformat()}  "
            f"{len(checkpoint.completed_steps)} completed"
        )
    return 0


HANDLERS = {
    "validate": handle_validate,
    "analyze": handle_analyze,
    "optimize": handle_optimize,
    "create": handle_create,
    "run": handle_run,
    "rollback": handle_rollback,
    "rollback-history": handle_rollback_history,
    "checkpoints": handle_checkpoints,
}


async def main_async(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and dispatch to a command handler."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_engine_config(args.config)
        if args.log_level:
            config.log_level = args.log_level
        if args.working_dir:
            config.working_dir = args.working_dir
        if config.rollback_history_path is None:
            config.rollback_history_path = DEFAULT_ROLLBACK_HISTORY_PATH
        configure_logging(config.log_level)
        return await HANDLERS[args.command](args, config)
    except InfraflowError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        for issue in getattr(e, "issues", []):
            print(f"  - {issue}", file=sys.stderr)
        for suggestion in e.suggestions:
            print(f"  Suggestion: {suggestion}", file=sys.stderr)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Console script entry point."""
    try:
        return asyncio.run(main_async(argv))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
