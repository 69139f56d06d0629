"""CLI handlers for stack verbs (plan, apply, destroy, validate, output) and state inspection.

Usage:
    stackwright stack plan -S <stack> [--json-output] [--verbose]
    stackwright stack apply -S <stack> [--dry-run] [--skip-preflight] [--json-output]
    stackwright stack destroy -S <stack> [--dry-run] [--yes]
    stackwright stack validate -S <stack>
    stackwright stack output -S <stack> [--json-output]
    stackwright state list -S <stack>
    stackwright state show -S <stack> <address>

Exit codes: plan returns 0 with no changes and 2 with pending changes;
apply/destroy return 0 on full success and 1 on partial failure,
cancellation or any fatal error.
"""

import argparse
import json
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from config import ConfigError, EngineConfig, list_stacks, load_engine_config, load_secrets, resolve_credentials
from errors import EngineError, StateConflictError
from providers import build_providers
from readiness import run_preflight_checks
from reporting.report import RunReport, format_summary
from stack import Stack, load_stack
from stack_opr.executor import RunResult, WaveExecutor
from stack_opr.graph import ResourceGraph
from stack_opr.planner import Plan, plan, plan_destroy
from stack_opr.state import StateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2


def _stack_args(parser: argparse.ArgumentParser) -> None:
    """Add stack source and shared options."""
    parser.add_argument(
        '--stack', '-S',
        help=f'Stack name from the stacks directory. Available: {", ".join(list_stacks()) or "none"}',
    )
    parser.add_argument(
        '--stack-file',
        help='Path to stack file (YAML or JSON)',
    )
    parser.add_argument(
        '--stack-json',
        help='Inline stack JSON',
    )
    parser.add_argument(
        '--state-file',
        help='Override state file location (default: .states/<stack>/state.json)',
    )
    parser.add_argument(
        '--config',
        help='Engine config file (default: $STACKWRIGHT_CONFIG or stackwright.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stackwright stack {verb}',
        description=description,
    )
    _stack_args(parser)
    return parser


def _run_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Parser for verbs that execute operations (apply, destroy)."""
    parser = _common_parser(verb, description)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight provider checks',
    )
    parser.add_argument(
        '--no-report',
        action='store_true',
        help='Do not write report files',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_stack_and_config(args) -> tuple[Stack, EngineConfig]:
    """Load stack and engine config from parsed args.

    Raises:
        SystemExit: On missing source or invalid configuration
    """
    if not args.stack and not args.stack_file and not args.stack_json:
        print("Error: specify a stack with -S, --stack-file, or --stack-json",
              file=sys.stderr)
        sys.exit(EXIT_ERROR)

    try:
        stack = load_stack(
            name=args.stack,
            file_path=args.stack_file,
            json_str=args.stack_json,
        )
        config = load_engine_config(Path(args.config) if args.config else None)
        config = config.with_overrides(stack.settings)
    except ConfigError as e:
        print(f"Error loading stack: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)
    return stack, config


def _open_store(args, stack: Stack, config: EngineConfig) -> StateStore:
    """Load the stack's state store."""
    path = Path(args.state_file) if args.state_file else config.state_file(stack.name)
    return StateStore.load(path, stack.name)


def _build_graph(stack: Stack) -> Optional[ResourceGraph]:
    """Build the resource graph, reporting planning errors."""
    try:
        return ResourceGraph(stack)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def format_plan(p: Plan) -> str:
    """Render a plan for the console."""
    if not p.has_changes:
        return f"No changes. Stack '{p.stack_name}' matches recorded state."
    counts = p.counts()
    lines = [f"Plan for '{p.stack_name}' (state serial {p.serial}):", ""]
    for index, wave in enumerate(p.waves, start=1):
        lines.append(f"  Wave {index}:")
        for op in wave:
            reason = f" ({op.reason})" if op.reason else ''
            lines.append(f"    {op}{reason}")
    lines.append("")
    lines.append(f"Plan: {counts['create']} to create, {counts['update']} to update, "
                 f"{counts['delete']} to delete.")
    if p.conditional:
        lines.append(f"{len(p.conditional)} more to update if upstream outputs change.")
    return '\n'.join(lines)


def _emit_json(verb: str, p: Plan, result: Optional[RunResult], outputs: Optional[dict] = None) -> None:
    """Emit structured JSON output."""
    output: dict = {'verb': verb, 'plan': p.to_dict()}
    if result is not None:
        output.update(result.to_dict())
    if outputs is not None:
        output['outputs'] = outputs
    print(json.dumps(output, indent=2, default=str))


@contextmanager
def _cancel_on_signal(executor: WaveExecutor) -> Iterator[None]:
    """First SIGINT/SIGTERM cancels gracefully; a second one interrupts."""
    def _handler(signum, _frame):
        if executor.cancelled:
            raise KeyboardInterrupt
        logger.warning(f"Received signal {signum}")
        executor.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _run_preflight(args, stack: Stack) -> Optional[int]:
    """Run provider pre-flight checks.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight or args.dry_run:
        return None

    secrets = load_secrets()
    tokens = {name: resolve_credentials(p.credentials, secrets)
              for name, p in stack.providers.items()}
    errors = run_preflight_checks(stack, tokens)
    if errors:
        print("\nPre-flight validation failed:", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
        return EXIT_ERROR
    logger.info("Pre-flight validation passed")
    return None


def _execute(verb: str, args, stack: Stack, config: EngineConfig,
             store: StateStore, p: Plan) -> int:
    """Run a plan through the executor and report the outcome."""
    try:
        preflight_rc = _run_preflight(args, stack)
        if preflight_rc is not None:
            return preflight_rc
        providers = build_providers(stack)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    executor = WaveExecutor(
        providers=providers,
        store=store,
        config=config,
        dry_run=args.dry_run,
    )

    try:
        with _cancel_on_signal(executor):
            result = executor.apply(p)
    except StateConflictError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    if args.dry_run:
        return EXIT_OK

    outputs = None
    output_error = None
    if result.success and not p.destroy and stack.outputs:
        try:
            outputs = _resolve_outputs(stack, store)
        except EngineError as e:
            output_error = e

    if args.json_output:
        _emit_json(verb, p, result, outputs)
    else:
        print(format_summary(result, verb))
        if outputs:
            print("\nOutputs:")
            for key, value in outputs.items():
                print(f"  {key} = {json.dumps(value, default=str)}")
    if output_error is not None:
        print(f"Error: cannot resolve stack outputs: {output_error}", file=sys.stderr)

    if not args.no_report:
        report_dir = store.path.parent / 'reports'
        paths = RunReport(result=result, report_dir=report_dir, verb=verb).write()
        logger.debug(f"Reports written: {', '.join(str(path) for path in paths)}")

    return EXIT_OK if result.success else EXIT_ERROR


def _resolve_outputs(stack: Stack, store: StateStore) -> dict:
    """Resolve the stack's declared outputs from recorded state.

    Raises:
        UnresolvedReferenceError: If an output references a missing value
    """
    return store.resolve(stack.outputs, 'outputs')


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan', 'Show operations needed to reach the declared state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)
    graph = _build_graph(stack)
    if graph is None:
        return EXIT_ERROR

    store = _open_store(args, stack, config)
    p = plan(graph, store)

    if args.json_output:
        _emit_json('plan', p, None)
    else:
        print(format_plan(p))

    return EXIT_CHANGES if p.has_changes else EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _run_parser('apply', 'Create or update infrastructure from a stack')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)
    graph = _build_graph(stack)
    if graph is None:
        return EXIT_ERROR

    store = _open_store(args, stack, config)
    p = plan(graph, store)

    if not p.has_changes:
        if args.json_output:
            _emit_json('apply', p, None)
        else:
            print(format_plan(p))
        return EXIT_OK

    logger.info(f"Applying stack '{stack.name}' ({len(p.operations)} operations "
                f"in {len(p.waves)} waves)")
    return _execute('apply', args, stack, config, store, p)


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _run_parser('destroy', 'Delete every recorded resource of a stack')
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)
    store = _open_store(args, stack, config)
    p = plan_destroy(store)

    if not p.has_changes:
        print(f"Nothing to destroy for stack '{stack.name}'.")
        return EXIT_OK

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy {len(p.operations)} resource(s) in stack '{stack.name}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_ERROR

    logger.info(f"Destroying stack '{stack.name}'")
    return _execute('destroy', args, stack, config, store, p)


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Loads the stack, builds the graph (references, cycles) and prints the
    wave layout without reading state or contacting providers.
    """
    parser = _common_parser('validate', 'Validate stack structure and dependency graph')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, _config = _load_stack_and_config(args)
    graph = _build_graph(stack)
    if graph is None:
        return EXIT_ERROR

    waves = [[n.address for n in wave] for wave in graph.waves()]
    if args.json_output:
        print(json.dumps({'stack': stack.name, 'valid': True, 'waves': waves}, indent=2))
        return EXIT_OK

    count = len(graph)
    print(f"Stack '{stack.name}' is valid ({count} resource{'s' if count != 1 else ''}, "
          f"{len(waves)} wave{'s' if len(waves) != 1 else ''})")
    for index, wave in enumerate(waves, start=1):
        print(f"  Wave {index}: {', '.join(wave)}")
    return EXIT_OK


def output_main(argv: list) -> int:
    """Handle 'stack output' verb."""
    parser = _common_parser('output', 'Show stack outputs resolved from state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)
    store = _open_store(args, stack, config)
    try:
        outputs = _resolve_outputs(stack, store)
    except EngineError as e:
        print(f"Error: {e} (has the stack been applied?)", file=sys.stderr)
        return EXIT_ERROR

    if args.json_output:
        print(json.dumps(outputs, indent=2, default=str))
    else:
        for key, value in outputs.items():
            print(f"{key} = {json.dumps(value, default=str)}")
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state list' and 'state show' verbs."""
    parser = argparse.ArgumentParser(
        prog='stackwright state',
        description='Inspect recorded state',
    )
    parser.add_argument('action', choices=['list', 'show'], help='State action')
    parser.add_argument('address', nargs='?', help='Resource address (show)')
    _stack_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack, config = _load_stack_and_config(args)
    store = _open_store(args, stack, config)
    records = store.records

    if args.action == 'list':
        if args.json_output:
            print(json.dumps({'serial': store.serial, 'resources': sorted(records)}, indent=2))
        else:
            for address in sorted(records):
                marker = ' (tainted)' if records[address].tainted else ''
                print(f"{address}{marker}")
        return EXIT_OK

    if not args.address:
        print("Error: state show requires an address", file=sys.stderr)
        return EXIT_ERROR
    record = records.get(args.address)
    if record is None:
        print(f"Error: '{args.address}' not in state", file=sys.stderr)
        return EXIT_ERROR
    print(json.dumps(record.to_dict(), indent=2, default=str))
    return EXIT_OK
