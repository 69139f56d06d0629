#!/usr/bin/env python3
"""CLI entry point for stackwright.

Noun-action subcommands:
- stack: Resource lifecycle (plan/apply/destroy/validate/output)
- state: Recorded state inspection (list/show)

Examples:
    stackwright stack plan -S jupyterhub-gke
    stackwright stack apply -S jupyterhub-gke
    stackwright state show -S jupyterhub-gke helm_release.jupyterhub
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Resource lifecycle (plan/apply/destroy/validate/output)",
    "state": "Recorded state inspection (list/show)",
}

STACK_ACTIONS = {
    "plan": "Show operations needed to reach the declared state",
    "apply": "Create or update infrastructure from a stack",
    "destroy": "Delete every recorded resource of a stack",
    "validate": "Validate stack structure and dependency graph",
    "output": "Show stack outputs resolved from state",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-S', 'hub'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: stackwright stack <action> [options]")
        print()
        print("Actions:")
        for action, desc in STACK_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'stackwright stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    from stack_opr import cli as stack_cli
    handlers = {
        "plan": stack_cli.plan_main,
        "apply": stack_cli.apply_main,
        "destroy": stack_cli.destroy_main,
        "validate": stack_cli.validate_main,
        "output": stack_cli.output_main,
    }
    handler = handlers.get(action)
    if handler is None:
        print(f"Error: Unknown stack action '{action}'")
        print(f"Available actions: {', '.join(STACK_ACTIONS)}")
        return 1
    rc: int = handler(rest)
    return rc


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    if noun == "state":
        from stack_opr.cli import state_main
        rc: int = state_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"stackwright {get_version()}")
    print()
    print("Usage: stackwright <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'stackwright <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stackwright stack validate -S jupyterhub-gke")
    print("  stackwright stack plan -S jupyterhub-gke")
    print("  stackwright stack apply -S jupyterhub-gke --dry-run")
    print("  stackwright stack destroy -S jupyterhub-gke --yes")
    print("  stackwright state list -S jupyterhub-gke")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    args = sys.argv[1:] if argv is None else argv

    if not args:
        print_usage()
        return 0

    first_arg = args[0]
    if first_arg in ('--version', '-V'):
        print(f"stackwright {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, args[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
