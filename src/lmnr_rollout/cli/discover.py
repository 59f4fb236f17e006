"""
Report rollout entry point metadata.

    python -m lmnr_rollout.cli.discover --file agent.py [--function run]

Prints `LMNR_METADATA:` followed by the entry point's name, export name and
parameters as JSON. The module is never imported: discovery reads its
source only.
"""

import importlib.util
import os
import sys
from argparse import ArgumentParser, Namespace

from lmnr_rollout.sdk.errors import RolloutError
from lmnr_rollout.sdk.rollout.discovery import (
    discover_entrypoints_in_file,
    select_entrypoint,
)
from lmnr_rollout.sdk.utils import json_dumps

METADATA_PREFIX = "LMNR_METADATA:"


def _source_path(args: Namespace) -> str:
    if args.file:
        return os.path.abspath(args.file)
    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    spec = importlib.util.find_spec(args.module)
    if spec is None or not spec.origin:
        raise ImportError(f"Could not find module {args.module}")
    return spec.origin


def run_discover(args: Namespace) -> int:
    """
    Execute the discover command.

    Args:
        args: Parsed command line arguments

    Returns:
        Process exit code
    """
    if not args.file and not args.module:
        print(
            json_dumps({"error": "Either --file or --module must be provided"}),
            file=sys.stderr,
        )
        return 1
    try:
        entrypoints = discover_entrypoints_in_file(_source_path(args))
        if args.function:
            entrypoint = select_entrypoint(entrypoints, args.function)
        elif entrypoints:
            # with several entry points the caller picks one; report the first
            entrypoint = next(iter(entrypoints.values()))
        else:
            entrypoint = select_entrypoint(entrypoints)
    except (RolloutError, OSError, ImportError) as e:
        print(json_dumps({"error": str(e)}), file=sys.stderr)
        return 1

    print(METADATA_PREFIX + json_dumps(entrypoint.to_metadata()), flush=True)
    return 0


def setup_discover_parser(parser: ArgumentParser) -> None:
    parser.add_argument("--file", help="Python file declaring the entry point")
    parser.add_argument("--module", help="Dotted module path, instead of --file")
    parser.add_argument(
        "--function",
        help="Entry point to describe, by export or span name. "
        + "Defaults to the first one declared.",
    )


def main() -> None:
    parser = ArgumentParser(
        prog="python -m lmnr_rollout.cli.discover",
        description="Describe a rollout entry point",
    )
    setup_discover_parser(parser)
    sys.exit(run_discover(parser.parse_args()))


if __name__ == "__main__":
    main()
