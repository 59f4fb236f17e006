from argparse import ArgumentParser
import sys

from lmnr_rollout.cli.discover import run_discover, setup_discover_parser
from lmnr_rollout.cli.worker import main as worker_main


def cli() -> None:
    parser = ArgumentParser(
        prog="lmnr-rollout",
        description="Run rollout entry points in an isolated worker",
    )
    subparsers = parser.add_subparsers(dest="subcommand")

    parser_discover = subparsers.add_parser(
        "discover",
        description="Describe a rollout entry point",
        help="Print entry point metadata as JSON",
    )
    setup_discover_parser(parser_discover)

    subparsers.add_parser(
        "worker",
        description="Run a rollout worker. The configuration is read from stdin.",
        help="Run a rollout worker",
    )

    parsed = parser.parse_args()
    if parsed.subcommand == "discover":
        sys.exit(run_discover(parsed))
    elif parsed.subcommand == "worker":
        worker_main()
    else:
        parser.print_help()
