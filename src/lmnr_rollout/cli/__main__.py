"""
Entry point for `python -m lmnr_rollout.cli`.

The supervisor usually spawns the worker module directly:
    python -m lmnr_rollout.cli.worker
"""

from lmnr_rollout.cli import cli

if __name__ == "__main__":
    cli()
