"""CLI entry point for procstream.

Provides ``procstream run`` and ``procstream health`` subcommands. Events are
written to stdout as JSON lines; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from procstream.errors import ProcstreamError
from procstream.logging import configure_logging
from procstream.models import LaunchConfig


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point (``procstream`` command)."""
    parser = argparse.ArgumentParser(
        prog="procstream",
        description="Run an agent CLI and stream its decoded events",
    )
    sub = parser.add_subparsers(dest="command")

    # procstream run
    run_parser = sub.add_parser("run", help="Start or resume a session")
    run_parser.add_argument("message", help="Message passed to the CLI")
    run_parser.add_argument("--resume", metavar="SESSION_ID", help="Native session id to resume")
    _add_config_arguments(run_parser)

    # procstream health
    health_parser = sub.add_parser("health", help="Check the configured executable")
    _add_config_arguments(health_parser)

    args = parser.parse_args(argv)

    if args.command == "run":
        configure_logging()
        sys.exit(asyncio.run(_run(args)))
    elif args.command == "health":
        configure_logging()
        sys.exit(asyncio.run(_health(args)))
    else:
        parser.print_help()
        sys.exit(1)


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--executable", help="Path to the agent CLI")
    parser.add_argument("--cwd", help="Working directory for the process")
    parser.add_argument("--permission-mode", help="Permission mode passed to the CLI")


def build_config(args: argparse.Namespace) -> LaunchConfig:
    """Apply CLI flag overrides on top of the environment settings."""
    config = LaunchConfig.from_settings()
    overrides: dict[str, object] = {}
    if args.executable:
        overrides["executable"] = args.executable
    if args.cwd:
        overrides["working_dir"] = Path(args.cwd)
    if args.permission_mode:
        overrides["permission_mode"] = args.permission_mode
    return config.model_copy(update=overrides) if overrides else config


async def _run(args: argparse.Namespace) -> int:
    """Handle ``procstream run``."""
    from procstream.orchestrator import SessionOrchestrator
    from procstream.sink import JsonLinesSink

    orchestrator = SessionOrchestrator(JsonLinesSink(sys.stdout))
    config = build_config(args)
    try:
        if args.resume:
            await orchestrator.continue_session(args.resume, args.message, config)
        else:
            await orchestrator.start(args.message, config)
        await orchestrator.join()
    except ProcstreamError as exc:
        print(exc.to_message(), file=sys.stderr)
        return 1
    finally:
        await orchestrator.aclose()
    return 0


async def _health(args: argparse.Namespace) -> int:
    """Handle ``procstream health``."""
    from procstream.health import health_check

    status = await health_check(build_config(args))
    print(json.dumps(status.model_dump(), indent=2))
    return 0 if status.executable_available and status.config_valid else 1


if __name__ == "__main__":
    main()
