"""
Entry point for running tunnelvisor via `python -m tunnelvisor`.

Dispatches a single lifecycle command (start, stop, restart, condrestart,
reload, reopen, status) across every tunnel, or one of the extra commands:
`units` lists discovered tunnels, `history` shows recent events and `serve`
starts the control API with uvicorn.
"""

import argparse
import logging
import sys

import uvicorn

from .config import config
from .logs import configure_logging
from .models import recent_events
from .supervisor import Supervisor

EXTRA_COMMANDS = ("units", "history", "serve")


class CommandParser(argparse.ArgumentParser):
    """Reports bad arguments to the caller instead of exiting with status 2."""

    def error(self, message):
        raise ValueError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = CommandParser(
        prog="tunnelvisor",
        add_help=False,
        description="Start, stop and signal one OpenVPN daemon per configuration file.",
    )
    parser.add_argument("command", nargs="?", help="|".join(Supervisor.COMMANDS + EXTRA_COMMANDS))
    parser.add_argument("-n", "--limit", type=int, default=20, help="events shown by history")
    parser.add_argument("-v", "--verbose", action="store_true", help="log progress to the console")
    return parser


def usage(parser: argparse.ArgumentParser) -> int:
    print(f"Usage: {parser.prog} {{{'|'.join(Supervisor.COMMANDS)}}}", file=sys.stderr)
    return 1


def show_units(supervisor: Supervisor) -> int:
    units = supervisor.describe_units()
    if not units:
        print(f"No tunnel configurations in {supervisor.config.work_dir}")
        return 0
    for unit in units:
        state = f"running (pid {unit['pid']})" if unit["alive"] else "stopped"
        if unit["pid_file"] and not unit["alive"]:
            state += ", stale pid file"
        print(f"{unit['name']:<24} {state}")
    return 0


def show_history(limit: int) -> int:
    for event in recent_events(limit=limit):
        status = "ok" if event.success else "FAILED"
        unit = event.unit or "-"
        print(f"{event.timestamp:%Y-%m-%d %H:%M:%S}  {event.operation:<12} {unit:<20} {status}  {event.detail or ''}")
    return 0


def serve() -> int:
    uvicorn.run(
        "tunnelvisor.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
    return 0


def main(argv=None) -> int:
    """Run one command and return its exit code."""
    parser = build_parser()
    try:
        args, extra = parser.parse_known_args(argv)
    except ValueError:
        return usage(parser)

    if extra or args.command not in Supervisor.COMMANDS + EXTRA_COMMANDS:
        return usage(parser)

    configure_logging(config, logging.INFO if args.verbose or args.command == "serve" else logging.WARNING)

    if args.command == "serve":
        return serve()

    supervisor = Supervisor(config)
    if args.command == "units":
        return show_units(supervisor)
    if args.command == "history":
        return show_history(args.limit)

    result = supervisor.run(args.command)
    if not result.ok and result.reason != "not_running":
        print(result.message, file=sys.stderr)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
