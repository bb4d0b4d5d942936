"""Command line entry points: the lifecycle hook and the standalone parser."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Dict, Optional

import yaml

from vpn_netns.backends import NetlinkBackend
from vpn_netns.config import validate_name
from vpn_netns.errors import (
    ConfigSourceError,
    ConfinementError,
    ParseError,
    UsageError,
    ValidationError,
)
from vpn_netns.state import inspect_namespace
from vpn_netns.wgquick import parse_file, write_outputs

from .config import DEFAULT_CONFIG_PATH, load_config, load_paths
from .supervisor import NamespaceSupervisor

LOG = logging.getLogger(__name__)

PARSE_PROG = "vpn-netns-parse"


class _ArgumentParser(argparse.ArgumentParser):
    """Report bad arguments as :class:`UsageError` (exit 1) instead of exiting 2."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(f"{message}\n{self.format_usage().strip()}")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="vpn-netns",
        description="Bring VPN-confined network namespaces up and down",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the agent configuration file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", parser_class=_ArgumentParser)
    commands.required = True

    up = commands.add_parser("up", help="Set a namespace up (no cleanup on failure)")
    up.add_argument("name")
    down = commands.add_parser("down", help="Tear a namespace down")
    down.add_argument("name")
    start = commands.add_parser(
        "start", help="Set namespaces up, tearing each down again if it fails"
    )
    start.add_argument("names", nargs="*", help="Defaults to every configured namespace")
    stop = commands.add_parser("stop", help="Tear namespaces down")
    stop.add_argument("names", nargs="*", help="Defaults to every configured namespace")
    status = commands.add_parser("status", help="Show which resources exist")
    status.add_argument("name")
    return parser


def _exit_code(results: Dict[str, Optional[ConfinementError]]) -> int:
    for error in results.values():
        if error is not None:
            return error.exit_code
    return 0


def _run(args: argparse.Namespace, stop_event: Event) -> int:
    backend = NetlinkBackend()

    if args.command in ("status", "down") or (args.command == "stop" and args.names):
        # Named teardown and inspection only need the paths, so a missing or
        # broken config file never keeps leftovers from being removed.
        config = load_paths(args.config)
    else:
        config = load_config(args.config)

    if args.command == "status":
        validate_name(args.name)
        state = inspect_namespace(backend, args.name, config.resolver_root)
        sys.stdout.write(yaml.safe_dump(state.as_dict(), sort_keys=False))
        return 0

    supervisor = NamespaceSupervisor(config, backend, stop_event=stop_event)

    if args.command == "up":
        supervisor.up(args.name)
        return 0
    if args.command == "down":
        report = supervisor.stop(args.name)
        if report.was_noop:
            LOG.info("%s: already down", args.name)
        return 0
    if args.command == "start":
        return _exit_code(supervisor.start_all(args.names or None))
    if args.command == "stop":
        return _exit_code(supervisor.stop_all(args.names or None))
    raise UsageError(f"unknown command '{args.command}'")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
    except UsageError as exc:
        print(f"vpn-netns: {exc}", file=sys.stderr)
        return exc.exit_code

    _setup_logging(args.verbose)

    stop_event = Event()

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, stopping after the current step", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        return _run(args, stop_event)
    except ConfinementError as exc:
        LOG.error("%s", exc)
        return exc.exit_code
    except OSError as exc:
        LOG.error("%s", exc)
        return 1


def parse_main(argv: list[str] | None = None) -> int:
    """``vpn-netns-parse <config-file> <output-dir>``.

    Exit status: 0 success, 1 usage or I/O error, 2 parse error,
    3 validation error.
    """

    parser = _ArgumentParser(
        prog=PARSE_PROG,
        description="Sanitise a wg-quick configuration for wg setconf",
    )
    parser.add_argument("config_file", type=Path)
    parser.add_argument("output_dir", type=Path)

    try:
        args = parser.parse_args(argv)
        parsed = parse_file(args.config_file)
        write_outputs(parsed, args.output_dir)
    except UsageError as exc:
        print(f"{PARSE_PROG}: usage error: {exc}", file=sys.stderr)
        return exc.exit_code
    except ConfigSourceError as exc:
        print(f"{PARSE_PROG}: error: {exc}", file=sys.stderr)
        return exc.exit_code
    except ParseError as exc:
        print(f"{PARSE_PROG}: parse error: {exc}", file=sys.stderr)
        return exc.exit_code
    except ValidationError as exc:
        print(f"{PARSE_PROG}: validation error: {exc}", file=sys.stderr)
        return exc.exit_code
    except OSError as exc:
        print(f"{PARSE_PROG}: error: cannot write outputs: {exc}", file=sys.stderr)
        return 1

    print(
        f"{PARSE_PROG}: parsed successfully, {len(parsed.addresses)} address(es), "
        f"{len(parsed.dns_servers)} DNS server(s), {parsed.peer_count} peer(s)"
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
