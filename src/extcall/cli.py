"""Command-line interface for extcall.

These commands run a discovery provider or provisioning helper by hand,
which is mostly useful while writing or debugging one.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import shlex
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from extcall import __version__

if TYPE_CHECKING:
    from extcall.config import ExtcallConfig
    from extcall.models import FactFilter

_FACT_PATTERN = re.compile(r"^(?P<fact>[^=!<>~]+?)(?P<op>==|!=|<=|>=|=~|<|>|=)(?P<value>.+)$")
_TRANSPORTS = ["env", "argv", "stdio"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="extcall",
        description="extcall: run external discovery providers and provisioning helpers.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML config file. Overrides the EXTCALL_CONFIG env var.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging.",
    )

    subparsers = parser.add_subparsers(dest="command")

    discover_parser = subparsers.add_parser("discover", help="Run a discovery provider once.")
    discover_parser.add_argument(
        "--provider",
        type=str,
        default=None,
        help="Provider command line. Overrides the configured discovery command.",
    )
    discover_parser.add_argument(
        "--transport",
        type=str,
        default=None,
        choices=_TRANSPORTS,
        help="Calling convention to use. Overrides the configured transport.",
    )
    discover_parser.add_argument("--collective", type=str, default=None)
    discover_parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Discovery timeout in seconds (minimum 1).",
    )
    discover_parser.add_argument(
        "--fact",
        "-F",
        action="append",
        default=[],
        help="Fact filter such as 'country=mt' or 'cpus>=4'. Repeatable.",
    )
    discover_parser.add_argument("--class", "-C", dest="classes", action="append", default=[])
    discover_parser.add_argument("--agent", "-A", action="append", default=[])
    discover_parser.add_argument("--identity", "-I", action="append", default=[])
    discover_parser.add_argument("--compound", "-S", action="append", default=[])
    discover_parser.add_argument(
        "--option",
        "-O",
        action="append",
        default=[],
        help="Provider option as key=value. Repeatable.",
    )
    discover_parser.add_argument("--federation", action="append", default=None)

    provision_parser = subparsers.add_parser(
        "provision", help="Ask a provisioning helper about one node."
    )
    provision_parser.add_argument(
        "--helper",
        type=str,
        default=None,
        help="Helper command line. Overrides the configured provisioning command.",
    )
    provision_parser.add_argument("--identity", type=str, required=True)
    provision_parser.add_argument(
        "--directory",
        type=str,
        default="",
        help="Directory holding the node's ed25519 key material.",
    )
    provision_parser.add_argument(
        "--inventory",
        type=Path,
        default=None,
        help="JSON file with the node inventory.",
    )
    provision_parser.add_argument("--timeout", type=int, default=None)

    subparsers.add_parser("doctor", help="Check that configured programs can be found.")

    return parser


def _discover_command(args: argparse.Namespace, config: ExtcallConfig) -> int:
    """Execute the 'discover' subcommand."""
    from dataclasses import replace

    from extcall.discovery import ExternalDiscovery
    from extcall.models import Filter
    from extcall.transports import create_transport, resolve_transport_name

    try:
        facts = [_parse_fact(raw) for raw in args.fact]
        options = _parse_options(args.option)
        transport = create_transport(
            resolve_transport_name(args.transport or config.discovery.transport),
            extra_env=config.discovery.environment,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    discovery_config = config.discovery
    if args.provider:
        discovery_config = replace(discovery_config, command=args.provider)

    flt = Filter(
        fact=facts,
        cf_class=list(args.classes),
        agent=list(args.agent),
        compound=list(args.compound),
        identity=list(args.identity),
    )
    discovery = ExternalDiscovery(discovery_config, transport=transport)
    result = discovery.discover_sync(
        flt,
        collective=args.collective,
        timeout=args.timeout,
        options=options,
        federations=args.federation,
    )
    if not result.ok:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    for node in result.nodes:
        print(node)
    print(f"Found {len(result.nodes)} node(s).", file=sys.stderr)
    return 0


def _provision_command(args: argparse.Namespace, config: ExtcallConfig) -> int:
    """Execute the 'provision' subcommand."""
    from dataclasses import replace

    from extcall.models import Ed25519PubKey, ProvisioningRequest, ProvisioningStatus
    from extcall.provisioning import ProvisioningHelper

    inventory: dict[str, object] = {}
    if args.inventory is not None:
        try:
            loaded = json.loads(args.inventory.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            print(f"Error: could not read inventory: {exc}", file=sys.stderr)
            return 1
        if not isinstance(loaded, dict):
            print("Error: inventory must be a JSON object", file=sys.stderr)
            return 1
        inventory = loaded

    provisioning_config = config.provisioning
    if args.helper:
        provisioning_config = replace(provisioning_config, command=args.helper)
    if args.timeout is not None:
        provisioning_config = replace(provisioning_config, timeout=max(1, args.timeout))

    request = ProvisioningRequest(
        identity=args.identity,
        ed25519_pubkey=Ed25519PubKey(directory=args.directory),
        inventory=inventory,
    )
    outcome = ProvisioningHelper(provisioning_config).provision_sync(request)

    print(f"Status: {outcome.status.value}")
    print(f"Message: {outcome.message}")
    if outcome.status == ProvisioningStatus.DONE:
        print("Configuration:")
        print(json.dumps(outcome.configuration, indent=2, sort_keys=True))
        if outcome.server_claims:
            print("Server claims:")
            print(json.dumps(outcome.server_claims, indent=2, sort_keys=True))
    return 1 if outcome.status == ProvisioningStatus.FAILED else 0


def _doctor_command(config: ExtcallConfig) -> int:
    failures = 0
    checks: list[tuple[str, bool, str]] = []

    py_ok = sys.version_info >= (3, 11)
    checks.append(("python", py_ok, _format_python_version()))
    checks.append(("discovery", *_check_command(config.discovery.command)))
    checks.append(("provisioning", *_check_command(config.provisioning.command)))

    for name, ok, detail in checks:
        status = "OK" if ok else "FAIL"
        print(f"{name}: {status} - {detail}")
        if not ok:
            failures += 1

    return 1 if failures else 0


def main(argv: list[str] | None = None) -> int:
    from extcall.config import load_config
    from extcall.errors import ConfigError

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        # No subcommand: print help.
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.command == "discover":
        return _discover_command(args, config)
    if args.command == "provision":
        return _provision_command(args, config)
    if args.command == "doctor":
        return _doctor_command(config)

    parser.print_help()
    return 0


def _parse_fact(raw: str) -> FactFilter:
    from extcall.models import FactFilter

    match = _FACT_PATTERN.match(raw.strip())
    if match is None:
        msg = f"Invalid fact filter '{raw}'. Use fact=value or fact<op>value."
        raise ValueError(msg)
    operator = match.group("op")
    if operator == "=":
        operator = "=="
    return FactFilter(
        fact=match.group("fact").strip(),
        operator=operator,
        value=match.group("value").strip(),
    )


def _parse_options(raw_options: list[str]) -> dict[str, str]:
    options: dict[str, str] = {}
    for raw in raw_options:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            msg = f"Invalid option '{raw}'. Use key=value."
            raise ValueError(msg)
        options[key.strip()] = value
    return options


def _check_command(command: str | None) -> tuple[bool, str]:
    if not command:
        return True, "skipped (no command configured)"
    try:
        parts = shlex.split(command)
    except ValueError as exc:
        return False, f"could not parse command: {exc}"
    if not parts:
        return True, "skipped (no command configured)"
    if shutil.which(parts[0]) is None:
        return False, f"executable not found: '{parts[0]}'"
    return True, f"found {parts[0]}"


def _format_python_version() -> str:
    return f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


if __name__ == "__main__":
    sys.exit(main())
