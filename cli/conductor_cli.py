#!/usr/bin/env python3
"""
Conductor CLI - Run automation playbooks against a fleet of nodes.

Usage:
    conductor run <playbook.yaml> [--batch-size=<n>] [--input=<k=v> ...] [--json]
                  [--metrics-textfile=<path>] [--loglevel=<level>] [--telemetry]
                  [--<input>=<value> ...]
    conductor show <playbook.yaml> [--json]
    conductor validate <playbook.yaml>

Every input the playbook declares becomes a --<input> option of run,
see `conductor run <playbook.yaml> --help`.

Exit codes:
    0   Success
    1   The playbook ran and failed, or the controller could not be reached
    2   Invalid playbook, inputs or configuration
"""
import sys
import json
import argparse
from typing import Any, Dict, List, Optional

from config import Config, get_config
from Conductor.Core.errors import PlaybookError, PlaybookParseError
from Conductor.Core.logging_config import configure_logging
from Conductor.Core.metrics import write_metrics_textfile
from Conductor.Core.playbook import HookPoint, Playbook, RunReport
from Conductor.Core.playbook_parser import (
    check_references,
    load_playbook_file,
    validate_playbook_yaml,
)
from Conductor.Core.rpc import RpcError
from Conductor.Core.telemetry import init_telemetry, shutdown_telemetry
from Conductor.Core.utils.datetime_helpers import seconds_to_human

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USER_ERROR = 2


def format_table(headers: list, rows: list) -> str:
    """Format data as a table."""
    if not rows:
        return "No results found."

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)

    row_lines = []
    for row in rows:
        row_lines.append(" | ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row)))

    return f"{header_line}\n{separator}\n" + "\n".join(row_lines)


def parse_input_pairs(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn ["k=v", ...] into a dictionary."""
    data: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid input '{pair}', expected name=value")
        data[key.strip()] = value
    return data


def load_playbook(path: str, config: Config, args: argparse.Namespace) -> Playbook:
    """Load and statically check a playbook file."""
    document = load_playbook_file(path)

    errors = check_references(document)
    if errors:
        raise PlaybookParseError("; ".join(errors))

    return Playbook(
        loglevel=getattr(args, "loglevel", None),
        config=config,
        batch_size=getattr(args, "batch_size", None),
    ).from_hash(document)


def format_report(report: RunReport) -> str:
    """Render a run report for the terminal."""
    headers = ["Task", "Status", "Nodes", "Succeeded", "Failed", "Attempts"]
    rows = []
    for outcome in report.hooks + report.tasks:
        name = outcome.name if outcome.hook is None else f"{outcome.hook.value}: {outcome.name}"
        rows.append([
            name,
            outcome.status.value,
            len(outcome.report.nodes),
            len(outcome.report.succeeded_nodes),
            len(outcome.report.failed_nodes),
            outcome.attempts,
        ])

    lines = [format_table(headers, rows), ""]

    for outcome in report.failed_tasks:
        for node in outcome.report.failed_nodes:
            result = outcome.report.results[node]
            lines.append(f"  {outcome.name}: {node} {result.status.value}: {result.error or ''}")

    lines.append(
        f"Playbook {report.playbook} {report.status.value} in "
        f"{seconds_to_human(report.duration_seconds)}"
    )
    return "\n".join(lines)


def cmd_run(args: argparse.Namespace, extra: List[str], config: Config) -> int:
    """Run a playbook."""
    try:
        playbook = load_playbook(args.playbook, config, args)
    except PlaybookError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR

    input_parser = argparse.ArgumentParser(
        prog=f"conductor run {args.playbook}",
        description=playbook.metadata.description or None,
    )
    # required inputs are checked when the playbook prepares, so --input pairs count too
    playbook.add_cli_options(input_parser, allow_empty=True)
    input_args = input_parser.parse_args(extra)

    try:
        input_data: Dict[str, Any] = parse_input_pairs(args.input_pairs)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR

    input_data.update({k: v for k, v in vars(input_args).items() if v is not None})

    if args.telemetry:
        init_telemetry()

    try:
        report = playbook.run(input_data)
    except RpcError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except PlaybookError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR
    finally:
        if args.metrics_textfile:
            write_metrics_textfile(args.metrics_textfile)
        if args.telemetry:
            shutdown_telemetry()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(format_report(report))

    return EXIT_OK if report.success else EXIT_FAILED


def cmd_show(args: argparse.Namespace, config: Config) -> int:
    """Show a playbook's metadata, inputs, nodes and tasks."""
    try:
        playbook = load_playbook(args.playbook, config, args)
    except PlaybookParseError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR

    if args.json:
        print(json.dumps(playbook.to_dict(), indent=2, default=str))
        return EXIT_OK

    metadata = playbook.metadata
    print(f"Name:        {metadata.name}")
    print(f"Version:     {metadata.version}")
    print(f"Author:      {metadata.author}")
    print(f"Description: {metadata.description}")
    print(f"Tags:        {', '.join(metadata.tags)}")
    print(f"On fail:     {metadata.on_fail}")
    print(f"Run as:      {metadata.run_as}")

    print("\nInputs:")
    print(format_table(
        ["Name", "Type", "Required", "Default", "Description"],
        [
            [
                d.name,
                d.type.value,
                "Yes" if d.required else "No",
                d.to_dict().get("default", ""),
                d.description,
            ]
            for d in playbook.inputs
        ],
    ))

    print("\nNodes:")
    print(format_table(
        ["Group", "Source", "Definition"],
        [
            [name, group.source.value, group.filter if group.filter is not None else group.nodes]
            for name, group in ((n, playbook.nodes.group(n)) for n in playbook.nodes.keys())
        ],
    ))

    print("\nTasks:")
    rows = [
        [str(t.index + 1), t.name, t.nodes, f"{t.agent}#{t.action}"]
        for t in playbook.tasks
    ]
    for point in HookPoint:
        rows.extend(
            [point.value, h.name, h.nodes, f"{h.agent}#{h.action}"]
            for h in playbook.tasks.hooks(point)
        )
    print(format_table(["#", "Name", "Nodes", "Action"], rows))

    return EXIT_OK


def cmd_validate(args: argparse.Namespace, config: Config) -> int:
    """Validate a playbook without running it."""
    try:
        with open(args.playbook, "r", encoding="utf-8") as handle:
            content = handle.read()
    except OSError as e:
        print(f"Error: Cannot read {args.playbook}: {e}", file=sys.stderr)
        return EXIT_USER_ERROR

    errors = validate_playbook_yaml(content, config)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return EXIT_USER_ERROR

    print(f"{args.playbook} is valid")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Conductor - run automation playbooks against a fleet of nodes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser(
        "run", help="Run a playbook", add_help=False,
        description="Run a playbook. Declared inputs are accepted as --<input> options.",
    )
    run_parser.add_argument("playbook", help="Playbook YAML file")
    run_parser.add_argument("--batch-size", type=int, dest="batch_size",
                            help="Nodes per RPC batch")
    run_parser.add_argument("--input", action="append", dest="input_pairs", metavar="NAME=VALUE",
                            help="Input value, may be repeated")
    run_parser.add_argument("--json", action="store_true", help="Print the run report as JSON")
    run_parser.add_argument("--metrics-textfile", dest="metrics_textfile",
                            help="Write Prometheus metrics to this file after the run")
    run_parser.add_argument("--loglevel", choices=["debug", "info", "warn", "error"],
                            help="Override the playbook log level")
    run_parser.add_argument("--telemetry", action="store_true",
                            help="Export traces over OTLP")

    show_parser = subparsers.add_parser("show", help="Show a playbook")
    show_parser.add_argument("playbook", help="Playbook YAML file")
    show_parser.add_argument("--json", action="store_true", help="Print as JSON")

    validate_parser = subparsers.add_parser("validate", help="Validate a playbook")
    validate_parser.add_argument("playbook", help="Playbook YAML file")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_USER_ERROR

    if args.command != "run" and extra:
        parser.error(f"unrecognized arguments: {' '.join(extra)}")

    configure_logging()

    config = get_config()
    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Configuration error: {error}", file=sys.stderr)
        return EXIT_USER_ERROR

    if args.command == "run":
        return cmd_run(args, extra, config)
    elif args.command == "show":
        return cmd_show(args, config)
    elif args.command == "validate":
        return cmd_validate(args, config)

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
