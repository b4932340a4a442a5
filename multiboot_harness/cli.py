"""Command line entry point for the multiboot handoff harness."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from .config import HarnessConfig
from .description import Description
from .errors import HarnessError
from .extract import DEBUG_PREFIX, POST_HANDOFF_MARKER, extract_records
from .oracle import compare_records
from .scenario import DEFAULT_VARIANTS, Verdict, run_scenarios

EXIT_PASS = 0
EXIT_FAIL = 1
EXIT_ERROR = 2


def _check_cli(args: argparse.Namespace) -> int:
    try:
        output = args.output.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        print(f"cannot read {args.output}: {exc}", file=sys.stderr)
        return EXIT_ERROR
    schema = Description.from_json if args.typed else None
    try:
        intended, observed = extract_records(
            output,
            debug_prefix=args.debug_prefix,
            post_handoff_marker=args.post_handoff_marker,
            schema=schema,
        )
    except HarnessError as exc:
        print(exc.describe(), file=sys.stderr)
        return EXIT_ERROR
    comparison = compare_records(intended, observed)
    print(comparison.render())
    return EXIT_PASS if comparison.equal else EXIT_FAIL


def _run_cli(args: argparse.Namespace) -> int:
    try:
        config = HarnessConfig.from_env()
    except ValueError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return EXIT_ERROR
    if args.kernel_dir is not None:
        config = replace(config, kernel_dir=args.kernel_dir)
    if args.output_dir is not None:
        config = replace(config, output_root=args.output_dir)
    schema = Description.from_json if args.typed else None
    results = run_scenarios(
        config,
        args.variant or DEFAULT_VARIANTS,
        schema=schema,
        ledger_path=args.ledger,
    )
    for result in results:
        print(result.describe())
    verdicts = {result.verdict for result in results}
    if Verdict.ERROR in verdicts:
        return EXIT_ERROR
    if Verdict.FAIL in verdicts:
        return EXIT_FAIL
    return EXIT_PASS


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``python -m multiboot_harness.cli``."""

    parser = argparse.ArgumentParser(description="kexec multiboot handoff verification")
    subparsers = parser.add_subparsers(dest="command", required=True)

    check_parser = subparsers.add_parser(
        "check", help="compare the records in an existing capture"
    )
    check_parser.add_argument("output", type=Path, help="Captured guest output file")
    check_parser.add_argument("--debug-prefix", default=DEBUG_PREFIX)
    check_parser.add_argument("--post-handoff-marker", default=POST_HANDOFF_MARKER)
    check_parser.add_argument(
        "--typed",
        action="store_true",
        help="Validate both fragments against the multiboot record schema",
    )
    check_parser.set_defaults(func=_check_cli)

    run_parser = subparsers.add_parser("run", help="boot the VM for each kernel variant")
    run_parser.add_argument(
        "--variant",
        action="append",
        help="Kernel variant to run (repeatable; defaults to kernel and kernel.gz)",
    )
    run_parser.add_argument(
        "--kernel-dir",
        type=Path,
        default=None,
        help="Directory holding the variant kernel images",
    )
    run_parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help=(
            "Directory for per-scenario run directories (logs, metadata, "
            "diagnostics). They are kept after the run; without this option or "
            "MULTIBOOT_HARNESS_OUTPUT_DIR they are created in the system "
            "temporary directory"
        ),
    )
    run_parser.add_argument(
        "--ledger",
        type=Path,
        default=None,
        help="Append one JSON line per scenario to this file",
    )
    run_parser.add_argument("--typed", action="store_true")
    run_parser.set_defaults(func=_run_cli)

    parsed = parser.parse_args(argv)
    return parsed.func(parsed)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
