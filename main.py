# main.py
"""CLI entry point for the Marginalia feedback engine."""

from __future__ import annotations

import argparse
import sys

from models import ProcessingMode
from orchestration.cli_runner import run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run progressive screenplay feedback over a list of sections."
    )
    parser.add_argument("input", help="Path to a YAML or JSON run input file")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ProcessingMode],
        default=None,
        help="Processing mode (defaults to the input file's mode, then 'chunked')",
    )
    parser.add_argument(
        "--perspective",
        action="append",
        dest="perspectives",
        default=None,
        help="Perspective id to use; repeat for blended runs",
    )
    parser.add_argument("--output", default=None, help="Write the outcome JSON here")
    parser.add_argument("--max-concurrent", type=int, default=None)
    parser.add_argument("--retries", type=int, default=None, help="Retry budget per item")
    parser.add_argument("--base-delay", type=float, default=None, help="Seconds")
    parser.add_argument(
        "--no-summary",
        action="store_true",
        help="Skip the provider-written overview and use the template summary",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse command-line arguments and start a run."""
    args = build_parser().parse_args(argv)
    return run(
        args.input,
        mode=args.mode,
        perspective_ids=args.perspectives,
        output=args.output,
        max_concurrent=args.max_concurrent,
        retry_attempts=args.retries,
        base_delay=args.base_delay,
        no_summary=args.no_summary,
    )


if __name__ == "__main__":
    sys.exit(main())
