#!/usr/bin/env python3

"""
Diagnostics CLI
A command-line interface for running language server diagnostics on files.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from diagnostics_config import DATA_DIR, DiagnosticsConfig
from diagnostics_orchestrator import DiagnosisResult, DiagnosticsOrchestrator
from exit_codes import DiagnosticsExitCode, exit_code_for
from lsp_constants import SEVERITY_FILTERS
from system_utils import setup_logging

logger = logging.getLogger(__name__)


class OutputFormatter:
    """Handles different output formats for diagnosis results."""

    @staticmethod
    def format_json(results: list[DiagnosisResult]) -> str:
        """Format output as pretty JSON."""
        data: Any = [result.to_dict() for result in results]
        return json.dumps(data[0] if len(data) == 1 else data, indent=2)

    @staticmethod
    def format_simple(results: list[DiagnosisResult]) -> str:
        """Format output as plain text."""
        lines = []
        for result in results:
            if result.ok:
                lines.append(result.text)
            else:
                lines.append(f"Error: {result.text}")
        return "\n\n".join(lines)


async def execute_cli(
    args: argparse.Namespace,
    orchestrator: DiagnosticsOrchestrator,
    formatter: OutputFormatter,
) -> int:
    """Run diagnostics for every path and print the results.

    Files are checked one after another; the orchestrator's servers are shut
    down before returning.
    """
    results: list[DiagnosisResult] = []
    try:
        for path in args.paths:
            result = await orchestrator.get_diagnosis_for_file(
                path, severity=args.severity, max_chars=args.max_chars
            )
            results.append(result)
    finally:
        await orchestrator.shutdown_all()

    if args.format == "json":
        output = formatter.format_json(results)
    else:  # simple
        output = formatter.format_simple(results)
    print(output)

    return int(exit_code_for(results))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run language server diagnostics on files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s src/app.ts
  %(prog)s main.py --severity all
  %(prog)s a.ts b.ts --format json --max-chars 2000
        """,
    )
    parser.add_argument("paths", nargs="+", help="Files to check")
    parser.add_argument(
        "--severity",
        choices=SEVERITY_FILTERS,
        default=None,
        help="Severity to report (default: error, or LSP_DIAG_SEVERITY)",
    )
    parser.add_argument(
        "--max-chars",
        type=int,
        default=None,
        help="Maximum characters of diagnostics per file (default: 4000)",
    )
    parser.add_argument(
        "--format",
        choices=["simple", "json"],
        default="simple",
        help="Output format",
    )
    parser.add_argument(
        "--cwd", default=None, help="Directory relative paths are resolved against"
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=f"Also write logs to this file (e.g. {DATA_DIR / 'diagnostics.log'})",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point - handles argument parsing and object creation."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = DiagnosticsConfig.from_env()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return int(DiagnosticsExitCode.INVALID_CONFIGURATION)

    setup_logging(logging.DEBUG if args.verbose else config.log_level, args.log_file)

    if args.max_chars is not None and args.max_chars < 1:
        print("Error: --max-chars must be at least 1", file=sys.stderr)
        return int(DiagnosticsExitCode.INVALID_CONFIGURATION)

    orchestrator = DiagnosticsOrchestrator(config=config, cwd=args.cwd)
    formatter = OutputFormatter()

    try:
        return asyncio.run(execute_cli(args, orchestrator, formatter))
    except KeyboardInterrupt:
        return int(DiagnosticsExitCode.UNEXPECTED_ERROR)
    except Exception as e:
        logger.exception("Diagnostics run failed")
        print(f"Error running diagnostics: {e}", file=sys.stderr)
        return int(DiagnosticsExitCode.UNEXPECTED_ERROR)


if __name__ == "__main__":
    sys.exit(main())
