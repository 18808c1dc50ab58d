#!/usr/bin/env python3
"""
Command-line interface
======================
Runs the whole pipeline or a single phase.

Single-phase commands read their inputs from the artifacts of the previous
phase in ``--output-dir``. Exit codes: 0 success, 1 validation, 2 network,
3 filesystem, 4 configuration, 5 application.

Run with: python -m tokencrawler all --url https://example.com
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .errors import EXIT_CODES, ApplicationError, CrawlerError, ErrorHandler
from .logging_utils import configure_logging, verbosity_from_flags
from .models import Phase, PhaseOutcome, PipelineReport
from .pipeline import PipelineOrchestrator
from .run_config import _DEFAULTS, MODES, PipelineOptions

logger = logging.getLogger(__name__)

COMMANDS = ("initial", "deepen", "metadata", "extract", "all")

def _load_env() -> None:
    # Project-root .env first, then CWD
    env_path = Path(__file__).resolve().parent.parent / '.env'
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tokencrawler',
        description='Adaptive multi-phase site crawler (initial → deepen → metadata → extract)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m tokencrawler all --url https://example.com
  python -m tokencrawler initial --url https://example.com --output-dir out
  python -m tokencrawler metadata --output-dir out --concurrency metadata=6
  python -m tokencrawler all --url https://example.com --mode sequential --force
        """
    )
    parser.add_argument('command', choices=COMMANDS, help='Phase to run, or "all"')
    parser.add_argument('--url', type=str, help='Start URL (required for initial/all unless TOKENCRAWLER_URL is set)')
    parser.add_argument('--depth', type=int, help=f'Deepest link level to discover (default: {_DEFAULTS["depth"]})')
    parser.add_argument('--max-pages', type=int, help=f'Maximum paths to collect (default: {_DEFAULTS["max_pages"]})')
    parser.add_argument('--timeout', type=int, help=f'Timeout per task in ms (default: {_DEFAULTS["timeout_ms"]})')
    parser.add_argument('--retries', type=int, help=f'Retries per failed task (default: {_DEFAULTS["max_retries"]})')
    parser.add_argument('--output-dir', type=str, help=f'Artifact directory (default: {_DEFAULTS["output_dir"]})')
    parser.add_argument('--mode', choices=MODES, help=f'Scheduling mode (default: {_DEFAULTS["mode"]})')
    parser.add_argument('--force', action='store_true', help='Ignore the phase cache and re-run everything')
    parser.add_argument('--force-sequential', action='store_true',
                        help='Never run Deepen and Metadata concurrently')
    parser.add_argument('--concurrency', action='append', metavar='PHASE=N', default=[],
                        help='Per-phase concurrency override, e.g. deepen=8 (repeatable)')
    parser.add_argument('--no-static-fallback', action='store_true',
                        help='Do not fall back to a plain HTTP fetch when navigation times out')
    parser.add_argument('--headed', action='store_true', help='Show the browser window')

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    verbosity.add_argument('--quiet', '-q', action='store_true', help='Warnings and errors only')
    return parser


def options_from_args(args: argparse.Namespace) -> PipelineOptions:
    """Environment supplies defaults; explicit flags win."""
    return PipelineOptions.from_cli_args(args, base=PipelineOptions.from_env())


def print_summary(report: PipelineReport) -> None:
    """Print run summary."""
    print("\n" + "=" * 65)
    print(f"PIPELINE {report.state.value.upper()}")
    print("=" * 65)
    print(f"  URL:                 {report.url}")
    print(f"  Mode:                {report.mode}")
    if report.site_profile:
        print(f"  Site:                {report.site_profile.category.value} "
              f"({report.site_profile.page_count_estimate} pages, {report.site_profile.confidence} confidence)")
    print(f"  Parallel phases:     {'yes' if report.parallel_used else 'no'}")
    for phase, outcome in report.outcomes.items():
        print_phase(outcome, indent="  ")
    totals = report.metrics.get('totals', {})
    if totals:
        print(f"  Success rate:        {totals.get('success_rate', 1.0) * 100:.1f}%")
    if report.degraded:
        print(f"  Degraded:            {', '.join(report.degraded_reasons)}")
    print(f"  Total time:          {report.duration_ms / 1000:.1f}s")
    print("=" * 65)


def print_phase(outcome: PhaseOutcome, indent: str = "") -> None:
    cached = " (cached)" if outcome.from_cache else ""
    print(f"{indent}{outcome.phase.label + ':':<21}"
          f"{outcome.success_count} ok, {outcome.failure_count} failed"
          + (f", {outcome.skipped_count} skipped" if outcome.skipped_count else "")
          + cached)


def exit_code_for(report: PipelineReport) -> int:
    if report.success:
        return 0
    category = (report.error or {}).get('category', 'application')
    return EXIT_CODES.get(category, ApplicationError.exit_code)


async def _run(command: str, options: PipelineOptions) -> int:
    orchestrator = PipelineOrchestrator(options)
    if command == "all":
        report = await orchestrator.run()
        print_summary(report)
        return exit_code_for(report)
    outcome = await orchestrator.run_phase(Phase(command))
    print_phase(outcome)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Parse argv, build PipelineOptions, run. Returns the process exit code."""
    _load_env()
    parser = build_parser()
    args = parser.parse_args(argv)
    verbosity = verbosity_from_flags(args.verbose, args.quiet)
    configure_logging(verbosity)
    handler = ErrorHandler()

    try:
        options = options_from_args(args)
        if args.command in ("initial", "all") and not options.url:
            parser.error(f"--url is required for '{args.command}'")
        return asyncio.run(_run(args.command, options))
    except CrawlerError as e:
        print("\n" + handler.describe(e, verbose=verbosity == "verbose"), file=sys.stderr)
        report = getattr(e, 'report', None)
        if report is not None:
            print_summary(report)
        return handler.exit_code(e)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return ApplicationError.exit_code


def run_cli() -> None:
    sys.exit(main())


if __name__ == '__main__':
    run_cli()
