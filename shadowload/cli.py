"""
Command-line entry point.

Exit codes let CI tell a slow candidate from a broken setup:

- ``0`` all thresholds passed
- ``1`` at least one threshold breached, or the run was aborted on a breach
- ``2`` configuration error, nothing was started
- ``3`` thresholds could not be evaluated (a referenced route had no samples)
- ``4`` target failed the pre-run health check
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from rich.logging import RichHandler

from shadowload import __version__
from shadowload.config import load_config
from shadowload.errors import ConfigError, ThresholdEvaluationError
from shadowload.report import build_report, console, print_banner, print_config, print_results, write_json_report
from shadowload.runner import LoadRunner, run_smoke_test
from shadowload.thresholds import Verdict, parse_threshold_arg, require_complete

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2
EXIT_EVALUATION_ERROR = 3
EXIT_UNHEALTHY = 4

VERDICT_EXIT_CODES = {
    Verdict.PASSED: EXIT_PASS,
    Verdict.BREACHED: EXIT_THRESHOLD_BREACH,
    Verdict.ERROR: EXIT_EVALUATION_ERROR,
}

logger = logging.getLogger("shadowload")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shadowload",
        description="Replay a weighted search/product/checkout mix against an HTTP service "
                    "and gate on latency and error-rate thresholds.",
    )
    parser.add_argument("host", nargs="?", help="Target base URL (default: $BASE_URL or http://localhost:8080)")
    parser.add_argument("-c", "--config", help="Path to a JSON config file")
    parser.add_argument("-u", "--vus", type=int, dest="virtual_users", help="Number of virtual users")
    parser.add_argument("-d", "--duration", help="Run duration, e.g. 30s, 5m, 1m30s")
    parser.add_argument("--think-time", help="Pause between iterations, e.g. 100ms")
    parser.add_argument("--ramp-up", help="Spread user start-up over this long")
    parser.add_argument("--timeout", dest="request_timeout", help="Per-request timeout, e.g. 10s")
    parser.add_argument("--seed", type=int, help="Seed for route and parameter selection")
    parser.add_argument(
        "-t", "--threshold", action="append", dest="thresholds", metavar="METRIC:EXPR",
        help="Threshold such as 'all:p(99) < 500' or 'checkout:rate < 0.05'; repeatable, "
             "replaces thresholds from the config file",
    )
    parser.add_argument("--abort-on-fail", action="store_const", const=True, default=None,
                        help="Stop early when a threshold stays breached during the run")
    parser.add_argument("--report", help="Write a JSON report to this path")
    parser.add_argument("--skip-health-check", action="store_true", help="Do not health-check the target before starting")
    parser.add_argument("--smoke", action="store_true", help="Send one request per route and exit")
    parser.add_argument("--no-progress", action="store_true", help="Disable the live progress bar")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def configure_logging(verbose: bool = False, quiet: bool = False):
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    # aiohttp logs every dropped connection at debug; keep the run readable
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))


def config_from_args(args: argparse.Namespace):
    thresholds = None
    if args.thresholds:
        thresholds = [parse_threshold_arg(text) for text in args.thresholds]
    return load_config(
        args.config,
        overrides={
            "base_url": args.host,
            "virtual_users": args.virtual_users,
            "duration": args.duration,
            "think_time": args.think_time,
            "ramp_up": args.ramp_up,
            "request_timeout": args.request_timeout,
            "seed": args.seed,
            "thresholds": thresholds,
            "abort_on_fail": args.abort_on_fail,
        },
    )


def _install_signal_handlers(runner: LoadRunner):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            # Not available on this platform's event loop
            pass


async def run(args: argparse.Namespace) -> int:
    try:
        config = config_from_args(args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR

    if args.smoke:
        passed = await run_smoke_test(config)
        return EXIT_PASS if passed else EXIT_THRESHOLD_BREACH

    print_banner()
    async with LoadRunner(config, show_progress=not args.no_progress) as runner:
        print_config(config, runner.executors)

        if not args.skip_health_check:
            console.print("[dim]Connecting...[/dim]", end=" ")
            if not await runner.check_health():
                console.print("[red]FAILED[/red]")
                console.print("\n[yellow]Tip:[/yellow] check the host or pass --skip-health-check")
                return EXIT_UNHEALTHY
            console.print("[green]OK[/green]")

        _install_signal_handlers(runner)
        result = await runner.run()

    verdict = print_results(runner.recorder, result.results, abort_reason=result.abort_reason)
    if args.report:
        report = build_report(config, runner.recorder, result.results,
                              abort_reason=result.abort_reason, raw_samples=config.raw_samples)
        path = write_json_report(args.report, report)
        logger.info("Report written to %s", path)

    try:
        require_complete(result.results)
    except ThresholdEvaluationError as e:
        logger.error("%s", e)
        return EXIT_EVALUATION_ERROR
    return VERDICT_EXIT_CODES[verdict]


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, quiet=args.quiet)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
