"""
One load run end to end: session, recorder, virtual users and thresholds.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from shadowload.config import RunConfig
from shadowload.executor import build_executors
from shadowload.metrics import MetricRecorder
from shadowload.report import console as default_console
from shadowload.routes import (
    PRODUCT_IDS, UNKNOWN_PRODUCT_ID, CheckoutParams, ProductParams, Route, RouteCatalog,
    SearchParams,
)
from shadowload.scheduler import VirtualUserScheduler
from shadowload.thresholds import ThresholdMonitor, Verdict, evaluate, overall_status

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_SECONDS = 5


@dataclass
class RunResult:
    results: list
    verdict: Verdict
    abort_reason: Optional[str] = None
    iterations: int = 0


class LoadRunner:
    """
    Owns everything a single run shares: the HTTP session and the recorder.

    Use as an async context manager so the connection pool is closed once all
    virtual users have stopped.
    """

    def __init__(self, config: RunConfig, console: Optional[Console] = None,
                 show_progress: bool = True):
        self.config = config
        self.console = console or default_console
        self.show_progress = show_progress
        self.recorder = MetricRecorder(raw_samples=config.raw_samples)
        self.executors = build_executors(self.recorder, config.policies, timeout=config.request_timeout)
        self.catalog = RouteCatalog()
        self.session: Optional[aiohttp.ClientSession] = None
        self.scheduler: Optional[VirtualUserScheduler] = None
        self.monitor: Optional[ThresholdMonitor] = None

    async def __aenter__(self):
        # At least one pooled connection per virtual user
        limit = max(100, self.config.virtual_users)
        connector = aiohttp.TCPConnector(limit=limit, limit_per_host=limit)
        self.session = aiohttp.ClientSession(connector=connector)
        return self

    async def __aexit__(self, *args):
        if self.session:
            await self.session.close()

    async def check_health(self) -> bool:
        url = f"{self.config.base_url}{self.config.health_endpoint}"
        try:
            async with self.session.get(
                url, timeout=aiohttp.ClientTimeout(total=HEALTH_TIMEOUT_SECONDS)
            ) as resp:
                healthy = 200 <= resp.status < 300
                logger.info("Health check %s -> %d", url, resp.status)
                return healthy
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Health check %s failed: %r", url, e)
            return False

    def build_scheduler(self) -> VirtualUserScheduler:
        cfg = self.config
        self.scheduler = VirtualUserScheduler(
            session=self.session,
            base_url=cfg.base_url,
            executors=self.executors,
            catalog=self.catalog,
            weights=cfg.weights,
            virtual_users=cfg.virtual_users,
            duration=cfg.duration,
            think_time=cfg.think_time,
            ramp_up=cfg.ramp_up,
            seed=cfg.seed,
        )
        return self.scheduler

    def stop(self, reason: str = "stop requested"):
        if self.scheduler:
            self.scheduler.stop(reason)

    async def run(self) -> RunResult:
        """Run the load test and evaluate thresholds once every user has stopped."""
        cfg = self.config
        scheduler = self.build_scheduler()
        check = cfg.threshold_check
        self.monitor = ThresholdMonitor(
            self.recorder.snapshots, list(cfg.thresholds),
            interval=check.interval,
            abort_on_fail=check.abort_on_fail,
            abort_after=check.abort_after,
            on_abort=lambda reason: scheduler.stop(reason),
        )

        self.recorder.mark_start()
        monitor_task = asyncio.create_task(self.monitor.run(scheduler.stop_event))
        try:
            if self.show_progress:
                await self._run_with_progress(scheduler)
            else:
                await scheduler.run()
        finally:
            self.recorder.mark_end()
            if not scheduler.stop_event.is_set():
                scheduler.stop_event.set()
            await monitor_task

        results = evaluate(self.recorder.snapshots(), cfg.thresholds)
        verdict = overall_status(results)
        if self.monitor.abort_reason and verdict is Verdict.PASSED:
            verdict = Verdict.BREACHED
        return RunResult(
            results=results,
            verdict=verdict,
            abort_reason=self.monitor.abort_reason,
            iterations=scheduler.iterations,
        )

    async def _run_with_progress(self, scheduler: VirtualUserScheduler):
        with Progress(
            TextColumn("[bold]{task.description}"),
            BarColumn(bar_width=25),
            TextColumn("{task.fields[active]} active"),
            TextColumn("{task.fields[requests]:,} req"),
            TextColumn("[red]{task.fields[errors]:,} err"),
            TextColumn("[dim]elapsed:[/dim]"),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
        ) as progress:
            task = progress.add_task(
                f"{self.config.virtual_users} virtual users", total=self.config.duration,
                active=0, requests=0, errors=0,
            )
            run_task = asyncio.create_task(scheduler.run())
            started = time.monotonic()
            while not run_task.done():
                await asyncio.wait({run_task}, timeout=0.5)
                progress.update(
                    task,
                    completed=min(time.monotonic() - started, self.config.duration),
                    active=scheduler.running,
                    requests=self.recorder.total_requests,
                    errors=self.recorder.total_errors,
                )
            progress.update(task, completed=self.config.duration)
            await run_task


# =========================================================================
# Smoke test
# =========================================================================

SMOKE_REQUESTS = (
    ("Search for a product", Route.SEARCH, SearchParams(query="ssd")),
    ("Search with an empty query", Route.SEARCH, SearchParams(query="")),
    ("Look up a stocked product", Route.PRODUCT, ProductParams(product_id=PRODUCT_IDS[0])),
    ("Look up an unknown product (404 expected)", Route.PRODUCT,
     ProductParams(product_id=UNKNOWN_PRODUCT_ID)),
    ("Check out a small cart", Route.CHECKOUT,
     CheckoutParams(product_ids=PRODUCT_IDS[:2], email="demo@example.com")),
)


async def run_smoke_test(config: RunConfig, console: Optional[Console] = None) -> bool:
    """Send one request per smoke step and show each response."""
    out = console or default_console
    out.print(Panel.fit("[bold cyan]🔍 SMOKE TEST[/bold cyan]\nOne request per route", border_style="cyan"))
    out.print(f"\n[dim]Target:[/dim] {config.base_url}\n")

    recorder = MetricRecorder(raw_samples=0)
    executors = build_executors(recorder, config.policies, timeout=config.request_timeout)
    all_ok = True

    async with aiohttp.ClientSession() as session:
        for desc, route, params in SMOKE_REQUESTS:
            executor = executors[route]
            path = executor.build_path(params)
            out.print(f"[bold]{desc}[/bold]")
            out.print(f"  [cyan]{executor.method}[/cyan] {path}")
            body = executor.build_body(params)
            if body is not None:
                out.print(f"  [dim]Body:[/dim] {json.dumps(body)}")

            outcome = await executor.execute(session, config.base_url, params)
            all_ok = all_ok and outcome.success
            color = "green" if outcome.success else "red"
            status = outcome.status or outcome.error
            out.print(f"  [dim]Status:[/dim] [{color}]{status}[/{color}] "
                      f"[dim]({outcome.latency_ms:.0f}ms)[/dim]\n")

    if all_ok:
        out.print(Panel.fit("[bold green]✓ SMOKE TEST COMPLETE[/bold green]\nAll routes responded as expected",
                            border_style="green"))
    else:
        out.print(Panel.fit("[bold red]✗ SMOKE TEST FAILED[/bold red]\nSee statuses above",
                            border_style="red"))
    return all_ok
