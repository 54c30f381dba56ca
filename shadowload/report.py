"""
Operator-facing output: configuration, per-route results and the verdict.
"""

import json
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shadowload.config import RunConfig, format_duration
from shadowload.metrics import AGGREGATE, MetricRecorder
from shadowload.thresholds import Verdict, overall_status

console = Console()


def print_banner(out: Optional[Console] = None):
    out = out or console
    out.print()
    out.print(Panel.fit("[bold cyan]🪞 SHADOW LOAD GENERATOR[/bold cyan]", border_style="cyan"))
    out.print()


def print_config(config: RunConfig, executors: Optional[dict] = None, out: Optional[Console] = None):
    """Print test configuration."""
    out = out or console
    table = Table(title="⚙️ Configuration", border_style="dim")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Target", config.base_url)
    table.add_row("Virtual Users", str(config.virtual_users))
    table.add_row("Duration", format_duration(config.duration))
    table.add_row("Think Time", format_duration(config.think_time))
    if config.ramp_up:
        table.add_row("Ramp-up", format_duration(config.ramp_up))
    table.add_row("Request Timeout", format_duration(config.request_timeout))
    table.add_row("", "")
    table.add_row("[bold]Route Mix[/bold]", "")
    for route in config.weights.routes:
        policy = ""
        if executors and route in executors:
            policy = f" [dim](ok: {executors[route].policy.describe()})[/dim]"
        table.add_row(f"  {route.value}", f"{config.weights.weight_of(route) * 100:.0f}%{policy}")
    table.add_row("", "")
    table.add_row("[bold]Thresholds[/bold]", "")
    for spec in config.thresholds:
        table.add_row(f"  {spec.metric_selector}", spec.expression)

    out.print(table)
    out.print()


def _status_breakdown(status_counts: dict) -> str:
    parts = []
    for status, count in sorted(status_counts.items()):
        label = "net" if status == 0 else str(status)
        color = "green" if 200 <= status < 300 else "yellow" if 400 <= status < 500 else "red"
        parts.append(f"[{color}]{label}[/{color}]×{count}")
    return " ".join(parts)


def print_results(recorder: MetricRecorder, results: list, out: Optional[Console] = None,
                  abort_reason: Optional[str] = None) -> Verdict:
    """Print detailed results and return the overall verdict."""
    out = out or console
    snapshots = recorder.snapshots()
    total = snapshots[AGGREGATE]

    out.print()
    summary = Table(border_style="cyan")
    summary.add_column("Metric", style="bold")
    summary.add_column("Value", justify="right")
    summary.add_row("Requests", f"{total.count:,}")
    summary.add_row("Duration", f"{recorder.duration_seconds:.2f}s")
    summary.add_row("Throughput", f"{recorder.requests_per_second:.1f} req/s")
    rate_color = "green" if total.error_rate < 0.05 else "red"
    summary.add_row("Error Rate", f"[{rate_color}]{total.error_rate * 100:.2f}%[/{rate_color}]")
    summary.add_row("", "")
    summary.add_row("Latency p50", f"{total.p50:.0f}ms")
    summary.add_row("Latency p95", f"{total.p95:.0f}ms")
    summary.add_row("Latency p99", f"{total.p99:.0f}ms")
    out.print(summary)

    out.print()
    routes = Table(title="📈 Routes", border_style="blue")
    routes.add_column("Route", style="cyan")
    routes.add_column("Total", justify="right")
    routes.add_column("OK", justify="right")
    routes.add_column("Fail", justify="right")
    routes.add_column("Err %", justify="right")
    routes.add_column("p50", justify="right")
    routes.add_column("p95", justify="right")
    routes.add_column("p99", justify="right")
    routes.add_column("max", justify="right")
    routes.add_column("Statuses")
    for name, snap in snapshots.items():
        if name == AGGREGATE:
            continue
        routes.add_row(
            name, f"{snap.count:,}",
            f"[green]{snap.success_count}[/green]",
            f"[red]{snap.error_count}[/red]" if snap.error_count else "0",
            f"{snap.error_rate * 100:.2f}%",
            f"{snap.p50:.0f}ms", f"{snap.p95:.0f}ms", f"{snap.p99:.0f}ms", f"{snap.max:.0f}ms",
            _status_breakdown(snap.status_counts),
        )
    out.print(routes)

    all_errors = defaultdict(int)
    for name, snap in snapshots.items():
        if name == AGGREGATE:
            continue
        for err, count in snap.error_counts.items():
            all_errors[f"{name} → {err}"] += count
    if all_errors:
        out.print()
        errors = Table(title="⚠️ Errors", border_style="red")
        errors.add_column("Error", style="dim")
        errors.add_column("Count", justify="right")
        for err, count in sorted(all_errors.items(), key=lambda x: -x[1])[:10]:
            errors.add_row(err, str(count))
        out.print(errors)

    out.print()
    checks = Table(title="🎯 Thresholds", border_style="magenta")
    checks.add_column("Metric", style="cyan")
    checks.add_column("Threshold")
    checks.add_column("Observed", justify="right")
    checks.add_column("Result", justify="right")
    for r in results:
        if r.evaluation_error:
            observed, result = "-", f"[yellow]ERROR[/yellow] [dim]{r.error}[/dim]"
        else:
            observed = f"{r.observed:.4f}" if r.spec.statistic.value == "rate" else f"{r.observed:.1f}ms"
            result = "[green]PASS[/green]" if r.passed else "[red]FAIL[/red]"
        checks.add_row(r.spec.metric_selector, r.spec.expression, observed, result)
    out.print(checks)

    verdict = overall_status(results)
    if abort_reason and verdict is Verdict.PASSED:
        verdict = Verdict.BREACHED

    out.print()
    if verdict is Verdict.PASSED:
        out.print(Panel(
            "[green bold]✓ PASSED[/green bold]\n"
            f"[dim]{total.count:,} requests, p99 {total.p99:.0f}ms, "
            f"{total.error_rate * 100:.2f}% errors[/dim]",
            border_style="green",
        ))
    elif verdict is Verdict.ERROR:
        reasons = [f"{r.spec}: {r.error}" for r in results if r.evaluation_error]
        out.print(Panel(
            f"[yellow bold]! EVALUATION ERROR[/yellow bold]\n[dim]{', '.join(reasons)}[/dim]",
            border_style="yellow",
        ))
    else:
        reasons = [f"{r.spec} (observed {r.observed:.3f})" for r in results
                   if not r.passed and not r.evaluation_error]
        if abort_reason:
            reasons.insert(0, f"aborted early, {abort_reason}")
        out.print(Panel(
            f"[red bold]✗ FAILED[/red bold]\n[dim]{', '.join(reasons)}[/dim]",
            border_style="red",
        ))
    return verdict


def build_report(config: RunConfig, recorder: MetricRecorder, results: list,
                 abort_reason: Optional[str] = None, raw_samples: int = 0) -> dict:
    verdict = overall_status(results)
    if abort_reason and verdict is Verdict.PASSED:
        verdict = Verdict.BREACHED
    report = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "config": config.to_dict(),
        "duration_seconds": round(recorder.duration_seconds, 3),
        "requests_per_second": round(recorder.requests_per_second, 3),
        "routes": {name: snap.to_dict() for name, snap in recorder.snapshots().items()},
        "thresholds": [
            {
                "metric": r.spec.metric_selector,
                "threshold": r.spec.expression,
                "observed": r.observed,
                "passed": r.passed,
                "error": r.error,
            }
            for r in results
        ],
        "abort_reason": abort_reason,
        "verdict": verdict.value,
    }
    if raw_samples:
        report["samples"] = [
            {"route": o.route.value, "latency_ms": round(o.latency_ms, 3), "status": o.status,
             "success": o.success, "error": o.error}
            for o in recorder.recent(raw_samples)
        ]
    return report


def write_json_report(path, report: dict) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
    return path
