"""Summary rendering and JSON export."""

import json

import pytest
from rich.console import Console

from shadowload.config import load_config
from shadowload.metrics import MetricRecorder
from shadowload.report import build_report, print_config, print_results, write_json_report
from shadowload.routes import Route
from shadowload.thresholds import Verdict, evaluate, parse_threshold

pytestmark = pytest.mark.unit


@pytest.fixture
def out():
    return Console(record=True, width=160, color_system=None)


@pytest.fixture
def filled_recorder():
    recorder = MetricRecorder()
    recorder.mark_start()
    for ms in range(1, 101):
        recorder.record(Route.SEARCH, float(ms), True, status=200)
    recorder.record(Route.PRODUCT, 15.0, True, status=404)
    recorder.record(Route.CHECKOUT, 40.0, True, status=503)
    recorder.record(Route.CHECKOUT, 10_000.0, False, status=0, error="ServerTimeoutError")
    recorder.mark_end()
    return recorder


def test_passed_verdict(out, filled_recorder):
    results = evaluate(filled_recorder.snapshots(), [parse_threshold("search", "p(99) < 500")])

    verdict = print_results(filled_recorder, results, out=out)

    text = out.export_text()
    assert verdict is Verdict.PASSED
    assert "PASSED" in text
    assert "search" in text and "checkout" in text
    assert "ServerTimeoutError" in text


def test_routes_table_shows_error_rate(out, filled_recorder):
    print_results(filled_recorder, [], out=out)

    routes = out.export_text().split("Routes", 1)[1]
    assert "Err %" in routes
    assert "50.00%" in routes
    assert "0.00%" in routes


def test_failed_verdict_lists_breaches(out, filled_recorder):
    results = evaluate(filled_recorder.snapshots(), [parse_threshold("checkout", "p(99) < 500")])

    verdict = print_results(filled_recorder, results, out=out)

    assert verdict is Verdict.BREACHED
    assert "FAILED" in out.export_text()


def test_evaluation_error_verdict(out):
    recorder = MetricRecorder()
    recorder.record(Route.SEARCH, 1.0, True, status=200)
    results = evaluate(recorder.snapshots(), [parse_threshold("checkout", "p(99) < 500")])

    verdict = print_results(recorder, results, out=out)

    assert verdict is Verdict.ERROR
    assert "EVALUATION ERROR" in out.export_text()


def test_abort_turns_pass_into_failure(out, filled_recorder):
    results = evaluate(filled_recorder.snapshots(), [parse_threshold("search", "p(99) < 500")])

    verdict = print_results(filled_recorder, results, out=out, abort_reason="threshold breached")

    assert verdict is Verdict.BREACHED
    assert "aborted early" in out.export_text()


def test_print_config(out):
    print_config(load_config(env={"VUS": "8", "DURATION": "90s"}), out=out)

    text = out.export_text()
    assert "Virtual Users" in text and "8" in text
    assert "1m30s" in text
    assert "p(99) < 500" in text


def test_json_report(tmp_path, filled_recorder):
    config = load_config(env={})
    results = evaluate(filled_recorder.snapshots(), [parse_threshold("search", "p(99) < 500"),
                                                     parse_threshold("checkout", "rate < 0.1")])

    report = build_report(config, filled_recorder, results, raw_samples=2)
    path = write_json_report(tmp_path / "out" / "report.json", report)

    data = json.loads(path.read_text())
    assert data["verdict"] == "breached"
    assert data["routes"]["search"]["p99_ms"] == 99.0
    assert data["routes"]["product"]["status_counts"] == {"404": 1}
    assert data["routes"]["checkout"]["errors"] == 1
    assert data["thresholds"][0]["passed"] is True
    assert data["thresholds"][1]["passed"] is False
    assert [s["route"] for s in data["samples"]] == ["checkout", "checkout"]
