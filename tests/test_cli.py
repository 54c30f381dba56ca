"""End-to-end runs through the command-line entry point."""

import json
import logging
import re

import pytest

from shadowload.cli import (
    EXIT_CONFIG_ERROR, EXIT_EVALUATION_ERROR, EXIT_PASS, EXIT_THRESHOLD_BREACH, EXIT_UNHEALTHY, main,
)
from tests.conftest import BASE_URL

ANY_SEARCH = re.compile(r"^http://target\.test/api/search.*$")
ANY_PRODUCT = re.compile(r"^http://target\.test/api/product/.*$")
CHECKOUT = f"{BASE_URL}/api/checkout"

FAST_RUN = ["--vus", "3", "--duration", "300ms", "--think-time", "10ms", "--no-progress", "-q"]


@pytest.fixture(autouse=True)
def restore_root_logging():
    # main() reconfigures the root logger with force=True; undo it so later tests are unaffected
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    aiohttp_level = logging.getLogger("aiohttp").level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("aiohttp").setLevel(aiohttp_level)


def mock_healthy_target(mock_http, checkout_status=200):
    mock_http.get(ANY_SEARCH, status=200, payload={"items": []}, repeat=True)
    mock_http.get(ANY_PRODUCT, status=200, payload={"id": "p-100"}, repeat=True)
    mock_http.post(CHECKOUT, status=checkout_status, payload={"orderId": "x"}, repeat=True)


@pytest.mark.parametrize("argv", [
    [BASE_URL, "--duration", "soon"],
    [BASE_URL, "--vus", "0"],
    [BASE_URL, "--threshold", "all:p99 under 500"],
    [BASE_URL, "--threshold", "no-selector"],
    ["ftp://target.test"],
])
def test_configuration_errors_exit_before_running(argv, mock_http):
    assert main(argv + ["--no-progress", "-q"]) == EXIT_CONFIG_ERROR
    assert not mock_http.requests


def test_passing_run(mock_http):
    mock_healthy_target(mock_http)

    code = main([BASE_URL, *FAST_RUN, "--skip-health-check", "--threshold", "all:p(99) < 5000"])

    assert code == EXIT_PASS


def test_breached_threshold(mock_http):
    mock_healthy_target(mock_http)

    code = main([BASE_URL, *FAST_RUN, "--skip-health-check", "--threshold", "all:p(99) < 0"])

    assert code == EXIT_THRESHOLD_BREACH


def test_checkout_server_errors_still_pass_the_rate_threshold(mock_http):
    mock_healthy_target(mock_http, checkout_status=503)

    code = main([BASE_URL, *FAST_RUN, "--skip-health-check", "--seed", "5",
                 "--threshold", "checkout:rate < 0.01"])

    assert code == EXIT_PASS


def test_route_without_samples_is_an_evaluation_error(tmp_path, mock_http, capsys):
    mock_healthy_target(mock_http)
    config = tmp_path / "config.json"
    config.write_text(json.dumps({
        "routes": {"search": {"weight": 1.0}},
        "thresholds": {"search": "p(99) < 5000", "checkout": "p(99) < 5000"},
    }))

    code = main([BASE_URL, *FAST_RUN, "--skip-health-check", "--config", str(config)])

    assert code == EXIT_EVALUATION_ERROR
    assert "Could not evaluate thresholds" in capsys.readouterr().out


def test_unhealthy_target(mock_http):
    mock_http.get(ANY_SEARCH, status=503, repeat=True)

    assert main([BASE_URL, *FAST_RUN]) == EXIT_UNHEALTHY


def test_health_check_then_run_with_report(tmp_path, mock_http):
    mock_healthy_target(mock_http)
    report = tmp_path / "report.json"

    code = main([BASE_URL, *FAST_RUN, "--report", str(report)])

    data = json.loads(report.read_text())
    assert code == EXIT_PASS
    assert data["verdict"] == "passed"
    assert data["config"]["virtual_users"] == 3
    assert data["routes"]["all"]["count"] > 0


def test_smoke_mode(mock_http):
    mock_http.get(ANY_SEARCH, status=200, repeat=True)
    mock_http.get(f"{BASE_URL}/api/product/p-100", status=200)
    mock_http.get(f"{BASE_URL}/api/product/p-999", status=404)
    mock_http.post(CHECKOUT, status=200)

    assert main(["--smoke", BASE_URL, "-q"]) == EXIT_PASS


def test_smoke_mode_reports_failure(mock_http):
    mock_http.get(ANY_SEARCH, status=500, repeat=True)
    mock_http.get(ANY_PRODUCT, status=200, repeat=True)
    mock_http.post(CHECKOUT, status=200)

    assert main(["--smoke", BASE_URL, "-q"]) == EXIT_THRESHOLD_BREACH


def test_run_with_live_progress(mock_http):
    mock_healthy_target(mock_http)

    code = main([BASE_URL, "--vus", "2", "--duration", "300ms", "--think-time", "10ms",
                 "--skip-health-check", "-q"])

    assert code == EXIT_PASS
