"""
Run configuration.

Settings are layered, later layers winning: built-in defaults, a JSON config
file, environment variables, then command-line overrides. Everything is
validated here so that a bad value fails before any virtual user starts.
"""

import json
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from shadowload.errors import ConfigError
from shadowload.executor import DEFAULT_TIMEOUT_SECONDS, SuccessPolicy
from shadowload.metrics import DEFAULT_RAW_SAMPLES
from shadowload.routes import DEFAULT_WEIGHTS, Route, RouteWeights
from shadowload.thresholds import default_thresholds, parse_thresholds

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_VIRTUAL_USERS = 50
DEFAULT_DURATION = "5m"
DEFAULT_THINK_TIME = "100ms"
DEFAULT_HEALTH_ENDPOINT = "/api/search?q="

ENV_BASE_URL = "BASE_URL"
ENV_VIRTUAL_USERS = "VUS"
ENV_DURATION = "DURATION"
ENV_THINK_TIME = "THINK_TIME"
ENV_RAMP_UP = "RAMP_UP"
ENV_REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
ENV_SEED = "SEED"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds), ``"500ms"``, ``"30s"``, ``"5m"``, ``"1h"`` and
    concatenations such as ``"1m30s"``.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        if not text:
            raise ConfigError("Duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ConfigError(f"Malformed duration: '{value}'") from None
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigError(f"Duration must be a non-negative finite value: '{value}'")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    minutes, secs = divmod(seconds, 60)
    if minutes >= 1:
        return f"{int(minutes)}m{secs:.0f}s" if secs else f"{int(minutes)}m"
    return f"{secs:g}s"


def _parse_bool(value, name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{name} must be true or false, got {value!r}")
    return value


def _parse_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    return number


@dataclass(frozen=True)
class ThresholdCheckConfig:
    interval: float = 5.0
    abort_on_fail: bool = False
    abort_after: int = 3


@dataclass(frozen=True)
class RunConfig:
    base_url: str = DEFAULT_BASE_URL
    virtual_users: int = DEFAULT_VIRTUAL_USERS
    duration: float = 300.0
    think_time: float = 0.1
    ramp_up: float = 0.0
    request_timeout: float = DEFAULT_TIMEOUT_SECONDS
    seed: Optional[int] = None
    weights: RouteWeights = field(default_factory=lambda: RouteWeights(DEFAULT_WEIGHTS))
    policies: Mapping = field(default_factory=dict)
    thresholds: tuple = field(default_factory=lambda: tuple(default_thresholds()))
    threshold_check: ThresholdCheckConfig = field(default_factory=ThresholdCheckConfig)
    health_endpoint: str = DEFAULT_HEALTH_ENDPOINT
    raw_samples: int = DEFAULT_RAW_SAMPLES

    def __post_init__(self):
        if not self.base_url or not re.match(r"^https?://", self.base_url):
            raise ConfigError(f"Base URL must start with http:// or https://, got '{self.base_url}'")
        if isinstance(self.virtual_users, bool) or not isinstance(self.virtual_users, int) \
                or self.virtual_users <= 0:
            raise ConfigError(f"Virtual user count must be a positive integer, got {self.virtual_users!r}")
        if self.duration <= 0:
            raise ConfigError("Run duration must be greater than zero")
        if self.think_time < 0 or self.ramp_up < 0:
            raise ConfigError("Think time and ramp-up must not be negative")
        if self.ramp_up > self.duration:
            raise ConfigError("Ramp-up must not be longer than the run duration")
        if self.request_timeout <= 0:
            raise ConfigError("Request timeout must be greater than zero")
        if self.raw_samples < 0:
            raise ConfigError("metrics.raw_samples must not be negative")
        known = {r.value for r in Route} | {"all"}
        for spec in self.thresholds:
            if spec.metric_selector not in known:
                raise ConfigError(f"Threshold references unknown metric '{spec.metric_selector}' "
                                  f"(expected one of: {', '.join(sorted(known))})")

    def to_dict(self) -> dict:
        return {
            "base_url": self.base_url,
            "virtual_users": self.virtual_users,
            "duration_seconds": self.duration,
            "think_time_seconds": self.think_time,
            "ramp_up_seconds": self.ramp_up,
            "request_timeout_seconds": self.request_timeout,
            "seed": self.seed,
            "weights": {r.value: round(self.weights.weight_of(r), 6) for r in self.weights.routes},
            "thresholds": [str(spec) for spec in self.thresholds],
        }


def read_config_file(path) -> dict:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def load_config(config_path=None, env: Optional[Mapping] = None,
                overrides: Optional[dict] = None) -> RunConfig:
    """
    Build a validated RunConfig.

    ``overrides`` holds command-line values; ``None`` entries are ignored so
    unset flags fall through to the lower layers.
    """
    env = os.environ if env is None else env
    file_cfg = read_config_file(config_path) if config_path else {}
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    target = file_cfg.get("target", {})
    load = file_cfg.get("load", {})
    routes_cfg = file_cfg.get("routes", {})
    metrics_cfg = file_cfg.get("metrics", {})
    check_cfg = file_cfg.get("thresholds_check", {})
    for name, section in (("target", target), ("load", load), ("routes", routes_cfg),
                          ("metrics", metrics_cfg), ("thresholds_check", check_cfg)):
        if not isinstance(section, dict):
            raise ConfigError(f"'{name}' section must be a JSON object")

    def pick(key: str, env_key: Optional[str], file_value, default):
        if key in overrides:
            return overrides[key]
        if env_key and env.get(env_key):
            return env[env_key]
        if file_value is not None:
            return file_value
        return default

    base_url = str(pick("base_url", ENV_BASE_URL, target.get("host"), DEFAULT_BASE_URL)).rstrip("/")
    virtual_users = _parse_int(
        pick("virtual_users", ENV_VIRTUAL_USERS, load.get("virtual_users"), DEFAULT_VIRTUAL_USERS),
        "Virtual user count",
    )
    duration = parse_duration(pick("duration", ENV_DURATION, load.get("duration"), DEFAULT_DURATION))
    think_time = parse_duration(pick("think_time", ENV_THINK_TIME, load.get("think_time"), DEFAULT_THINK_TIME))
    ramp_up = parse_duration(pick("ramp_up", ENV_RAMP_UP, load.get("ramp_up"), 0))
    request_timeout = parse_duration(
        pick("request_timeout", ENV_REQUEST_TIMEOUT, load.get("request_timeout"), DEFAULT_TIMEOUT_SECONDS)
    )
    seed = pick("seed", ENV_SEED, load.get("seed"), None)
    seed = _parse_int(seed, "Seed") if seed is not None else None

    weights, policies = _parse_routes(routes_cfg)

    if "thresholds" in overrides:
        thresholds = tuple(overrides["thresholds"])
    elif "thresholds" in file_cfg:
        thresholds = tuple(parse_thresholds(file_cfg["thresholds"]))
    else:
        thresholds = tuple(default_thresholds())

    threshold_check = ThresholdCheckConfig(
        interval=parse_duration(check_cfg.get("interval", 5)),
        abort_on_fail=_parse_bool(
            overrides.get("abort_on_fail", check_cfg.get("abort_on_fail", False)),
            "thresholds_check.abort_on_fail",
        ),
        abort_after=_parse_int(check_cfg.get("abort_after", 3), "thresholds_check.abort_after"),
    )
    if threshold_check.interval <= 0 or threshold_check.abort_after < 1:
        raise ConfigError("thresholds_check needs interval > 0 and abort_after >= 1")

    return RunConfig(
        base_url=base_url,
        virtual_users=virtual_users,
        duration=duration,
        think_time=think_time,
        ramp_up=ramp_up,
        request_timeout=request_timeout,
        seed=seed,
        weights=weights,
        policies=policies,
        thresholds=thresholds,
        threshold_check=threshold_check,
        health_endpoint=str(target.get("health_endpoint", DEFAULT_HEALTH_ENDPOINT)),
        raw_samples=_parse_int(metrics_cfg.get("raw_samples", DEFAULT_RAW_SAMPLES), "metrics.raw_samples"),
    )


def _parse_routes(routes_cfg: dict):
    """Per-route ``weight`` and ``accept`` entries; unspecified weights keep the defaults."""
    if not routes_cfg:
        return RouteWeights(DEFAULT_WEIGHTS), {}

    weights = {}
    policies = {}
    for name, entry in routes_cfg.items():
        route = Route.parse(name)
        if not isinstance(entry, dict):
            raise ConfigError(f"Route '{name}' must be a JSON object")
        if "weight" in entry:
            weights[route] = entry["weight"]
        if "accept" in entry:
            policies[route] = SuccessPolicy.parse(entry["accept"])

    if not weights:
        return RouteWeights(DEFAULT_WEIGHTS), policies
    # Routes left out of an explicit weight table are never selected
    return RouteWeights(weights), policies
