"""Shared fixtures for the shadowload test suite."""

import asyncio
import random

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import aioresponses

from shadowload.metrics import MetricRecorder
from shadowload.routes import RouteCatalog

BASE_URL = "http://target.test"


@pytest.fixture
def recorder():
    return MetricRecorder()


@pytest.fixture
def catalog():
    return RouteCatalog(rng=random.Random(1234))


@pytest.fixture
def mock_http():
    with aioresponses() as mocked:
        yield mocked


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s


class StubExecutor:
    """
    Executor stand-in that records a fixed outcome after ``delay`` seconds.

    Keeps the scheduler tests independent of HTTP while still going through
    the recorder exactly as the real executors do.
    """

    def __init__(self, route, recorder, delay=0.0, success=True, status=200, raises=None):
        self.route = route
        self.recorder = recorder
        self.delay = delay
        self.success = success
        self.status = status
        self.raises = raises
        self.calls = 0

    async def execute(self, session, base_url, params):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        self.recorder.record(self.route, self.delay * 1000, self.success, status=self.status)
