"""Shared pytest fixtures."""

import itertools
import time
from datetime import datetime, timedelta, timezone

import pytest

from collectors.base_data_collector import Sample
from collectors.simulated_collector import SimulatedDataCollector
from pipeline.backoff import RetryPolicy
from pipeline.batch_buffer import BatchBuffer
from pipeline.identity import Identity, IdentityProvider
from pipeline.scheduler import PipelineScheduler
from pipeline.sync_status import SyncStatus
from server.app import create_app
from server.database import Database
from sharedUtils.persistence.memory_gateway import InMemoryPersistenceGateway
from sharedUtils.persistence.quarantine import MemoryQuarantine

API_TOKENS = {"mock-token": "1", "other-token": "2"}


def _wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll ``predicate`` until it is truthy or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeClock:
    """Monotonic clock moved by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def identity():
    return Identity(user_id="1", access_token="mock-token", device_id="test-device")


@pytest.fixture
def provider(identity):
    return IdentityProvider(identity)


@pytest.fixture
def gateway():
    return InMemoryPersistenceGateway(valid_tokens=dict(API_TOKENS))


@pytest.fixture
def quarantine():
    return MemoryQuarantine()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_sample():
    """Factory building valid samples; ``offset`` shifts the timestamp in seconds."""
    base = datetime.now(timezone.utc) - timedelta(minutes=10)

    def _make(offset: float = 0.0, device_id: str = "test-device", **metrics) -> Sample:
        values = {
            "cpu_usage": 10.0,
            "memory_usage": 40.0,
            "gpu_usage": 0.0,
            "disk_usage": 50.0,
            "disk_read_speed": 1.0,
            "disk_write_speed": 0.5,
            "network_download": 0.2,
            "network_upload": 0.1,
            "water_bottles_equivalent": 0.00001,
        }
        values.update(metrics)
        return Sample(device_id=device_id, timestamp=base + timedelta(seconds=offset), **values)

    return _make


@pytest.fixture
def stepping_clock():
    """Wall clock advancing one second per call, ending near now."""
    base = datetime.now(timezone.utc) - timedelta(minutes=10)
    counter = itertools.count()
    return lambda: base + timedelta(seconds=next(counter))


@pytest.fixture
def collector(stepping_clock):
    return SimulatedDataCollector(device_id="test-device", seed=42, clock=stepping_clock)


@pytest.fixture
def make_scheduler(collector, provider, gateway, quarantine):
    """
    Factory for schedulers driven by explicit tick() calls.

    The tick interval is an hour so the timer thread never fires during a test.
    Every scheduler built here is stopped at teardown.
    """
    built = []

    def _make(max_batch_size=5, max_batch_age=300.0, max_buffer_samples=None, **kwargs):
        if max_buffer_samples is None:
            max_buffer_samples = max(100, max_batch_size)
        kwargs.setdefault("collector", collector)
        kwargs.setdefault("identity_provider", provider)
        kwargs.setdefault("gateway", gateway)
        kwargs.setdefault("quarantine", quarantine)
        kwargs.setdefault("retry_policy", RetryPolicy(base=0.01, cap=0.05, jitter=0.0))
        kwargs.setdefault("status", SyncStatus())
        kwargs.setdefault("tick_interval", 3600.0)
        kwargs.setdefault("flush_on_anomaly", False)
        kwargs.setdefault("shutdown_timeout", 2.0)
        buffer = kwargs.pop("buffer", None)
        if buffer is None:
            buffer = BatchBuffer(
                max_batch_size=max_batch_size,
                max_batch_age=max_batch_age,
                max_buffer_samples=max_buffer_samples,
            )
        scheduler = PipelineScheduler(buffer=buffer, **kwargs)
        built.append(scheduler)
        return scheduler

    yield _make

    for scheduler in built:
        scheduler.stop(timeout=1.0)


@pytest.fixture
def database():
    db = Database("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def app(database):
    flask_app = create_app(database, API_TOKENS)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def wait_until():
    return _wait_until
