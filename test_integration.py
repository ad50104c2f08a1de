"""
End-to-end test of the pipeline against the Flask store.

The HTTP gateway talks to the real Flask app through a session adapter
that routes requests into the Flask test client, so the whole path
(collector -> buffer -> scheduler -> HTTP gateway -> Flask -> SQLAlchemy)
runs without a network.
"""

from urllib.parse import urlsplit

import pytest

from pipeline.identity import Identity, IdentityProvider
from pipeline.scheduler import PipelineState
from sharedUtils.config.models import PersistenceConfig
from sharedUtils.persistence.http_gateway import HttpPersistenceGateway

STORE_URL = "http://store.test"


class FlaskResponse:
    """The part of requests.Response the gateway reads."""

    def __init__(self, response):
        self.status_code = response.status_code
        self.text = response.get_data(as_text=True)
        self._json = response.get_json(silent=True)

    def json(self):
        return self._json


class FlaskSession:
    """Stand-in for requests.Session forwarding to a Flask test client."""

    def __init__(self, client):
        self.client = client
        self.requests = []

    def request(self, method, url, headers=None, timeout=None, params=None, data=None):
        path = urlsplit(url).path
        self.requests.append((method, path))
        response = self.client.open(
            path,
            method=method,
            headers=headers or {},
            query_string=params,
            data=data,
            content_type="application/json" if data is not None else None,
        )
        return FlaskResponse(response)

    def close(self):
        pass


@pytest.fixture
def store_session(client):
    return FlaskSession(client)


@pytest.fixture
def http_gateway(store_session):
    with HttpPersistenceGateway(PersistenceConfig(api_endpoint=STORE_URL), session=store_session) as gw:
        yield gw


def test_pipeline_delivers_every_sample_in_order(make_scheduler, http_gateway, identity):
    scheduler = make_scheduler(gateway=http_gateway, max_batch_size=5)
    scheduler.start()

    samples = [scheduler.tick() for _ in range(6)]
    assert scheduler.flush_pending(timeout=5)
    assert scheduler.stop() is True

    history = http_gateway.fetch_history(identity)
    assert [s.timestamp for s in reversed(history)] == [s.timestamp for s in samples]
    assert [s.cpu_usage for s in reversed(history)] == [s.cpu_usage for s in samples]


def test_aggregates_and_hourly_through_gateway(make_scheduler, http_gateway, identity):
    scheduler = make_scheduler(gateway=http_gateway, max_batch_size=300)
    scheduler.start()
    samples = [scheduler.tick() for _ in range(4)]
    scheduler.stop()

    stats = http_gateway.fetch_aggregates(identity, window_hours=1)
    hourly = http_gateway.fetch_hourly(identity, window_hours=1)

    assert stats.count == 4
    assert stats.metrics["cpu_usage"].max == max(s.cpu_usage for s in samples)
    assert sum(bucket.count for bucket in hourly) == 4


def test_refused_token_pauses_until_valid_login(make_scheduler, http_gateway, wait_until):
    provider = IdentityProvider(Identity(user_id="1", access_token="revoked", device_id="test-device"))
    scheduler = make_scheduler(gateway=http_gateway, identity_provider=provider, max_batch_size=3)
    scheduler.start()

    samples = [scheduler.tick() for _ in range(3)]
    assert scheduler.flush_pending(timeout=5) is False
    assert wait_until(lambda: scheduler.state is PipelineState.IDLE)

    valid = Identity(user_id="1", access_token="mock-token", device_id="test-device")
    provider.login(valid)
    assert scheduler.flush_pending(timeout=5)

    history = http_gateway.fetch_history(valid)
    assert sorted(s.timestamp for s in history) == [s.timestamp for s in samples]


def test_register_device_through_gateway(http_gateway, identity):
    first = http_gateway.register_device(identity, "test-device", "Test box", os_name="Linux")
    second = http_gateway.register_device(identity, "test-device", "Test box")

    assert first["device_id"] == second["device_id"] == "test-device"
    assert http_gateway.check_connection() is True


def test_empty_history_for_new_user(http_gateway):
    stranger = Identity(user_id="2", access_token="other-token")

    assert http_gateway.fetch_history(stranger) == []
    assert http_gateway.fetch_aggregates(stranger).count == 0
