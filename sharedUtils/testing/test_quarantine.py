import json
from unittest.mock import MagicMock, patch

import pytest
import redis

from pipeline.batch_buffer import Batch
from sharedUtils.config.models import PersistenceConfig
from sharedUtils.persistence.manager import build_quarantine
from sharedUtils.persistence.quarantine import MemoryQuarantine, RedisQuarantine, build_envelope


@pytest.fixture
def batch(make_sample, identity):
    return Batch(samples=(make_sample(0), make_sample(1)), identity=identity)


@pytest.fixture
def redis_client():
    return MagicMock()


def test_envelope_omits_access_token(batch):
    envelope = build_envelope(batch, "rejected", "HTTP 422")

    assert envelope["batch_id"] == batch.batch_id
    assert envelope["user_id"] == "1"
    assert envelope["reason"] == "rejected"
    assert "mock-token" not in envelope["payload"]
    assert len(json.loads(envelope["payload"])["samples"]) == 2


def test_memory_quarantine_newest_first(make_sample):
    quarantine = MemoryQuarantine()
    older = Batch(samples=(make_sample(0),))
    newer = Batch(samples=(make_sample(1),))

    quarantine.put(older, "rejected")
    quarantine.put(newer, "shutdown")

    assert quarantine.count() == 2
    assert [e["batch_id"] for e in quarantine.entries()] == [newer.batch_id, older.batch_id]
    assert quarantine.entries(limit=1)[0]["reason"] == "shutdown"


def test_redis_quarantine_pushes_envelope(batch, redis_client):
    quarantine = RedisQuarantine(PersistenceConfig(), client=redis_client)

    assert quarantine.put(batch, "retries_exhausted", "timeout") is True

    key, raw = redis_client.lpush.call_args.args
    assert key == RedisQuarantine.QUARANTINE_KEY
    assert json.loads(raw)["reason"] == "retries_exhausted"


def test_redis_quarantine_put_failure_returns_false(batch, redis_client):
    redis_client.lpush.side_effect = redis.ConnectionError("down")
    quarantine = RedisQuarantine(PersistenceConfig(), client=redis_client)

    assert quarantine.put(batch, "rejected") is False


def test_redis_quarantine_entries_skip_malformed(batch, redis_client):
    good = json.dumps(build_envelope(batch, "rejected", None))
    redis_client.lrange.return_value = [good, "{not json"]
    quarantine = RedisQuarantine(PersistenceConfig(), client=redis_client)

    entries = quarantine.entries(limit=5)

    assert [e["batch_id"] for e in entries] == [batch.batch_id]
    redis_client.lrange.assert_called_once_with(RedisQuarantine.QUARANTINE_KEY, 0, 4)


def test_redis_quarantine_count(redis_client):
    redis_client.llen.return_value = 7
    quarantine = RedisQuarantine(PersistenceConfig(), client=redis_client)
    assert quarantine.count() == 7

    redis_client.llen.side_effect = redis.ConnectionError("down")
    assert quarantine.count() == 0


def test_build_quarantine_memory_backend():
    assert isinstance(build_quarantine(PersistenceConfig(quarantine="memory")), MemoryQuarantine)


def test_build_quarantine_falls_back_when_redis_down():
    with patch("sharedUtils.persistence.manager.RedisQuarantine") as redis_cls:
        redis_cls.return_value.redis_client.ping.side_effect = redis.ConnectionError("refused")

        quarantine = build_quarantine(PersistenceConfig(quarantine="redis"))

    assert isinstance(quarantine, MemoryQuarantine)
    redis_cls.return_value.close.assert_called_once()
