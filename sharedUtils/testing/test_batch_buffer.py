"""Tests for the batch buffer: thresholds, ordering, eviction and atomic drains."""

import threading

import pytest
from pydantic import ValidationError

from pipeline.batch_buffer import Batch, BatchBuffer, FlushReason
from pipeline.errors import BufferOverflow
from pipeline.identity import Identity


def test_size_threshold_crossed_exactly_on_last_append(make_sample):
    buffer = BatchBuffer(max_batch_size=300, max_batch_age=300.0, max_buffer_samples=3600)

    for i in range(299):
        assert buffer.append(make_sample(offset=i)) is False

    assert buffer.append(make_sample(offset=299)) is True
    assert buffer.pending_reason() is FlushReason.SIZE


def test_age_threshold_with_single_sample(make_sample, fake_clock):
    buffer = BatchBuffer(max_batch_size=300, max_batch_age=300.0, clock=fake_clock)

    assert buffer.append(make_sample()) is False
    fake_clock.advance(299.9)
    assert not buffer.is_due()

    fake_clock.advance(0.1)
    assert buffer.is_due()
    assert buffer.pending_reason() is FlushReason.TIME

    batch = buffer.drain_for_flush()
    assert batch.reason is FlushReason.TIME
    assert len(batch) == 1


def test_age_counts_from_first_append(make_sample, fake_clock):
    buffer = BatchBuffer(max_batch_size=300, max_batch_age=10.0, clock=fake_clock)
    assert buffer.age() == 0.0

    buffer.append(make_sample())
    fake_clock.advance(6)
    buffer.append(make_sample(offset=6))
    fake_clock.advance(4)

    assert buffer.age() == 10.0
    assert buffer.append(make_sample(offset=10)) is True


def test_drain_preserves_capture_order(make_sample):
    buffer = BatchBuffer(max_batch_size=10)
    samples = [make_sample(offset=i, cpu_usage=float(i)) for i in range(7)]
    for sample in samples:
        buffer.append(sample)

    batch = buffer.drain_for_flush()

    assert list(batch.samples) == samples
    assert len(buffer) == 0
    assert buffer.age() == 0.0


def test_drain_empty_buffer_returns_none():
    assert BatchBuffer().drain_for_flush() is None
    assert BatchBuffer().force_flush_now() is None


def test_forced_drain_stamps_reason_and_identity(make_sample, identity):
    buffer = BatchBuffer(max_batch_size=10)
    buffer.append(make_sample())

    batch = buffer.force_flush_now(FlushReason.FORCED, identity)

    assert batch.reason is FlushReason.FORCED
    assert batch.identity == identity


def test_ceiling_evicts_oldest_with_warning(make_sample):
    buffer = BatchBuffer(max_batch_size=2, max_buffer_samples=3)
    samples = [make_sample(offset=i) for i in range(4)]
    for sample in samples[:3]:
        buffer.append(sample)

    with pytest.warns(BufferOverflow):
        buffer.append(samples[3])

    assert len(buffer) == 3
    assert buffer.overflow_count == 1
    assert list(buffer.drain_for_flush().samples) == samples[1:]


def test_clear_returns_dropped_count(make_sample):
    buffer = BatchBuffer(max_batch_size=10)
    for i in range(4):
        buffer.append(make_sample(offset=i))

    assert buffer.clear() == 4
    assert len(buffer) == 0


def test_invalid_thresholds_rejected():
    with pytest.raises(ValueError):
        BatchBuffer(max_batch_size=0)
    with pytest.raises(ValueError):
        BatchBuffer(max_batch_size=10, max_buffer_samples=5)


def test_concurrent_appends_never_lost_or_duplicated(make_sample):
    buffer = BatchBuffer(max_batch_size=1000, max_buffer_samples=100000)
    per_thread = 250
    threads_count = 4
    drained = []
    done = threading.Event()

    def producer(worker):
        for i in range(per_thread):
            buffer.append(make_sample(device_id=f"dev-{worker}-{i}"))

    def consumer():
        while not done.is_set():
            batch = buffer.drain_for_flush()
            if batch:
                drained.extend(batch.samples)

    threads = [threading.Thread(target=producer, args=(w,)) for w in range(threads_count)]
    drain_thread = threading.Thread(target=consumer)
    drain_thread.start()
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    done.set()
    drain_thread.join()

    rest = buffer.drain_for_flush()
    if rest:
        drained.extend(rest.samples)

    ids = [s.device_id for s in drained]
    assert len(ids) == per_thread * threads_count
    assert len(set(ids)) == len(ids)


def test_empty_batch_is_invalid():
    with pytest.raises(ValidationError):
        Batch(samples=())


def test_merged_batch_keeps_order_and_first_metadata(make_sample, identity):
    first = Batch(samples=(make_sample(0), make_sample(1)), reason=FlushReason.SIZE, identity=identity)
    second = Batch(samples=(make_sample(2),), reason=FlushReason.TIME, identity=identity)

    merged = first.merged_with(second)

    assert merged.samples == first.samples + second.samples
    assert merged.batch_id == first.batch_id
    assert merged.reason is FlushReason.SIZE


def test_with_identity_returns_new_batch(make_sample, identity):
    batch = Batch(samples=(make_sample(),), identity=identity)
    renewed = Identity(user_id="1", access_token="fresh-token")

    retagged = batch.with_identity(renewed)

    assert retagged.identity == renewed
    assert batch.identity == identity
    assert retagged.batch_id == batch.batch_id
