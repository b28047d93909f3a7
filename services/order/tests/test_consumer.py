"""Tests for the Kafka ingestion worker."""

import asyncio

import pytest
from aiokafka.errors import KafkaConnectionError

from app.consumer import OrderConsumer, ProcessResult
from app.errors import ConstraintViolationError, StoreUnavailableError
from app.models import encode_order
from app.usecases import GetOrderUseCase, SaveOrderUseCase


@pytest.fixture
def save_order(repository, order_cache):
    return SaveOrderUseCase(repository, order_cache)


@pytest.fixture
def worker(kafka, save_order):
    return OrderConsumer(kafka, save_order, retry_backoff=0)


async def drain(worker, kafka):
    """Run the worker until every published record has been handed out."""
    shutdown = asyncio.Event()
    kafka.idle_event = shutdown
    await asyncio.wait_for(worker.run(shutdown), timeout=5)


class TestHandleMessage:
    async def test_valid_order_is_saved(self, worker, kafka, order):
        record = kafka.publish(encode_order(order))
        assert await worker.handle_message(record) is ProcessResult.SAVED

    async def test_garbage_is_poison(self, worker, kafka, caplog):
        record = kafka.publish(b'{"uid: "X", broken')

        with caplog.at_level("WARNING", logger="app.consumer"):
            assert await worker.handle_message(record) is ProcessResult.POISON

        assert "broken" in caplog.text

    async def test_invalid_order(self, worker, kafka):
        record = kafka.publish(b'{"order_uid":"","items":[]}')
        assert await worker.handle_message(record) is ProcessResult.INVALID

    async def test_duplicate_order(self, worker, kafka, order):
        first = kafka.publish(encode_order(order))
        second = kafka.publish(encode_order(order))

        assert await worker.handle_message(first) is ProcessResult.SAVED
        assert await worker.handle_message(second) is ProcessResult.DUPLICATE

    async def test_store_error_is_retried(self, kafka, fake_repo, fake_cache, order):
        fake_repo.save_failures.append(StoreUnavailableError("connection refused"))
        worker = OrderConsumer(kafka, SaveOrderUseCase(fake_repo, fake_cache))
        record = kafka.publish(encode_order(order))

        result = await worker.handle_message(record)

        assert result is ProcessResult.RETRY
        assert not result.should_commit

    async def test_strict_cache_error_is_retried(self, kafka, fake_repo, fake_cache, order):
        fake_cache.down = True
        worker = OrderConsumer(kafka, SaveOrderUseCase(fake_repo, fake_cache, strict_cache=True))
        record = kafka.publish(encode_order(order))

        assert await worker.handle_message(record) is ProcessResult.RETRY

    async def test_store_rejection_is_poison(self, kafka, fake_repo, fake_cache, order):
        fake_repo.save_failures.append(ConstraintViolationError("value out of int64 range"))
        worker = OrderConsumer(kafka, SaveOrderUseCase(fake_repo, fake_cache))
        record = kafka.publish(encode_order(order))

        assert await worker.handle_message(record) is ProcessResult.POISON

    @pytest.mark.parametrize("result", [ProcessResult.SAVED, ProcessResult.DUPLICATE, ProcessResult.INVALID, ProcessResult.POISON])
    def test_commit_policy(self, result):
        assert result.should_commit


class TestScenarios:
    async def test_happy_path(self, worker, kafka, repository, order_cache, row_counts, order_factory):
        order = order_factory("A1")
        kafka.publish(encode_order(order), key=b"A1")

        await drain(worker, kafka)

        assert await repository.get_by_uid("A1") == order
        assert await order_cache.get("A1") == order
        assert await row_counts("A1") == {"orders": 1, "delivery": 1, "payment": 1, "items": 1}
        assert kafka.committed_offset() == 1

    async def test_poison_message(self, worker, kafka, repository, caplog):
        kafka.publish(b'{"uid: "X", broken')

        with caplog.at_level("WARNING", logger="app.consumer"):
            await drain(worker, kafka)

        assert await repository.get_all() == []
        assert kafka.committed_offset() == 1
        assert caplog.text.count("Failed to decode order") == 1

    async def test_duplicate_replay(self, worker, kafka, row_counts, order_factory):
        order = order_factory("A1", items=2)
        kafka.publish(encode_order(order))
        kafka.publish(encode_order(order))

        await drain(worker, kafka)

        assert await row_counts("A1") == {"orders": 1, "delivery": 1, "payment": 1, "items": 2}
        assert kafka.committed_offset() == 2
        assert kafka.commit_calls == 2

    @pytest.mark.parametrize("replays", [1, 3, 5])
    async def test_replays_store_exactly_once(self, worker, kafka, row_counts, order_factory, replays):
        order = order_factory("R1", items=3)
        for _ in range(replays):
            kafka.publish(encode_order(order))

        await drain(worker, kafka)

        assert await row_counts("R1") == {"orders": 1, "delivery": 1, "payment": 1, "items": 3}
        assert kafka.committed_offset() == replays

    async def test_invalid_order(self, worker, kafka, repository):
        kafka.publish(b'{"order_uid":"","items":[]}')

        await drain(worker, kafka)

        assert await repository.get_all() == []
        assert kafka.committed_offset() == 1

    async def test_mixed_stream_in_offset_order(self, worker, kafka, repository, order_factory):
        kafka.publish(encode_order(order_factory("A1")))
        kafka.publish(b"not json")
        kafka.publish(encode_order(order_factory("B2")))
        kafka.publish(b'{"order_uid":"","items":[]}')
        kafka.publish(encode_order(order_factory("A1")))

        await drain(worker, kafka)

        assert [o.order_uid for o in await repository.get_all()] == ["A1", "B2"]
        assert kafka.committed_offset() == 5

    async def test_out_of_range_order_is_skipped(self, worker, kafka, repository, order_factory):
        big = order_factory("BIG")
        big = big.model_copy(update={"payment": big.payment.model_copy(update={"payment_dt": 2**70})})
        kafka.publish(encode_order(big))
        kafka.publish(encode_order(order_factory("A1")))

        await drain(worker, kafka)

        assert [o.order_uid for o in await repository.get_all()] == ["A1"]
        assert kafka.committed_offset() == 2

    async def test_lookup_after_ingest(self, worker, kafka, repository, order_cache, order_factory):
        order = order_factory("A1")
        kafka.publish(encode_order(order))
        await drain(worker, kafka)

        assert await GetOrderUseCase(repository, order_cache).execute("A1") == order


class TestRetry:
    async def test_store_failure_refetches_same_offset(self, kafka, fake_repo, fake_cache, order_factory):
        fake_repo.save_failures.extend([
            StoreUnavailableError("connection refused"),
            StoreUnavailableError("connection refused"),
        ])
        worker = OrderConsumer(kafka, SaveOrderUseCase(fake_repo, fake_cache), retry_backoff=0)
        kafka.publish(encode_order(order_factory("A1")))
        kafka.publish(encode_order(order_factory("B2")))

        await drain(worker, kafka)

        assert set(fake_repo.orders) == {"A1", "B2"}
        assert fake_repo.calls.count("save") == 4
        assert kafka.committed_offset() == 2

    async def test_no_commit_while_failing(self, kafka, fake_repo, fake_cache, order):
        worker = OrderConsumer(kafka, SaveOrderUseCase(fake_repo, fake_cache))
        fake_repo.save_failures.append(StoreUnavailableError("connection refused"))
        record = kafka.publish(encode_order(order))
        shutdown = asyncio.Event()

        ok = await worker.process_batch(kafka.tp, [record], shutdown)

        assert ok is False
        assert kafka.committed_offset() == 0
        assert kafka.position == record.offset

    async def test_cache_error_after_commit_replays_as_duplicate(self, kafka, fake_repo, fake_cache, order):
        fake_cache.fail_set_for.add(order.order_uid)
        worker = OrderConsumer(kafka, SaveOrderUseCase(fake_repo, fake_cache, strict_cache=True), retry_backoff=0)
        kafka.publish(encode_order(order))

        await drain(worker, kafka)

        assert fake_repo.orders[order.order_uid] == order
        assert fake_repo.calls.count("save") == 1
        assert kafka.committed_offset() == 1

    async def test_store_rejection_is_committed_once(self, kafka, fake_repo, fake_cache, order):
        fake_repo.save_failures.append(ConstraintViolationError("value out of int64 range"))
        worker = OrderConsumer(kafka, SaveOrderUseCase(fake_repo, fake_cache), retry_backoff=0)
        kafka.publish(encode_order(order))

        await drain(worker, kafka)

        assert fake_repo.orders == {}
        assert fake_repo.calls.count("save") == 1
        assert kafka.committed_offset() == 1


class TestLifecycle:
    async def test_run_starts_and_stops_consumer(self, worker, kafka):
        await drain(worker, kafka)

        assert kafka.started
        assert kafka.stopped

    async def test_start_retried_until_broker_reachable(self, worker, kafka, order, caplog):
        kafka.start_failures.append(KafkaConnectionError())
        kafka.publish(encode_order(order))

        with caplog.at_level("ERROR", logger="app.consumer"):
            await drain(worker, kafka)

        assert kafka.start_attempts == 2
        assert kafka.started and kafka.stopped
        assert kafka.committed_offset() == 1
        assert "Failed to start Kafka consumer" in caplog.text

    async def test_shutdown_while_broker_unreachable(self, kafka, save_order):
        kafka.start_failures.extend(KafkaConnectionError() for _ in range(1000))
        worker = OrderConsumer(kafka, save_order, retry_backoff=0.01)
        shutdown = asyncio.Event()
        task = asyncio.create_task(worker.run(shutdown))
        await asyncio.sleep(0.05)

        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert kafka.start_attempts > 1
        assert not kafka.started
        assert kafka.committed_offset() == 0

    async def test_shutdown_before_start(self, worker, kafka):
        shutdown = asyncio.Event()
        shutdown.set()

        await worker.run(shutdown)

        assert not kafka.started

    async def test_shutdown_mid_batch_leaves_rest_uncommitted(self, worker, kafka, order_factory):
        records = [kafka.publish(encode_order(order_factory(f"U{i}"))) for i in range(3)]
        shutdown = asyncio.Event()
        original = worker.handle_message

        async def handle_then_stop(msg):
            result = await original(msg)
            shutdown.set()
            return result

        worker.handle_message = handle_then_stop
        await worker.process_batch(kafka.tp, records, shutdown)

        assert kafka.committed_offset() == 1

    async def test_cancellation_stops_consumer(self, worker, kafka):
        shutdown = asyncio.Event()
        task = asyncio.create_task(worker.run(shutdown))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert kafka.stopped
        assert kafka.committed_offset() == 0
