import asyncio

import pytest
from unittest.mock import AsyncMock

from fitness_outbox.consumers.outbox_poller import OutboxProcessor, ProcessorState
from fitness_outbox.core.config import OutboxProcessorSettings
from fitness_outbox.core.errors import ConfigurationError, StorageFailure
from fitness_outbox.events.claim_store import OutboxClaimStore
from fitness_outbox.models.outbox import OutboxMessage
from fitness_outbox.testing.testing_mocks import ScriptedHandler

EVENT = "workout.completed.v1"


class RecordingClaimStore(OutboxClaimStore):
    """Claim store that remembers the ids of every batch it handed out."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.batches = []

    async def claim_batch(self, max_batch_size):
        batch = await super().claim_batch(max_batch_size)
        self.batches.append([m.id for m in batch])
        return batch


def make_processor(registry, clock, instance_id="proc-a", **overrides):
    values = dict(interval_seconds=1, max_retry_attempts=3, batch_size=50)
    values.update(overrides)
    settings = OutboxProcessorSettings(**values)
    return OutboxProcessor(registry, settings, instance_id=instance_id, clock=clock)


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_single_success(self, append, registry, clock):
        registry.register(EVENT, ScriptedHandler(["ok"]))
        (message,) = await append(EVENT)

        report = await make_processor(registry, clock).run_cycle()

        assert (report.claimed, report.delivered) == (1, 1)
        stored = await OutboxMessage.get(id=message.id)
        assert stored.processed is True
        assert stored.retry_count == 0

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, append, registry, clock):
        handler = ScriptedHandler(["transient", "transient", "ok"])
        registry.register(EVENT, handler)
        (message,) = await append(EVENT)
        processor = make_processor(registry, clock, max_retry_attempts=3)

        for _ in range(3):
            await processor.run_cycle()

        stored = await OutboxMessage.get(id=message.id)
        assert stored.processed is True
        assert stored.retry_count == 2
        assert handler.call_count == 3

    @pytest.mark.asyncio
    async def test_exhausts_retries_then_stops_claiming(self, append, registry, clock):
        handler = ScriptedHandler(["transient"])
        registry.register(EVENT, handler)
        (message,) = await append(EVENT)
        processor = make_processor(registry, clock, max_retry_attempts=3)

        retry_counts = []
        for _ in range(3):
            await processor.run_cycle()
            retry_counts.append((await OutboxMessage.get(id=message.id)).retry_count)
        fourth = await processor.run_cycle()

        assert retry_counts == [1, 2, 3]
        assert fourth.claimed == 0
        assert handler.call_count == 3
        stored = await OutboxMessage.get(id=message.id)
        assert stored.processed is False
        assert stored.last_error is not None

    @pytest.mark.asyncio
    async def test_batches_of_fifty_in_id_order(self, append, registry, clock):
        registry.register(EVENT, ScriptedHandler(["ok"]))
        messages = await append(EVENT, n=120)
        store = RecordingClaimStore(max_retry_attempts=3, lease_seconds=60, instance_id="proc-a", clock=clock)
        processor = OutboxProcessor(registry, OutboxProcessorSettings(batch_size=50), claim_store=store)

        reports = [await processor.run_cycle() for _ in range(4)]

        assert [r.claimed for r in reports] == [50, 50, 20, 0]
        for batch in store.batches[:3]:
            assert batch == sorted(batch)
        assert sum(store.batches, []) == [m.id for m in messages]
        assert await OutboxMessage.filter(processed=False).count() == 0

    @pytest.mark.asyncio
    async def test_two_instances_split_the_work(self, append, registry, clock):
        handler = ScriptedHandler(["ok"])
        registry.register(EVENT, handler)
        messages = await append(EVENT, n=10)
        store_a = RecordingClaimStore(max_retry_attempts=3, lease_seconds=60, instance_id="proc-a", clock=clock)
        store_b = RecordingClaimStore(max_retry_attempts=3, lease_seconds=60, instance_id="proc-b", clock=clock)
        settings = OutboxProcessorSettings(batch_size=6)
        proc_a = OutboxProcessor(registry, settings, claim_store=store_a)
        proc_b = OutboxProcessor(registry, settings, claim_store=store_b)

        await asyncio.gather(proc_a.run_cycle(), proc_b.run_cycle())

        ids_a, ids_b = set(store_a.batches[0]), set(store_b.batches[0])
        assert not ids_a & ids_b
        assert ids_a | ids_b == {m.id for m in messages}
        assert sorted(handler.event_ids) == sorted(m.event_id for m in messages)

    @pytest.mark.asyncio
    async def test_unregistered_type_quarantined_in_one_step(self, append, registry, clock):
        handler = ScriptedHandler(["ok"])
        registry.register(EVENT, handler)
        (message,) = await append("exercise.renamed.v1")
        processor = make_processor(registry, clock, max_retry_attempts=3)

        report = await processor.run_cycle()

        assert report.permanent_failures == 1
        stored = await OutboxMessage.get(id=message.id)
        assert stored.retry_count == 3
        assert stored.processed is False
        assert (await processor.run_cycle()).claimed == 0
        assert handler.call_count == 0


class TestCycleBehaviour:

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, append, registry, clock):
        registry.register(EVENT, ScriptedHandler(["ok"]))
        registry.register("broken.v1", ScriptedHandler(["crash"]))
        await append(EVENT)
        await append("broken.v1")
        await append(EVENT)

        report = await make_processor(registry, clock).run_cycle()

        assert report.claimed == 3
        assert report.delivered == 2
        assert report.transient_failures == 1
        assert report.aborted is False

    @pytest.mark.asyncio
    async def test_claim_storage_failure_ends_cycle(self, append, registry, clock):
        registry.register(EVENT, ScriptedHandler(["ok"]))
        await append(EVENT)
        processor = make_processor(registry, clock)
        processor.claim_store.claim_batch = AsyncMock(side_effect=StorageFailure("db down"))

        report = await processor.run_cycle()

        assert report.aborted is True
        assert processor.state is ProcessorState.IDLE

    @pytest.mark.asyncio
    async def test_update_storage_failure_releases_rest_of_batch(self, append, registry, clock):
        handler = ScriptedHandler(["ok"])
        registry.register(EVENT, handler)
        await append(EVENT, n=3)
        processor = make_processor(registry, clock)
        processor.claim_store.mark_delivered = AsyncMock(side_effect=StorageFailure("db down"))

        report = await processor.run_cycle()

        assert report.aborted is True
        assert report.claimed == 3
        assert handler.call_count == 1
        rows = await OutboxMessage.all()
        assert all(not m.processed and m.retry_count == 0 and m.claim_token is None for m in rows)

    @pytest.mark.asyncio
    async def test_lost_claims_are_reported_without_delivery(self, append, registry, clock):
        handler = ScriptedHandler(["ok"])
        registry.register(EVENT, handler)
        await append(EVENT, n=2)
        processor = make_processor(registry, clock)
        processor.claim_store.renew_claim = AsyncMock(return_value=False)

        report = await processor.run_cycle()

        assert report.claimed == 2
        assert report.lost_claims == 2
        assert report.delivered == 0
        assert handler.call_count == 0

    @pytest.mark.asyncio
    async def test_recovers_on_next_cycle_after_storage_failure(self, append, registry, clock):
        registry.register(EVENT, ScriptedHandler(["ok"]))
        await append(EVENT)
        processor = make_processor(registry, clock)
        real_claim = processor.claim_store.claim_batch
        outages = [StorageFailure("db down")]

        async def flaky_claim(max_batch_size):
            if outages:
                raise outages.pop()
            return await real_claim(max_batch_size)

        processor.claim_store.claim_batch = flaky_claim

        first = await processor.run_cycle()
        second = await processor.run_cycle()

        assert first.aborted is True
        assert second.delivered == 1

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, append, registry, clock):
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def slow_handler(envelope):
            entered.set()
            await gate.wait()

        registry.register(EVENT, slow_handler)
        await append(EVENT)
        processor = make_processor(registry, clock)

        in_flight = asyncio.create_task(processor.run_cycle())
        await asyncio.wait_for(entered.wait(), timeout=2)

        assert processor.state is ProcessorState.RUNNING
        assert (await processor.run_cycle()).skipped is True
        assert processor.tick() is False
        assert processor.skipped_ticks == 2

        gate.set()
        report = await in_flight
        assert report.delivered == 1
        assert processor.state is ProcessorState.IDLE

    @pytest.mark.asyncio
    async def test_concurrent_dispatch_delivers_whole_batch(self, append, registry, clock):
        handler = ScriptedHandler(["ok"])
        registry.register(EVENT, handler)
        messages = await append(EVENT, n=8)

        report = await make_processor(registry, clock, dispatch_concurrency=4).run_cycle()

        assert report.delivered == 8
        assert sorted(handler.event_ids) == sorted(m.event_id for m in messages)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_requires_handlers(self, db, registry, clock):
        with pytest.raises(ConfigurationError):
            await make_processor(registry, clock).start()

    @pytest.mark.asyncio
    async def test_invalid_settings_fail_at_construction(self, registry, monkeypatch):
        monkeypatch.setenv("OUTBOX_BATCH_SIZE", "0")
        with pytest.raises(ConfigurationError):
            OutboxProcessor(registry)

    @pytest.mark.asyncio
    async def test_loop_delivers_and_stops(self, append, registry, clock):
        handler = ScriptedHandler(["ok"])
        registry.register(EVENT, handler)
        await append(EVENT, n=2)
        processor = make_processor(registry, clock, interval_seconds=1)

        await processor.start()
        try:
            assert processor.running
            assert registry.frozen
            await wait_until(lambda: handler.call_count == 2)
        finally:
            await processor.stop()

        assert not processor.running
        assert await OutboxMessage.filter(processed=True).count() == 2

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self, db, registry, clock):
        registry.register(EVENT, ScriptedHandler())
        processor = make_processor(registry, clock)
        await processor.start()
        try:
            await processor.start()
            assert processor.running
        finally:
            await processor.stop()

