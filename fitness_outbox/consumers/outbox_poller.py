import asyncio
import contextlib
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Iterable, List, Optional

from fitness_outbox.consumers.dispatcher import DeliveryOutcome, OutboxDispatcher
from fitness_outbox.consumers.registry import HandlerRegistry, load_handler_modules
from fitness_outbox.core.clock import Clock
from fitness_outbox.core.config import LOG_LEVEL, OutboxProcessorSettings, handler_module_paths
from fitness_outbox.core.db import close_db, init_db
from fitness_outbox.core.errors import ConfigurationError, StorageFailure
from fitness_outbox.core.log import configure_logging
from fitness_outbox.events.claim_store import OutboxClaimStore
from fitness_outbox.models.outbox import OutboxMessage

log = logging.getLogger(__name__)


class ProcessorState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


@dataclass
class CycleReport:
    claimed: int = 0
    delivered: int = 0
    transient_failures: int = 0
    permanent_failures: int = 0
    lost_claims: int = 0
    aborted: bool = False
    skipped: bool = False

    def record(self, outcome: DeliveryOutcome):
        if outcome is DeliveryOutcome.DELIVERED:
            self.delivered += 1
        elif outcome is DeliveryOutcome.TRANSIENT_FAILURE:
            self.transient_failures += 1
        elif outcome is DeliveryOutcome.PERMANENT_FAILURE:
            self.permanent_failures += 1
        else:
            self.lost_claims += 1


class OutboxProcessor:
    """
    Polls the outbox on a fixed cadence: claim a batch, deliver each message, write back
    the outcome. At most one cycle runs per instance; a tick that fires while a cycle is
    still running is skipped. A failing message never aborts its batch, and a storage
    failure only ends the current cycle early. The loop itself keeps ticking until stop().
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        settings: Optional[OutboxProcessorSettings] = None,
        claim_store: Optional[OutboxClaimStore] = None,
        dispatcher: Optional[OutboxDispatcher] = None,
        instance_id: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or OutboxProcessorSettings.from_env()
        self.registry = registry
        self.claim_store = claim_store or OutboxClaimStore(
            max_retry_attempts=self.settings.max_retry_attempts,
            lease_seconds=self.settings.lease_seconds,
            instance_id=instance_id,
            clock=clock,
        )
        self.dispatcher = dispatcher or OutboxDispatcher(
            registry, self.claim_store, self.settings.max_retry_attempts
        )

        self._state = ProcessorState.IDLE
        self._cycle_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self.skipped_ticks = 0
        self.last_report: Optional[CycleReport] = None

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ----------- One claim + dispatch cycle -----------

    async def run_cycle(self) -> CycleReport:
        if self._state is ProcessorState.RUNNING:
            self.skipped_ticks += 1
            return CycleReport(skipped=True)

        self._state = ProcessorState.RUNNING
        report = CycleReport()
        batch: List[OutboxMessage] = []
        try:
            batch = await self.claim_store.claim_batch(self.settings.batch_size)
            report.claimed = len(batch)
            if self.settings.dispatch_concurrency == 1:
                await self._dispatch_in_order(batch, report)
            else:
                await self._dispatch_concurrently(batch, report)
        except StorageFailure:
            log.error("Outbox storage unavailable, ending cycle early", exc_info=True)
            report.aborted = True
            await self._release(batch)
        except Exception:
            log.exception("Unexpected error in outbox cycle")
            report.aborted = True
            await self._release(batch)
        finally:
            self._state = ProcessorState.IDLE
            self.last_report = report

        if report.claimed:
            log.info("Outbox batch processed", extra=asdict(report))
        return report

    async def _dispatch_in_order(self, batch: List[OutboxMessage], report: CycleReport):
        for message in batch:
            report.record(await self.dispatcher.deliver(message))

    async def _dispatch_concurrently(self, batch: List[OutboxMessage], report: CycleReport):
        semaphore = asyncio.Semaphore(self.settings.dispatch_concurrency)
        abort = asyncio.Event()

        async def deliver_one(message: OutboxMessage) -> Optional[DeliveryOutcome]:
            async with semaphore:
                if abort.is_set():
                    return None
                try:
                    return await self.dispatcher.deliver(message)
                except StorageFailure:
                    abort.set()
                    raise

        results = await asyncio.gather(*(deliver_one(m) for m in batch), return_exceptions=True)
        failure = None
        for result in results:
            if isinstance(result, DeliveryOutcome):
                report.record(result)
            elif isinstance(result, BaseException) and failure is None:
                failure = result
        if failure is not None:
            raise failure

    async def _release(self, batch: Iterable[OutboxMessage]):
        try:
            released = await self.claim_store.release(batch)
        except StorageFailure:
            log.warning("Could not release outbox claims, leaving them to lease expiry", exc_info=True)
            return
        if released:
            log.info("Released unprocessed outbox claims", extra={"released": released})

    # ----------- Scheduling -----------

    def tick(self) -> bool:
        """Starts a cycle unless one is still running. Returns whether a cycle was started."""
        if self._state is ProcessorState.RUNNING or (self._cycle_task is not None and not self._cycle_task.done()):
            self.skipped_ticks += 1
            log.warning("Previous outbox cycle still running, skipping tick", extra={"skipped_ticks": self.skipped_ticks})
            return False
        self._cycle_task = asyncio.get_running_loop().create_task(self.run_cycle())
        return True

    async def _run_loop(self):
        while not self._stopping.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("Error scheduling outbox cycle")
            # Idle until the next tick or until stop() is requested
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.settings.interval_seconds)

    async def start(self):
        if self.running:
            log.warning("Outbox processor already running")
            return
        if len(self.registry) == 0:
            raise ConfigurationError("No outbox handlers registered; refusing to start the processor")
        self.registry.freeze()
        self._stopping = asyncio.Event()
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop())
        log.info(
            "--- Outbox Processor started ---",
            extra={
                "instance_id": self.claim_store.instance_id,
                "interval_seconds": self.settings.interval_seconds,
                "batch_size": self.settings.batch_size,
                "max_retry_attempts": self.settings.max_retry_attempts,
                "event_types": self.registry.event_types,
            },
        )

    async def stop(self, timeout: float = 30.0):
        """Stops ticking and waits for the in-flight cycle, cancelling it after `timeout`."""
        if self._stopping is not None:
            self._stopping.set()
        if self._loop_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if self._cycle_task is not None and not self._cycle_task.done():
            try:
                await asyncio.wait_for(self._cycle_task, timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("Outbox cycle did not finish in time; claims will be reclaimed after lease expiry")
            except asyncio.CancelledError:
                pass
        self._cycle_task = None
        log.info("Outbox processor stopped")

    async def run_forever(self):
        await self.start()
        try:
            await self._loop_task
        finally:
            await self.stop()


async def start_outbox_poller(registry: Optional[HandlerRegistry] = None, settings: Optional[OutboxProcessorSettings] = None):
    """Main entry for the standalone poller service."""
    settings = settings or OutboxProcessorSettings.from_env()
    registry = load_handler_modules(registry or HandlerRegistry(), handler_module_paths())
    await init_db()
    processor = OutboxProcessor(registry, settings)
    try:
        await processor.run_forever()
    finally:
        await close_db()


def main():
    configure_logging(LOG_LEVEL)
    try:
        asyncio.run(start_outbox_poller())
    except KeyboardInterrupt:
        log.info("Poller service stopped.")


if __name__ == "__main__":
    main()
