# Central event funnel
import asyncio
import time
import traceback
from typing import Any, Awaitable, Callable, Dict, List, Optional
from pydantic import BaseModel, Field
from ..models.event import Event
from ..models.rules import Action, ActionType
from ..utils.logging import get_logger
from ..utils.exceptions import QueueFullError, RuleEvaluationError, StorageError

logger = get_logger(__name__)

Subscriber = Callable[[str, Dict[str, Any]], Awaitable[None]]


class DispatcherConfig(BaseModel):
    queue_size: int = Field(1000, ge=1, description="Bounded inbound queue size")
    shutdown_grace: float = Field(5.0, ge=0, description="Seconds to drain the queue on shutdown")
    storage_alert_threshold: int = Field(3, ge=1, description="Consecutive storage failures before alerting")


class Dispatcher:
    """
    Single consumer of every listener's events.

    Each event is handled to completion before the next is taken off the
    queue, so rule evaluation and store operations happen in arrival order.
    """

    def __init__(self, registry, rule_engine, store, connector,
                 anomaly_detector=None, config: Optional[DispatcherConfig] = None):
        self.registry = registry
        self.rule_engine = rule_engine
        self.store = store
        self.connector = connector
        self.anomaly_detector = anomaly_detector
        self.config = config or DispatcherConfig()
        self.event_queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        # notification name -> callbacks, e.g. "alert", "storage_failure"
        self.subscribers: Dict[str, List[Subscriber]] = {}
        self.accepting = True
        self.processed = 0
        self._storage_failures = 0
        self._consumer_task: Optional[asyncio.Task] = None
        registry.on_prune(self._device_pruned)

    def subscribe(self, name: str, callback: Subscriber) -> None:
        self.subscribers.setdefault(name, []).append(callback)

    def _device_pruned(self, device_id: str) -> None:
        if self.anomaly_detector is not None:
            self.anomaly_detector.forget(device_id)

    async def _notify(self, name: str, data: Dict[str, Any]) -> None:
        for callback in self.subscribers.get(name, []):
            try:
                await callback(name, data)
            except Exception as e:
                logger.error(f"Error in '{name}' subscriber: {traceback.format_exc()}")

    async def submit(self, event: Event) -> None:
        """Enqueue an event, waiting while the queue is full"""
        if not self.accepting:
            raise QueueFullError("Dispatcher is shutting down")
        await self.event_queue.put(event)

    def try_submit(self, event: Event) -> None:
        """Enqueue an event or raise QueueFullError immediately"""
        if not self.accepting:
            raise QueueFullError("Dispatcher is shutting down")
        try:
            self.event_queue.put_nowait(event)
        except asyncio.QueueFull:
            raise QueueFullError(f"Dispatcher queue full ({self.config.queue_size} events)")

    def start(self) -> asyncio.Task:
        self._consumer_task = asyncio.create_task(self.process_events())
        return self._consumer_task

    async def process_events(self) -> None:
        while True:
            event = await self.event_queue.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                # cancelled mid-flight during shutdown; park it rather than lose it
                await self._store_for_retry(event)
                raise
            except Exception as e:
                logger.error(f"Unhandled error dispatching event {event.key}: {traceback.format_exc()}")
            finally:
                self.event_queue.task_done()

    async def handle(self, event: Event) -> Optional[Event]:
        """Run one event through registry, rules and sinks; returns what was kept"""
        try:
            await self.registry.upsert(event)
        except Exception as e:
            logger.error(f"Failed to update registry for {event.device_id}: {e}")

        if self.anomaly_detector is not None:
            event = self.anomaly_detector.annotate(event)

        try:
            action = self.rule_engine.evaluate(event)
        except RuleEvaluationError as e:
            logger.error(f"Rule evaluation failed for {event.key}, forwarding: {e}")
            action = Action.forward()

        result = self.rule_engine.apply(event, action)
        self.processed += 1
        if result is None:
            logger.debug(f"Discarded event {event.key}")
            return None

        if action.type is ActionType.STORE:
            await self._store(result)
            return result

        if action.type is ActionType.ALERT:
            result = result.model_copy(update={
                'metadata': result.metadata.model_copy(update={'alert': True})
            })
            logger.warning(f"Alert from {result.device_id}: {result.payload}")

        await self._store(result)
        if not await self.connector.send(result):
            await self._store_for_retry(result)

        if action.type is ActionType.ALERT:
            await self._notify('alert', result.model_dump(mode='json'))
        return result

    async def _store(self, event: Event) -> bool:
        try:
            await self.store.store(event)
            self._storage_failures = 0
            return True
        except StorageError as e:
            await self._storage_failed(event, e)
            return False

    async def _store_for_retry(self, event: Event) -> bool:
        try:
            await self.store.store_for_retry(event)
            self._storage_failures = 0
            return True
        except StorageError as e:
            await self._storage_failed(event, e)
            return False

    async def _storage_failed(self, event: Event, error: StorageError) -> None:
        self._storage_failures += 1
        logger.error(f"Storage failure for event {event.key}: {error}")
        if self._storage_failures == self.config.storage_alert_threshold:
            logger.critical(f"{self._storage_failures} consecutive local store failures")
            await self._notify('storage_failure', {
                'consecutive_failures': self._storage_failures,
                'error': str(error),
                'timestamp': time.time(),
            })

    async def shutdown(self, grace: Optional[float] = None) -> int:
        """
        Stop intake, let queued events drain for up to `grace` seconds and
        park whatever is left in the retry store. Returns the number parked.
        """
        grace = self.config.shutdown_grace if grace is None else grace
        self.accepting = False

        if self._consumer_task and not self._consumer_task.done():
            try:
                await asyncio.wait_for(self.event_queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"Dispatcher queue not drained after {grace}s")
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass

        parked = 0
        while not self.event_queue.empty():
            event = self.event_queue.get_nowait()
            if await self._store_for_retry(event):
                parked += 1
            self.event_queue.task_done()

        if parked:
            logger.info(f"Persisted {parked} undelivered events for retry")
        logger.info(f"Dispatcher stopped after {self.processed} events")
        return parked
