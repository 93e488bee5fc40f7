# Device liveness tracking
from typing import Callable, Dict, List, Optional
import asyncio
import time
import traceback
from ..models.device import DeviceInfo
from ..models.event import Event
from ..utils.logging import get_logger

logger = get_logger(__name__)


class DeviceRegistry:
    """
    Tracks last-seen time and declared capabilities per device id.

    Updates for the same device are serialized through a per-device lock so
    concurrent writers never lose each other's changes. A pruned device also
    loses its lock; anyone still waiting on the old lock notices and retries
    with a fresh one.
    """

    def __init__(self, inactivity_threshold: float = 3600, stale_after: Optional[float] = 600,
                 sweep_interval: float = 300):
        self.inactivity_threshold = inactivity_threshold
        self.stale_after = stale_after
        self.sweep_interval = sweep_interval
        self.devices: Dict[str, DeviceInfo] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._prune_callbacks: List[Callable[[str], None]] = []
        self.is_running = False

    def on_prune(self, callback: Callable[[str], None]) -> None:
        """Call `callback(device_id)` whenever a device is pruned"""
        self._prune_callbacks.append(callback)

    async def _acquire(self, device_id: str) -> asyncio.Lock:
        while True:
            async with self._registry_lock:
                lock = self._locks.get(device_id)
                if lock is None:
                    lock = asyncio.Lock()
                    self._locks[device_id] = lock
            await lock.acquire()
            if self._locks.get(device_id) is lock:
                return lock
            # pruned while we waited
            lock.release()

    async def upsert(self, event: Event) -> DeviceInfo:
        """Insert or refresh the DeviceInfo for the event's device"""
        lock = await self._acquire(event.device_id)
        try:
            capabilities = event.payload.get('capabilities')
            declared = set(capabilities) if isinstance(capabilities, (list, tuple, set)) else set()

            info = self.devices.get(event.device_id)
            if info is None:
                info = DeviceInfo(
                    device_id=event.device_id,
                    protocol=event.metadata.protocol,
                    first_seen=event.timestamp,
                    last_seen=event.timestamp,
                    capabilities={str(c) for c in declared},
                    message_count=1,
                )
                logger.info(f"Registered device {event.device_id} on {event.metadata.protocol.value}")
            else:
                info = info.model_copy(update={
                    'protocol': event.metadata.protocol,
                    # out-of-order events must not move last_seen backwards
                    'last_seen': max(info.last_seen, event.timestamp),
                    'is_active': True,
                    'capabilities': info.capabilities | {str(c) for c in declared},
                    'message_count': info.message_count + 1,
                })
            self.devices[event.device_id] = info
            return info
        finally:
            lock.release()

    def get(self, device_id: str) -> Optional[DeviceInfo]:
        return self.devices.get(device_id)

    def list_devices(self) -> List[DeviceInfo]:
        return sorted(self.devices.values(), key=lambda d: d.device_id)

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Mark stale devices inactive and prune those past the inactivity threshold"""
        now = time.time() if now is None else now
        removed = []
        for device_id in list(self.devices):
            lock = await self._acquire(device_id)
            try:
                info = self.devices.get(device_id)
                if info is None:
                    async with self._registry_lock:
                        self._locks.pop(device_id, None)
                    continue
                idle = now - info.last_seen
                if idle > self.inactivity_threshold:
                    del self.devices[device_id]
                    async with self._registry_lock:
                        self._locks.pop(device_id, None)
                    removed.append(device_id)
                elif self.stale_after is not None and idle > self.stale_after and info.is_active:
                    self.devices[device_id] = info.model_copy(update={'is_active': False})
                    logger.info(f"Device {device_id} inactive for {idle:.0f}s")
            finally:
                lock.release()

        for device_id in removed:
            for callback in self._prune_callbacks:
                try:
                    callback(device_id)
                except Exception as e:
                    logger.error(f"Error in prune callback for {device_id}: {traceback.format_exc()}")

        if removed:
            logger.info(f"Pruned {len(removed)} inactive devices: {', '.join(removed)}")
        return removed

    async def run_sweeper(self) -> None:
        self.is_running = True
        while self.is_running:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in device sweep: {traceback.format_exc()}")

    async def stop(self) -> None:
        self.is_running = False
        logger.info("Device registry sweeper stopped")
