from typing import Optional
import asyncio
import time
import traceback
from pydantic import BaseModel, Field
from ..storage.local_store import LocalStore
from ..utils.logging import get_logger
from ..utils.retry import backoff_delay
from ..utils.exceptions import StorageError

logger = get_logger(__name__)


class RetryConfig(BaseModel):
    interval: float = Field(30.0, gt=0, description="Seconds between retry scans")
    base_delay: float = Field(30.0, ge=0, description="Backoff after the first failed retry")
    max_delay: float = Field(3600.0, ge=0, description="Backoff cap")
    batch_size: int = Field(100, ge=1, description="Records attempted per scan")


class RetryWorker:
    """Periodically re-sends events parked in the local store's retry queue"""

    def __init__(self, store: LocalStore, connector, config: Optional[RetryConfig] = None):
        self.store = store
        self.connector = connector
        self.config = config or RetryConfig()
        self.is_running = False
        self._pass_lock = asyncio.Lock()

    async def run_once(self, now: Optional[float] = None) -> int:
        """Attempt every due retry record once; returns how many were delivered"""
        async with self._pass_lock:
            now = time.time() if now is None else now
            delivered = 0
            failed = 0
            attempted = 0

            async for record in self.store.list_retries(due_before=now):
                if attempted >= self.config.batch_size:
                    break
                attempted += 1

                if await self.connector.send(record.event):
                    await self.store.delete_retry(record.key)
                    delivered += 1
                    continue

                failed += 1
                delay = backoff_delay(
                    record.attempts + 1,
                    base_delay=self.config.base_delay,
                    max_delay=self.config.max_delay,
                )
                await self.store.record_retry_failure(record.key, now + delay)
                logger.debug(f"Retry of {record.key} failed (attempt {record.attempts + 1}), next in {delay:.1f}s")

            if attempted:
                logger.info(f"Retry pass: {delivered} delivered, {failed} still pending")
            return delivered

    async def run(self) -> None:
        self.is_running = True
        while self.is_running:
            try:
                await self.run_once()
            except StorageError as e:
                logger.error(f"Retry pass aborted by storage failure: {e}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in retry loop: {traceback.format_exc()}")

            try:
                await asyncio.sleep(self.config.interval)
            except asyncio.CancelledError:
                break

    async def stop(self) -> None:
        self.is_running = False
        logger.info("Retry worker stopped")
