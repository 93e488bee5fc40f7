from typing import AsyncIterator, Optional
from pydantic import BaseModel, Field
import aiosqlite
import asyncio
import time
from pathlib import Path
from .database import ConnectionPool
from ..models.event import Event, RetryRecord, RETRY_PREFIX
from ..utils.logging import get_logger
from ..utils.exceptions import StorageError

logger = get_logger(__name__)

CLEANUP_INTERVAL = 24 * 60 * 60


class StoreConfig(BaseModel):
    """Local store configuration model"""
    path: str = Field("data/edge_gateway.db", description="SQLite database file")
    pool_size: int = Field(3, ge=1, description="Number of pooled connections")
    retention_days: int = Field(7, ge=1, description="Days to keep delivered-message records")


class LocalStore:
    """
    Durable key-value store backing the delivered-message log and the retry
    queue. Delivered records live under "{timestamp}:{device_id}", pending
    retries under "retry:{timestamp}:{device_id}".
    """

    def __init__(self, config: StoreConfig):
        self.config = config
        self.pool = ConnectionPool(config.path, config.pool_size)
        self._write_lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def initialize(self, start_cleanup: bool = True) -> None:
        """Open the database and create the schema"""
        try:
            Path(self.config.path).parent.mkdir(parents=True, exist_ok=True)
            await self.pool.initialize()
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS messages (
                        key TEXT PRIMARY KEY,
                        device_id TEXT NOT NULL,
                        body TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        next_attempt_at REAL NOT NULL DEFAULT 0
                    )
                ''')
                await conn.execute('''
                    CREATE INDEX IF NOT EXISTS idx_messages_retry
                    ON messages(next_attempt_at)
                ''')
                await conn.commit()
        except Exception as e:
            logger.error(f"Failed to open local store at {self.config.path}: {e}")
            raise StorageError(f"Failed to open local store: {e}")

        if start_cleanup:
            self._stop_event.clear()
            self._cleanup_task = asyncio.create_task(self._run_daily_cleanup())
        logger.info(f"Local store ready at {self.config.path}")

    async def _put(self, key: str, event: Event) -> None:
        async with self._write_lock:
            async with self.pool.acquire() as conn:
                try:
                    # Same key overwrites in place, keeping re-writes idempotent
                    await conn.execute('''
                        INSERT INTO messages (key, device_id, body, created_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET body = excluded.body
                    ''', (key, event.device_id, event.model_dump_json(), time.time()))
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise

    async def store(self, event: Event) -> str:
        """Durably record an event under its delivered-message key"""
        try:
            await self._put(event.key, event)
            logger.debug(f"Stored event {event.key}")
            return event.key
        except Exception as e:
            logger.error(f"Failed to store event {event.key}: {e}")
            raise StorageError(f"Failed to store event {event.key}: {e}")

    async def store_for_retry(self, event: Event) -> str:
        """Durably queue an event for a later delivery attempt"""
        try:
            await self._put(event.retry_key, event)
            logger.info(f"Queued event {event.key} for retry")
            return event.retry_key
        except Exception as e:
            logger.error(f"Failed to queue event {event.key} for retry: {e}")
            raise StorageError(f"Failed to queue event for retry: {e}")

    async def get(self, key: str) -> Optional[Event]:
        try:
            async with self.pool.acquire() as conn:
                async with conn.execute('SELECT body FROM messages WHERE key = ?', (key,)) as cursor:
                    row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to read {key}: {e}")
        return Event.model_validate_json(row[0]) if row else None

    async def list_retries(self, due_before: Optional[float] = None) -> AsyncIterator[RetryRecord]:
        """Yield pending retry records in enqueue order"""
        query = 'SELECT * FROM messages WHERE key LIKE ?'
        params: list = [f"{RETRY_PREFIX}%"]
        if due_before is not None:
            query += ' AND next_attempt_at <= ?'
            params.append(due_before)
        query += ' ORDER BY created_at, key'

        try:
            async with self.pool.acquire() as conn:
                conn.row_factory = aiosqlite.Row
                async with conn.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to list retry records: {e}")
            raise StorageError(f"Failed to list retry records: {e}")

        for row in rows:
            try:
                event = Event.model_validate_json(row['body'])
            except ValueError as e:
                logger.error(f"Skipping unreadable retry record {row['key']}: {e}")
                continue
            yield RetryRecord(
                key=row['key'],
                event=event,
                enqueued_at=row['created_at'],
                attempts=row['attempts'],
                next_attempt_at=row['next_attempt_at'],
            )

    async def count_retries(self) -> int:
        try:
            async with self.pool.acquire() as conn:
                async with conn.execute(
                    'SELECT COUNT(*) FROM messages WHERE key LIKE ?', (f"{RETRY_PREFIX}%",)
                ) as cursor:
                    row = await cursor.fetchone()
                    return row[0]
        except Exception as e:
            raise StorageError(f"Failed to count retry records: {e}")

    async def delete_retry(self, key: str) -> bool:
        """Remove a retry record after successful re-delivery"""
        if not key.startswith(RETRY_PREFIX):
            raise StorageError(f"Not a retry key: {key}")
        try:
            async with self._write_lock:
                async with self.pool.acquire() as conn:
                    cursor = await conn.execute('DELETE FROM messages WHERE key = ?', (key,))
                    await conn.commit()
                    deleted = cursor.rowcount > 0
            logger.debug(f"Deleted retry record {key}")
            return deleted
        except Exception as e:
            logger.error(f"Failed to delete retry record {key}: {e}")
            raise StorageError(f"Failed to delete retry record {key}: {e}")

    async def record_retry_failure(self, key: str, next_attempt_at: float) -> None:
        """Bump the attempt counter and schedule the next attempt"""
        try:
            async with self._write_lock:
                async with self.pool.acquire() as conn:
                    await conn.execute('''
                        UPDATE messages
                        SET attempts = attempts + 1, next_attempt_at = ?
                        WHERE key = ?
                    ''', (next_attempt_at, key))
                    await conn.commit()
        except Exception as e:
            logger.error(f"Failed to update retry record {key}: {e}")
            raise StorageError(f"Failed to update retry record {key}: {e}")

    async def cleanup_delivered(self, older_than: Optional[float] = None) -> int:
        """Delete delivered-message records created before `older_than`"""
        if older_than is None:
            older_than = time.time() - self.config.retention_days * 86400
        try:
            async with self._write_lock:
                async with self.pool.acquire() as conn:
                    cursor = await conn.execute(
                        'DELETE FROM messages WHERE key NOT LIKE ? AND created_at < ?',
                        (f"{RETRY_PREFIX}%", older_than)
                    )
                    await conn.commit()
                    deleted = cursor.rowcount
            logger.info(f"Cleaned up {deleted} delivered records older than {self.config.retention_days} days")
            return deleted
        except Exception as e:
            logger.error(f"Failed to cleanup old records: {e}")
            raise StorageError(f"Failed to cleanup old records: {e}")

    async def _run_daily_cleanup(self) -> None:
        """Run the cleanup task daily until close() sets the stop event"""
        while not self._stop_event.is_set():
            try:
                await self.cleanup_delivered()
            except StorageError as e:
                logger.error(f"Error in cleanup task: {e}")

            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=CLEANUP_INTERVAL)
            except asyncio.TimeoutError:
                pass

    async def close(self, timeout: float = 5.0) -> None:
        """Stop the cleanup task and close all connections"""
        logger.info("Shutting down local store...")
        self._stop_event.set()
        if self._cleanup_task:
            _, pending = await asyncio.wait({self._cleanup_task}, timeout=timeout)
            if pending:
                logger.warning(f"Cleanup task did not stop within {timeout}s, cancelling")
                self._cleanup_task.cancel()
            self._cleanup_task = None

        await self.pool.close()
        logger.info("Local store closed")


class UnavailableStore:
    """
    Stand-in used when the local store cannot be opened at startup. Every
    operation fails with StorageError, so the dispatcher keeps forwarding
    and reports the storage failures instead of the gateway refusing to run.
    """

    def __init__(self, reason: str):
        self.reason = reason

    def _fail(self):
        raise StorageError(f"Local store unavailable: {self.reason}")

    async def store(self, event: Event) -> str:
        self._fail()

    async def store_for_retry(self, event: Event) -> str:
        self._fail()

    async def get(self, key: str) -> Optional[Event]:
        self._fail()

    async def list_retries(self, due_before: Optional[float] = None) -> AsyncIterator[RetryRecord]:
        self._fail()
        yield  # pragma: no cover

    async def count_retries(self) -> int:
        self._fail()

    async def delete_retry(self, key: str) -> bool:
        self._fail()

    async def record_retry_failure(self, key: str, next_attempt_at: float) -> None:
        self._fail()

    async def close(self) -> None:
        pass
