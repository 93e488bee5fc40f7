import aiosqlite
import asyncio
from contextlib import asynccontextmanager

from ..utils.logging import get_logger
from ..utils.exceptions import ConnectionPoolError


logger = get_logger(__name__)


class ConnectionPool:
    """Manages a pool of database connections"""
    def __init__(self, db_path: str, max_connections: int = 5, acquire_timeout: float = 5.0):
        self.db_path = db_path
        self.max_connections = max_connections
        self.acquire_timeout = acquire_timeout
        self._pool: asyncio.Queue = asyncio.Queue(maxsize=max_connections)
        self._active_connections = 0
        self._lock = asyncio.Lock()

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path)
        await conn.execute('PRAGMA journal_mode=WAL')
        # fsync on every commit; the store is the only copy during a partition
        await conn.execute('PRAGMA synchronous=FULL')
        await conn.execute('PRAGMA busy_timeout=5000')
        return conn

    async def initialize(self):
        """Initialize the connection pool"""
        logger.info(f"Initializing connection pool with {self.max_connections} connections")
        try:
            for _ in range(self.max_connections):
                conn = await self._open()
                await self._pool.put(conn)
                self._active_connections += 1
        except Exception as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            await self.close()
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        connection = None
        async with self._lock:
            if self._pool.empty() and self._active_connections < self.max_connections:
                # Create new connection if pool is empty and we haven't reached max
                connection = await self._open()
                self._active_connections += 1

        if connection is None:
            try:
                connection = await asyncio.wait_for(self._pool.get(), timeout=self.acquire_timeout)
            except asyncio.TimeoutError:
                raise ConnectionPoolError("Timeout waiting for database connection")

        try:
            yield connection
        finally:
            try:
                self._pool.put_nowait(connection)
            except asyncio.QueueFull:
                logger.error("Connection pool overflow, closing connection")
                await connection.close()
                async with self._lock:
                    self._active_connections -= 1

    async def close(self):
        """Close all connections in the pool"""
        while not self._pool.empty():
            conn = self._pool.get_nowait()
            await conn.close()
        self._active_connections = 0
