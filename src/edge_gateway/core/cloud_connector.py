from typing import Optional
import aiohttp
import asyncio
from pydantic import BaseModel, Field
from ..models.event import Event
from ..utils.logging import get_logger
from ..utils.exceptions import NetworkError

logger = get_logger(__name__)


class CloudConfig(BaseModel):
    """Upstream endpoint configuration model"""
    endpoint: str = Field(..., description="Base URL of the upstream service")
    path: str = Field("/api/messages", description="Path events are POSTed to")
    timeout: float = Field(10.0, gt=0, description="Total request timeout in seconds")
    api_key: Optional[str] = Field(None, description="Sent as a bearer token when set")


class CloudConnector:
    """
    Forwards events to the upstream endpoint over HTTP.

    send() never raises: any failure is logged and reported as False so the
    caller can park the event in the retry queue.
    """

    def __init__(self, config: CloudConfig):
        self.config = config
        self.url = f"{config.endpoint.rstrip('/')}/{config.path.lstrip('/')}"
        self.session: Optional[aiohttp.ClientSession] = None
        self.is_connected = False

    async def connect(self) -> None:
        headers = {}
        if self.config.api_key:
            headers['Authorization'] = f"Bearer {self.config.api_key}"
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            headers=headers,
        )
        self.is_connected = True
        logger.info(f"Created upstream session for {self.url}")

    async def disconnect(self) -> None:
        if self.session:
            try:
                await self.session.close()
                logger.info(f"Closed upstream session for {self.url}")
            except Exception as e:
                logger.error(f"Error closing upstream session: {e}")
            finally:
                self.session = None
                self.is_connected = False

    async def _post(self, event: Event) -> None:
        if not self.session:
            raise NetworkError("Upstream session not created")
        try:
            async with self.session.post(self.url, json=event.model_dump(mode='json')) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    raise NetworkError(f"Upstream returned {response.status}: {body[:200]}")
        except asyncio.TimeoutError:
            raise NetworkError(f"Timed out after {self.config.timeout}s")
        except aiohttp.ClientError as e:
            raise NetworkError(f"{type(e).__name__}: {e}")

    async def send(self, event: Event) -> bool:
        """POST one event upstream, True on a 2xx response"""
        try:
            await self._post(event)
            logger.debug(f"Delivered event {event.key} upstream")
            return True
        except NetworkError as e:
            logger.warning(f"Failed to deliver event {event.key}: {e}")
            return False
