import asyncio
import traceback
from typing import Any, Dict, Optional
from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HyperConfig
from pydantic import BaseModel, Field
from .base import ProtocolListener
from ..api.endpoints.sensors import sensor_router
from ..api.endpoints.devices import device_router
from ..api.routes import health_router
from ..models.event import Protocol
from ..utils.exceptions import InitializationError


class HTTPConfig(BaseModel):
    enabled: bool = Field(True, description="Start the HTTP listener")
    host: str = Field("0.0.0.0", description="Bind address")
    port: int = Field(8080, description="Bind port")


class HTTPListener(ProtocolListener):
    """Serves the ingestion API (and operator endpoints) with hypercorn"""
    protocol = Protocol.HTTP

    def __init__(self, config: Dict[str, Any], dispatcher, gateway_id: str, app_state=None):
        super().__init__(dispatcher, gateway_id)
        self.config = HTTPConfig(**config)
        self.app_state = app_state
        self.app: Optional[FastAPI] = None
        self._shutdown_event = asyncio.Event()

    def create_app(self) -> FastAPI:
        """Initialize FastAPI application with routes"""
        try:
            app = FastAPI(
                title="Edge Gateway API",
                description="Device ingestion and gateway status",
                version="1.0.0"
            )

            # Store components for dependency injection
            app.state.http_listener = self
            app.state.components = self.app_state

            app.include_router(sensor_router, prefix="/api")
            app.include_router(device_router, prefix="/api")
            app.include_router(health_router, prefix="/api")

            self.app = app
            return app
        except Exception as e:
            raise InitializationError(f"Failed to initialize HTTP listener: {traceback.format_exc()}")

    async def start(self) -> None:
        if not self.app:
            self.create_app()

        self._shutdown_event.clear()
        hypercorn_config = HyperConfig()
        hypercorn_config.bind = [f"{self.config.host}:{self.config.port}"]

        async def shutdown_trigger():
            await self._shutdown_event.wait()

        self.logger.info(f"Starting HTTP listener on {self.config.host}:{self.config.port}")
        try:
            await serve(self.app, hypercorn_config, shutdown_trigger=shutdown_trigger)
        except OSError as e:
            raise InitializationError(f"Cannot bind HTTP listener on {self.config.host}:{self.config.port}: {e}")
        self.logger.info("HTTP listener stopped")

    async def stop(self) -> None:
        self._shutdown_event.set()
