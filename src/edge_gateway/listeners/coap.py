import asyncio
import json
from typing import Any, Dict, Optional
from urllib.parse import parse_qs
from pydantic import BaseModel, Field
import aiocoap
import aiocoap.resource as resource
from .base import ProtocolListener, build_event, decode_json_object
from ..models.event import Event, MessageType, Protocol
from ..utils.exceptions import DecodeError, InitializationError, QueueFullError

'''
coap-client -m post coap://gateway/sensors -e '{"device_id": "soil-7", "moisture": 0.31}'
'''

ACK_PAYLOAD = json.dumps({"status": "received"}).encode()


class CoAPConfig(BaseModel):
    enabled: bool = Field(True, description="Start the CoAP listener")
    host: str = Field("0.0.0.0", description="UDP bind address")
    port: int = Field(5683, description="UDP bind port")
    path: str = Field("sensors", description="Resource path accepting POSTs")


def decode_coap_request(payload: bytes, query: Optional[str], remote: Optional[str],
                        gateway_id: str) -> Event:
    """Build an Event from a CoAP POST body (and optional ?device_id= query)"""
    data = decode_json_object(payload)
    params = parse_qs(query or "")
    device_id = data.pop('device_id', None) or (params.get('device_id') or [None])[0]
    message_type = data.pop('message_type', None) or MessageType.SENSOR_DATA
    try:
        message_type = MessageType.parse(message_type)
    except ValueError as e:
        raise DecodeError(str(e))
    return build_event(
        Protocol.COAP,
        device_id,
        data,
        gateway_id,
        message_type=message_type,
        source=remote,
    )


class SensorsResource(resource.Resource):
    """POST endpoint every CoAP device reports to"""

    def __init__(self, listener: 'CoAPListener'):
        super().__init__()
        self.listener = listener

    async def render_post(self, request: aiocoap.Message) -> aiocoap.Message:
        remote = str(request.remote.hostinfo) if request.remote is not None else None
        query = '&'.join(request.opt.uri_query)
        try:
            event = decode_coap_request(request.payload, query, remote, self.listener.gateway_id)
        except DecodeError as e:
            self.listener.drop(e, remote)
            return aiocoap.Message(code=aiocoap.BAD_REQUEST, payload=str(e).encode())

        try:
            # blocks while the dispatcher queue is full
            await self.listener.emit(event)
        except QueueFullError as e:
            self.listener.drop(e, remote)
            return aiocoap.Message(code=aiocoap.SERVICE_UNAVAILABLE)
        return aiocoap.Message(code=aiocoap.CHANGED, payload=ACK_PAYLOAD)


class CoAPListener(ProtocolListener):
    protocol = Protocol.COAP

    def __init__(self, config: Dict[str, Any], dispatcher, gateway_id: str):
        super().__init__(dispatcher, gateway_id)
        self.config = CoAPConfig(**config)
        self.context: Optional[aiocoap.Context] = None
        self._stop_flag = asyncio.Event()

    def build_site(self) -> resource.Site:
        root = resource.Site()
        root.add_resource(['.well-known', 'core'],
                          resource.WKCResource(root.get_resources_as_linkheader))
        root.add_resource(self.config.path.strip('/').split('/'), SensorsResource(self))
        return root

    async def start(self) -> None:
        self._stop_flag.clear()
        try:
            self.context = await aiocoap.Context.create_server_context(
                self.build_site(),
                bind=(self.config.host, self.config.port)
            )
        except OSError as e:
            raise InitializationError(f"Cannot bind CoAP listener on {self.config.host}:{self.config.port}: {e}")

        self.logger.info(f"CoAP listener on udp://{self.config.host}:{self.config.port}/{self.config.path}")
        try:
            await self._stop_flag.wait()
        finally:
            await self.context.shutdown()
            self.context = None
            self.logger.info("CoAP listener stopped")

    async def stop(self) -> None:
        self._stop_flag.set()
