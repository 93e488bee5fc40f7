import asyncio
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import aiomqtt as mqtt
from aiomqtt import Will
import json
import random
import ssl
import traceback
from .base import ProtocolListener, build_event, decode_json_object
from ..models.event import Event, MessageType, Protocol
from ..utils.exceptions import DecodeError, QueueFullError
from ..utils.retry import backoff_delay

'''
Topics follow devices/{device_id}/{kind}; the kind selects the message type.

devices/thermo-1/sensors   {"temperature": 22.5}
devices/thermo-1/alerts    {"reason": "overheat"}
'''

TOPIC_MESSAGE_TYPES: Dict[str, MessageType] = {
    'sensors': MessageType.SENSOR_DATA,
    'alerts': MessageType.ALERT,
    'heartbeat': MessageType.HEARTBEAT,
    'commands': MessageType.COMMAND,
    'config': MessageType.CONFIG_UPDATE,
}


class MQTTConfig(BaseModel):
    """MQTT configuration model"""
    enabled: bool = Field(True, description="Start the MQTT listener")
    host: str = Field("localhost", description="MQTT broker hostname")
    port: int = Field(1883, description="MQTT broker port")
    username: Optional[str] = Field(None, description="MQTT username")
    password: Optional[str] = Field(None, description="MQTT password")
    keepalive: int = Field(60, description="Connection keepalive in seconds")
    client_id: str = Field("edge_gateway", description="MQTT client ID prefix")
    ssl: bool = Field(False, description="Enable SSL/TLS")
    ca_cert: Optional[str] = Field(None, description="Custom CA certificate")
    client_cert: Optional[str] = Field(None, description="Client certificate")
    client_key: Optional[str] = Field(None, description="Required if client_cert is set")
    verify_hostname: bool = Field(True, description="Verify broker's hostname")
    reconnect_interval: float = Field(5.0, description="Base reconnection interval in seconds")
    max_reconnect_interval: float = Field(60.0, description="Reconnection backoff cap in seconds")
    subscribe_topics: List[str] = Field(
        default_factory=lambda: ["devices/+/sensors", "devices/+/alerts"],
        description="Topic filters to subscribe to"
    )
    subscribe_qos: int = Field(1, ge=0, le=2, description="qos for subscribe topics")
    alert_topic: Optional[str] = Field("gateway/{gateway_id}/alerts", description="Where alerts are re-published")


def decode_mqtt_message(topic: str, payload: bytes, gateway_id: str) -> Event:
    """Turn one MQTT publish into an Event, raising DecodeError when malformed"""
    parts = topic.split('/')
    if len(parts) != 3 or parts[0] != 'devices' or not parts[1]:
        raise DecodeError(f"Unexpected topic format: {topic}")

    message_type = TOPIC_MESSAGE_TYPES.get(parts[2])
    if message_type is None:
        raise DecodeError(f"Unknown topic kind '{parts[2]}' in {topic}")

    data = decode_json_object(payload)
    return build_event(
        Protocol.MQTT,
        parts[1],
        data,
        gateway_id,
        message_type=message_type,
        source=topic,
    )


class MQTTListener(ProtocolListener):
    protocol = Protocol.MQTT

    def __init__(self, config: Dict[str, Any], dispatcher, gateway_id: str):
        super().__init__(dispatcher, gateway_id)
        self.config = MQTTConfig(**config)
        self.config.keepalive = max(30, self.config.keepalive)
        self.client: Optional[mqtt.Client] = None
        self.connected = asyncio.Event()
        self._stop_flag = asyncio.Event()
        self._publish_lock = asyncio.Lock()

    def _create_tls_context(self) -> Optional[ssl.SSLContext]:
        """Create SSL context for MQTT connection based on config"""
        if not self.config.ssl:
            return None

        context = ssl.create_default_context()
        if self.config.ca_cert:
            context.load_verify_locations(cafile=self.config.ca_cert)
        if self.config.client_cert:
            if not self.config.client_key:
                raise ValueError("Client key must be provided when using client certificate")
            context.load_cert_chain(certfile=self.config.client_cert, keyfile=self.config.client_key)
        context.check_hostname = self.config.verify_hostname
        return context

    def _make_client(self) -> mqtt.Client:
        # Last Will so upstream consumers notice an unexpected gateway drop
        will = Will(
            topic=f"gateway/{self.gateway_id}/status",
            payload="Offline",
            qos=1,
            retain=True
        )
        return mqtt.Client(
            hostname=self.config.host,
            port=self.config.port,
            username=self.config.username,
            password=self.config.password,
            keepalive=self.config.keepalive,
            identifier=f"{self.config.client_id}_{random.randint(1000, 9999)}",
            will=will,
            tls_context=self._create_tls_context(),
        )

    async def handle_message(self, topic: str, payload: bytes) -> Optional[Event]:
        """Decode and enqueue one message; malformed messages are logged and dropped"""
        try:
            event = decode_mqtt_message(topic, payload, self.gateway_id)
        except DecodeError as e:
            self.drop(e, topic)
            return None
        # blocks while the dispatcher queue is full
        await self.emit(event)
        return event

    async def start(self) -> None:
        """Connect, subscribe and consume until stopped, reconnecting with backoff"""
        self._stop_flag.clear()
        attempt = 0
        while not self._stop_flag.is_set():
            try:
                async with self._make_client() as client:
                    self.client = client
                    self.connected.set()
                    attempt = 0
                    await client.publish(f"gateway/{self.gateway_id}/status", payload="Online", qos=1, retain=True)
                    for topic in self.config.subscribe_topics:
                        await client.subscribe(topic, qos=self.config.subscribe_qos)
                        self.logger.info(f"Subscribed to topic: {topic}")
                    self.logger.info(f"Connected to MQTT broker {self.config.host}:{self.config.port}")

                    async for message in client.messages:
                        if self._stop_flag.is_set():
                            break
                        payload = message.payload
                        if isinstance(payload, str):
                            payload = payload.encode()
                        elif not isinstance(payload, (bytes, bytearray)):
                            payload = b"" if payload is None else str(payload).encode()
                        try:
                            await self.handle_message(str(message.topic), bytes(payload))
                        except QueueFullError as e:
                            self.drop(e, str(message.topic))
            except asyncio.CancelledError:
                break
            except Exception as e:
                if self._stop_flag.is_set():
                    break
                attempt += 1
                wait_time = backoff_delay(
                    attempt,
                    base_delay=self.config.reconnect_interval,
                    max_delay=self.config.max_reconnect_interval,
                )
                self.logger.error(f"MQTT connection attempt {attempt} failed: {e}. Retrying in {wait_time:.1f}s")
                try:
                    await asyncio.wait_for(self._stop_flag.wait(), timeout=wait_time)
                except asyncio.TimeoutError:
                    pass
            finally:
                self.connected.clear()
                self.client = None
        self.logger.info("MQTT listener stopped")

    async def stop(self) -> None:
        self._stop_flag.set()

    async def publish_alert(self, name: str, data: Dict[str, Any]) -> None:
        """Dispatcher alert subscriber: re-publish alert events on the gateway alert topic"""
        if not self.config.alert_topic or not self.client or not self.connected.is_set():
            return
        topic = self.config.alert_topic.format(gateway_id=self.gateway_id)
        try:
            async with self._publish_lock:
                await self.client.publish(topic, payload=json.dumps(data), qos=1)
            self.logger.debug(f"Published {name} notification to {topic}")
        except Exception as e:
            self.logger.error(f"Failed to publish {name} notification: {traceback.format_exc()}")
