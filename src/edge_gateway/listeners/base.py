# Abstract base class for all protocol listeners
# Each listener decodes its own wire format into an Event and hands it to the
# dispatcher; listeners never share state with each other.

from abc import ABC, abstractmethod
import json
import math
import time
from typing import Any, Dict, Optional, Union
from ..models.event import Event, EventMetadata, MessageType, Protocol
from ..utils.logging import get_logger
from ..utils.exceptions import DecodeError

logger = get_logger(__name__)


def decode_json_object(raw: Union[bytes, str]) -> Dict[str, Any]:
    """Decode a JSON object payload, raising DecodeError on anything else"""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Malformed JSON payload: {e}")
    if not isinstance(data, dict):
        raise DecodeError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def device_time(value: Any) -> Optional[float]:
    """Device-assigned timestamp, or None when absent, non-numeric or not finite"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


def build_event(
    protocol: Protocol,
    device_id: Any,
    payload: Dict[str, Any],
    gateway_id: str,
    message_type: Union[MessageType, str] = MessageType.SENSOR_DATA,
    source: Optional[str] = None,
    signal_strength: Optional[float] = None,
) -> Event:
    """
    Construct a validated Event. A numeric "timestamp" in the payload is taken
    as the device-assigned time, otherwise the gateway clock is used.
    """
    if not isinstance(device_id, str) or not device_id.strip():
        raise DecodeError("Missing device_id")

    payload = dict(payload)
    timestamp = device_time(payload.pop('timestamp', None))
    if timestamp is None:
        timestamp = time.time()

    try:
        return Event(
            device_id=device_id,
            timestamp=float(timestamp),
            message_type=message_type,
            payload=payload,
            metadata=EventMetadata(
                protocol=protocol,
                source=source,
                signal_strength=signal_strength,
                gateway_id=gateway_id,
            ),
        )
    except ValueError as e:
        raise DecodeError(f"Invalid event: {e}")


class ProtocolListener(ABC):
    """Base class for the MQTT, CoAP, HTTP and LoRaWAN listeners"""

    protocol: Protocol

    def __init__(self, dispatcher, gateway_id: str):
        self.dispatcher = dispatcher
        self.gateway_id = gateway_id
        self.received = 0
        self.dropped = 0
        self.logger = get_logger(f"edge_gateway.listeners.{self.name}")

    @property
    def name(self) -> str:
        return self.protocol.value

    @abstractmethod
    async def start(self) -> None:
        """Bind and serve until stop() is called"""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop accepting new messages"""
        pass

    async def emit(self, event: Event) -> None:
        """Hand an event to the dispatcher, waiting if its queue is full"""
        await self.dispatcher.submit(event)
        self.received += 1

    def drop(self, reason: Any, source: Optional[str] = None) -> None:
        self.dropped += 1
        self.logger.warning(f"Dropped {self.name} message from {source or 'unknown'}: {reason}")
