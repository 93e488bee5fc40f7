from enum import Enum
import time
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator


class MessageType(str, Enum):
    SENSOR_DATA = "SensorData"
    ALERT = "Alert"
    COMMAND = "Command"
    CONFIG_UPDATE = "ConfigUpdate"
    HEARTBEAT = "Heartbeat"

    @classmethod
    def parse(cls, value: Any) -> "MessageType":
        """Accept "SensorData", "sensor_data", "SENSOR_DATA" and friends"""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        normalized = text.replace("_", "").replace("-", "").lower()
        for member in cls:
            if normalized == member.value.lower():
                return member
        raise ValueError(f"Unknown message type: {value}")


class Protocol(str, Enum):
    MQTT = "MQTT"
    COAP = "CoAP"
    HTTP = "HTTP"
    LORAWAN = "LoRaWAN"


RETRY_PREFIX = "retry:"


class EventMetadata(BaseModel):
    protocol: Protocol
    source: Optional[str] = None
    signal_strength: Optional[float] = None
    gateway_id: str = ""
    anomaly_score: Optional[float] = None
    alert: bool = False


class Event(BaseModel):
    """Normalized representation of one inbound device message"""
    device_id: str = Field(..., min_length=1)
    timestamp: float = Field(default_factory=time.time, allow_inf_nan=False)
    message_type: MessageType
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata

    @field_validator('device_id')
    def validate_device_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("device_id must not be empty")
        return v

    @field_validator('message_type', mode='before')
    def validate_message_type(cls, v):
        return MessageType.parse(v)

    @property
    def key(self) -> str:
        return f"{self.timestamp}:{self.device_id}"

    @property
    def retry_key(self) -> str:
        return f"{RETRY_PREFIX}{self.key}"


class RetryRecord(BaseModel):
    """An event waiting in the local store for another delivery attempt"""
    key: str
    event: Event
    enqueued_at: float
    attempts: int = 0
    next_attempt_at: float = 0.0
