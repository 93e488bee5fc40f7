from pydantic import BaseModel, Field
from typing import Set
from .event import Protocol


class DeviceInfo(BaseModel):
    device_id: str
    protocol: Protocol
    first_seen: float
    last_seen: float
    is_active: bool = True
    capabilities: Set[str] = Field(default_factory=set)
    message_count: int = 0
