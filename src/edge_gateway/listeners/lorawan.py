"""
Simulated LoRaWAN ingestion.

Without a concentrator attached, uplinks are synthesized in the shape a
LoRaWAN network server delivers them, then decoded exactly like real ones:

    {
        "devEUI": "70b3d57ed0001234",
        "fPort": 1,
        "data": "<base64 of a JSON object>",
        "rxInfo": [{"gatewayID": "...", "rssi": -87, "loRaSNR": 7.5}]
    }
"""
import asyncio
import base64
import binascii
import json
import random
import time
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from .base import ProtocolListener, build_event, decode_json_object
from ..models.event import Event, MessageType, Protocol
from ..utils.exceptions import DecodeError

# fPort conventions for the simulated fleet
PORT_MESSAGE_TYPES: Dict[int, MessageType] = {
    1: MessageType.SENSOR_DATA,
    2: MessageType.ALERT,
    3: MessageType.HEARTBEAT,
}


class SimulatedDevice(BaseModel):
    dev_eui: str
    fields: Dict[str, List[float]] = Field(
        default_factory=lambda: {"temperature": [18.0, 26.0], "humidity": [30.0, 60.0]},
        description="Payload key -> [min, max] of the generated reading"
    )


class LoRaWANConfig(BaseModel):
    enabled: bool = Field(True, description="Start the simulated LoRaWAN listener")
    interval: float = Field(60.0, gt=0, description="Seconds between simulated uplink rounds")
    devices: List[SimulatedDevice] = Field(default_factory=list)


def decode_lorawan_uplink(uplink: Dict[str, Any], gateway_id: str) -> Event:
    """Decode a network-server uplink into an Event"""
    dev_eui = uplink.get('devEUI')
    if not isinstance(dev_eui, str) or not dev_eui:
        raise DecodeError("Uplink without devEUI")

    try:
        raw = base64.b64decode(uplink.get('data') or '', validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 frame payload: {e}")
    data = decode_json_object(raw)

    message_type = PORT_MESSAGE_TYPES.get(uplink.get('fPort', 1))
    if message_type is None:
        raise DecodeError(f"Unsupported fPort {uplink.get('fPort')}")

    rx_info = uplink.get('rxInfo') or []
    rssi_values = [rx.get('rssi') for rx in rx_info
                   if isinstance(rx, dict) and isinstance(rx.get('rssi'), (int, float))]
    signal_strength = float(max(rssi_values)) if rssi_values else None
    source = rx_info[0].get('gatewayID') if rx_info and isinstance(rx_info[0], dict) else None

    return build_event(
        Protocol.LORAWAN,
        dev_eui,
        data,
        gateway_id,
        message_type=message_type,
        source=source,
        signal_strength=signal_strength,
    )


def simulate_uplink(device: SimulatedDevice, rng: Optional[random.Random] = None) -> Dict[str, Any]:
    rng = rng or random
    reading = {key: round(rng.uniform(low, high), 2) for key, (low, high) in device.fields.items()}
    reading['timestamp'] = time.time()
    return {
        'devEUI': device.dev_eui,
        'fPort': 1,
        'data': base64.b64encode(json.dumps(reading).encode()).decode(),
        'rxInfo': [{
            'gatewayID': 'simulated-concentrator',
            'rssi': rng.randint(-120, -60),
            'loRaSNR': round(rng.uniform(-10, 10), 1),
        }],
    }


class LoRaWANListener(ProtocolListener):
    protocol = Protocol.LORAWAN

    def __init__(self, config: Dict[str, Any], dispatcher, gateway_id: str):
        super().__init__(dispatcher, gateway_id)
        self.config = LoRaWANConfig(**config)
        self._stop_flag = asyncio.Event()

    async def handle_uplink(self, uplink: Dict[str, Any]) -> Optional[Event]:
        try:
            event = decode_lorawan_uplink(uplink, self.gateway_id)
        except DecodeError as e:
            self.drop(e, str(uplink.get('devEUI')))
            return None
        await self.emit(event)
        return event

    async def start(self) -> None:
        self._stop_flag.clear()
        self.logger.info(f"Simulating LoRaWAN uplinks for {len(self.config.devices)} devices "
                         f"every {self.config.interval}s")
        while not self._stop_flag.is_set():
            for device in self.config.devices:
                await self.handle_uplink(simulate_uplink(device))
            try:
                await asyncio.wait_for(self._stop_flag.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                pass
        self.logger.info("LoRaWAN listener stopped")

    async def stop(self) -> None:
        self._stop_flag.set()
