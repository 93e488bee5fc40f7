import asyncio
import base64
import json
import time
import pytest
import aiocoap
from edge_gateway.core.device_registry import DeviceRegistry
from edge_gateway.core.dispatcher import Dispatcher, DispatcherConfig
from edge_gateway.core.retry_worker import RetryWorker
from edge_gateway.core.rule_engine import RuleEngine
from edge_gateway.listeners.coap import CoAPListener, SensorsResource, decode_coap_request
from edge_gateway.listeners.lorawan import (
    LoRaWANListener, SimulatedDevice, decode_lorawan_uplink, simulate_uplink,
)
from edge_gateway.listeners.mqtt import MQTTListener, decode_mqtt_message
from edge_gateway.models.event import Event, EventMetadata, MessageType, Protocol
from edge_gateway.utils.exceptions import DecodeError


@pytest.fixture
def dispatcher(connector):
    return Dispatcher(DeviceRegistry(), RuleEngine(), None, connector, config=DispatcherConfig(queue_size=10))


@pytest.mark.parametrize("topic,payload,expected_type", [
    ("devices/thermo-1/sensors", {"temperature": 21.3}, MessageType.SENSOR_DATA),
    ("devices/smoke-2/alerts", {"smoke": True}, MessageType.ALERT),
    ("devices/meter-9/heartbeat", {}, MessageType.HEARTBEAT),
])
def test_mqtt_decode(topic, payload, expected_type):
    event = decode_mqtt_message(topic, json.dumps(payload).encode(), "gw-1")
    assert event.device_id == topic.split("/")[1]
    assert event.message_type is expected_type
    assert event.metadata.protocol is Protocol.MQTT
    assert event.metadata.source == topic
    assert event.metadata.gateway_id == "gw-1"
    assert event.payload == payload


def test_mqtt_device_timestamp_is_used():
    event = decode_mqtt_message("devices/d/sensors", b'{"timestamp": 1700000000, "v": 1}', "gw")
    assert event.timestamp == 1700000000.0
    assert event.payload == {"v": 1}


@pytest.mark.parametrize("topic,payload", [
    ("devices/d/sensors", b"{not json"),
    ("devices/d/sensors", b"[1, 2]"),
    ("devices//sensors", b"{}"),
    ("devices/d/unknown", b"{}"),
    ("other/d/sensors", b"{}"),
    ("devices/d/sensors", b"\xff\xfe"),
])
def test_mqtt_decode_errors(topic, payload):
    with pytest.raises(DecodeError):
        decode_mqtt_message(topic, payload, "gw")


@pytest.mark.parametrize("raw_timestamp", [b"NaN", b"Infinity", b"-Infinity", b"1" + b"0" * 400])
def test_non_finite_device_timestamp_uses_gateway_clock(raw_timestamp):
    before = time.time()
    payload = b'{"timestamp": ' + raw_timestamp + b', "v": 1}'
    event = decode_mqtt_message("devices/d1/sensors", payload, "gw")
    assert before <= event.timestamp <= time.time()
    assert event.payload == {"v": 1}


def test_event_rejects_non_finite_timestamp():
    with pytest.raises(ValueError):
        Event(device_id="d1", timestamp=float("nan"), message_type=MessageType.SENSOR_DATA,
              metadata=EventMetadata(protocol=Protocol.MQTT))


@pytest.mark.asyncio
async def test_event_with_bad_device_timestamp_is_retried(store, connector):
    event = decode_mqtt_message("devices/d1/sensors", b'{"timestamp": NaN, "v": 1}', "gw")
    await store.store_for_retry(event)

    assert await RetryWorker(store, connector).run_once() == 1
    assert await store.count_retries() == 0


@pytest.mark.asyncio
async def test_mqtt_listener_drops_malformed_and_enqueues_valid(dispatcher):
    listener = MQTTListener({}, dispatcher, "gw-1")

    assert await listener.handle_message("devices/d1/sensors", b"garbage") is None
    event = await listener.handle_message("devices/d1/sensors", b'{"temperature": 20}')

    assert listener.dropped == 1
    assert listener.received == 1
    assert dispatcher.event_queue.get_nowait() == event


def test_coap_decode_from_body_and_query():
    event = decode_coap_request(b'{"device_id": "soil-7", "moisture": 0.31}', None, "10.0.0.5", "gw")
    assert event.device_id == "soil-7"
    assert event.metadata.protocol is Protocol.COAP
    assert event.payload == {"moisture": 0.31}

    event = decode_coap_request(b'{"moisture": 0.2, "message_type": "alert"}', "device_id=soil-8", None, "gw")
    assert event.device_id == "soil-8"
    assert event.message_type is MessageType.ALERT


@pytest.mark.parametrize("payload", [b'{"moisture": 0.2}', b'{"device_id": ""}', b"nope"])
def test_coap_decode_errors(payload):
    with pytest.raises(DecodeError):
        decode_coap_request(payload, None, None, "gw")


@pytest.mark.asyncio
async def test_coap_resource_acknowledges(dispatcher):
    listener = CoAPListener({}, dispatcher, "gw-1")
    resource = SensorsResource(listener)

    request = aiocoap.Message(code=aiocoap.POST, payload=b'{"device_id": "soil-7", "moisture": 0.31}')
    response = await resource.render_post(request)
    assert response.code == aiocoap.CHANGED
    assert json.loads(response.payload) == {"status": "received"}
    assert dispatcher.event_queue.get_nowait().device_id == "soil-7"

    bad = aiocoap.Message(code=aiocoap.POST, payload=b"{broken")
    response = await resource.render_post(bad)
    assert response.code == aiocoap.BAD_REQUEST
    assert dispatcher.event_queue.empty()


def test_lorawan_decode():
    uplink = {
        "devEUI": "70b3d57ed0001234",
        "fPort": 2,
        "data": base64.b64encode(b'{"battery": 3.1}').decode(),
        "rxInfo": [{"gatewayID": "conc-1", "rssi": -97}, {"gatewayID": "conc-2", "rssi": -80}],
    }
    event = decode_lorawan_uplink(uplink, "gw")
    assert event.device_id == "70b3d57ed0001234"
    assert event.message_type is MessageType.ALERT
    assert event.metadata.protocol is Protocol.LORAWAN
    assert event.metadata.signal_strength == -80.0
    assert event.metadata.source == "conc-1"
    assert event.payload == {"battery": 3.1}


@pytest.mark.parametrize("uplink", [
    {"data": base64.b64encode(b"{}").decode()},
    {"devEUI": "x", "data": "%%%not-base64"},
    {"devEUI": "x", "data": base64.b64encode(b"[]").decode()},
    {"devEUI": "x", "fPort": 99, "data": base64.b64encode(b"{}").decode()},
])
def test_lorawan_decode_errors(uplink):
    with pytest.raises(DecodeError):
        decode_lorawan_uplink(uplink, "gw")


@pytest.mark.asyncio
async def test_simulated_uplinks_flow_through_decoder(dispatcher):
    device = SimulatedDevice(dev_eui="sim-1", fields={"temperature": [10.0, 12.0]})
    listener = LoRaWANListener({"devices": [device.model_dump()]}, dispatcher, "gw")

    event = await listener.handle_uplink(simulate_uplink(device))

    assert event.device_id == "sim-1"
    assert 10.0 <= event.payload["temperature"] <= 12.0
    assert -120 <= event.metadata.signal_strength <= -60


@pytest.mark.asyncio
async def test_coap_resource_unavailable_while_shutting_down(dispatcher):
    resource = SensorsResource(CoAPListener({}, dispatcher, "gw-1"))
    dispatcher.accepting = False

    request = aiocoap.Message(code=aiocoap.POST, payload=b'{"device_id": "soil-7", "moisture": 0.31}')
    response = await resource.render_post(request)

    assert response.code == aiocoap.SERVICE_UNAVAILABLE
    assert dispatcher.event_queue.empty()


@pytest.mark.asyncio
async def test_coap_resource_waits_for_room_in_a_full_queue(connector):
    dispatcher = Dispatcher(DeviceRegistry(), RuleEngine(), None, connector, config=DispatcherConfig(queue_size=1))
    resource = SensorsResource(CoAPListener({}, dispatcher, "gw-1"))
    await resource.render_post(aiocoap.Message(code=aiocoap.POST, payload=b'{"device_id": "a"}'))

    pending = asyncio.ensure_future(
        resource.render_post(aiocoap.Message(code=aiocoap.POST, payload=b'{"device_id": "b"}'))
    )
    await asyncio.sleep(0.05)
    assert not pending.done()

    dispatcher.event_queue.get_nowait()
    response = await asyncio.wait_for(pending, timeout=5)
    assert response.code == aiocoap.CHANGED
    assert dispatcher.event_queue.get_nowait().device_id == "b"
