import asyncio
import random
import pytest
from edge_gateway.core.anomaly import AnomalyDetector
from edge_gateway.core.device_registry import DeviceRegistry
from edge_gateway.core.dispatcher import Dispatcher
from edge_gateway.models.event import Protocol


@pytest.mark.asyncio
async def test_upsert_creates_and_refreshes(make_event):
    registry = DeviceRegistry()
    info = await registry.upsert(make_event(device_id="dev1", timestamp=100.0,
                                            payload={"capabilities": ["temperature"]}))
    assert info.last_seen == 100.0
    assert info.is_active
    assert info.capabilities == {"temperature"}

    info = await registry.upsert(make_event(device_id="dev1", timestamp=160.0, protocol=Protocol.COAP,
                                            payload={"capabilities": ["humidity"]}))
    assert info.last_seen == 160.0
    assert info.first_seen == 100.0
    assert info.protocol is Protocol.COAP
    assert info.capabilities == {"temperature", "humidity"}
    assert info.message_count == 2


@pytest.mark.asyncio
async def test_out_of_order_event_keeps_latest_last_seen(make_event):
    registry = DeviceRegistry()
    await registry.upsert(make_event(timestamp=200.0))
    await registry.upsert(make_event(timestamp=150.0))
    assert registry.get("dev1").last_seen == 200.0


@pytest.mark.asyncio
async def test_sweep_prunes_inactive_devices(make_event):
    registry = DeviceRegistry(inactivity_threshold=3600, stale_after=None)
    await registry.upsert(make_event(device_id="old", timestamp=1000.0))
    await registry.upsert(make_event(device_id="fresh", timestamp=5000.0))

    removed = await registry.sweep(now=5000.0)

    assert removed == ["old"]
    assert registry.get("old") is None
    assert registry.get("fresh") is not None


@pytest.mark.asyncio
async def test_sweep_marks_stale_devices_inactive(make_event):
    registry = DeviceRegistry(inactivity_threshold=3600, stale_after=600)
    await registry.upsert(make_event(device_id="quiet", timestamp=1000.0))

    await registry.sweep(now=2000.0)
    assert registry.get("quiet").is_active is False

    info = await registry.upsert(make_event(device_id="quiet", timestamp=2001.0))
    assert info.is_active is True


@pytest.mark.asyncio
async def test_concurrent_devices_do_not_corrupt_each_other(make_event):
    registry = DeviceRegistry()
    events = (
        [make_event(device_id="dev-a", timestamp=100.0 + i, protocol=Protocol.MQTT) for i in range(50)]
        + [make_event(device_id="dev-b", timestamp=500.0 + i, protocol=Protocol.HTTP) for i in range(50)]
    )
    random.shuffle(events)

    await asyncio.gather(*(registry.upsert(event) for event in events))

    dev_a, dev_b = registry.get("dev-a"), registry.get("dev-b")
    assert dev_a.last_seen == 149.0
    assert dev_a.message_count == 50
    assert dev_a.protocol is Protocol.MQTT
    assert dev_b.last_seen == 549.0
    assert dev_b.message_count == 50
    assert dev_b.protocol is Protocol.HTTP


@pytest.mark.asyncio
async def test_sweep_releases_per_device_state(make_event, connector):
    registry = DeviceRegistry(inactivity_threshold=10, stale_after=None)
    detector = AnomalyDetector(warmup=1)
    Dispatcher(registry, None, None, connector, anomaly_detector=detector)

    for i in range(1000):
        event = make_event(device_id=f"minted-{i}", timestamp=0.0, payload={f"field{i}": 1.0})
        await registry.upsert(event)
        detector.score(event)
    await registry.upsert(make_event(device_id="live", timestamp=95.0))
    detector.score(make_event(device_id="live", payload={"v": 1.0}))

    removed = await registry.sweep(now=100.0)

    assert len(removed) == 1000
    assert list(registry.devices) == ["live"]
    assert list(registry._locks) == ["live"]
    assert list(detector._stats) == ["live"]


@pytest.mark.asyncio
async def test_upsert_racing_a_prune_is_not_lost(make_event):
    registry = DeviceRegistry(inactivity_threshold=10, stale_after=None)
    await registry.upsert(make_event(device_id="dev1", timestamp=0.0))

    sweep = asyncio.create_task(registry.sweep(now=100.0))
    upsert = asyncio.create_task(registry.upsert(make_event(device_id="dev1", timestamp=100.0)))
    await asyncio.gather(sweep, upsert)

    # whichever ran first, the fresh event leaves the device registered
    assert registry.get("dev1").last_seen == 100.0
    assert "dev1" in registry._locks
