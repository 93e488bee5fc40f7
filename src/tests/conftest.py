import time
import pytest
import pytest_asyncio
from edge_gateway.models.event import Event, EventMetadata, MessageType, Protocol
from edge_gateway.storage.local_store import LocalStore, StoreConfig


class FakeConnector:
    """Stands in for the cloud connector; records what it was asked to send"""
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    async def send(self, event) -> bool:
        self.sent.append(event)
        return self.succeed


@pytest.fixture
def make_event():
    def _make_event(device_id="dev1", payload=None, message_type=MessageType.SENSOR_DATA,
                    protocol=Protocol.MQTT, timestamp=None):
        return Event(
            device_id=device_id,
            timestamp=time.time() if timestamp is None else timestamp,
            message_type=message_type,
            payload={"temperature": 22.5} if payload is None else payload,
            metadata=EventMetadata(protocol=protocol, source="test", gateway_id="gw-test"),
        )
    return _make_event


@pytest.fixture
def connector():
    return FakeConnector()


@pytest_asyncio.fixture
async def store(tmp_path):
    local_store = LocalStore(StoreConfig(path=str(tmp_path / "gateway.db"), pool_size=2))
    await local_store.initialize(start_cleanup=False)
    yield local_store
    await local_store.close()
