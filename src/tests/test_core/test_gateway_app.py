import asyncio
import pytest
import yaml
from edge_gateway.__main__ import (
    DEFAULT_CONFIG_TEMPLATE, ConfigManager, EdgeGatewayApp, create_default_config,
)
from edge_gateway.listeners.base import ProtocolListener
from edge_gateway.listeners.coap import CoAPListener
from edge_gateway.listeners.http import HTTPListener
from edge_gateway.listeners.mqtt import MQTTListener
from edge_gateway.models.event import Protocol
from edge_gateway.storage.local_store import LocalStore, UnavailableStore
from edge_gateway.utils.exceptions import ConfigurationError, InitializationError


def write_config(tmp_path, config):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(config))
    return str(path)


@pytest.fixture
def config(tmp_path):
    with open(DEFAULT_CONFIG_TEMPLATE) as f:
        config = yaml.safe_load(f)
    config['storage']['path'] = str(tmp_path / "gateway.db")
    config['logging']['file'] = None
    config['cloud']['endpoint'] = "http://127.0.0.1:1"
    return config


def test_default_config_loads():
    config = ConfigManager.load_config(str(DEFAULT_CONFIG_TEMPLATE))
    assert config['gateway']['id'] == "edge-gw-01"
    assert {r['name'] for r in config['rules']} >= {"overheat", "device-alerts"}


def test_default_config_is_created_from_template(tmp_path):
    path = tmp_path / "conf" / "gateway.yml"
    create_default_config(path)
    assert path.read_text() == DEFAULT_CONFIG_TEMPLATE.read_text()

    path.write_text("gateway: {id: custom}")
    create_default_config(path)
    assert path.read_text() == "gateway: {id: custom}"


def test_missing_file_is_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        ConfigManager.load_config(str(tmp_path / "nope.yml"))


def test_missing_sections_are_reported(tmp_path):
    path = write_config(tmp_path, {"gateway": {"id": "gw"}, "listeners": {}})
    with pytest.raises(ConfigurationError, match="cloud, storage, logging"):
        ConfigManager.load_config(path)


def test_gateway_id_is_required(tmp_path, config):
    config['gateway'] = {}
    with pytest.raises(ConfigurationError, match="gateway.id"):
        ConfigManager.load_config(write_config(tmp_path, config))


def test_unparseable_yaml(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("gateway: [unclosed")
    with pytest.raises(ConfigurationError):
        ConfigManager.load_config(str(path))


@pytest.mark.asyncio
async def test_components_and_listeners_are_wired(config):
    config['listeners']['bogus'] = {"enabled": True}
    app = EdgeGatewayApp(config)
    await app.initialize_components()
    try:
        state = app.app_state
        assert isinstance(state.store, LocalStore)
        assert len(state.rule_engine.rules) == 4

        listeners = app.create_listeners()
        kinds = {type(listener) for listener in listeners}
        # lorawan is disabled and the unknown section is skipped
        assert kinds == {MQTTListener, CoAPListener, HTTPListener}

        http = next(l for l in listeners if isinstance(l, HTTPListener))
        assert http.app_state is state
        mqtt = next(l for l in listeners if isinstance(l, MQTTListener))
        assert mqtt.publish_alert in state.dispatcher.subscribers['alert']
    finally:
        await app.shutdown()
    assert app.shutdown_event.is_set()


@pytest.mark.asyncio
async def test_unopenable_store_degrades_to_unavailable(config, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    config['storage']['path'] = str(blocker / "gateway.db")
    app = EdgeGatewayApp(config)
    await app.initialize_components()
    try:
        assert isinstance(app.app_state.store, UnavailableStore)
        assert app.app_state.dispatcher is not None
    finally:
        await app.shutdown()


class CrashingListener(ProtocolListener):
    protocol = Protocol.COAP

    def __init__(self, config, dispatcher, gateway_id):
        super().__init__(dispatcher, gateway_id)

    async def start(self):
        raise InitializationError("address already in use")

    async def stop(self):
        pass


class SteadyListener(ProtocolListener):
    protocol = Protocol.LORAWAN

    def __init__(self, config, dispatcher, gateway_id):
        super().__init__(dispatcher, gateway_id)
        self.started = asyncio.Event()
        self._stopped = asyncio.Event()

    async def start(self):
        self.started.set()
        await self._stopped.wait()

    async def stop(self):
        self._stopped.set()


@pytest.mark.asyncio
async def test_failing_listener_leaves_others_running(config, make_event):
    config['listeners'] = {'coap': {}, 'lorawan': {}}
    app = EdgeGatewayApp(config)
    app.listener_classes = {'coap': CrashingListener, 'lorawan': SteadyListener}
    await app.initialize_components()
    try:
        await app.start()
        crashing_task, steady_task = app._listener_tasks
        steady = app.app_state.listeners[1]

        await asyncio.wait_for(steady.started.wait(), timeout=5)
        await asyncio.wait({crashing_task}, timeout=5)

        assert crashing_task.done() and crashing_task.exception() is None
        assert not steady_task.done()
        await steady.emit(make_event(device_id="still-flowing"))
        assert steady.received == 1
    finally:
        await app.shutdown()
    assert steady_task.done()
