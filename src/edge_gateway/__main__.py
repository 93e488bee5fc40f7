# src/edge_gateway/__main__.py
import asyncio
import shutil
import signal
import sys
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
import traceback

from edge_gateway.core.anomaly import AnomalyDetector
from edge_gateway.core.cloud_connector import CloudConnector, CloudConfig
from edge_gateway.core.device_registry import DeviceRegistry
from edge_gateway.core.dispatcher import Dispatcher, DispatcherConfig
from edge_gateway.core.retry_worker import RetryWorker, RetryConfig
from edge_gateway.core.rule_engine import RuleEngine
from edge_gateway.listeners.base import ProtocolListener
from edge_gateway.listeners.coap import CoAPListener
from edge_gateway.listeners.http import HTTPListener
from edge_gateway.listeners.lorawan import LoRaWANListener
from edge_gateway.listeners.mqtt import MQTTListener
from edge_gateway.storage.local_store import LocalStore, StoreConfig, UnavailableStore
from edge_gateway.utils.logging import setup_logging, get_logger
from edge_gateway.utils.exceptions import ConfigurationError, InitializationError, StorageError


class AppState:
    """Holds application state and components"""
    def __init__(self):
        self.store: Optional[LocalStore] = None
        self.registry: Optional[DeviceRegistry] = None
        self.rule_engine: Optional[RuleEngine] = None
        self.connector: Optional[CloudConnector] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.retry_worker: Optional[RetryWorker] = None
        self.listeners: List[ProtocolListener] = []


class ConfigManager:
    """Manages configuration loading and validation"""

    required_sections = ['gateway', 'listeners', 'cloud', 'storage', 'logging']

    @staticmethod
    def load_config(config_path: str) -> Dict[str, Any]:
        """Load and validate configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        if not isinstance(config, dict):
            raise ConfigurationError("Configuration file is empty or incorrectly formatted")

        # Validate required configuration sections
        missing_sections = [section for section in ConfigManager.required_sections if section not in config]
        if missing_sections:
            raise ConfigurationError(f"Missing required configuration sections: {', '.join(missing_sections)}")

        if not config['gateway'] or not config['gateway'].get('id'):
            raise ConfigurationError("gateway.id is required")

        return config


class EdgeGatewayApp:
    """Main Edge Gateway application class"""

    listener_classes = {
        'mqtt': MQTTListener,
        'coap': CoAPListener,
        'lorawan': LoRaWANListener,
    }

    def __init__(self, config: Dict[str, Any]):
        self.logger = get_logger("Main App")
        self.config = config
        self.gateway_id = config['gateway']['id']
        self.shutdown_event = asyncio.Event()
        self.app_state = AppState()
        self._listener_tasks: List[asyncio.Task] = []
        self._background_tasks: List[asyncio.Task] = []

    @classmethod
    def from_file(cls, config_path: str) -> 'EdgeGatewayApp':
        config = ConfigManager.load_config(config_path)
        setup_logging(config.get('logging') or {})
        return cls(config)

    async def initialize_components(self) -> None:
        """Initialize store, registry, rules, connector and dispatcher"""
        state = self.app_state
        try:
            state.store = LocalStore(StoreConfig(**self.config['storage']))
            try:
                await state.store.initialize()
            except StorageError as e:
                self.logger.critical(f"Running without local persistence: {e}")
                state.store = UnavailableStore(str(e))

            registry_config = self.config.get('registry') or {}
            state.registry = DeviceRegistry(
                inactivity_threshold=registry_config.get('inactivity_threshold', 3600),
                stale_after=registry_config.get('stale_after', 600),
                sweep_interval=registry_config.get('sweep_interval', 300),
            )

            state.rule_engine = RuleEngine.from_config(self.config.get('rules'))

            state.connector = CloudConnector(CloudConfig(**self.config['cloud']))
            await state.connector.connect()

            anomaly_config = self.config.get('anomaly') or {}
            detector = None
            if anomaly_config.get('enabled', False):
                detector = AnomalyDetector(
                    warmup=anomaly_config.get('warmup', 10),
                    max_fields=anomaly_config.get('max_fields', 32),
                )

            state.dispatcher = Dispatcher(
                state.registry,
                state.rule_engine,
                state.store,
                state.connector,
                anomaly_detector=detector,
                config=DispatcherConfig(**(self.config.get('dispatcher') or {})),
            )
            state.dispatcher.subscribe('storage_failure', self._on_storage_failure)

            state.retry_worker = RetryWorker(
                state.store,
                state.connector,
                RetryConfig(**(self.config.get('retry') or {})),
            )
            self.logger.info("Core components initialized successfully")
        except Exception as e:
            raise InitializationError(f"Failed to initialize components: {traceback.format_exc()}")

    def create_listeners(self) -> List[ProtocolListener]:
        """Instantiate every enabled listener; a bad section only disables that listener"""
        state = self.app_state
        listeners_config = self.config['listeners'] or {}
        for name, section in listeners_config.items():
            section = section or {}
            if not section.get('enabled', True):
                self.logger.info(f"Listener {name} disabled")
                continue
            try:
                if name == 'http':
                    listener = HTTPListener(section, state.dispatcher, self.gateway_id, app_state=state)
                elif name in self.listener_classes:
                    listener = self.listener_classes[name](section, state.dispatcher, self.gateway_id)
                else:
                    self.logger.warning(f"Unknown listener type: {name}")
                    continue
            except Exception as e:
                self.logger.error(f"Invalid configuration for listener {name}: {e}")
                continue

            if isinstance(listener, MQTTListener):
                state.dispatcher.subscribe('alert', listener.publish_alert)
            state.listeners.append(listener)
        return state.listeners

    async def _run_listener(self, listener: ProtocolListener) -> None:
        """Run one listener; its failure never affects the others"""
        try:
            await listener.start()
        except asyncio.CancelledError:
            raise
        except InitializationError as e:
            self.logger.error(f"{listener.name} listener failed to start: {e}")
        except Exception as e:
            self.logger.error(f"{listener.name} listener crashed: {traceback.format_exc()}")

    async def _on_storage_failure(self, name: str, data: Dict[str, Any]) -> None:
        self.logger.critical(f"Local store is failing repeatedly: {data.get('error')}")

    async def start(self) -> None:
        state = self.app_state
        state.dispatcher.start()
        self._background_tasks = [
            asyncio.create_task(state.retry_worker.run()),
            asyncio.create_task(state.registry.run_sweeper()),
        ]
        for listener in self.create_listeners():
            self._listener_tasks.append(asyncio.create_task(self._run_listener(listener)))
        self.logger.info(f"Gateway {self.gateway_id} running with listeners: "
                         f"{', '.join(l.name for l in state.listeners) or 'none'}")

    async def shutdown(self) -> None:
        """Gracefully shutdown all components"""
        if self.shutdown_event.is_set():
            return
        self.logger.info("Initiating shutdown sequence")
        state = self.app_state
        try:
            # Stop intake first
            for listener in state.listeners:
                await listener.stop()
            if self._listener_tasks:
                _, pending = await asyncio.wait(self._listener_tasks, timeout=5)
                for task in pending:
                    task.cancel()

            if state.dispatcher:
                await state.dispatcher.shutdown()
            if state.retry_worker:
                await state.retry_worker.stop()
            if state.registry:
                await state.registry.stop()
            for task in self._background_tasks:
                task.cancel()
            if self._background_tasks:
                await asyncio.gather(*self._background_tasks, return_exceptions=True)

            if state.connector:
                await state.connector.disconnect()
            if state.store:
                await state.store.close()
            self.logger.info("Shutdown completed successfully")
        except Exception as e:
            self.logger.error(f"Error during shutdown: {traceback.format_exc()}")
        finally:
            self.shutdown_event.set()

    def handle_signals(self) -> None:
        """Set up signal handlers for graceful shutdown"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}")
            asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)

    async def run(self) -> int:
        """Main application entry point"""
        try:
            self.handle_signals()
            await self.initialize_components()
            await self.start()
            await self.shutdown_event.wait()
            return 0
        except InitializationError as e:
            self.logger.error(f"Initialization error: {e}")
            await self.shutdown()
            return 1


DEFAULT_CONFIG_TEMPLATE = Path(__file__).resolve().parent / "config" / "default.yml"


def create_default_config(config_path: Path):
    """Create default configuration file from the packaged template if it doesn't exist"""
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(DEFAULT_CONFIG_TEMPLATE, config_path)
        print(f"Created default config at {config_path}")


def main():
    """Application entry point"""
    config_path = Path(sys.argv[1] if len(sys.argv) > 1 else "src/config/default.yml")
    create_default_config(config_path)

    try:
        app = EdgeGatewayApp.from_file(str(config_path))
    except ConfigurationError as e:
        get_logger("Main App").error(f"Configuration error: {e}")
        sys.exit(1)
    sys.exit(asyncio.run(app.run()))


if __name__ == "__main__":
    main()
