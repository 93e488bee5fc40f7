# src/edge_gateway/api/dependencies.py
from fastapi import Request
from typing import Annotated
from fastapi import Depends
from ..core.device_registry import DeviceRegistry
from ..core.dispatcher import Dispatcher
from ..storage.local_store import LocalStore

async def get_http_listener(request: Request):
    return request.app.state.http_listener

async def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.components.dispatcher

async def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.components.registry

async def get_store(request: Request) -> LocalStore:
    return request.app.state.components.store

# Type definitions for dependencies
HTTPListenerDependency = Annotated[object, Depends(get_http_listener)]
DispatcherDependency = Annotated[Dispatcher, Depends(get_dispatcher)]
RegistryDependency = Annotated[DeviceRegistry, Depends(get_registry)]
StoreDependency = Annotated[LocalStore, Depends(get_store)]
