from fastapi import APIRouter, HTTPException
from typing import List
from ...models.device import DeviceInfo
from ..dependencies import RegistryDependency

device_router = APIRouter()


@device_router.get("/devices", response_model=List[DeviceInfo])
async def list_devices(registry: RegistryDependency) -> List[DeviceInfo]:
    return registry.list_devices()


@device_router.get("/devices/{device_id}", response_model=DeviceInfo)
async def get_device(device_id: str, registry: RegistryDependency) -> DeviceInfo:
    info = registry.get(device_id)
    if info is None:
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
    return info
