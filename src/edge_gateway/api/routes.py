# src/edge_gateway/api/routes.py
from fastapi import APIRouter, HTTPException
from typing import Any, Dict
from ..utils.exceptions import StorageError
from .dependencies import DispatcherDependency, RegistryDependency, StoreDependency

health_router = APIRouter()

@health_router.get("/health")
async def get_health(
    dispatcher: DispatcherDependency,
    registry: RegistryDependency,
    store: StoreDependency,
) -> Dict[str, Any]:
    try:
        pending_retries = await store.count_retries()
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "status": "ok" if dispatcher.accepting else "shutting_down",
        "queue_depth": dispatcher.event_queue.qsize(),
        "queue_capacity": dispatcher.event_queue.maxsize,
        "processed": dispatcher.processed,
        "pending_retries": pending_retries,
        "devices": len(registry.devices),
    }
