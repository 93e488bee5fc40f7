from fastapi import APIRouter, HTTPException, Request
from typing import Dict, Optional
from ...listeners.base import build_event, decode_json_object
from ...models.event import MessageType, Protocol
from ...utils.exceptions import DecodeError, QueueFullError
from ..dependencies import HTTPListenerDependency

sensor_router = APIRouter()


'''
curl -X POST http://gateway:8080/api/sensors/dev123 -d '{"temperature": 22.5}'
-> {"status": "received"}
'''

@sensor_router.post("/sensors/{device_id}")
async def ingest_sensor_data(
    device_id: str,
    request: Request,
    listener: HTTPListenerDependency,
    message_type: Optional[str] = None,
) -> Dict[str, str]:
    source = request.client.host if request.client else None
    try:
        payload = decode_json_object(await request.body())
        event = build_event(
            Protocol.HTTP,
            device_id,
            payload,
            listener.gateway_id,
            message_type=MessageType.parse(message_type) if message_type else MessageType.SENSOR_DATA,
            source=source,
        )
    except (DecodeError, ValueError) as e:
        listener.drop(e, source)
        raise HTTPException(status_code=400, detail=str(e))

    try:
        # never wait on a full queue inside a request
        listener.dispatcher.try_submit(event)
    except QueueFullError as e:
        listener.drop(e, source)
        raise HTTPException(status_code=503, detail="Gateway busy, retry later")

    listener.received += 1
    return {"status": "received"}
