"""
Live session endpoint. The client authenticates with its first frame; after that the
socket only carries server-pushed events until either side disconnects.
"""
import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from mandados.errors import AuthenticationError
from mandados.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])

AUTH_FAILED_CLOSE_CODE = 4401


@router.websocket("/ws")
async def live_session(websocket: WebSocket, services: Services = Depends(get_services)) -> None:
    await websocket.accept()
    try:
        frame = json.loads(await websocket.receive_text())
    except WebSocketDisconnect:
        return
    except ValueError:
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return

    if not isinstance(frame, dict) or frame.get("type") != "auth" or not isinstance(frame.get("token"), str):
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return
    try:
        caller = await services.authenticator.authenticate(frame.get("token"))
    except AuthenticationError as e:
        logger.info("Live session rejected: %s", e.detail)
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return

    await services.registry.register(
        websocket,
        caller,
        greeting={"type": "auth_ok", "identity": caller.identity, "role": caller.role.value},
    )
    try:
        while True:
            # nothing is expected from the client after auth; keep reading to notice disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await services.registry.unregister(websocket)
