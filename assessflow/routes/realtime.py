from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from assessflow.errors import ApiError
from assessflow.notifications import AsyncQueueSession
from assessflow.security import DEFAULT_USER_ID, validate_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# application close codes mirroring HTTP 401
WS_CLOSE_UNAUTHORIZED = 4401


async def _pump(websocket: WebSocket, session: AsyncQueueSession) -> None:
    while True:
        event = await session.queue.get()
        await websocket.send_json(event)


async def _read(websocket: WebSocket) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(frame, dict) and frame.get("type") == "ping":
            await websocket.send_json({"type": "pong"})


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: str | None = Query(default=None)):
    security_cfg = websocket.app.state.security_cfg
    if security_cfg.enabled:
        try:
            user_id = validate_token(token or "", cfg=security_cfg).user_id
        except ApiError as exc:
            logger.info("notification_socket_rejected reason=%s", exc.message)
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=exc.message)
            return
    else:
        user_id = websocket.headers.get("x-user-id") or DEFAULT_USER_ID

    await websocket.accept()
    hub = websocket.app.state.hub
    session = AsyncQueueSession(asyncio.get_running_loop())
    hub.register(user_id, session)
    await websocket.send_json({"type": "authenticated", "user_id": user_id})

    tasks = {
        asyncio.create_task(_pump(websocket, session)),
        asyncio.create_task(_read(websocket)),
    }
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("notification_socket_error user_id=%s error=%s", user_id, type(exc).__name__)
    finally:
        hub.unregister(user_id, session)
        logger.info("notification_session_closed user_id=%s", user_id)
