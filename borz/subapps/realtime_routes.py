import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from borz.auth import extract_bearer_token
from borz.errors import AuthError


logger = logging.getLogger(__name__)

router = APIRouter()


def _handshake_token(websocket: WebSocket) -> str:
    token = websocket.query_params.get("token")
    if token:
        return token
    return extract_bearer_token(websocket.headers.get("authorization"))


# Realtime channel: authenticate the handshake, then pump frames into the streaming coordinator
@router.websocket("/ws")
async def realtime(websocket: WebSocket):
    tokens = websocket.app.state.session_tokens
    try:
        identity = tokens.verify(_handshake_token(websocket))
    except AuthError as e:
        logger.info("socket.auth.rejected: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    manager = websocket.app.state.connection_manager
    coordinator = websocket.app.state.coordinator
    conn = manager.connect(websocket, identity.user_id)
    writer = asyncio.create_task(conn.run_writer())
    logger.info("socket.connected: conn=%s user=%s", conn.id, identity.user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                conn.emit("error", {"message": "Malformed frame"})
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                conn.emit("error", {"message": "Malformed frame"})
                continue
            await coordinator.handle_event(conn, frame["event"], frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        # In-flight sends keep running; their emits to this connection are dropped from here on
        manager.disconnect(conn)
        await writer
        logger.info("socket.disconnected: conn=%s user=%s", conn.id, identity.user_id)
