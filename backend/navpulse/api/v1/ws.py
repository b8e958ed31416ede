"""
WebSocket endpoint for live market updates.

The bearer token (``?token=`` or ``Authorization`` header) is verified
before the handshake is accepted; an invalid token closes with 1008.
"""
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from navpulse.core.logging_config import get_main_logger
from navpulse.core.security import extract_bearer_token, verify_token

logger = get_main_logger()

router = APIRouter(tags=["ws"])

REFRESH_EVENT = "market:refresh"


def _identity(websocket: WebSocket):
    token = websocket.query_params.get("token") or extract_bearer_token(
        websocket.headers.get("authorization")
    )
    return verify_token(token)


@router.websocket("/ws/market")
async def market_socket(websocket: WebSocket):
    identity = _identity(websocket)
    if identity is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    pipeline = websocket.app.state.pipeline
    broadcaster = pipeline.broadcaster
    market_data = pipeline.market_data

    await websocket.accept()
    await broadcaster.connect(websocket, identity)
    try:
        await broadcaster.send(websocket, "market:status", await market_data.get_market_status())
        await broadcaster.send(websocket, "market:indices", await market_data.get_all_indices())

        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            text = frame.get("text")
            if text is None:
                # Binary frames carry nothing we understand
                continue
            try:
                message = json.loads(text)
            except ValueError:
                continue
            if isinstance(message, dict) and message.get("event") == REFRESH_EVENT:
                await broadcaster.send(websocket, "market:indices", await market_data.get_all_indices())
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)
        logger.debug(f"Subscriber {identity.get('sub')} disconnected")
