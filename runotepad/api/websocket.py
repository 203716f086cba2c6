import logging

from fastapi import APIRouter, WebSocket, status

from ..auth import require_token
from ..errors import AuthRejected
from ..gateway import Connection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def terminal_ws(websocket: WebSocket):
    """Multiplexed terminal sessions over one persistent connection."""
    state = websocket.app.state
    peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"

    try:
        require_token(state.config.token, websocket.query_params, websocket.headers)
    except AuthRejected as exc:
        # Closing before accept rejects the upgrade itself (HTTP 403).
        logger.warning("Rejected websocket from %s: %s", peer, exc)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info("WebSocket connection established from %s", peer)

    async def safe_close() -> None:
        try:
            await websocket.close()
        except Exception:
            pass

    try:
        await Connection(websocket, registry=state.registry, config=state.config).run()
    finally:
        await safe_close()
        logger.info("WebSocket connection from %s ended", peer)
