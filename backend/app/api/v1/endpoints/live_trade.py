"""
Live trade WebSocket endpoint.

WHAT: Persistent bidirectional connection per logged-in user
WHY: Both participants must see every change to the offer as it happens
HOW: Accept socket, register connection, feed each text frame to the dispatcher,
     treat disconnect as an implicit cancel
"""

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ....models.api_schemas import OnlineStatusResponse, LiveTradeStats
from ....services.connection_registry import ClientConnection
from ....services.negotiation_engine import LiveTradeEngine
from ....utils.logger import get_logger
from ..deps import get_live_trade_engine

logger = get_logger(__name__)

router = APIRouter()


@router.websocket("/live-trade/ws")
async def live_trade_socket(
    websocket: WebSocket,
    user_id: int = Query(...),
    username: str = Query(..., min_length=1, max_length=100),
):
    """
    Live trade socket.

    Identity comes from the query string and is assumed to be verified by the
    gateway in front of this service.
    """
    engine: LiveTradeEngine = websocket.app.state.live_trade_engine
    dispatcher = websocket.app.state.live_trade_dispatcher

    await websocket.accept()
    connection = ClientConnection(user_id=user_id, username=username, transport=websocket)
    await engine.connect(connection)

    try:
        while True:
            raw = await websocket.receive_text()
            await dispatcher.dispatch_raw(connection, raw)
    except WebSocketDisconnect as e:
        logger.info(f"Live trade socket closed for user {user_id} (code={e.code})")
    finally:
        cancelled = await engine.handle_disconnect(connection)
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} trade(s) after user {user_id} disconnected")


@router.get("/live-trade/online/{user_id}", response_model=OnlineStatusResponse)
async def user_online_status(user_id: int, engine: LiveTradeEngine = Depends(get_live_trade_engine)):
    """Whether a user can currently receive a live trade invite."""
    return OnlineStatusResponse(user_id=user_id, online=engine.registry.is_online(user_id))


@router.get("/live-trade/stats", response_model=LiveTradeStats)
async def live_trade_stats(engine: LiveTradeEngine = Depends(get_live_trade_engine)):
    return LiveTradeStats(**engine.stats())
