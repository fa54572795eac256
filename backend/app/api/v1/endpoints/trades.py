"""
Trade history endpoints.

WHAT: Read persisted trade records
WHY: Completed live trades must be visible after the session is gone
HOW: FastAPI router over TradeHistoryService; errors go through the global handlers
"""

from fastapi import APIRouter, Depends

from ....models.api_schemas import TradeRecordResponse, UserTradeHistoryResponse
from ....services.trade_history import TradeHistoryService
from ....utils.logger import get_logger
from ..deps import get_trade_history

logger = get_logger(__name__)

router = APIRouter()


@router.get("/users/{user_id}/trades", response_model=UserTradeHistoryResponse)
async def list_user_trades(
    user_id: int,
    live_only: bool = False,
    history: TradeHistoryService = Depends(get_trade_history),
):
    """
    Get a user's trade history.

    WHAT: Trades the user sent or received, newest first
    WHY: Inventory page shows where items came from
    HOW: Optional live_only filter on is_live_trade
    """
    trades = history.list_user_trades(user_id, live_only=live_only)
    logger.debug(f"Fetched {len(trades)} trades for user {user_id} (live_only={live_only})")
    return UserTradeHistoryResponse(user_id=user_id, total=len(trades), trades=trades)


@router.get("/trades/{trade_id}", response_model=TradeRecordResponse)
async def get_trade(trade_id: str, history: TradeHistoryService = Depends(get_trade_history)):
    """Get one trade record. Raises TradeNotFoundException (404)."""
    return history.get_trade(trade_id)
