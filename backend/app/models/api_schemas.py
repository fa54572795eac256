"""
Pydantic API schemas for the REST endpoints.

WHAT: Response models for trade history, presence and health
WHY: Type-safe serialization matching frontend interfaces
HOW: Pydantic v2 models
"""

from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class TradeRecordItem(BaseModel):
    """One line of a persisted trade."""
    item_id: int
    name: str
    image_url: Optional[str] = None
    quantity: int = Field(..., ge=1)


class TradeRecordResponse(BaseModel):
    """A persisted trade with items split by side."""
    trade_id: str
    sender_id: int
    sender: str
    receiver_id: int
    receiver: str
    status: str
    is_live_trade: bool
    created_at: str
    sender_items: List[TradeRecordItem]
    receiver_items: List[TradeRecordItem]


class UserTradeResponse(TradeRecordResponse):
    """Trade as seen by one user in their history."""
    type: Literal["sent", "received"]


class UserTradeHistoryResponse(BaseModel):
    user_id: int
    total: int
    trades: List[UserTradeResponse]


class OnlineStatusResponse(BaseModel):
    user_id: int
    online: bool


class LiveTradeStats(BaseModel):
    online_users: int
    sessions: Dict[str, int]
