"""
Trade history queries.

WHAT: Read persisted trade records for the REST endpoints
WHY: Settled live trades are only visible through their trade records
HOW: SQLAlchemy queries with eager-loaded items, mapped to API schemas
"""

from typing import List

from sqlalchemy import or_, select
from sqlalchemy.orm import joinedload, sessionmaker

from ..core.database import session_scope
from ..core.models import Trade, TradeItem, OfferedBy
from ..models.api_schemas import TradeRecordItem, TradeRecordResponse, UserTradeResponse
from ..utils.exceptions import TradeNotFoundException


class TradeHistoryService:
    """Read-only access to trade records."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get_trade(self, trade_id: str) -> TradeRecordResponse:
        with session_scope(self._session_factory) as db:
            trade = db.execute(
                self._base_query().where(Trade.trade_id == trade_id)
            ).unique().scalar_one_or_none()
            if trade is None:
                raise TradeNotFoundException(trade_id)
            return TradeRecordResponse(**_serialize(trade))

    def list_user_trades(self, user_id: int, live_only: bool = False) -> List[UserTradeResponse]:
        """Trades the user sent or received, newest first."""
        stmt = self._base_query().where(
            or_(Trade.sender_id == user_id, Trade.receiver_id == user_id)
        )
        if live_only:
            stmt = stmt.where(Trade.is_live_trade.is_(True))
        stmt = stmt.order_by(Trade.created_at.desc())

        with session_scope(self._session_factory) as db:
            trades = db.execute(stmt).unique().scalars().all()
            return [
                UserTradeResponse(
                    **_serialize(trade),
                    type="sent" if trade.sender_id == user_id else "received",
                )
                for trade in trades
            ]

    @staticmethod
    def _base_query():
        return select(Trade).options(
            joinedload(Trade.sender),
            joinedload(Trade.receiver),
            joinedload(Trade.items).joinedload(TradeItem.item),
        )


def _serialize(trade: Trade) -> dict:
    def lines(side: OfferedBy) -> List[TradeRecordItem]:
        return [
            TradeRecordItem(
                item_id=ti.item_id,
                name=ti.item.name,
                image_url=ti.item.image_url,
                quantity=ti.quantity,
            )
            for ti in trade.items if ti.offered_by == side
        ]

    return {
        "trade_id": trade.trade_id,
        "sender_id": trade.sender_id,
        "sender": trade.sender.username,
        "receiver_id": trade.receiver_id,
        "receiver": trade.receiver.username,
        "status": trade.status.value,
        "is_live_trade": trade.is_live_trade,
        "created_at": trade.created_at.isoformat(),
        "sender_items": lines(OfferedBy.SENDER),
        "receiver_items": lines(OfferedBy.RECEIVER),
    }
