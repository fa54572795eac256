"""
Settlement executor.

WHAT: Atomically swap the agreed items and write the trade record
WHY: Both confirmations only express intent; inventory may have changed since
HOW: One transaction: re-check every holding, transfer each line, insert Trade rows
"""

from collections import defaultdict
from typing import Dict, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from ..core.models import Trade, TradeItem, TradeStatus, OfferedBy
from ..models.live_trade import LiveTradeSession, SettlementResult, TradeLineItem
from ..utils.exceptions import SettlementException
from ..utils.logger import get_logger
from .inventory_store import InventoryStore

logger = get_logger(__name__)


class SettlementExecutor:
    """
    Perform the transfer for a session whose both sides confirmed.

    Initiator lines move first, then target lines. Every holding is
    re-validated before the first row is written, and the transaction rolls
    back everything if any write still finds less than it needs.
    """

    def __init__(self, inventory: InventoryStore):
        self._inventory = inventory

    def execute(self, session: LiveTradeSession) -> SettlementResult:
        """
        Settle a session.

        Args:
            session: Session with both confirmation flags set

        Returns:
            SettlementResult with the new trade id, or the failure reason
        """
        initiator_id = session.initiator.user_id
        target_id = session.target.user_id

        try:
            with self._inventory.transaction() as db:
                self._verify_holdings(db, initiator_id, session.initiator_items)
                self._verify_holdings(db, target_id, session.target_items)

                for line in session.initiator_items:
                    self._inventory.transfer(db, initiator_id, target_id, line.item_id, line.quantity)
                for line in session.target_items:
                    self._inventory.transfer(db, target_id, initiator_id, line.item_id, line.quantity)

                trade = self._record_trade(db, session)
                trade_id = trade.trade_id

        except SettlementException as e:
            logger.warning(f"Settlement of session {session.id} rejected: {e.message} {e.details}")
            return SettlementResult(success=False, reason=e.message)
        except SQLAlchemyError as e:
            logger.error(f"Settlement of session {session.id} failed in storage: {e}", exc_info=True)
            return SettlementResult(success=False, reason="Trade could not be saved, please try again")

        logger.info(
            f"Settled session {session.id} as trade {trade_id}: "
            f"{len(session.initiator_items)} item(s) from user {initiator_id}, "
            f"{len(session.target_items)} item(s) from user {target_id}"
        )
        return SettlementResult(success=True, trade_id=trade_id)

    def _verify_holdings(self, db: DBSession, user_id: int, lines: Iterable[TradeLineItem]):
        """Authoritative re-check of one side, summing repeated lines of the same item."""
        for item_id, requested in _demand_by_item(lines).items():
            holding = self._inventory.lock_holding(db, user_id, item_id)
            if holding is None:
                raise SettlementException(
                    "An offered item is no longer in inventory",
                    details={"user_id": user_id, "item_id": item_id}
                )
            if not holding.is_tradeable:
                raise SettlementException(
                    f"{holding.name} is no longer tradeable",
                    details={"user_id": user_id, "item_id": item_id}
                )
            if holding.quantity < requested:
                raise SettlementException(
                    f"Not enough {holding.name} left to complete the trade",
                    details={
                        "user_id": user_id,
                        "item_id": item_id,
                        "requested": requested,
                        "available": holding.quantity
                    }
                )

    def _record_trade(self, db: DBSession, session: LiveTradeSession) -> Trade:
        trade = Trade(
            sender_id=session.initiator.user_id,
            receiver_id=session.target.user_id,
            status=TradeStatus.COMPLETED,
            is_live_trade=True,
        )
        db.add(trade)
        db.flush()

        rows = [(line, OfferedBy.SENDER) for line in session.initiator_items]
        rows += [(line, OfferedBy.RECEIVER) for line in session.target_items]
        for line, side in rows:
            db.add(TradeItem(
                trade_id=trade.trade_id,
                item_id=line.item_id,
                quantity=line.quantity,
                offered_by=side,
            ))
        db.flush()
        return trade


def _demand_by_item(lines: Iterable[TradeLineItem]) -> Dict[int, int]:
    demand: Dict[int, int] = defaultdict(int)
    for line in lines:
        demand[line.item_id] += line.quantity
    return dict(demand)
