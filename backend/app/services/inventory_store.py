"""
Inventory store.

WHAT: Read a user's holding of an item; move quantities inside a transaction
WHY: Advisory checks at add time, authoritative transfers at settlement
HOW: SQLAlchemy session factory injected; conditional single-statement writes
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from pydantic import BaseModel
from sqlalchemy import select, update, delete
from sqlalchemy.orm import Session as DBSession, sessionmaker

from ..core.database import session_scope
from ..core.models import Inventory, Item
from ..utils.exceptions import SettlementException
from ..utils.logger import get_logger

logger = get_logger(__name__)


class Holding(BaseModel):
    """A user's current quantity of one item, with catalog details."""

    user_id: int
    item_id: int
    name: str
    image_url: Optional[str] = None
    quantity: int
    is_tradeable: bool


class InventoryStore:
    """
    Data access for inventory rows.

    Reads open their own short session; writes take the caller's session so
    they join the settlement transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[DBSession]:
        """All-or-nothing scope: commit on success, roll back on any error."""
        with session_scope(self._session_factory) as db:
            yield db

    def get_holding(self, user_id: int, item_id: int) -> Optional[Holding]:
        """Current holding, or None if the user has no row for the item."""
        with self.transaction() as db:
            return self._load_holding(db, user_id, item_id)

    def get_quantity(self, user_id: int, item_id: int) -> int:
        holding = self.get_holding(user_id, item_id)
        return holding.quantity if holding else 0

    def lock_holding(self, db: DBSession, user_id: int, item_id: int) -> Optional[Holding]:
        """Load a holding inside a transaction, row-locked where the dialect supports it."""
        return self._load_holding(db, user_id, item_id, for_update=True)

    def _load_holding(
        self,
        db: DBSession,
        user_id: int,
        item_id: int,
        for_update: bool = False
    ) -> Optional[Holding]:
        stmt = (
            select(Inventory, Item)
            .join(Item, Item.item_id == Inventory.item_id)
            .where(Inventory.user_id == user_id, Inventory.item_id == item_id)
        )
        if for_update:
            stmt = stmt.with_for_update(of=Inventory)

        row = db.execute(stmt).first()
        if row is None:
            return None

        inventory, item = row
        return Holding(
            user_id=user_id,
            item_id=item_id,
            name=item.name,
            image_url=item.image_url,
            quantity=inventory.quantity,
            is_tradeable=item.is_tradeable,
        )

    def withdraw(self, db: DBSession, user_id: int, item_id: int, quantity: int):
        """
        Take `quantity` of an item from a user.

        Deletes the row when it would reach zero. Each write is conditional on
        the current quantity, so a concurrent writer that drained the row makes
        the statement match nothing.

        Raises:
            SettlementException: the user holds less than `quantity`
        """
        deleted = db.execute(
            delete(Inventory).where(
                Inventory.user_id == user_id,
                Inventory.item_id == item_id,
                Inventory.quantity == quantity,
            )
        )
        if deleted.rowcount == 1:
            return

        updated = db.execute(
            update(Inventory)
            .where(
                Inventory.user_id == user_id,
                Inventory.item_id == item_id,
                Inventory.quantity > quantity,
            )
            .values(quantity=Inventory.quantity - quantity)
        )
        if updated.rowcount != 1:
            raise SettlementException(
                "Insufficient quantity at settlement",
                details={"user_id": user_id, "item_id": item_id, "requested": quantity}
            )

    def deposit(self, db: DBSession, user_id: int, item_id: int, quantity: int):
        """Give `quantity` of an item to a user, creating the row if needed."""
        updated = db.execute(
            update(Inventory)
            .where(Inventory.user_id == user_id, Inventory.item_id == item_id)
            .values(quantity=Inventory.quantity + quantity)
        )
        if updated.rowcount == 0:
            db.add(Inventory(user_id=user_id, item_id=item_id, quantity=quantity))
            db.flush()

    def transfer(self, db: DBSession, from_user_id: int, to_user_id: int, item_id: int, quantity: int):
        self.withdraw(db, from_user_id, item_id, quantity)
        self.deposit(db, to_user_id, item_id, quantity)
        logger.debug(f"Moved {quantity} x item {item_id} from user {from_user_id} to user {to_user_id}")
