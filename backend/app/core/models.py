"""
ORM models for the trading database.

WHAT: SQLAlchemy models for users, items, inventories, trades and notifications
WHY: Settlement moves inventory rows and writes an immutable trade record
HOW: Declarative models with constraints, relationships, and indexes
"""

from datetime import datetime
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from .database import Base


def _enum_values(enum_cls):
    """Store enum values (not member names) in the database."""
    return [member.value for member in enum_cls]


class TradeStatus(str, enum.Enum):
    """Trade record status values."""
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    COMPLETED = "Completed"


class OfferedBy(str, enum.Enum):
    """Which side of a trade a line item came from."""
    SENDER = "Sender"
    RECEIVER = "Receiver"


class NotificationType(str, enum.Enum):
    """Notification categories."""
    TRADE = "Trade"
    ITEM_DROP = "ItemDrop"
    AUCTION = "Auction"
    SYSTEM = "System"


class User(Base):
    """
    User table.

    Owned by the account subsystem; the trade engine only reads usernames.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    inventory = relationship("Inventory", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"


class Item(Base):
    """
    Item catalog table.

    WHAT: Item definitions that inventory rows point at
    WHY: Name/image for display, tradeable flag for validation
    HOW: Plain catalog rows, managed outside the trade engine
    """
    __tablename__ = "items"

    item_id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    image_url = Column(String(500), nullable=True)
    is_tradeable = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<Item(item_id={self.item_id}, name={self.name})>"


class Inventory(Base):
    """
    Inventory table - quantity of one item held by one user.

    WHAT: Per-user item holdings
    WHY: Source of truth for what a participant may offer
    HOW: UNIQUE (user, item); a row with quantity <= 0 must not exist
    """
    __tablename__ = "inventories"

    inventory_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.item_id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "item_id", name="unique_user_item"),
        CheckConstraint("quantity > 0", name="check_inventory_quantity_positive"),
    )

    user = relationship("User", back_populates="inventory")
    item = relationship("Item")

    def __repr__(self):
        return f"<Inventory(user_id={self.user_id}, item_id={self.item_id}, qty={self.quantity})>"


class Trade(Base):
    """
    Trade table - immutable record of a completed exchange.

    WHAT: Audit trail for trades; live trades set is_live_trade
    WHY: Sessions are never persisted, this row is the durable outcome
    HOW: Sender is the session initiator, receiver the target
    """
    __tablename__ = "trades"

    trade_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(SQLEnum(TradeStatus, values_callable=_enum_values), nullable=False, default=TradeStatus.PENDING)
    is_live_trade = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_trades_sender", "sender_id"),
        Index("idx_trades_receiver", "receiver_id"),
    )

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])
    items = relationship("TradeItem", back_populates="trade", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Trade(trade_id={self.trade_id}, status={self.status}, live={self.is_live_trade})>"


class TradeItem(Base):
    """TradeItem table - one line of a trade record, tagged with its side."""
    __tablename__ = "trade_items"

    trade_item_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    trade_id = Column(String(36), ForeignKey("trades.trade_id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.item_id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    offered_by = Column(SQLEnum(OfferedBy, values_callable=_enum_values), nullable=False)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="check_trade_item_quantity_positive"),
    )

    trade = relationship("Trade", back_populates="items")
    item = relationship("Item")

    def __repr__(self):
        return f"<TradeItem(trade_id={self.trade_id}, item_id={self.item_id}, qty={self.quantity})>"


class Notification(Base):
    """Notification table - persisted user notifications."""
    __tablename__ = "notifications"

    notification_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(SQLEnum(NotificationType, values_callable=_enum_values), nullable=False)
    title = Column(String(200), nullable=True)
    message = Column(Text, nullable=False)
    related_id = Column(String(100), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_user", "user_id"),
    )

    def __repr__(self):
        return f"<Notification(user_id={self.user_id}, type={self.type}, read={self.is_read})>"
