"""
WebSocket message schemas for live trading.

WHAT: Client commands and server events exchanged over the live trade socket
WHY: Type-safe validation of inbound envelopes and consistent outbound payloads
HOW: Pydantic v2 models keyed by a "type" field; commands accept camelCase aliases
"""

from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .live_trade import Participant, TradeLineItem, SessionView


# ========== Client -> Server ==========

class ClientCommand(BaseModel):
    """Base for inbound commands."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str


class InviteCommand(ClientCommand):
    type: Literal["invite"] = "invite"
    target_user_id: int
    listing_item_id: Optional[int] = None


class AcceptCommand(ClientCommand):
    type: Literal["accept"] = "accept"
    session_id: str = Field(..., min_length=1)


class DeclineCommand(ClientCommand):
    type: Literal["decline"] = "decline"
    session_id: str = Field(..., min_length=1)


class AddItemCommand(ClientCommand):
    type: Literal["add_item"] = "add_item"
    session_id: str = Field(..., min_length=1)
    item_id: int
    quantity: int = Field(default=1, ge=1)


class RemoveItemCommand(ClientCommand):
    type: Literal["remove_item"] = "remove_item"
    session_id: str = Field(..., min_length=1)
    item_id: int


class ConfirmCommand(ClientCommand):
    type: Literal["confirm"] = "confirm"
    session_id: str = Field(..., min_length=1)


class CancelCommand(ClientCommand):
    type: Literal["cancel"] = "cancel"
    session_id: str = Field(..., min_length=1)


# ========== Server -> Client ==========

class ServerEvent(BaseModel):
    """Base for outbound events."""

    type: str

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ConnectionSuccessEvent(ServerEvent):
    type: Literal["connection_success"] = "connection_success"
    user: Participant
    message: str = "Connected to live trade service"


class InviteReceivedEvent(ServerEvent):
    type: Literal["invite_received"] = "invite_received"
    session_id: str
    from_user: Participant
    listing_item_id: Optional[int] = None


class InviteSentEvent(ServerEvent):
    type: Literal["invite_sent"] = "invite_sent"
    session_id: str
    to_user: Participant


class InviteDeclinedEvent(ServerEvent):
    type: Literal["invite_declined"] = "invite_declined"
    session_id: str
    reason: str


class SessionStartedEvent(ServerEvent):
    type: Literal["session_started"] = "session_started"
    session_id: str
    partner: Participant
    is_initiator: bool
    your_items: list[TradeLineItem] = Field(default_factory=list)
    partner_items: list[TradeLineItem] = Field(default_factory=list)
    your_confirmed: bool = False
    partner_confirmed: bool = False
    listing_item_id: Optional[int] = None


class SessionUpdateEvent(ServerEvent):
    type: Literal["session_update"] = "session_update"
    session_id: str
    your_items: list[TradeLineItem]
    partner_items: list[TradeLineItem]
    your_confirmed: bool
    partner_confirmed: bool

    @classmethod
    def from_view(cls, session_id: str, view: SessionView) -> "SessionUpdateEvent":
        return cls(session_id=session_id, **view.model_dump())


class SessionCompletedEvent(ServerEvent):
    type: Literal["session_completed"] = "session_completed"
    session_id: str
    trade_id: str
    message: str = "Trade completed successfully!"


class SessionCancelledEvent(ServerEvent):
    type: Literal["session_cancelled"] = "session_cancelled"
    session_id: str
    by_user: Optional[Participant] = None
    reason: str = "cancelled"


class SessionFailedEvent(ServerEvent):
    type: Literal["session_failed"] = "session_failed"
    session_id: str
    reason: str


class ErrorEvent(ServerEvent):
    type: Literal["error"] = "error"
    code: str
    message: str
    details: Optional[Any] = None
