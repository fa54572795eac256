"""
Live trade domain models.

WHAT: In-memory state of one two-party trade negotiation
WHY: The negotiation engine owns this state until settlement or cancellation
HOW: Pydantic v2 models; per-recipient projections for outgoing updates
"""

from pydantic import BaseModel, Field
from typing import Literal
from datetime import datetime
from uuid import uuid4


SessionStatus = Literal["pending", "active", "completed", "cancelled"]
Side = Literal["initiator", "target"]


class Participant(BaseModel):
    """One side of a trade: user identity plus display name."""

    user_id: int
    username: str


class TradeLineItem(BaseModel):
    """One offered item on a side of the trade."""

    item_id: int
    name: str
    image_url: str | None = None
    quantity: int = Field(ge=1)


class SessionView(BaseModel):
    """A session projected for one participant."""

    your_items: list[TradeLineItem]
    partner_items: list[TradeLineItem]
    your_confirmed: bool
    partner_confirmed: bool


class LiveTradeSession(BaseModel):
    """
    Complete state of a live trade session.

    Both confirmation flags are cleared whenever either item list changes.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    initiator: Participant
    target: Participant

    initiator_items: list[TradeLineItem] = Field(default_factory=list)
    target_items: list[TradeLineItem] = Field(default_factory=list)
    initiator_confirmed: bool = False
    target_confirmed: bool = False

    status: SessionStatus = "pending"
    listing_item_id: int | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    accepted_at: datetime | None = None

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.initiator.user_id, self.target.user_id)

    def side_of(self, user_id: int) -> Side:
        """Which side the user is on. Caller checks participation first."""
        return "initiator" if user_id == self.initiator.user_id else "target"

    def partner_of(self, user_id: int) -> Participant:
        return self.target if user_id == self.initiator.user_id else self.initiator

    def items_for(self, user_id: int) -> list[TradeLineItem]:
        if self.side_of(user_id) == "initiator":
            return self.initiator_items
        return self.target_items

    def remove_items(self, user_id: int, item_id: int) -> int:
        """Drop every line of `item_id` from the user's side. Returns lines removed."""
        items = self.items_for(user_id)
        kept = [item for item in items if item.item_id != item_id]
        removed = len(items) - len(kept)
        items[:] = kept
        return removed

    def reset_confirmations(self):
        self.initiator_confirmed = False
        self.target_confirmed = False

    def confirm(self, user_id: int):
        if self.side_of(user_id) == "initiator":
            self.initiator_confirmed = True
        else:
            self.target_confirmed = True

    @property
    def both_confirmed(self) -> bool:
        return self.initiator_confirmed and self.target_confirmed

    @property
    def is_empty(self) -> bool:
        return not self.initiator_items and not self.target_items

    def view_for(self, user_id: int) -> SessionView:
        """
        Project the session from one participant's perspective.

        WHAT: Swap "yours"/"partner's" depending on the recipient
        WHY: Each participant renders their own side on the left
        HOW: Copies of the line lists so later mutations don't leak into sent views
        """
        if self.side_of(user_id) == "initiator":
            return SessionView(
                your_items=[item.model_copy() for item in self.initiator_items],
                partner_items=[item.model_copy() for item in self.target_items],
                your_confirmed=self.initiator_confirmed,
                partner_confirmed=self.target_confirmed,
            )
        return SessionView(
            your_items=[item.model_copy() for item in self.target_items],
            partner_items=[item.model_copy() for item in self.initiator_items],
            your_confirmed=self.target_confirmed,
            partner_confirmed=self.initiator_confirmed,
        )


class SettlementResult(BaseModel):
    """Outcome of a settlement attempt."""

    success: bool
    trade_id: str | None = None
    reason: str | None = None
