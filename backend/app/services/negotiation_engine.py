"""
Live trade negotiation engine.

WHAT: State machine for two-party live trades (invite -> negotiate -> settle)
WHY: Two clients act independently on shared, unpersisted session state
HOW: Per-session locks from the SessionTable, per-recipient projections pushed
     through the ConnectionRegistry, settlement delegated to SettlementExecutor
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..core.config import settings
from ..core.session_table import SessionTable, is_stale
from ..models.live_trade import LiveTradeSession, Participant, SettlementResult, TradeLineItem
from ..models.messages import (
    ConnectionSuccessEvent,
    InviteReceivedEvent,
    InviteSentEvent,
    InviteDeclinedEvent,
    SessionStartedEvent,
    SessionUpdateEvent,
    SessionCompletedEvent,
    SessionCancelledEvent,
    SessionFailedEvent,
    ServerEvent,
)
from ..utils.exceptions import (
    SelfTradeException,
    TargetOfflineException,
    NotParticipantException,
    NotTargetException,
    InvalidSessionStateException,
    ItemNotOwnedException,
    ItemNotTradeableException,
    InsufficientQuantityException,
    ItemNotInOfferException,
    OfferTooLargeException,
    EmptyTradeException,
    SessionNotFoundException,
    ValidationException,
)
from ..utils.logger import get_logger
from .connection_registry import ClientConnection, ConnectionRegistry
from .inventory_store import InventoryStore
from .notification_sink import NotificationSink
from .settlement import SettlementExecutor

logger = get_logger(__name__)


class LiveTradeEngine:
    """
    Sole owner and writer of live trade sessions.

    Validation errors are raised to the caller (the dispatcher reports them to
    the requester only) and leave the session untouched. Anything that changes
    what both sides see is broadcast to both.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        inventory: InventoryStore,
        settlement: SettlementExecutor,
        notifications: NotificationSink,
        sessions: Optional[SessionTable] = None,
        pending_ttl_seconds: int = settings.LIVE_TRADE_PENDING_TTL_SECONDS,
        active_ttl_seconds: int = settings.LIVE_TRADE_ACTIVE_TTL_SECONDS,
        max_items_per_side: int = settings.LIVE_TRADE_MAX_ITEMS_PER_SIDE,
    ):
        self.registry = registry
        self.sessions = sessions or SessionTable()
        self._inventory = inventory
        self._settlement = settlement
        self._notifications = notifications
        self._pending_ttl = timedelta(seconds=pending_ttl_seconds)
        self._active_ttl = timedelta(seconds=active_ttl_seconds) if active_ttl_seconds > 0 else None
        self._max_items_per_side = max_items_per_side
        self._cleanup_task: Optional[asyncio.Task] = None

    # ========== Connections ==========

    async def connect(self, connection: ClientConnection):
        """Register a freshly authenticated connection and greet it."""
        self.registry.register(connection.user_id, connection)
        await connection.send(ConnectionSuccessEvent(user=connection.participant).to_payload())

    async def handle_disconnect(self, connection: ClientConnection) -> List[str]:
        """
        Connection closed: cancel every session the user takes part in.

        A displaced connection (the user already reconnected) is ignored.

        Returns:
            Ids of the sessions that were cancelled
        """
        if not self.registry.unregister(connection.user_id, connection):
            return []

        cancelled = []
        for session in self.sessions.sessions_for_user(connection.user_id):
            try:
                await self.cancel(session.id, connection.user_id, reason="disconnected")
                cancelled.append(session.id)
            except SessionNotFoundException:
                # Settled or cancelled while we waited for its lock
                continue
        return cancelled

    # ========== Invitation ==========

    async def invite(
        self,
        initiator: Participant,
        target_user_id: int,
        listing_item_id: Optional[int] = None
    ) -> LiveTradeSession:
        """
        Start a pending session between the initiator and an online target.

        Raises:
            SelfTradeException: initiator and target are the same user
            TargetOfflineException: target has no live connection
        """
        if initiator.user_id == target_user_id:
            raise SelfTradeException(initiator.user_id)

        target_connection = self.registry.resolve(target_user_id)
        if target_connection is None:
            raise TargetOfflineException(target_user_id)

        session = LiveTradeSession(
            initiator=initiator,
            target=target_connection.participant,
            listing_item_id=listing_item_id,
        )
        self.sessions.add(session)

        await self._send(session.target.user_id, InviteReceivedEvent(
            session_id=session.id,
            from_user=initiator,
            listing_item_id=listing_item_id,
        ))
        await self._send(initiator.user_id, InviteSentEvent(
            session_id=session.id,
            to_user=session.target,
        ))
        await self._notifications.notify(
            session.target.user_id,
            f"{initiator.username} wants to start a live trade with you",
            title="Live Trade Request",
            related_id=session.id,
        )

        logger.info(f"Trade invite {session.id}: {initiator.username} -> {session.target.username}")
        return session

    async def accept(self, session_id: str, user_id: int) -> LiveTradeSession:
        async with self.sessions.locked(session_id) as session:
            self._require_target(session, user_id)
            self._require_status(session, "pending")

            session.status = "active"
            session.accepted_at = datetime.utcnow()
            for participant, partner in (
                (session.initiator, session.target),
                (session.target, session.initiator),
            ):
                await self._send(participant.user_id, SessionStartedEvent(
                    session_id=session.id,
                    partner=partner,
                    is_initiator=participant.user_id == session.initiator.user_id,
                    listing_item_id=session.listing_item_id,
                ))

            logger.info(f"Trade {session.id} accepted by {session.target.username}")
            return session

    async def decline(self, session_id: str, user_id: int):
        async with self.sessions.locked(session_id) as session:
            self._require_target(session, user_id)
            self._require_status(session, "pending")

            session.status = "cancelled"
            self.sessions.remove(session.id)
            await self._send(session.initiator.user_id, InviteDeclinedEvent(
                session_id=session.id,
                reason=f"{session.target.username} declined the trade",
            ))
            logger.info(f"Trade {session.id} declined by {session.target.username}")

    # ========== Negotiation ==========

    async def add_item(self, session_id: str, user_id: int, item_id: int, quantity: int) -> LiveTradeSession:
        """
        Put an item on the user's side of the offer.

        The ownership check here is advisory; settlement re-checks it. Adding
        the same item twice yields two lines, and the owned quantity must
        cover all of them together.
        """
        if quantity < 1:
            raise ValidationException(
                "Quantity must be at least 1",
                field_errors=[{"field": "quantity", "message": "must be >= 1"}]
            )

        async with self.sessions.locked(session_id) as session:
            self._require_participant(session, user_id)
            self._require_status(session, "active")

            side_items = session.items_for(user_id)
            if len(side_items) >= self._max_items_per_side:
                raise OfferTooLargeException(session.id, self._max_items_per_side)

            holding = await asyncio.to_thread(self._inventory.get_holding, user_id, item_id)
            if holding is None:
                raise ItemNotOwnedException(user_id, item_id)
            if not holding.is_tradeable:
                raise ItemNotTradeableException(item_id)

            already_offered = sum(line.quantity for line in side_items if line.item_id == item_id)
            if holding.quantity < already_offered + quantity:
                raise InsufficientQuantityException(
                    user_id, item_id, already_offered + quantity, holding.quantity
                )

            side_items.append(TradeLineItem(
                item_id=item_id,
                name=holding.name,
                image_url=holding.image_url,
                quantity=quantity,
            ))
            session.reset_confirmations()
            await self._broadcast_update(session)
            return session

    async def remove_item(self, session_id: str, user_id: int, item_id: int) -> LiveTradeSession:
        async with self.sessions.locked(session_id) as session:
            self._require_participant(session, user_id)
            self._require_status(session, "active")

            if session.remove_items(user_id, item_id) == 0:
                raise ItemNotInOfferException(session.id, item_id)

            session.reset_confirmations()
            await self._broadcast_update(session)
            return session

    async def confirm(self, session_id: str, user_id: int) -> Optional[SettlementResult]:
        """
        Confirm the current offer; settles once both sides have confirmed.

        Returns:
            SettlementResult if settlement ran, else None
        """
        async with self.sessions.locked(session_id) as session:
            self._require_participant(session, user_id)
            self._require_status(session, "active")
            if session.is_empty:
                raise EmptyTradeException(session.id)

            session.confirm(user_id)
            if session.both_confirmed:
                return await self._settle(session)

            await self._broadcast_update(session)
            return None

    async def cancel(self, session_id: str, user_id: int, reason: str = "cancelled"):
        async with self.sessions.locked(session_id) as session:
            self._require_participant(session, user_id)

            session.status = "cancelled"
            self.sessions.remove(session.id)
            by_user = session.initiator if session.side_of(user_id) == "initiator" else session.target
            await self._send_both(session, SessionCancelledEvent(
                session_id=session.id,
                by_user=by_user,
                reason=reason,
            ))
            logger.info(f"Trade {session.id} cancelled by {by_user.username} ({reason})")

    # ========== Settlement ==========

    async def _settle(self, session: LiveTradeSession) -> SettlementResult:
        """Run settlement with the session lock held."""
        try:
            result = await asyncio.to_thread(self._settlement.execute, session)
        except Exception as e:
            logger.error(f"Unexpected settlement error for trade {session.id}: {e}", exc_info=True)
            result = SettlementResult(success=False, reason="Trade failed unexpectedly")

        if not result.success:
            session.reset_confirmations()
            await self._send_both(session, SessionFailedEvent(
                session_id=session.id,
                reason=result.reason or "Trade failed",
            ))
            await self._broadcast_update(session)
            return result

        session.status = "completed"
        self.sessions.remove(session.id)
        await self._send_both(session, SessionCompletedEvent(
            session_id=session.id,
            trade_id=result.trade_id,
        ))
        for participant in (session.initiator, session.target):
            partner = session.partner_of(participant.user_id)
            await self._notifications.notify(
                participant.user_id,
                f"Your live trade with {partner.username} was completed",
                title="Live Trade Completed",
                related_id=result.trade_id,
            )
        logger.info(f"Trade {session.id} completed as trade record {result.trade_id}")
        return result

    # ========== Expiry ==========

    async def evict_stale_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Cancel sessions that outlived their TTL; both participants are told."""
        now = now or datetime.utcnow()
        evicted = []
        for session_id in self.sessions.stale_sessions(self._pending_ttl, self._active_ttl, now):
            try:
                async with self.sessions.locked(session_id) as session:
                    # Status may have changed while waiting for the lock
                    if not is_stale(session, self._pending_ttl, self._active_ttl, now):
                        continue
                    session.status = "cancelled"
                    self.sessions.remove(session_id)
                    await self._send_both(session, SessionCancelledEvent(
                        session_id=session_id,
                        reason="expired",
                    ))
                    evicted.append(session_id)
            except SessionNotFoundException:
                continue

        if evicted:
            logger.info(f"Evicted {len(evicted)} stale trade sessions")
        return evicted

    def start_cleanup(self, interval_seconds: float = settings.LIVE_TRADE_CLEANUP_INTERVAL_SECONDS):
        """
        Start the periodic eviction task on the running loop.

        WHAT: Background sweep of expired sessions
        WHY: Unanswered invites would otherwise accumulate forever
        HOW: asyncio task sleeping `interval_seconds` between sweeps
        """
        async def cleanup_loop():
            while True:
                await asyncio.sleep(interval_seconds)
                try:
                    await self.evict_stale_sessions()
                except Exception as e:
                    logger.error(f"Session cleanup failed: {e}", exc_info=True)

        self._cleanup_task = asyncio.create_task(cleanup_loop())
        logger.info(f"Started session cleanup task (interval: {interval_seconds}s)")

    async def stop_cleanup(self):
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    # ========== Helpers ==========

    def get_session(self, session_id: str) -> Optional[LiveTradeSession]:
        return self.sessions.get(session_id)

    def stats(self) -> Dict[str, object]:
        return {
            "online_users": len(self.registry),
            "sessions": self.sessions.count_by_status(),
        }

    @staticmethod
    def _require_participant(session: LiveTradeSession, user_id: int):
        if not session.is_participant(user_id):
            raise NotParticipantException(session.id, user_id)

    @staticmethod
    def _require_target(session: LiveTradeSession, user_id: int):
        if not session.is_participant(user_id):
            raise NotParticipantException(session.id, user_id)
        if session.target.user_id != user_id:
            raise NotTargetException(session.id, user_id)

    @staticmethod
    def _require_status(session: LiveTradeSession, expected: str):
        if session.status != expected:
            raise InvalidSessionStateException(session.id, session.status, expected)

    async def _broadcast_update(self, session: LiveTradeSession):
        """Send each participant the session from their own perspective."""
        for participant in (session.initiator, session.target):
            await self._send(participant.user_id, SessionUpdateEvent.from_view(
                session.id, session.view_for(participant.user_id)
            ))

    async def _send_both(self, session: LiveTradeSession, event: ServerEvent):
        await self._send(session.initiator.user_id, event)
        await self._send(session.target.user_id, event)

    async def _send(self, user_id: int, event: ServerEvent) -> bool:
        """Deliver to a user's live connection; delivery failures are logged only."""
        connection = self.registry.resolve(user_id)
        if connection is None:
            logger.debug(f"User {user_id} offline, dropping {event.type}")
            return False
        try:
            await connection.send(event.to_payload())
        except Exception as e:
            logger.warning(f"Failed to deliver {event.type} to user {user_id}: {e}")
            return False
        return True
