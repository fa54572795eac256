"""
Integration tests for the live trade engine.

WHAT: Full invite -> negotiate -> settle flows against a real database
WHY: The engine coordinates registry, session table, inventory and settlement
HOW: Fake WebSocket transports record every pushed event; assertions on
     both participants' event streams and on final inventory rows
"""

import asyncio
import pytest
from datetime import datetime, timedelta

from app.models.live_trade import Participant, SettlementResult
from app.services.connection_registry import ClientConnection
from app.services.negotiation_engine import LiveTradeEngine
from app.utils.exceptions import (
    SessionNotFoundException,
    TargetOfflineException,
    SelfTradeException,
    NotParticipantException,
    NotTargetException,
    InvalidSessionStateException,
    ItemNotOwnedException,
    ItemNotTradeableException,
    InsufficientQuantityException,
    ItemNotInOfferException,
    OfferTooLargeException,
    EmptyTradeException,
    ValidationException,
)
from tests.fixtures.fake_ws import FakeWebSocket, connect_user, open_session
from tests.fixtures.trade_data import give, quantity_of, all_trades, notifications_for


def alice_of(world) -> Participant:
    return Participant(user_id=world.alice, username="alice")


@pytest.mark.integration
class TestConnections:
    """Test connect/disconnect handling."""

    @pytest.mark.asyncio
    async def test_connect_greets_user(self, trade_env, world):
        ws = await connect_user(trade_env.engine, world.alice, "alice")

        greeting = ws.last("connection_success")
        assert greeting["user"] == {"user_id": world.alice, "username": "alice"}
        assert trade_env.registry.is_online(world.alice)

    @pytest.mark.asyncio
    async def test_reconnect_replaces_connection(self, trade_env, world):
        first = await connect_user(trade_env.engine, world.alice, "alice")
        second = await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")

        await trade_env.engine.invite(Participant(user_id=world.bob, username="bob"), world.alice)

        assert second.of_type("invite_received")
        assert not first.of_type("invite_received")

    @pytest.mark.asyncio
    async def test_displaced_connection_close_does_not_cancel(self, trade_env, world):
        old_ws = FakeWebSocket()
        old = ClientConnection(user_id=world.alice, username="alice", transport=old_ws)
        await trade_env.engine.connect(old)
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        cancelled = await trade_env.engine.handle_disconnect(old)

        assert cancelled == []
        assert trade_env.engine.get_session(session.id) is not None
        assert trade_env.registry.is_online(world.alice)
        assert not alice_ws.of_type("session_cancelled")


@pytest.mark.integration
class TestInvitation:
    """Test invite / accept / decline."""

    @pytest.mark.asyncio
    async def test_invite_notifies_both(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")

        session = await trade_env.engine.invite(alice_of(world), world.bob, listing_item_id=world.gem)

        assert session.status == "pending"
        received = bob_ws.last("invite_received")
        assert received["session_id"] == session.id
        assert received["from_user"] == {"user_id": world.alice, "username": "alice"}
        assert received["listing_item_id"] == world.gem
        sent = alice_ws.last("invite_sent")
        assert sent["to_user"]["username"] == "bob"

    @pytest.mark.asyncio
    async def test_invite_writes_notification(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")

        session = await trade_env.engine.invite(alice_of(world), world.bob)

        notes = notifications_for(trade_env.factory, world.bob)
        assert notes == [{
            "title": "Live Trade Request",
            "message": "alice wants to start a live trade with you",
            "related_id": session.id,
        }]

    @pytest.mark.asyncio
    async def test_invite_offline_target(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")

        with pytest.raises(TargetOfflineException):
            await trade_env.engine.invite(alice_of(world), world.bob)

        assert len(trade_env.engine.sessions) == 0

    @pytest.mark.asyncio
    async def test_invite_self(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")

        with pytest.raises(SelfTradeException):
            await trade_env.engine.invite(alice_of(world), world.alice)

    @pytest.mark.asyncio
    async def test_accept_starts_session_for_both(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await trade_env.engine.invite(alice_of(world), world.bob)

        await trade_env.engine.accept(session.id, world.bob)

        assert trade_env.engine.get_session(session.id).status == "active"
        alice_started = alice_ws.last("session_started")
        bob_started = bob_ws.last("session_started")
        assert alice_started["is_initiator"] is True
        assert alice_started["partner"]["username"] == "bob"
        assert bob_started["is_initiator"] is False
        assert bob_started["partner"]["username"] == "alice"
        assert bob_started["your_items"] == [] and bob_started["partner_items"] == []

    @pytest.mark.asyncio
    async def test_initiator_cannot_accept(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await trade_env.engine.invite(alice_of(world), world.bob)

        with pytest.raises(NotTargetException):
            await trade_env.engine.accept(session.id, world.alice)

        assert trade_env.engine.get_session(session.id).status == "pending"

    @pytest.mark.asyncio
    async def test_outsider_cannot_accept(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await trade_env.engine.invite(alice_of(world), world.bob)

        with pytest.raises(NotParticipantException):
            await trade_env.engine.accept(session.id, world.carol)

    @pytest.mark.asyncio
    async def test_accept_twice(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        with pytest.raises(InvalidSessionStateException):
            await trade_env.engine.accept(session.id, world.bob)

    @pytest.mark.asyncio
    async def test_accept_unknown_session(self, trade_env, world):
        with pytest.raises(SessionNotFoundException):
            await trade_env.engine.accept("does-not-exist", world.bob)

    @pytest.mark.asyncio
    async def test_decline(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await trade_env.engine.invite(alice_of(world), world.bob)

        await trade_env.engine.decline(session.id, world.bob)

        declined = alice_ws.last("invite_declined")
        assert declined["session_id"] == session.id
        assert "bob" in declined["reason"]
        assert trade_env.engine.get_session(session.id) is None

        with pytest.raises(SessionNotFoundException):
            await trade_env.engine.accept(session.id, world.bob)

    @pytest.mark.asyncio
    async def test_cannot_decline_active_session(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        with pytest.raises(InvalidSessionStateException):
            await trade_env.engine.decline(session.id, world.bob)


@pytest.mark.integration
class TestNegotiation:
    """Test add/remove/confirm before settlement."""

    @pytest.mark.asyncio
    async def test_add_item_broadcasts_projected_views(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)

        alice_update = alice_ws.last("session_update")
        bob_update = bob_ws.last("session_update")
        assert alice_update["your_items"] == [
            {"item_id": world.sword, "name": "Sword", "image_url": "/img/sword.png", "quantity": 2}
        ]
        assert alice_update["partner_items"] == []
        assert bob_update["your_items"] == []
        assert bob_update["partner_items"] == alice_update["your_items"]

    @pytest.mark.asyncio
    async def test_add_item_requires_active_session(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await trade_env.engine.invite(alice_of(world), world.bob)

        with pytest.raises(InvalidSessionStateException):
            await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)

    @pytest.mark.asyncio
    async def test_add_item_rejections_leave_session_untouched(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        bob_ws.clear()

        with pytest.raises(ItemNotOwnedException):
            await trade_env.engine.add_item(session.id, world.alice, world.gem, 1)
        with pytest.raises(ItemNotTradeableException):
            await trade_env.engine.add_item(session.id, world.alice, world.cursed_ring, 1)
        with pytest.raises(InsufficientQuantityException):
            await trade_env.engine.add_item(session.id, world.alice, world.shield, 4)
        with pytest.raises(NotParticipantException):
            await trade_env.engine.add_item(session.id, world.carol, world.sword, 1)
        with pytest.raises(ValidationException):
            await trade_env.engine.add_item(session.id, world.alice, world.sword, 0)

        assert session.initiator_items == []
        assert bob_ws.sent == []

    @pytest.mark.asyncio
    async def test_identical_adds_make_two_lines(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)

        assert [(i.item_id, i.quantity) for i in session.initiator_items] == [
            (world.sword, 2), (world.sword, 2)
        ]

    @pytest.mark.asyncio
    async def test_cumulative_quantity_checked(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 3)

        with pytest.raises(InsufficientQuantityException) as exc_info:
            await trade_env.engine.add_item(session.id, world.alice, world.sword, 3)

        assert exc_info.value.details["requested"] == 6
        assert exc_info.value.details["available"] == 5
        assert len(session.initiator_items) == 1

    @pytest.mark.asyncio
    async def test_offer_size_limit(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        for _ in range(5):
            await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)

        with pytest.raises(OfferTooLargeException):
            await trade_env.engine.add_item(session.id, world.alice, world.shield, 1)

    @pytest.mark.asyncio
    async def test_remove_item(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)
        await trade_env.engine.add_item(session.id, world.alice, world.shield, 1)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)

        await trade_env.engine.remove_item(session.id, world.alice, world.sword)

        assert [i.item_id for i in session.initiator_items] == [world.shield]
        assert [i["item_id"] for i in alice_ws.last("session_update")["your_items"]] == [world.shield]

    @pytest.mark.asyncio
    async def test_remove_item_not_in_offer(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.bob, world.gem, 1)

        with pytest.raises(ItemNotInOfferException):
            await trade_env.engine.remove_item(session.id, world.alice, world.gem)

        assert len(session.target_items) == 1

    @pytest.mark.asyncio
    async def test_confirm_empty_trade_rejected(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        with pytest.raises(EmptyTradeException):
            await trade_env.engine.confirm(session.id, world.alice)

        assert session.initiator_confirmed is False

    @pytest.mark.asyncio
    async def test_single_confirmation_broadcasts(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)

        result = await trade_env.engine.confirm(session.id, world.alice)

        assert result is None
        assert alice_ws.last("session_update")["your_confirmed"] is True
        assert bob_ws.last("session_update")["partner_confirmed"] is True
        assert bob_ws.last("session_update")["your_confirmed"] is False

    @pytest.mark.asyncio
    async def test_change_after_confirmation_resets_both_flags(self, trade_env, world):
        """Confirm, then the partner edits: the earlier confirmation no longer counts."""
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)
        await trade_env.engine.confirm(session.id, world.alice)

        await trade_env.engine.add_item(session.id, world.bob, world.gem, 1)

        assert session.initiator_confirmed is False
        assert session.target_confirmed is False
        assert alice_ws.last("session_update")["your_confirmed"] is False

        await trade_env.engine.confirm(session.id, world.bob)
        assert session.status == "active"
        assert all_trades(trade_env.factory) == []

    @pytest.mark.asyncio
    async def test_partner_confirm_then_own_add_resets(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)

        await trade_env.engine.confirm(session.id, world.bob)
        after_confirm = alice_ws.last("session_update")
        assert after_confirm["partner_confirmed"] is True
        assert after_confirm["your_confirmed"] is False

        await trade_env.engine.add_item(session.id, world.alice, world.shield, 1)
        for ws in (alice_ws, bob_ws):
            update = ws.last("session_update")
            assert update["your_confirmed"] is False
            assert update["partner_confirmed"] is False

    @pytest.mark.asyncio
    async def test_rejected_add_keeps_confirmations(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)
        await trade_env.engine.confirm(session.id, world.bob)

        with pytest.raises(InsufficientQuantityException):
            await trade_env.engine.add_item(session.id, world.alice, world.sword, 10)

        assert [(i.item_id, i.quantity) for i in session.initiator_items] == [(world.sword, 2)]
        assert session.target_confirmed is True
        assert session.initiator_confirmed is False


@pytest.mark.integration
class TestSettlementFlow:
    """Test both-confirmed settlement through the engine."""

    @pytest.mark.asyncio
    async def test_happy_path_swap(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)
        await trade_env.engine.add_item(session.id, world.bob, world.gem, 1)
        await trade_env.engine.confirm(session.id, world.alice)

        result = await trade_env.engine.confirm(session.id, world.bob)

        assert result.success is True
        assert quantity_of(trade_env.factory, world.alice, world.sword) == 3
        assert quantity_of(trade_env.factory, world.bob, world.sword) == 3
        assert quantity_of(trade_env.factory, world.alice, world.gem) == 1
        assert quantity_of(trade_env.factory, world.bob, world.gem) == 3

        for ws in (alice_ws, bob_ws):
            completed = ws.last("session_completed")
            assert completed["trade_id"] == result.trade_id
            assert completed["session_id"] == session.id

        assert trade_env.engine.get_session(session.id) is None
        trades = all_trades(trade_env.factory)
        assert [t["trade_id"] for t in trades] == [result.trade_id]
        assert trades[0]["is_live_trade"] is True

    @pytest.mark.asyncio
    async def test_completion_notifies_both(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.shield, 1)
        await trade_env.engine.confirm(session.id, world.alice)
        result = await trade_env.engine.confirm(session.id, world.bob)

        alice_notes = [n for n in notifications_for(trade_env.factory, world.alice)
                       if n["title"] == "Live Trade Completed"]
        bob_notes = [n for n in notifications_for(trade_env.factory, world.bob)
                     if n["title"] == "Live Trade Completed"]
        assert alice_notes == [{
            "title": "Live Trade Completed",
            "message": "Your live trade with bob was completed",
            "related_id": result.trade_id,
        }]
        assert len(bob_notes) == 1

    @pytest.mark.asyncio
    async def test_settlement_failure_keeps_session_open(self, trade_env, world):
        """Inventory changed after confirmation: nothing moves, flags reset."""
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)
        await trade_env.engine.add_item(session.id, world.bob, world.gem, 3)
        await trade_env.engine.confirm(session.id, world.alice)
        give(trade_env.factory, world.bob, world.gem, 2)

        result = await trade_env.engine.confirm(session.id, world.bob)

        assert result.success is False
        assert quantity_of(trade_env.factory, world.alice, world.sword) == 5
        assert quantity_of(trade_env.factory, world.bob, world.gem) == 2
        assert all_trades(trade_env.factory) == []

        live = trade_env.engine.get_session(session.id)
        assert live is session
        assert live.status == "active"
        assert live.initiator_confirmed is False and live.target_confirmed is False

        for ws in (alice_ws, bob_ws):
            assert ws.last("session_failed")["session_id"] == session.id
            assert ws.types()[-2:] == ["session_failed", "session_update"]

    @pytest.mark.asyncio
    async def test_unexpected_settlement_error_is_a_failure(self, trade_env, world, monkeypatch):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)

        def explode(_session):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(trade_env.settlement, "execute", explode)
        await trade_env.engine.confirm(session.id, world.alice)
        result = await trade_env.engine.confirm(session.id, world.bob)

        assert isinstance(result, SettlementResult)
        assert result.success is False
        assert alice_ws.last("session_failed")
        assert trade_env.engine.get_session(session.id).status == "active"

    @pytest.mark.asyncio
    async def test_commands_after_completion_fail(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.shield, 1)
        await trade_env.engine.confirm(session.id, world.alice)
        await trade_env.engine.confirm(session.id, world.bob)

        with pytest.raises(SessionNotFoundException):
            await trade_env.engine.confirm(session.id, world.bob)
        with pytest.raises(SessionNotFoundException):
            await trade_env.engine.cancel(session.id, world.alice)

    @pytest.mark.asyncio
    async def test_concurrent_confirms_settle_once(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)

        results = await asyncio.gather(
            trade_env.engine.confirm(session.id, world.alice),
            trade_env.engine.confirm(session.id, world.bob),
        )

        settled = [r for r in results if r is not None]
        assert len(settled) == 1
        assert settled[0].success is True
        assert len(all_trades(trade_env.factory)) == 1
        assert quantity_of(trade_env.factory, world.bob, world.sword) == 2


@pytest.mark.integration
class TestTermination:
    """Test cancel, disconnect and expiry."""

    @pytest.mark.asyncio
    async def test_cancel_notifies_both(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.sword, 2)

        await trade_env.engine.cancel(session.id, world.bob)

        for ws in (alice_ws, bob_ws):
            cancelled = ws.last("session_cancelled")
            assert cancelled["by_user"]["username"] == "bob"
            assert cancelled["reason"] == "cancelled"
        assert trade_env.engine.get_session(session.id) is None
        assert quantity_of(trade_env.factory, world.alice, world.sword) == 5

    @pytest.mark.asyncio
    async def test_cancel_pending_invite(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        session = await trade_env.engine.invite(alice_of(world), world.bob)

        await trade_env.engine.cancel(session.id, world.alice)

        assert bob_ws.last("session_cancelled")["session_id"] == session.id

    @pytest.mark.asyncio
    async def test_cancel_is_terminal(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.cancel(session.id, world.alice)

        with pytest.raises(SessionNotFoundException):
            await trade_env.engine.cancel(session.id, world.alice)
        with pytest.raises(SessionNotFoundException):
            await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        with pytest.raises(NotParticipantException):
            await trade_env.engine.cancel(session.id, world.carol)

        assert trade_env.engine.get_session(session.id) is not None

    @pytest.mark.asyncio
    async def test_disconnect_cancels_every_session(self, trade_env, world):
        alice_ws = FakeWebSocket()
        alice = ClientConnection(user_id=world.alice, username="alice", transport=alice_ws)
        await trade_env.engine.connect(alice)
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        carol_ws = await connect_user(trade_env.engine, world.carol, "carol")
        with_bob = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        with_carol = await trade_env.engine.invite(
            Participant(user_id=world.carol, username="carol"), world.alice
        )

        cancelled = await trade_env.engine.handle_disconnect(alice)

        assert set(cancelled) == {with_bob.id, with_carol.id}
        assert len(trade_env.engine.sessions) == 0
        assert bob_ws.last("session_cancelled")["reason"] == "disconnected"
        assert carol_ws.last("session_cancelled")["reason"] == "disconnected"
        assert not trade_env.registry.is_online(world.alice)

    @pytest.mark.asyncio
    async def test_pending_invites_expire(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        pending = await trade_env.engine.invite(alice_of(world), world.bob)
        active = await open_session(trade_env.engine, world.alice, "alice", world.bob)

        evicted = await trade_env.engine.evict_stale_sessions(now=datetime.utcnow() + timedelta(seconds=301))

        assert evicted == [pending.id]
        assert trade_env.engine.get_session(pending.id) is None
        assert trade_env.engine.get_session(active.id) is not None
        for ws in (alice_ws, bob_ws):
            expired = ws.last("session_cancelled")
            assert expired["session_id"] == pending.id
            assert expired["reason"] == "expired"
            assert expired["by_user"] is None

    @pytest.mark.asyncio
    async def test_active_ttl_starts_at_acceptance(self, trade_env, world):
        engine = LiveTradeEngine(
            registry=trade_env.registry,
            inventory=trade_env.inventory,
            settlement=trade_env.settlement,
            notifications=trade_env.notifications,
            pending_ttl_seconds=300,
            active_ttl_seconds=600,
        )
        await connect_user(engine, world.alice, "alice")
        await connect_user(engine, world.bob, "bob")
        session = await engine.invite(alice_of(world), world.bob)
        session.created_at = datetime.utcnow() - timedelta(seconds=290)
        await engine.accept(session.id, world.bob)

        assert session.accepted_at is not None
        assert await engine.evict_stale_sessions(
            now=datetime.utcnow() + timedelta(seconds=400)
        ) == []
        assert await engine.evict_stale_sessions(
            now=datetime.utcnow() + timedelta(seconds=601)
        ) == [session.id]

    @pytest.mark.asyncio
    async def test_fresh_invites_survive_sweep(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        pending = await trade_env.engine.invite(alice_of(world), world.bob)

        assert await trade_env.engine.evict_stale_sessions() == []
        assert trade_env.engine.get_session(pending.id) is not None

    @pytest.mark.asyncio
    async def test_cleanup_task_start_stop(self, trade_env):
        trade_env.engine.start_cleanup(interval_seconds=3600)
        await trade_env.engine.stop_cleanup()
        await trade_env.engine.stop_cleanup()


@pytest.mark.integration
class TestDeliveryFailures:
    """Test that a broken recipient never breaks the flow."""

    @pytest.mark.asyncio
    async def test_dead_partner_socket_does_not_block_settlement(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob", fail=True)
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        await trade_env.engine.add_item(session.id, world.alice, world.shield, 1)
        await trade_env.engine.confirm(session.id, world.bob)

        result = await trade_env.engine.confirm(session.id, world.alice)

        assert result.success is True
        assert alice_ws.last("session_completed")
        assert quantity_of(trade_env.factory, world.bob, world.shield) == 1

    @pytest.mark.asyncio
    async def test_partner_went_offline_mid_session(self, trade_env, world):
        await connect_user(trade_env.engine, world.alice, "alice")
        await connect_user(trade_env.engine, world.bob, "bob")
        session = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        trade_env.registry.unregister(world.bob)

        await trade_env.engine.add_item(session.id, world.alice, world.sword, 1)

        assert len(session.initiator_items) == 1

    @pytest.mark.asyncio
    async def test_notification_failure_is_swallowed(self, trade_env, world, monkeypatch):
        await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")

        def broken_store(*args, **kwargs):
            raise RuntimeError("notifications table locked")

        monkeypatch.setattr(trade_env.notifications, "_store", broken_store)

        session = await trade_env.engine.invite(alice_of(world), world.bob)

        assert bob_ws.last("invite_received")["session_id"] == session.id
        assert notifications_for(trade_env.factory, world.bob) == []


@pytest.mark.integration
class TestConcurrentSessions:
    """Test two live sessions offering the same inventory."""

    @pytest.fixture
    def db_engine(self, file_db_engine):
        return file_db_engine

    @pytest.mark.asyncio
    async def test_same_stack_offered_twice_settles_once(self, trade_env, world):
        alice_ws = await connect_user(trade_env.engine, world.alice, "alice")
        bob_ws = await connect_user(trade_env.engine, world.bob, "bob")
        carol_ws = await connect_user(trade_env.engine, world.carol, "carol")
        with_bob = await open_session(trade_env.engine, world.alice, "alice", world.bob)
        with_carol = await open_session(trade_env.engine, world.alice, "alice", world.carol)
        for session in (with_bob, with_carol):
            await trade_env.engine.add_item(session.id, world.alice, world.sword, 5)
            await trade_env.engine.confirm(session.id, world.alice)

        results = await asyncio.gather(
            trade_env.engine.confirm(with_bob.id, world.bob),
            trade_env.engine.confirm(with_carol.id, world.carol),
        )

        assert sorted(r.success for r in results) == [False, True]
        assert len(alice_ws.of_type("session_completed")) == 1
        assert len(alice_ws.of_type("session_failed")) == 1
        assert len(bob_ws.of_type("session_completed") + carol_ws.of_type("session_completed")) == 1
        assert len(bob_ws.of_type("session_failed") + carol_ws.of_type("session_failed")) == 1

        failed = with_bob if not results[0].success else with_carol
        live = trade_env.engine.get_session(failed.id)
        assert live is failed
        assert live.status == "active"
        assert live.initiator_confirmed is False and live.target_confirmed is False
        assert len(trade_env.engine.sessions) == 1

        assert quantity_of(trade_env.factory, world.alice, world.sword) == 0
        assert (
            quantity_of(trade_env.factory, world.bob, world.sword)
            + quantity_of(trade_env.factory, world.carol, world.sword)
        ) == 6
        assert len(all_trades(trade_env.factory)) == 1
