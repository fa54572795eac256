"""
Live trade message dispatcher.

WHAT: Decode an inbound envelope and route it to the negotiation engine
WHY: One place that turns raw socket text into engine calls and error events
HOW: Dispatch table keyed by the envelope "type": (command model, handler)
"""

import json
from typing import Any, Awaitable, Callable, Dict, Tuple, Type

from pydantic import ValidationError

from ..models.messages import (
    ClientCommand,
    InviteCommand,
    AcceptCommand,
    DeclineCommand,
    AddItemCommand,
    RemoveItemCommand,
    ConfirmCommand,
    CancelCommand,
    ErrorEvent,
)
from ..utils.exceptions import BusinessException, UnknownMessageTypeException, ValidationException
from ..utils.logger import get_logger
from .connection_registry import ClientConnection
from .negotiation_engine import LiveTradeEngine

logger = get_logger(__name__)

Handler = Callable[[ClientConnection, Any], Awaitable[Any]]


class MessageDispatcher:
    """
    Route client commands to the engine.

    Errors are answered to the sending connection only; the socket stays open.
    """

    def __init__(self, engine: LiveTradeEngine):
        self.engine = engine
        self._routes: Dict[str, Tuple[Type[ClientCommand], Handler]] = {
            "invite": (InviteCommand, self._invite),
            "accept": (AcceptCommand, self._accept),
            "decline": (DeclineCommand, self._decline),
            "add_item": (AddItemCommand, self._add_item),
            "remove_item": (RemoveItemCommand, self._remove_item),
            "confirm": (ConfirmCommand, self._confirm),
            "cancel": (CancelCommand, self._cancel),
        }

    @property
    def message_types(self) -> list[str]:
        return list(self._routes)

    async def dispatch_raw(self, connection: ClientConnection, raw: str):
        """Decode socket text and dispatch it."""
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            await self._reply_error(connection, ValidationException("Message is not valid JSON"))
            return
        await self.dispatch(connection, envelope)

    async def dispatch(self, connection: ClientConnection, envelope: Any):
        """
        Dispatch a decoded envelope.

        Args:
            connection: The sender's connection (identity source)
            envelope: Decoded JSON object with a "type" field
        """
        message_type = envelope.get("type") if isinstance(envelope, dict) else None
        logger.debug(f"Live trade message from user {connection.user_id}: {message_type}")

        try:
            route = self._routes.get(message_type)
            if route is None:
                raise UnknownMessageTypeException(message_type)

            command_model, handler = route
            try:
                command = command_model.model_validate(envelope)
            except ValidationError as e:
                raise ValidationException(
                    f"Invalid {message_type} message",
                    field_errors=[
                        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                        for err in e.errors()
                    ]
                )

            await handler(connection, command)

        except BusinessException as e:
            logger.info(f"Rejected {message_type} from user {connection.user_id}: {e.code} - {e.message}")
            await self._reply_error(connection, e)
        except Exception as e:
            logger.error(f"Error handling {message_type} from user {connection.user_id}: {e}", exc_info=True)
            await self._reply_error(
                connection,
                BusinessException("Internal error while processing message", code="INTERNAL_ERROR")
            )

    async def _reply_error(self, connection: ClientConnection, exc: BusinessException):
        try:
            await connection.send(ErrorEvent(**exc.to_dict()).to_payload())
        except Exception as e:
            logger.warning(f"Failed to deliver error to user {connection.user_id}: {e}")

    # ========== Handlers ==========

    async def _invite(self, connection: ClientConnection, command: InviteCommand):
        await self.engine.invite(connection.participant, command.target_user_id, command.listing_item_id)

    async def _accept(self, connection: ClientConnection, command: AcceptCommand):
        await self.engine.accept(command.session_id, connection.user_id)

    async def _decline(self, connection: ClientConnection, command: DeclineCommand):
        await self.engine.decline(command.session_id, connection.user_id)

    async def _add_item(self, connection: ClientConnection, command: AddItemCommand):
        await self.engine.add_item(command.session_id, connection.user_id, command.item_id, command.quantity)

    async def _remove_item(self, connection: ClientConnection, command: RemoveItemCommand):
        await self.engine.remove_item(command.session_id, connection.user_id, command.item_id)

    async def _confirm(self, connection: ClientConnection, command: ConfirmCommand):
        await self.engine.confirm(command.session_id, connection.user_id)

    async def _cancel(self, connection: ClientConnection, command: CancelCommand):
        await self.engine.cancel(command.session_id, connection.user_id)
