"""
Custom business exceptions for the live trade engine and API.

WHAT: Domain-specific exceptions with stable error codes
WHY: Same error vocabulary on the WebSocket and the REST endpoints
HOW: Exception classes carrying a code, a message and optional details
"""

from typing import Optional, List, Dict, Any


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an error event or response body."""
        return {"code": self.code, "message": self.message, "details": self.details}


class SessionNotFoundException(BusinessException):
    """Raised when a live trade session id is unknown or already terminal."""

    def __init__(self, session_id: str):
        super().__init__(
            message="Trade session not found",
            code="SESSION_NOT_FOUND",
            details={"session_id": session_id}
        )


class TradeNotFoundException(BusinessException):
    """Raised when a persisted trade record is not found."""

    def __init__(self, trade_id: str):
        super().__init__(
            message=f"Trade not found: {trade_id}",
            code="TRADE_NOT_FOUND",
            details={"trade_id": trade_id}
        )


class TargetOfflineException(BusinessException):
    """Raised when inviting a user with no live connection."""

    def __init__(self, user_id: int):
        super().__init__(
            message="User is not online",
            code="TARGET_OFFLINE",
            details={"user_id": user_id}
        )


class SelfTradeException(BusinessException):
    """Raised when a user tries to trade with themselves."""

    def __init__(self, user_id: int):
        super().__init__(
            message="You cannot trade with yourself",
            code="SELF_TRADE",
            details={"user_id": user_id}
        )


class NotParticipantException(BusinessException):
    """Raised when a command comes from a user outside the session."""

    def __init__(self, session_id: str, user_id: int):
        super().__init__(
            message="You are not a participant in this trade",
            code="NOT_PARTICIPANT",
            details={"session_id": session_id, "user_id": user_id}
        )


class NotTargetException(BusinessException):
    """Raised when someone other than the invitee answers an invite."""

    def __init__(self, session_id: str, user_id: int):
        super().__init__(
            message="You are not the target of this trade",
            code="NOT_TARGET",
            details={"session_id": session_id, "user_id": user_id}
        )


class InvalidSessionStateException(BusinessException):
    """Raised when a command is not allowed in the session's current status."""

    def __init__(self, session_id: str, current_status: str, expected: str):
        super().__init__(
            message=f"Trade session is {current_status}, expected {expected}",
            code="INVALID_SESSION_STATE",
            details={"session_id": session_id, "current_status": current_status, "expected": expected}
        )


class ItemNotOwnedException(BusinessException):
    """Raised when the user has no inventory row for the item."""

    def __init__(self, user_id: int, item_id: int):
        super().__init__(
            message="Item not found in inventory",
            code="ITEM_NOT_OWNED",
            details={"user_id": user_id, "item_id": item_id}
        )


class ItemNotTradeableException(BusinessException):
    """Raised when the item is flagged as not tradeable."""

    def __init__(self, item_id: int):
        super().__init__(
            message="Item is not tradeable",
            code="ITEM_NOT_TRADEABLE",
            details={"item_id": item_id}
        )


class InsufficientQuantityException(BusinessException):
    """Raised when the user doesn't own enough of an item."""

    def __init__(self, user_id: int, item_id: int, requested: int, available: int):
        super().__init__(
            message=f"Insufficient quantity: have {available} of item {item_id}, requested {requested}",
            code="INSUFFICIENT_QUANTITY",
            details={
                "user_id": user_id,
                "item_id": item_id,
                "requested": requested,
                "available": available
            }
        )


class ItemNotInOfferException(BusinessException):
    """Raised when removing an item that isn't on the user's side."""

    def __init__(self, session_id: str, item_id: int):
        super().__init__(
            message="Item is not part of your offer",
            code="ITEM_NOT_IN_OFFER",
            details={"session_id": session_id, "item_id": item_id}
        )


class OfferTooLargeException(BusinessException):
    """Raised when one side already carries the maximum number of lines."""

    def __init__(self, session_id: str, max_items: int):
        super().__init__(
            message=f"An offer may contain at most {max_items} items",
            code="OFFER_TOO_LARGE",
            details={"session_id": session_id, "max_items": max_items}
        )


class EmptyTradeException(BusinessException):
    """Raised when confirming a trade with nothing on either side."""

    def __init__(self, session_id: str):
        super().__init__(
            message="Add at least one item before confirming",
            code="EMPTY_TRADE",
            details={"session_id": session_id}
        )


class SettlementException(BusinessException):
    """Raised inside settlement when the authoritative re-check fails."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message=message, code="SETTLEMENT_FAILED", details=details)


class UnknownMessageTypeException(BusinessException):
    """Raised by the dispatcher for envelopes with an unrecognised type."""

    def __init__(self, message_type: Any):
        super().__init__(
            message="Unknown message type",
            code="UNKNOWN_MESSAGE_TYPE",
            details={"type": message_type}
        )


class ValidationException(BusinessException):
    """Raised for validation errors."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors} if field_errors else None
        )
