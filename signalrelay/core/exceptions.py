"""
Custom exceptions for signalrelay.

Provides a hierarchy of exceptions for better error handling and debugging.
"""

from typing import Any, Dict, Optional


class SignalRelayError(Exception):
    """Base exception for all signalrelay errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(SignalRelayError):
    """Raised when there are configuration issues."""
    pass


class StoreError(SignalRelayError):
    """Work-item store or ledger is unreachable or rejected a statement."""
    pass


class ClaimLostError(StoreError):
    """A conditional update found the item no longer in the expected state."""

    def __init__(self, item_id: Any, expected_status: str, **kwargs):
        super().__init__(
            f"Item {item_id} is no longer '{expected_status}'",
            **kwargs,
        )
        self.item_id = item_id
        self.expected_status = expected_status


class ValidationError(SignalRelayError):
    """Work-item payload is missing fields required for formatting."""
    pass


class TransportError(SignalRelayError):
    """The messaging platform rejected or failed a send."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class DeliveryCommitError(SignalRelayError):
    """Message went out but its state commit could not be confirmed."""

    def __init__(self, message: str, transport_message_id: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.transport_message_id = transport_message_id
