"""Exception types raised by the SDK."""

from typing import Any, Dict, Optional


class MpesaError(Exception):
    """Base class for all SDK errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Local transaction the error was recorded against, if any
        self.transaction_id: Optional[str] = None


class ValidationError(MpesaError):
    """Client input is missing or malformed."""


class AuthError(MpesaError):
    """The gateway token exchange failed."""


class GatewayError(MpesaError):
    """The gateway rejected or failed an STK push request."""

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.detail = detail
        self.response = response or {}
        self.status_code = status_code


class GatewayTimeoutError(GatewayError):
    """A gateway call exceeded the configured timeout."""


class TransactionNotFound(MpesaError):
    """No transaction exists for the given local identifier."""

    def __init__(self, local_id: str):
        super().__init__(f"Transaction {local_id} not found")
        self.local_id = local_id


class GatewayIdConflict(MpesaError):
    """A tracking identifier would be overwritten or shared between records."""
