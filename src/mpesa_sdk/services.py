"""Transaction service: STK push initiation, callback reconciliation and status queries."""

import asyncio
import enum
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, Set, TypeVar

from .errors import (
    AuthError,
    GatewayError,
    GatewayTimeoutError,
    TransactionNotFound,
    ValidationError,
)
from .gateway.base import TokenProvider, StkPushGateway, StkPushRequest, StkPushResponse
from .gateway.callbacks import parse_stk_callback
from .store import TransactionRecord, TransactionStatus, TransactionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")

INITIATION_FAILED = "Failed to initiate STK Push."


class CallbackOutcome(str, enum.Enum):
    """What a callback did to the store."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class InitiationResult:
    """Local identifier plus the gateway's acknowledgement of the push."""
    local_id: str
    gateway_response: StkPushResponse


def normalize_phone(phone: Any) -> str:
    """Normalize a Kenyan mobile number to the 2547XXXXXXXX form.

    Accepts ``+254...``, ``254...``, ``07...``/``01...`` and bare ``7...``/``1...``
    numbers, ignoring spaces and dashes.

    Raises:
        ValidationError: If the value is missing or not a valid number.
    """
    if phone is None or isinstance(phone, bool):
        raise ValidationError("phone is required")
    digits = re.sub(r"[\s\-]", "", str(phone))
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    if not PHONE_PATTERN.match(digits):
        raise ValidationError(f"Invalid phone number: {phone}")
    return digits


def validate_amount(amount: Any) -> int:
    """Return the amount as a positive whole number.

    Raises:
        ValidationError: If the amount is missing, fractional or not positive.
    """
    if amount is None or isinstance(amount, bool):
        raise ValidationError("amount is required")
    if isinstance(amount, float):
        if not amount.is_integer():
            raise ValidationError("amount must be a whole number")
        amount = int(amount)
    if not isinstance(amount, int):
        raise ValidationError("amount must be a number")
    if amount <= 0:
        raise ValidationError("amount must be greater than zero")
    return amount


def mask_phone(phone: str) -> str:
    """Hide the middle digits of a phone number for logging."""
    if len(phone) <= 8:
        return "***"
    return f"{phone[:4]}****{phone[-4:]}"


class TransactionService:
    """Coordinates the transaction store with the payment gateway."""

    def __init__(
        self,
        store: TransactionStore,
        token_provider: TokenProvider,
        gateway: StkPushGateway,
        request_timeout: float = 30.0,
        account_reference: str = "Donation",
        transaction_desc: str = "Donation",
    ):
        """Initialize the service.

        Args:
            store: Shared transaction store.
            token_provider: Source of gateway access tokens.
            gateway: STK push gateway.
            request_timeout: Seconds allowed for each gateway call.
            account_reference: AccountReference sent with every push.
            transaction_desc: TransactionDesc sent with every push.
        """
        self.store = store
        self.token_provider = token_provider
        self.gateway = gateway
        self.request_timeout = request_timeout
        self.account_reference = account_reference
        self.transaction_desc = transaction_desc
        self._inflight: Set["asyncio.Task[InitiationResult]"] = set()

    async def initiate(self, phone: Any, amount: Any) -> InitiationResult:
        """Create a transaction and send the STK push prompt.

        The record exists before any gateway call, and the remaining steps run
        in a task that is shielded from the caller: cancelling the caller (for
        example on client disconnect) does not stop the initiation.

        Args:
            phone: Payer phone number.
            amount: Amount in whole currency units.

        Returns:
            InitiationResult with the local identifier and gateway response.

        Raises:
            ValidationError: If the input is invalid; no record is created.
            AuthError: If the token exchange failed; the record is marked failed.
            GatewayError: If the push was rejected or timed out; the record is
                marked failed.
        """
        payer_reference = normalize_phone(phone)
        amount = validate_amount(amount)

        local_id = self.store.create(payer_reference, amount)
        logger.info(
            f"Initiating STK Push {local_id} for {mask_phone(payer_reference)} amount: KES {amount}"
        )

        task = asyncio.ensure_future(self._complete_initiation(local_id, payer_reference, amount))
        self._inflight.add(task)
        task.add_done_callback(self._forget)
        return await asyncio.shield(task)

    async def _complete_initiation(self, local_id: str, phone: str, amount: int) -> InitiationResult:
        request = StkPushRequest(
            phone=phone,
            amount=amount,
            account_reference=self.account_reference,
            transaction_desc=self.transaction_desc,
        )
        try:
            token = await self._bounded(self.token_provider.get_token(), "access token")
            response = await self._bounded(
                self.gateway.initiate_stk_push(request, token), "STK Push response"
            )
            self.store.attach_gateway_id(
                local_id,
                response.checkout_request_id,
                merchant_request_id=response.merchant_request_id,
            )
        except (AuthError, GatewayError) as e:
            if isinstance(e, GatewayError) and e.status_code == 401:
                self.token_provider.invalidate()
            logger.error(f"STK Push Error for {local_id}: {e.message}")
            self._mark_failed(local_id, e.message)
            e.transaction_id = local_id
            raise
        except asyncio.CancelledError:
            self._mark_failed(local_id, "Initiation cancelled")
            raise
        except Exception as e:
            logger.error(f"Unexpected STK Push Error for {local_id}: {e}", exc_info=True)
            self._mark_failed(local_id, INITIATION_FAILED)
            error = GatewayError(INITIATION_FAILED, detail=str(e))
            error.transaction_id = local_id
            raise error from e

        logger.info(
            f"STK Push successful for {local_id}. CheckoutID: {response.checkout_request_id}"
        )
        return InitiationResult(local_id=local_id, gateway_response=response)

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(
                f"Timed out after {self.request_timeout:g}s waiting for {what}."
            ) from e

    def _forget(self, task: "asyncio.Task[InitiationResult]") -> None:
        self._inflight.discard(task)
        # A cancelled caller never awaits the result; mark the error as seen
        if not task.cancelled():
            task.exception()

    def _mark_failed(self, local_id: str, reason: str) -> None:
        self.store.set_status(local_id, TransactionStatus.FAILED, result_desc=reason)

    async def drain(self) -> None:
        """Wait for every in-flight initiation to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def handle_callback(self, payload: Any) -> CallbackOutcome:
        """Reconcile a gateway result notification with its transaction.

        Never raises for bad input: malformed and unmatched callbacks are
        logged and ignored, since the gateway needs an acknowledgement either way.

        Args:
            payload: Decoded webhook body.

        Returns:
            The CallbackOutcome, for logging and tests.
        """
        callback = parse_stk_callback(payload)
        if callback is None:
            logger.warning(f"Ignoring malformed STK callback: {str(payload)[:500]}")
            return CallbackOutcome.MALFORMED

        logger.info(
            f"Received M-Pesa Callback for {callback.checkout_request_id}: "
            f"ResultCode={callback.result_code} ResultDesc={callback.result_desc}"
        )

        record = self.store.find_by_gateway_id(callback.checkout_request_id)
        if record is None:
            logger.warning(
                f"Could not find a matching local transaction for CheckoutRequestID: "
                f"{callback.checkout_request_id}"
            )
            return CallbackOutcome.UNMATCHED

        status = TransactionStatus.SUCCESS if callback.succeeded else TransactionStatus.FAILED
        applied = self.store.set_status(
            record.local_id,
            status,
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            receipt_number=callback.receipt_number if callback.succeeded else None,
        )
        if not applied:
            logger.info(
                f"Duplicate callback for transaction {record.local_id} "
                f"({callback.checkout_request_id}) ignored"
            )
            return CallbackOutcome.DUPLICATE

        if callback.succeeded:
            logger.info(f"Transaction {record.local_id} was successful. Ref: {callback.receipt_number}")
        else:
            logger.warning(f"Transaction {record.local_id} failed: {callback.result_desc}")
        return CallbackOutcome.APPLIED

    def get_transaction(self, local_id: str) -> TransactionRecord:
        """Get a transaction snapshot.

        Raises:
            TransactionNotFound: If the identifier is unknown.
        """
        record = self.store.get(local_id)
        if record is None:
            raise TransactionNotFound(local_id)
        return record

    def get_status(self, local_id: str) -> TransactionStatus:
        """Get the current status of a transaction.

        Raises:
            TransactionNotFound: If the identifier is unknown.
        """
        return self.get_transaction(local_id).status
