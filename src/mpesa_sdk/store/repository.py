"""In-memory transaction store shared by the request handlers."""

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from ..errors import GatewayIdConflict, TransactionNotFound
from .ids import IdGenerator, TokenIdGenerator
from .models import TransactionRecord, TransactionStatus

logger = logging.getLogger(__name__)

# Attempts at drawing an unused identifier before giving up
MAX_ID_ATTEMPTS = 5


class TransactionStore:
    """Process-lifetime store of STK push transactions.

    Every operation runs under a single lock and never awaits while holding
    it, so the store can be shared between event-loop handlers and worker
    threads. Records are never deleted.
    """

    def __init__(self, id_generator: Optional[IdGenerator] = None):
        """Initialize an empty store.

        Args:
            id_generator: Callable producing local identifiers. Defaults to
                random hex tokens.
        """
        self._id_generator = id_generator or TokenIdGenerator()
        self._lock = threading.Lock()
        self._records: Dict[str, TransactionRecord] = {}
        self._by_gateway_id: Dict[str, str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, local_id: object) -> bool:
        with self._lock:
            return local_id in self._records

    def create(self, payer_reference: str, amount: int) -> str:
        """Insert a new pending transaction.

        Args:
            payer_reference: Normalized payer phone number.
            amount: Amount in whole currency units.

        Returns:
            The local identifier of the new record.

        Raises:
            RuntimeError: If no unused identifier could be generated.
        """
        with self._lock:
            for _ in range(MAX_ID_ATTEMPTS):
                local_id = self._id_generator()
                if local_id not in self._records:
                    break
                logger.warning(f"Generated identifier {local_id} already in use, retrying")
            else:
                raise RuntimeError(
                    f"Could not generate an unused transaction id after {MAX_ID_ATTEMPTS} attempts"
                )

            self._records[local_id] = TransactionRecord(
                local_id=local_id,
                payer_reference=payer_reference,
                amount=amount,
            )

        logger.info(f"Created transaction {local_id} with status pending")
        return local_id

    def attach_gateway_id(
        self,
        local_id: str,
        gateway_tracking_id: str,
        merchant_request_id: Optional[str] = None,
    ) -> None:
        """Link the gateway's tracking identifier to a transaction.

        Attaching the identifier a record already holds is a no-op.

        Args:
            local_id: Local transaction identifier.
            gateway_tracking_id: The gateway's CheckoutRequestID.
            merchant_request_id: The gateway's MerchantRequestID, if any.

        Raises:
            TransactionNotFound: If the local identifier is unknown.
            GatewayIdConflict: If the record already has a different tracking
                identifier, or the tracking identifier belongs to another record.
        """
        with self._lock:
            record = self._get_locked(local_id)

            if record.gateway_tracking_id == gateway_tracking_id:
                return
            if record.gateway_tracking_id is not None:
                raise GatewayIdConflict(
                    f"Transaction {local_id} is already linked to "
                    f"{record.gateway_tracking_id}, refusing {gateway_tracking_id}"
                )
            owner = self._by_gateway_id.get(gateway_tracking_id)
            if owner is not None:
                raise GatewayIdConflict(
                    f"Tracking id {gateway_tracking_id} already belongs to transaction {owner}"
                )

            self._records[local_id] = replace(
                record,
                gateway_tracking_id=gateway_tracking_id,
                merchant_request_id=merchant_request_id,
                updated_at=datetime.now(timezone.utc),
            )
            self._by_gateway_id[gateway_tracking_id] = local_id

        logger.info(f"Linked transaction {local_id} to CheckoutRequestID {gateway_tracking_id}")

    def find_by_gateway_id(self, gateway_tracking_id: str) -> Optional[TransactionRecord]:
        """Look up a transaction by the gateway's tracking identifier."""
        with self._lock:
            local_id = self._by_gateway_id.get(gateway_tracking_id)
            if local_id is None:
                return None
            return self._records[local_id]

    def set_status(
        self,
        local_id: str,
        status: TransactionStatus,
        result_code: Optional[int] = None,
        result_desc: Optional[str] = None,
        receipt_number: Optional[str] = None,
    ) -> bool:
        """Move a pending transaction to a terminal status.

        The first terminal write wins. Later calls leave the record, including
        its result fields, untouched.

        Args:
            local_id: Local transaction identifier.
            status: Either SUCCESS or FAILED.
            result_code: Gateway result code, if known.
            result_desc: Human readable reason for the outcome.
            receipt_number: M-Pesa receipt number for successful payments.

        Returns:
            True if the status changed, False if the record was already final.

        Raises:
            TransactionNotFound: If the local identifier is unknown.
            ValueError: If ``status`` is not a terminal status.
        """
        status = TransactionStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Cannot set non-terminal status {status.value}")

        with self._lock:
            record = self._get_locked(local_id)
            if record.status.is_terminal:
                previous = record.status
                applied = False
            else:
                self._records[local_id] = replace(
                    record,
                    status=status,
                    result_code=result_code,
                    result_desc=result_desc,
                    receipt_number=receipt_number,
                    updated_at=datetime.now(timezone.utc),
                )
                applied = True

        if applied:
            logger.info(f"Transaction {local_id} moved to {status.value}")
        else:
            logger.info(
                f"Ignoring {status.value} for transaction {local_id}, "
                f"already {previous.value}"
            )
        return applied

    def get(self, local_id: str) -> Optional[TransactionRecord]:
        """Return a snapshot of a transaction, or None if unknown."""
        with self._lock:
            return self._records.get(local_id)

    def _get_locked(self, local_id: str) -> TransactionRecord:
        record = self._records.get(local_id)
        if record is None:
            raise TransactionNotFound(local_id)
        return record
