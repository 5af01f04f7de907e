"""Transaction record model for the in-memory store."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStatus(str, enum.Enum):
    """Lifecycle states of an STK push transaction."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


@dataclass(frozen=True)
class TransactionRecord:
    """Snapshot of a single transaction.

    Records are immutable; the store replaces the whole record on every
    change, so a snapshot handed to a caller never changes underneath it.
    """
    local_id: str
    payer_reference: str
    amount: int
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_tracking_id: Optional[str] = None
    merchant_request_id: Optional[str] = None

    # Set together with the terminal status
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the record to a JSON-friendly dictionary."""
        return {
            "id": self.local_id,
            "phone": self.payer_reference,
            "amount": self.amount,
            "status": self.status.value,
            "checkout_request_id": self.gateway_tracking_id,
            "merchant_request_id": self.merchant_request_id,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "receipt_number": self.receipt_number,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
