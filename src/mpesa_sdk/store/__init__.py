"""In-memory transaction store."""

from .ids import IdGenerator, TokenIdGenerator, SequentialIdGenerator
from .models import TransactionRecord, TransactionStatus
from .repository import TransactionStore

__all__ = [
    # Identifier generation
    "IdGenerator",
    "TokenIdGenerator",
    "SequentialIdGenerator",
    # Models
    "TransactionRecord",
    "TransactionStatus",
    # Store
    "TransactionStore",
]
