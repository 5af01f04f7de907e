"""Local transaction identifier generators."""

import itertools
import secrets
import threading
from typing import Protocol


class IdGenerator(Protocol):
    """Callable returning a fresh identifier string."""

    def __call__(self) -> str:
        ...


class TokenIdGenerator:
    """Random hex identifiers from the ``secrets`` module."""

    def __init__(self, nbytes: int = 16):
        self.nbytes = nbytes

    def __call__(self) -> str:
        return secrets.token_hex(self.nbytes)


class SequentialIdGenerator:
    """Deterministic ``<prefix><n>`` identifiers, for tests and local runs."""

    def __init__(self, prefix: str = "txn_", start: int = 1):
        self.prefix = prefix
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            return f"{self.prefix}{next(self._counter)}"
