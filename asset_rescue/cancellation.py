"""
Cancellation

Operation handles passed explicitly through every call boundary and checked
before each blocking network call.
"""

import random
import string
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from loguru import logger

from .errors import Cancelled

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix: str) -> str:
    """Build ids like op_1700000000000_k3j9x0a1b"""
    suffix = ''.join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


class CancellationToken:
    """Cooperative cancellation flag for one discovery + transfer run"""

    def __init__(self, operation_id: Optional[str] = None):
        self.operation_id = operation_id or generate_id('op')
        self.created_at = datetime.now(timezone.utc)
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Operation cancelled by user"):
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason
            logger.info(f"Cancellation requested for {self.operation_id}: {reason}")

    def raise_if_cancelled(self):
        """Raise Cancelled when the flag is set"""
        if self._cancelled:
            raise Cancelled(self.reason or "Operation cancelled")

    def __repr__(self):
        state = "cancelled" if self._cancelled else "active"
        return f"CancellationToken({self.operation_id}: {state})"


def check_cancelled(token: Optional[CancellationToken]):
    """Suspend-point check that tolerates a missing token"""
    if token is not None:
        token.raise_if_cancelled()


class OperationRegistry:
    """
    Tracks in-flight rescue operations by id

    Features:
    - Create a token per operation
    - Cancel one or all operations
    - Release finished operations
    """

    def __init__(self):
        self._operations: Dict[str, CancellationToken] = {}

    def create(self, operation_id: Optional[str] = None) -> CancellationToken:
        token = CancellationToken(operation_id)
        self._operations[token.operation_id] = token
        return token

    def get(self, operation_id: str) -> Optional[CancellationToken]:
        return self._operations.get(operation_id)

    def cancel(self, operation_id: str, reason: str = "Operation cancelled by user") -> bool:
        token = self._operations.get(operation_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def cancel_all(self, reason: str = "Operation cancelled by user") -> int:
        """Cancel every active operation, returning how many were flagged"""
        count = 0
        for token in self._operations.values():
            if not token.is_cancelled:
                token.cancel(reason)
                count += 1
        logger.info(f"Cancelled {count} active rescue operations")
        return count

    def release(self, operation_id: str):
        self._operations.pop(operation_id, None)

    def cleanup(self, max_age_seconds: float = 3600.0) -> int:
        """Drop operations older than max_age_seconds"""
        now = datetime.now(timezone.utc)
        stale = [
            op_id for op_id, token in self._operations.items()
            if (now - token.created_at).total_seconds() > max_age_seconds
        ]
        for op_id in stale:
            del self._operations[op_id]
        return len(stale)

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._operations.values() if not t.is_cancelled)
