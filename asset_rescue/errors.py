"""
Rescue Errors

Exception taxonomy shared by discovery, transfer and session code.

- TransientNetworkError: retry or fall through to the next strategy
- InsufficientFunds: skip the asset, keep going
- SimulationRejected: decrement-and-retry, then abandon with a reason
- Cancelled: clean termination of the current run (not a failure)
- UnsupportedAssetInterface: skip the asset, log only
"""

from typing import Optional


class RescueError(Exception):
    """Base class for all rescue errors"""


class ValidationError(RescueError):
    """Invalid caller input (keys, addresses, networks)"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class TransientNetworkError(RescueError):
    """RPC / HTTP failure that may succeed on retry or via another strategy"""


class BlockRangeLimitError(TransientNetworkError):
    """Provider refused a log query because the block range was too wide"""

    def __init__(self, message: str, from_block: Optional[int] = None, to_block: Optional[int] = None):
        super().__init__(message)
        self.from_block = from_block
        self.to_block = to_block


class InsufficientFunds(RescueError):
    """Source account cannot pay for the operation"""

    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class SimulationRejected(RescueError):
    """Transaction simulation returned an error"""

    def __init__(self, message: str, logs: Optional[list] = None):
        super().__init__(message)
        self.logs = logs or []


class Cancelled(RescueError):
    """Operation was cancelled through its cancellation token"""


class UnsupportedAssetInterface(RescueError):
    """Contract does not answer any supported token interface"""


# Substrings providers use when a getLogs range is too wide
BLOCK_RANGE_ERROR_MARKERS = (
    'block range',
    'range is too large',
    'exceed maximum block range',
    'query returned more than',
    'range too large',
    '500 block range',
    'too many blocks',
)


def is_block_range_error(error: Exception) -> bool:
    """Check whether an RPC error message signals a block-range limit"""
    message = str(error).lower()
    return any(marker in message for marker in BLOCK_RANGE_ERROR_MARKERS)
