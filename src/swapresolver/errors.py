"""Error taxonomy for swap orchestration.

Resolvers translate raw RPC/library exceptions into these types, so the
orchestrator and the intake boundary never see chain-specific errors.
"""

from typing import Optional


class SwapError(Exception):
    """Base class for all swap errors."""

    #: Transient errors may be retried by the caller with backoff.
    retryable = False

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id


class ValidationError(SwapError):
    """Malformed order, rejected before any chain interaction."""


class UnsupportedChainError(SwapError):
    """Chain id does not map to a supported chain family."""


class ChainQueryError(SwapError):
    """RPC call failed or timed out."""

    retryable = True


class FinalityTimeoutError(ChainQueryError):
    """Transaction did not reach the required depth before the deadline."""


class TransactionFailedError(SwapError):
    """Transaction was mined but reverted."""


class CredentialError(SwapError):
    """No usable signing material configured for a chain."""


class InvalidSecretError(SwapError):
    """Secret does not hash to the order's hashlock."""


class InvalidStateError(SwapError):
    """Operation not allowed in the order's current status."""


class OrderNotFoundError(SwapError):
    """No order with the given id."""


class NotYetWithdrawableError(SwapError):
    """Withdrawal window has not opened yet."""


class TooEarlyError(SwapError):
    """Cancellation window has not opened yet."""


class WindowClosedError(SwapError):
    """Withdrawal attempted after cancellation opened."""


class FundingVerificationError(SwapError):
    """Escrow does not hold the expected balance."""


class FlowInProgressError(SwapError):
    """Another flow holds the lock for this order."""
