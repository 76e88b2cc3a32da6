"""
Exception types raised by the Ethereum relay adapter.

Each error kind carries the original values involved so callers can decide
whether to abort, alert, or retry the whole operation later.
"""


class RelayerError(Exception):
    """Base class for all adapter errors."""


class TransportError(RelayerError):
    """An RPC or network call failed."""


class NotFoundError(RelayerError):
    """A receipt, commitment, channel or fee sample is absent on-chain."""


class StalePricingError(RelayerError):
    """The pending transaction already pays more than a fresh suggestion."""

    def __init__(
        self,
        field: str,
        existing: int,
        suggested: int,
        existing_tip: int | None = None,
        suggested_tip: int | None = None,
    ):
        self.field = field
        self.existing = existing
        self.suggested = suggested
        self.existing_tip = existing_tip
        self.suggested_tip = suggested_tip
        message = f"pending tx {field} ({existing}) exceeds suggested {field} ({suggested})"
        if existing_tip is not None:
            message += f", pending tx gasTipCap ({existing_tip}) exceeds suggested gasTipCap ({suggested_tip})"
        super().__init__(message)


class RevertedError(RelayerError):
    """A transaction was mined but its execution failed."""

    def __init__(self, tx_hash: str, revert_reason: str, raw_error_data: bytes = b""):
        self.tx_hash = tx_hash
        self.revert_reason = revert_reason
        self.raw_error_data = raw_error_data
        super().__init__(
            f"tx execution reverted: txHash={tx_hash}, revertReason={revert_reason}"
        )


class ConfigurationError(RelayerError):
    """A configuration or pricing invariant was violated."""


class CancellationError(RelayerError):
    """The caller asked the operation to stop before it completed."""


class RevertDecodingError(RelayerError):
    """Revert data could not be matched to or decoded with a known error ABI."""
