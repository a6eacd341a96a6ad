"""
Error taxonomy for atomicswap.

Protocol errors (bad input, malformed or mismatched contracts, wrong
secrets, early refunds) are fatal to the current command and never retried.
Network errors are the only retriable class; retrying is left to the caller.
"""

from typing import Any, Optional


class AtomicSwapError(Exception):
    """Base class for every error raised by atomicswap."""
    retriable = False

    def __init__(self, message: str, expected: Any = None, observed: Any = None):
        self.expected = expected
        self.observed = observed
        if expected is not None or observed is not None:
            message = f"{message} (expected {expected}, got {observed})"
        super().__init__(message)


class InvalidParameter(AtomicSwapError, ValueError):
    """Bad caller input, e.g. a locktime in the past."""


class UnsafeLocktime(InvalidParameter):
    """Locktime already elapsed, too distant, or of the wrong kind."""


class MalformedContract(AtomicSwapError, ValueError):
    """Script does not match the HTLC template."""

    def __init__(self, message: str, position: Optional[int] = None,
                 expected: Any = None, observed: Any = None):
        self.position = position
        if position is not None:
            message = f"{message} at token {position}"
        super().__init__(message, expected, observed)


class AmountMismatch(AtomicSwapError, ValueError):
    """Funding output pays less than the expected amount."""


class AddressMismatch(AtomicSwapError, ValueError):
    """Funding transaction does not pay the contract address."""


class SecretHashMismatch(AtomicSwapError, ValueError):
    """Contract commits to a different secret hash than expected."""


class SecretMismatch(AtomicSwapError, ValueError):
    """Supplied secret does not hash to the contract's secret hash."""


class LocktimeNotElapsed(AtomicSwapError):
    """Refund attempted before the contract locktime."""


class SecretNotFound(AtomicSwapError):
    """No input of the transaction reveals the secret."""


class InvalidTransition(AtomicSwapError):
    """Operation is not valid in the observed swap state."""


class SigningError(AtomicSwapError):
    """Signing service could not produce a signature."""


class TransactionNotFound(AtomicSwapError):
    """Node does not know the requested transaction."""


class NetworkError(AtomicSwapError):
    """RPC transport failure or deadline exceeded."""
    retriable = True


class BroadcastRejected(AtomicSwapError):
    """Node refused the transaction; message is the node's, verbatim."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class RPCError(AtomicSwapError):
    """Node answered a call with a JSON-RPC error."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)
