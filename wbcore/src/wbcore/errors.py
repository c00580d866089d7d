"""
Error taxonomy shared across the wallet, its RPC surface and the handoff flow.

Every error carries a stable ``code`` so it survives a round trip through the
JSON-RPC service and can be rebuilt on the client side.
"""

from __future__ import annotations


class WalletBridgeError(Exception):
    """Base class for all wallet and handoff failures."""

    code = "WalletError"


class InvalidSpecError(WalletBridgeError):
    """Malformed or incomplete action request. Not retried."""

    code = "InvalidSpec"


class UnknownReferenceError(WalletBridgeError):
    """Sign or abort against a stale or already-terminal reference."""

    code = "UnknownReference"


class ConcurrentMutationError(WalletBridgeError):
    """Sign and abort raced on the same reference."""

    code = "ConcurrentMutation"


class NetworkMismatchError(WalletBridgeError):
    """Two endpoints disagree on the network they operate on."""

    code = "NetworkMismatch"


class DerivationError(WalletBridgeError):
    """Counterparty key or derivation salts are malformed."""

    code = "DerivationError"


class ClaimRejectedError(WalletBridgeError):
    """A remittance does not match the output it claims."""

    code = "ClaimRejected"


class InsufficientFundsError(WalletBridgeError):
    code = "InsufficientFunds"


class UnknownOutputError(WalletBridgeError):
    code = "UnknownOutput"


class HandoffStateError(WalletBridgeError):
    """A handoff step was invoked out of order."""

    code = "InvalidState"


_ERRORS_BY_CODE: dict[str, type[WalletBridgeError]] = {
    cls.code: cls
    for cls in (
        WalletBridgeError,
        InvalidSpecError,
        UnknownReferenceError,
        ConcurrentMutationError,
        NetworkMismatchError,
        DerivationError,
        ClaimRejectedError,
        InsufficientFundsError,
        UnknownOutputError,
        HandoffStateError,
    )
}


def error_from_code(code: str, message: str) -> WalletBridgeError:
    """Rebuild the exception matching a wire error code."""
    cls = _ERRORS_BY_CODE.get(code, WalletBridgeError)
    return cls(message)
