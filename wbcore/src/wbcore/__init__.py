"""
wbcore - Core library for walletbridge components

Provides the shared wallet data model, error taxonomy and handoff wire format.
"""

__version__ = "0.3.0"

from wbcore.constants import (
    HANDOFF_RECORD_TYPE,
    WALLET_PAYMENT,
    WALLET_PAYMENT_PROTOCOL,
)
from wbcore.errors import (
    ClaimRejectedError,
    ConcurrentMutationError,
    DerivationError,
    HandoffStateError,
    InsufficientFundsError,
    InvalidSpecError,
    NetworkMismatchError,
    UnknownOutputError,
    UnknownReferenceError,
    WalletBridgeError,
    error_from_code,
)
from wbcore.models import (
    Action,
    ActionStatus,
    CreateActionArgs,
    InternalizeActionArgs,
    KeyLinkage,
    Network,
)
from wbcore.protocol import HandoffPayload, format_key_id, generate_derivation_salt

__all__ = [
    "Action",
    "ActionStatus",
    "ClaimRejectedError",
    "ConcurrentMutationError",
    "CreateActionArgs",
    "DerivationError",
    "HANDOFF_RECORD_TYPE",
    "HandoffPayload",
    "HandoffStateError",
    "InsufficientFundsError",
    "InternalizeActionArgs",
    "InvalidSpecError",
    "KeyLinkage",
    "Network",
    "NetworkMismatchError",
    "UnknownOutputError",
    "UnknownReferenceError",
    "WALLET_PAYMENT",
    "WALLET_PAYMENT_PROTOCOL",
    "WalletBridgeError",
    "error_from_code",
    "format_key_id",
    "generate_derivation_salt",
]
