"""
JSON-RPC method table shared by the wallet service and its HTTP client.

Method names are the camelCase wallet interface names; params are the
by-alias JSON dump of the matching args model.
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from wbcore.errors import InvalidSpecError, WalletBridgeError
from wbcore.models import (
    AbortActionArgs,
    AcquireCertificateArgs,
    CreateActionArgs,
    DiscoverByAttributesArgs,
    DiscoverByIdentityKeyArgs,
    GetPublicKeyArgs,
    InternalizeActionArgs,
    ListActionsArgs,
    ListCertificatesArgs,
    ListOutputsArgs,
    ProveCertificateArgs,
    RelinquishCertificateArgs,
    RelinquishOutputArgs,
    RevealCounterpartyKeyLinkageArgs,
    RevealSpecificKeyLinkageArgs,
    SignActionArgs,
)
from wbwallet.backends.base import WalletInterface

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
WALLET_ERROR = -32000

METHODS: dict[str, tuple[str, type[BaseModel] | None]] = {
    "createAction": ("create_action", CreateActionArgs),
    "signAction": ("sign_action", SignActionArgs),
    "abortAction": ("abort_action", AbortActionArgs),
    "listActions": ("list_actions", ListActionsArgs),
    "internalizeAction": ("internalize_action", InternalizeActionArgs),
    "listOutputs": ("list_outputs", ListOutputsArgs),
    "relinquishOutput": ("relinquish_output", RelinquishOutputArgs),
    "getPublicKey": ("get_public_key", GetPublicKeyArgs),
    "getNetwork": ("get_network", None),
    "getHeight": ("get_height", None),
    "revealCounterpartyKeyLinkage": (
        "reveal_counterparty_key_linkage",
        RevealCounterpartyKeyLinkageArgs,
    ),
    "revealSpecificKeyLinkage": ("reveal_specific_key_linkage", RevealSpecificKeyLinkageArgs),
    "listCertificates": ("list_certificates", ListCertificatesArgs),
    "acquireCertificate": ("acquire_certificate", AcquireCertificateArgs),
    "proveCertificate": ("prove_certificate", ProveCertificateArgs),
    "relinquishCertificate": ("relinquish_certificate", RelinquishCertificateArgs),
    "discoverByIdentityKey": ("discover_by_identity_key", DiscoverByIdentityKeyArgs),
    "discoverByAttributes": ("discover_by_attributes", DiscoverByAttributesArgs),
}


class RPCError(Exception):
    def __init__(self, code: int, message: str, name: str | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.name = name

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.name:
            error["data"] = {"name": self.name}
        return error


async def dispatch(wallet: WalletInterface, method: str, params: Any) -> Any:
    """
    Run one wallet interface call and return its JSON-ready result.

    Raises:
        RPCError: For unknown methods, bad params or wallet errors
    """
    if method not in METHODS:
        raise RPCError(METHOD_NOT_FOUND, f"Method not found: {method}")

    attr, args_model = METHODS[method]
    handler = getattr(wallet, attr)

    # Accept both {"...": ...} and [{"...": ...}] params
    if isinstance(params, list):
        params = params[0] if params else {}

    try:
        if args_model is None:
            value = await handler()
        else:
            value = await handler(args_model.model_validate(params or {}))
    except ValidationError as e:
        raise RPCError(INVALID_PARAMS, str(e), InvalidSpecError.code) from e
    except WalletBridgeError as e:
        logger.debug(f"{method} failed: {e.code}: {e}")
        raise RPCError(WALLET_ERROR, str(e), e.code) from e

    if method == "getNetwork":
        return {"network": value.value}
    if method == "getHeight":
        return {"height": value}
    return value.to_wire()
