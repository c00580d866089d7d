"""
Wallet interface client for a remote wallet service (JSON-RPC over HTTP).
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from wbcore.errors import WalletBridgeError, error_from_code
from wbcore.models import (
    AbortActionArgs,
    AbortActionResult,
    AcquireCertificateArgs,
    Certificate,
    CreateActionArgs,
    CreateActionResult,
    DiscoverByAttributesArgs,
    DiscoverByIdentityKeyArgs,
    DiscoverCertificatesResult,
    GetHeightResult,
    GetNetworkResult,
    GetPublicKeyArgs,
    GetPublicKeyResult,
    InternalizeActionArgs,
    InternalizeActionResult,
    ListActionsArgs,
    ListActionsResult,
    ListCertificatesArgs,
    ListCertificatesResult,
    ListOutputsArgs,
    ListOutputsResult,
    Network,
    ProveCertificateArgs,
    ProveCertificateResult,
    RelinquishCertificateArgs,
    RelinquishCertificateResult,
    RelinquishOutputArgs,
    RelinquishOutputResult,
    RevealCounterpartyKeyLinkageArgs,
    RevealCounterpartyKeyLinkageResult,
    RevealSpecificKeyLinkageArgs,
    RevealSpecificKeyLinkageResult,
    SignActionArgs,
    SignActionResult,
)
from wbwallet.backends.base import WalletInterface

# Timeout for wallet RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0


class HTTPWalletClient(WalletInterface):
    """
    Talks to a ``wb-wallet serve`` process (or any service speaking the same
    JSON-RPC surface). Remote errors come back as the matching
    ``wbcore.errors`` exception.
    """

    def __init__(
        self,
        url: str = "http://127.0.0.1:3321",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/") + "/"
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._request_id = 0

    async def _rpc_call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """
        Make an RPC call to the wallet service.

        Args:
            method: Wallet interface method name (camelCase)
            params: Method parameters

        Returns:
            RPC result

        Raises:
            WalletBridgeError: On wallet errors (the specific subclass when known)
            httpx.HTTPError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or {},
        }

        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Wallet RPC timed out: {method} - {e}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"Wallet RPC failed: {method} - {e}")
            raise

        if "error" in data and data["error"]:
            error_info = data["error"]
            name = (error_info.get("data") or {}).get("name")
            message = error_info.get("message", str(error_info))
            if name:
                raise error_from_code(name, message)
            raise WalletBridgeError(f"RPC error {error_info.get('code', 'unknown')}: {message}")

        return data.get("result")

    async def create_action(self, args: CreateActionArgs) -> CreateActionResult:
        return CreateActionResult.model_validate(
            await self._rpc_call("createAction", args.to_wire())
        )

    async def sign_action(self, args: SignActionArgs) -> SignActionResult:
        return SignActionResult.model_validate(await self._rpc_call("signAction", args.to_wire()))

    async def abort_action(self, args: AbortActionArgs) -> AbortActionResult:
        return AbortActionResult.model_validate(
            await self._rpc_call("abortAction", args.to_wire())
        )

    async def list_actions(self, args: ListActionsArgs) -> ListActionsResult:
        return ListActionsResult.model_validate(
            await self._rpc_call("listActions", args.to_wire())
        )

    async def internalize_action(self, args: InternalizeActionArgs) -> InternalizeActionResult:
        return InternalizeActionResult.model_validate(
            await self._rpc_call("internalizeAction", args.to_wire())
        )

    async def list_outputs(self, args: ListOutputsArgs) -> ListOutputsResult:
        return ListOutputsResult.model_validate(
            await self._rpc_call("listOutputs", args.to_wire())
        )

    async def relinquish_output(self, args: RelinquishOutputArgs) -> RelinquishOutputResult:
        return RelinquishOutputResult.model_validate(
            await self._rpc_call("relinquishOutput", args.to_wire())
        )

    async def get_public_key(self, args: GetPublicKeyArgs) -> GetPublicKeyResult:
        return GetPublicKeyResult.model_validate(
            await self._rpc_call("getPublicKey", args.to_wire())
        )

    async def get_network(self) -> Network:
        return GetNetworkResult.model_validate(await self._rpc_call("getNetwork")).network

    async def get_height(self) -> int:
        return GetHeightResult.model_validate(await self._rpc_call("getHeight")).height

    async def reveal_counterparty_key_linkage(
        self, args: RevealCounterpartyKeyLinkageArgs
    ) -> RevealCounterpartyKeyLinkageResult:
        return RevealCounterpartyKeyLinkageResult.model_validate(
            await self._rpc_call("revealCounterpartyKeyLinkage", args.to_wire())
        )

    async def reveal_specific_key_linkage(
        self, args: RevealSpecificKeyLinkageArgs
    ) -> RevealSpecificKeyLinkageResult:
        return RevealSpecificKeyLinkageResult.model_validate(
            await self._rpc_call("revealSpecificKeyLinkage", args.to_wire())
        )

    async def list_certificates(self, args: ListCertificatesArgs) -> ListCertificatesResult:
        return ListCertificatesResult.model_validate(
            await self._rpc_call("listCertificates", args.to_wire())
        )

    async def acquire_certificate(self, args: AcquireCertificateArgs) -> Certificate:
        return Certificate.model_validate(
            await self._rpc_call("acquireCertificate", args.to_wire())
        )

    async def prove_certificate(self, args: ProveCertificateArgs) -> ProveCertificateResult:
        return ProveCertificateResult.model_validate(
            await self._rpc_call("proveCertificate", args.to_wire())
        )

    async def relinquish_certificate(
        self, args: RelinquishCertificateArgs
    ) -> RelinquishCertificateResult:
        return RelinquishCertificateResult.model_validate(
            await self._rpc_call("relinquishCertificate", args.to_wire())
        )

    async def discover_by_identity_key(
        self, args: DiscoverByIdentityKeyArgs
    ) -> DiscoverCertificatesResult:
        return DiscoverCertificatesResult.model_validate(
            await self._rpc_call("discoverByIdentityKey", args.to_wire())
        )

    async def discover_by_attributes(
        self, args: DiscoverByAttributesArgs
    ) -> DiscoverCertificatesResult:
        return DiscoverCertificatesResult.model_validate(
            await self._rpc_call("discoverByAttributes", args.to_wire())
        )

    async def close(self) -> None:
        await self.client.aclose()
