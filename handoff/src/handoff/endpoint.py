"""
Wallet endpoints taking part in a handoff.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from handoff.config import EndpointConfig
from wbcore.models import Network
from wbwallet.backends.base import WalletInterface
from wbwallet.backends.http_client import HTTPWalletClient


@dataclass
class WalletEndpoint:
    """
    One side of a handoff.

    ``network`` is what the operator declared; the wallet's own answer is
    authoritative and the guard rejects a disagreement.
    """

    name: str
    wallet: WalletInterface
    network: Network | None = None

    async def close(self) -> None:
        await self.wallet.close()


def connect_endpoint(
    name: str,
    storage_url: str,
    network: Network | str | None = None,
    timeout: float = 30.0,
) -> WalletEndpoint:
    """Endpoint for a wallet service reachable over JSON-RPC."""
    declared = None if network is None else Network.parse(network)
    logger.debug(f"Endpoint {name}: {storage_url} (declared network: {declared})")
    return WalletEndpoint(
        name=name,
        wallet=HTTPWalletClient(storage_url, timeout=timeout),
        network=declared,
    )


def endpoint_from_config(config: EndpointConfig) -> WalletEndpoint:
    return connect_endpoint(config.name, config.storage_url, config.network, config.timeout)
