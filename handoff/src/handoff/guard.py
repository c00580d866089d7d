"""
Network and identity checks between two wallet endpoints.
"""

from __future__ import annotations

from loguru import logger

from handoff.endpoint import WalletEndpoint
from wbcore.errors import NetworkMismatchError
from wbcore.models import GetPublicKeyArgs, Network


class NetworkIdentityGuard:
    """
    Ensures a payer and payee wallet operate on the same network before any
    key is derived or coin is spent, and reads their identity keys.
    """

    async def network_of(self, endpoint: WalletEndpoint) -> Network:
        network = await endpoint.wallet.get_network()
        if endpoint.network is not None and endpoint.network != network:
            raise NetworkMismatchError(
                f"{endpoint.name} was declared on {endpoint.network.value}net "
                f"but its wallet reports {network.value}net"
            )
        return network

    async def validate(self, local: WalletEndpoint, remote: WalletEndpoint) -> Network:
        """
        Check both endpoints share a network.

        Returns:
            The common network

        Raises:
            NetworkMismatchError: If the endpoints disagree
        """
        local_network = await self.network_of(local)
        remote_network = await self.network_of(remote)
        if local_network != remote_network:
            raise NetworkMismatchError(
                f"{local.name} is on {local_network.value}net "
                f"but {remote.name} is on {remote_network.value}net"
            )
        logger.debug(f"{local.name} and {remote.name} both on {local_network.value}net")
        return local_network

    async def identity_of(self, endpoint: WalletEndpoint) -> str:
        result = await endpoint.wallet.get_public_key(GetPublicKeyArgs(identity_key=True))
        return result.public_key
