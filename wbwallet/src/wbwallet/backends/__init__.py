"""
Wallet interface implementations.

Available wallets:
- LocalWallet: In-process reference wallet (keys, outputs and actions in memory)
- HTTPWalletClient: JSON-RPC client for a remote wallet service
"""

from wbwallet.backends.base import WalletInterface
from wbwallet.backends.http_client import HTTPWalletClient
from wbwallet.backends.memory import LocalWallet

__all__ = [
    "HTTPWalletClient",
    "LocalWallet",
    "WalletInterface",
]
