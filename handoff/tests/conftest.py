"""
Test configuration for handoff tests.
"""

from __future__ import annotations

import pytest

from handoff.endpoint import WalletEndpoint
from wbcore.models import Network
from wbwallet.backends.memory import LocalWallet

# Test keys (not for production use!)
PAYER_KEY = "a1" * 32
PAYEE_KEY = "b2" * 32


@pytest.fixture
def payer_wallet() -> LocalWallet:
    """Test-network wallet holding a single 20,000 sat output."""
    wallet = LocalWallet(PAYER_KEY, network=Network.TEST)
    wallet.fund(20_000)
    return wallet


@pytest.fixture
def payee_wallet() -> LocalWallet:
    return LocalWallet(PAYEE_KEY, network=Network.TEST)


@pytest.fixture
def payer(payer_wallet) -> WalletEndpoint:
    return WalletEndpoint(name="payer", wallet=payer_wallet)


@pytest.fixture
def payee(payee_wallet) -> WalletEndpoint:
    return WalletEndpoint(name="payee", wallet=payee_wallet)


@pytest.fixture
def mainnet_payee() -> WalletEndpoint:
    return WalletEndpoint(name="payee", wallet=LocalWallet(PAYEE_KEY, network=Network.MAIN))
