"""
Test configuration for wallet tests.
"""

from __future__ import annotations

import pytest

from wbcore.models import Network
from wbwallet.backends.memory import LocalWallet

# Test keys (not for production use!)
ALICE_KEY = "11" * 32
BOB_KEY = "22" * 32
CAROL_KEY = "33" * 32


@pytest.fixture
def alice() -> LocalWallet:
    """Test-network wallet holding 100,000 sats in two outputs."""
    wallet = LocalWallet(ALICE_KEY, network=Network.TEST)
    wallet.fund(50_000, count=2)
    return wallet


@pytest.fixture
def bob() -> LocalWallet:
    return LocalWallet(BOB_KEY, network=Network.TEST)


@pytest.fixture
def carol() -> LocalWallet:
    return LocalWallet(CAROL_KEY, network=Network.TEST)
