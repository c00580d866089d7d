"""
Reproducible per-counterparty destinations for wallet payments.
"""

from __future__ import annotations

from loguru import logger

from wbcore.constants import WALLET_PAYMENT_PROTOCOL
from wbcore.crypto import p2pkh_locking_script, validate_public_key_hex
from wbcore.errors import DerivationError
from wbcore.models import GetPublicKeyArgs, KeyLinkage
from wbcore.protocol import format_key_id
from wbwallet.backends.base import WalletInterface


class KeyLinkageDeriver:
    """
    Derives the key and P2PKH locking script for a (prefix, suffix,
    counterparty) triple through the wallet's ``getPublicKey``.

    Stateless: the same triple always yields the same linkage, and fresh
    salts per payment keep payments to one counterparty unlinkable.
    """

    def __init__(self, wallet: WalletInterface):
        self.wallet = wallet

    async def derive(
        self,
        derivation_prefix: str,
        derivation_suffix: str,
        counterparty: str,
        for_self: bool,
    ) -> KeyLinkage:
        if not derivation_prefix or not derivation_suffix:
            raise DerivationError("Derivation prefix and suffix must not be empty")
        counterparty = validate_public_key_hex(counterparty)

        result = await self.wallet.get_public_key(
            GetPublicKeyArgs(
                protocol_id=WALLET_PAYMENT_PROTOCOL,
                key_id=format_key_id(derivation_prefix, derivation_suffix),
                counterparty=counterparty,
                for_self=for_self,
            )
        )
        logger.debug(
            f"Derived {'own' if for_self else 'counterparty'} key "
            f"{result.public_key[:10]}... for {counterparty[:8]}..."
        )
        return KeyLinkage(
            derivation_prefix=derivation_prefix,
            derivation_suffix=derivation_suffix,
            counterparty=counterparty,
            for_self=for_self,
            derived_public_key=result.public_key,
            locking_script=p2pkh_locking_script(result.public_key),
        )
