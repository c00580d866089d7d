"""
BRC-42 key derivation for walletbridge wallets.

Child keys are derived from an ECDH shared secret between the wallet's root
key and a counterparty, tweaked by an HMAC over the invoice number
``"<security level>-<protocol>-<key id>"``. Both sides can compute the same
public key; only the intended owner can compute the private key.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

from wbcore.crypto import parse_public_key
from wbcore.errors import DerivationError

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

# Counterparty "anyone" is the well-known key with private scalar 1
ANYONE_PRIVATE_KEY = PrivateKey((1).to_bytes(32, "big"))

SELF = "self"
ANYONE = "anyone"


def compute_invoice_number(protocol_id: tuple[int, str], key_id: str) -> str:
    """Build the invoice number that binds a derived key to its purpose."""
    level, protocol = protocol_id
    if level not in (0, 1, 2):
        raise DerivationError(f"Invalid security level: {level}")
    protocol = protocol.strip().lower()
    if len(protocol) < 5 or len(protocol) > 400:
        raise DerivationError("Protocol names must be 5 to 400 characters")
    if "  " in protocol:
        raise DerivationError("Protocol names cannot contain consecutive spaces")
    if protocol.endswith(" protocol"):
        raise DerivationError('Protocol names must not end with " protocol"')
    if not key_id or len(key_id) > 800:
        raise DerivationError("Key IDs must be 1 to 800 characters")
    return f"{level}-{protocol}-{key_id}"


class KeyDeriver:
    """
    Derives per-protocol, per-counterparty keys from a single root key.
    """

    def __init__(self, root_key: PrivateKey):
        self._root_key = root_key
        self._identity_key = root_key.public_key

    @classmethod
    def from_hex(cls, privkey_hex: str) -> KeyDeriver:
        return cls(PrivateKey(bytes.fromhex(privkey_hex)))

    @property
    def identity_key(self) -> PublicKey:
        return self._identity_key

    @property
    def identity_key_hex(self) -> str:
        return self._identity_key.format(compressed=True).hex()

    @property
    def root_key(self) -> PrivateKey:
        return self._root_key

    def normalize_counterparty(self, counterparty: str | None) -> PublicKey:
        """Resolve ``self``, ``anyone`` or a hex public key to a curve point."""
        if counterparty is None or counterparty == SELF:
            return self._identity_key
        if counterparty == ANYONE:
            return ANYONE_PRIVATE_KEY.public_key
        return parse_public_key(counterparty)

    def shared_secret(self, counterparty: PublicKey) -> bytes:
        """Compressed ECDH point shared with the counterparty."""
        return counterparty.multiply(self._root_key.secret).format(compressed=True)

    def _tweak(self, counterparty: PublicKey, invoice: str) -> bytes:
        digest = hmac.new(
            self.shared_secret(counterparty), invoice.encode("utf-8"), hashlib.sha256
        ).digest()
        scalar = int.from_bytes(digest, "big") % SECP256K1_N
        if scalar == 0:
            raise DerivationError("Derived tweak is zero")
        return scalar.to_bytes(32, "big")

    def derive_public_key(
        self,
        protocol_id: tuple[int, str],
        key_id: str,
        counterparty: str | None,
        for_self: bool = False,
    ) -> PublicKey:
        """
        Derive a child public key.

        Args:
            protocol_id: (security level, protocol name)
            key_id: Key identifier within the protocol
            counterparty: Hex public key, ``self`` or ``anyone``
            for_self: Derive our own child key instead of the counterparty's

        Returns:
            The derived public key

        Raises:
            DerivationError: On a malformed counterparty or invoice
        """
        other = self.normalize_counterparty(counterparty)
        tweak = self._tweak(other, compute_invoice_number(protocol_id, key_id))
        base = self._identity_key if for_self else other
        try:
            return base.add(tweak)
        except ValueError as e:
            raise DerivationError(f"Failed to derive public key: {e}") from e

    def derive_private_key(
        self, protocol_id: tuple[int, str], key_id: str, counterparty: str | None
    ) -> PrivateKey:
        other = self.normalize_counterparty(counterparty)
        tweak = self._tweak(other, compute_invoice_number(protocol_id, key_id))
        try:
            return self._root_key.add(tweak)
        except ValueError as e:
            raise DerivationError(f"Failed to derive private key: {e}") from e

    def derive_symmetric_key(
        self, protocol_id: tuple[int, str], key_id: str, counterparty: str | None
    ) -> bytes:
        """32-byte key both parties can compute for the same invoice."""
        derived_pub = self.derive_public_key(protocol_id, key_id, counterparty, for_self=False)
        derived_priv = self.derive_private_key(protocol_id, key_id, counterparty)
        shared = derived_pub.multiply(derived_priv.secret).format(compressed=True)
        return shared[1:]

    def reveal_counterparty_secret(self, counterparty: str) -> bytes:
        """Shared secret with a counterparty (used to prove key linkage)."""
        if counterparty in (SELF, ANYONE) or counterparty == self.identity_key_hex:
            raise DerivationError("Counterparty secrets cannot be revealed for self or anyone")
        return self.shared_secret(self.normalize_counterparty(counterparty))

    def reveal_specific_secret(
        self, counterparty: str, protocol_id: tuple[int, str], key_id: str
    ) -> bytes:
        """HMAC tweak for one invoice (links exactly one derived key)."""
        other = self.normalize_counterparty(counterparty)
        invoice = compute_invoice_number(protocol_id, key_id)
        return hmac.new(
            self.shared_secret(other), invoice.encode("utf-8"), hashlib.sha256
        ).digest()
