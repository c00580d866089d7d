"""
Key and script helpers shared by the wallet and the handoff orchestrator.
"""

from __future__ import annotations

import hashlib
import re
import secrets

from coincurve import PrivateKey, PublicKey

from wbcore.errors import DerivationError, InvalidSpecError

PRIVATE_KEY_RE = re.compile(r"^[0-9a-f]{64}$")

# OP_DUP OP_HASH160 PUSH20 <pkh> OP_EQUALVERIFY OP_CHECKSIG
P2PKH_PREFIX = bytes.fromhex("76a914")
P2PKH_SUFFIX = bytes.fromhex("88ac")


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def parse_public_key(pubkey_hex: str) -> PublicKey:
    """
    Parse a compressed or uncompressed secp256k1 public key.

    Raises:
        DerivationError: If the key is not valid hex or not a curve point
    """
    try:
        raw = bytes.fromhex(pubkey_hex)
    except (TypeError, ValueError) as e:
        raise DerivationError(f"Public key is not hex: {pubkey_hex!r}") from e

    if len(raw) not in (33, 65):
        raise DerivationError(f"Public key has invalid length {len(raw)}")

    try:
        return PublicKey(raw)
    except ValueError as e:
        raise DerivationError(f"Public key is not on secp256k1: {e}") from e


def validate_public_key_hex(pubkey_hex: str) -> str:
    """Return the compressed hex form of a valid public key."""
    return parse_public_key(pubkey_hex).format(compressed=True).hex()


def validate_private_key_hex(privkey_hex: str) -> str:
    """Private keys are exchanged as 64 lowercase hex characters."""
    if not PRIVATE_KEY_RE.match(privkey_hex):
        raise InvalidSpecError("Private key must be 64 lowercase hex characters")
    try:
        PrivateKey(bytes.fromhex(privkey_hex))
    except ValueError as e:
        raise InvalidSpecError(f"Private key out of range: {e}") from e
    return privkey_hex


def generate_private_key_hex() -> str:
    return PrivateKey(secrets.token_bytes(32)).secret.hex()


def public_key_suffix(pubkey_hex: str, length: int = 4) -> str:
    """Short display tag for an identity key."""
    return pubkey_hex[-length:]


def p2pkh_locking_script(pubkey_hex: str) -> str:
    """P2PKH locking script (hex) paying to the given public key."""
    pubkey = parse_public_key(pubkey_hex)
    pkh = hash160(pubkey.format(compressed=True))
    return (P2PKH_PREFIX + pkh + P2PKH_SUFFIX).hex()


def p2pkh_pubkey_hash(locking_script: bytes) -> bytes | None:
    """Extract the pubkey hash from a P2PKH script, or None for other scripts."""
    if (
        len(locking_script) == 25
        and locking_script.startswith(P2PKH_PREFIX)
        and locking_script.endswith(P2PKH_SUFFIX)
    ):
        return locking_script[3:23]
    return None
