"""
Protocol constants shared by the wallet and the handoff orchestrator.
"""

from __future__ import annotations

# BRC-42 security level and protocol name used for wallet payments (BRC-29)
WALLET_PAYMENT_PROTOCOL: tuple[int, str] = (2, "3241645161d8")
WALLET_PAYMENT = "wallet payment"
BASKET_INSERTION = "basket insertion"

# Marker stored in customInstructions of a paid output so the payer can
# reconstruct the derivation later
HANDOFF_RECORD_TYPE = "handoff-record"

# Protocol used to derive per-field certificate encryption keys
CERTIFICATE_FIELD_PROTOCOL: tuple[int, str] = (2, "certificate field encryption")

# Derivation salts are 8 random bytes each (64 bits), base64 encoded
DERIVATION_SALT_BYTES = 8

# Flat fee rate of the reference wallet, satoshis per kilobyte
DEFAULT_FEE_RATE = 100

# Outputs of an action land here unless a basket is named
DEFAULT_BASKET = "default"

# BSV signatures commit to SIGHASH_ALL | SIGHASH_FORKID
SIGHASH_ALL = 0x01
SIGHASH_FORKID = 0x40
SIGHASH_ALL_FORKID = SIGHASH_ALL | SIGHASH_FORKID

# BRC-62 BEEF version marker (little-endian 0xEFBE0001) and BRC-95 prefix
BEEF_V1 = bytes.fromhex("0100beef")
ATOMIC_BEEF_PREFIX = bytes.fromhex("01010101")

# Default sequence number for inputs
DEFAULT_SEQUENCE = 0xFFFFFFFF

# Payload format version for the handoff transport
HANDOFF_PAYLOAD_VERSION = 1
