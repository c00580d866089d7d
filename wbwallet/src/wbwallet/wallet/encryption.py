"""
Symmetric encryption between two wallets (BRC-2 style).

Keys come from ``KeyDeriver.derive_symmetric_key`` so both parties can
compute them; ciphertexts are ``iv || AES-256-GCM(ciphertext || tag)``.
"""

from __future__ import annotations

import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from wbwallet.wallet.keys import KeyDeriver

IV_LENGTH = 32


class EncryptionError(Exception):
    pass


def encrypt(key: bytes, plaintext: bytes) -> bytes:
    iv = secrets.token_bytes(IV_LENGTH)
    return iv + AESGCM(key).encrypt(iv, plaintext, None)


def decrypt(key: bytes, ciphertext: bytes) -> bytes:
    if len(ciphertext) < IV_LENGTH + 16:
        raise EncryptionError("Ciphertext too short")
    iv, body = ciphertext[:IV_LENGTH], ciphertext[IV_LENGTH:]
    try:
        return AESGCM(key).decrypt(iv, body, None)
    except InvalidTag as e:
        raise EncryptionError("Decryption failed: wrong key or tampered data") from e


def encrypt_for(
    deriver: KeyDeriver,
    plaintext: bytes,
    protocol_id: tuple[int, str],
    key_id: str,
    counterparty: str,
) -> bytes:
    return encrypt(deriver.derive_symmetric_key(protocol_id, key_id, counterparty), plaintext)


def decrypt_from(
    deriver: KeyDeriver,
    ciphertext: bytes,
    protocol_id: tuple[int, str],
    key_id: str,
    counterparty: str,
) -> bytes:
    return decrypt(deriver.derive_symmetric_key(protocol_id, key_id, counterparty), ciphertext)
