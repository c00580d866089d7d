"""
BSV transaction serialization, SIGHASH_FORKID signing and BEEF framing.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from coincurve import PrivateKey

from wbcore.constants import ATOMIC_BEEF_PREFIX, BEEF_V1, DEFAULT_SEQUENCE, SIGHASH_ALL_FORKID


class TransactionError(Exception):
    pass


@dataclass
class TxInput:
    txid: str
    vout: int
    script: bytes = b""
    sequence: int = DEFAULT_SEQUENCE

    @property
    def txid_le(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1]

    @property
    def outpoint(self) -> str:
        return f"{self.txid}.{self.vout}"


@dataclass
class TxOutput:
    value: int
    script: bytes


@dataclass
class Transaction:
    version: int = 1
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    def serialize(self) -> bytes:
        parts = [self.version.to_bytes(4, "little"), encode_varint(len(self.inputs))]
        for inp in self.inputs:
            parts.append(inp.txid_le)
            parts.append(inp.vout.to_bytes(4, "little"))
            parts.append(encode_varint(len(inp.script)))
            parts.append(inp.script)
            parts.append(inp.sequence.to_bytes(4, "little"))
        parts.append(encode_varint(len(self.outputs)))
        for out in self.outputs:
            parts.append(out.value.to_bytes(8, "little"))
            parts.append(encode_varint(len(out.script)))
            parts.append(out.script)
        parts.append(self.locktime.to_bytes(4, "little"))
        return b"".join(parts)

    @property
    def txid(self) -> str:
        return hash256(self.serialize())[::-1].hex()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    raw, offset = _read(data, offset, 1)
    first = raw[0]

    if first < 0xFD:
        return first, offset
    width = {0xFD: 2, 0xFE: 4}.get(first, 8)
    raw, offset = _read(data, offset, width)
    return int.from_bytes(raw, "little"), offset


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _read(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    end = offset + length
    if end > len(data):
        raise TransactionError("Unexpected end of data")
    return data[offset:end], end


def parse_transaction(data: bytes, offset: int = 0) -> tuple[Transaction, int]:
    """Parse one transaction starting at ``offset``; return it and the next offset."""
    try:
        raw, offset = _read(data, offset, 4)
        version = int.from_bytes(raw, "little")

        input_count, offset = read_varint(data, offset)
        inputs: list[TxInput] = []
        for _ in range(input_count):
            txid_le, offset = _read(data, offset, 32)
            raw, offset = _read(data, offset, 4)
            vout = int.from_bytes(raw, "little")
            script_len, offset = read_varint(data, offset)
            script, offset = _read(data, offset, script_len)
            raw, offset = _read(data, offset, 4)
            sequence = int.from_bytes(raw, "little")
            inputs.append(TxInput(txid_le[::-1].hex(), vout, script, sequence))

        output_count, offset = read_varint(data, offset)
        outputs: list[TxOutput] = []
        for _ in range(output_count):
            raw, offset = _read(data, offset, 8)
            value = int.from_bytes(raw, "little")
            script_len, offset = read_varint(data, offset)
            script, offset = _read(data, offset, script_len)
            outputs.append(TxOutput(value, script))

        raw, offset = _read(data, offset, 4)
        locktime = int.from_bytes(raw, "little")
    except IndexError as e:
        raise TransactionError(f"Failed to parse transaction: {e}") from e

    return Transaction(version, inputs, outputs, locktime), offset


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    tx, offset = parse_transaction(tx_bytes)
    if offset != len(tx_bytes):
        raise TransactionError(f"Trailing data after transaction ({len(tx_bytes) - offset} bytes)")
    return tx


def compute_sighash_forkid(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL_FORKID,
) -> bytes:
    """BIP143-style digest used by BSV for SIGHASH_FORKID signatures."""
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")

    hash_prevouts = hash256(
        b"".join(inp.txid_le + inp.vout.to_bytes(4, "little") for inp in tx.inputs)
    )
    hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    hash_outputs = hash256(
        b"".join(
            out.value.to_bytes(8, "little") + encode_varint(len(out.script)) + out.script
            for out in tx.outputs
        )
    )

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + target_input.txid_le
        + target_input.vout.to_bytes(4, "little")
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def push_data(data: bytes) -> bytes:
    if len(data) < 0x4C:
        return bytes([len(data)]) + data
    if len(data) <= 0xFF:
        return b"\x4c" + bytes([len(data)]) + data
    return b"\x4d" + len(data).to_bytes(2, "little") + data


def sign_p2pkh_input(
    tx: Transaction,
    input_index: int,
    locking_script: bytes,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL_FORKID,
) -> bytes:
    """Sign a P2PKH input with coincurve and return its unlocking script.

    Args:
        tx: The transaction to sign
        input_index: Index of the input to sign
        locking_script: Locking script of the output being spent
        value: Value of the output being spent (in satoshis)
        private_key: coincurve PrivateKey instance
        sighash_type: Sighash type (default SIGHASH_ALL | SIGHASH_FORKID)

    Returns:
        ``<signature+sighash byte> <compressed pubkey>``
    """
    sighash = compute_sighash_forkid(tx, input_index, locking_script, value, sighash_type)

    # The sighash is already SHA256d, so skip coincurve's own hashing
    signature = private_key.sign(sighash, hasher=None) + bytes([sighash_type])
    pubkey = private_key.public_key.format(compressed=True)

    return push_data(signature) + push_data(pubkey)


# Largest P2PKH unlocking script: 73-byte signature and 33-byte pubkey with pushes
P2PKH_UNLOCKING_SCRIPT_LENGTH = 107


# ---------------------------------------------------------------------------
# BEEF (BRC-62) and AtomicBEEF (BRC-95)
# ---------------------------------------------------------------------------


def encode_beef(transactions: list[bytes]) -> bytes:
    """Frame raw transactions (parents first) as BEEF without merkle proofs."""
    parts = [BEEF_V1, encode_varint(0), encode_varint(len(transactions))]
    for raw in transactions:
        parts.append(raw)
        parts.append(b"\x00")
    return b"".join(parts)


def decode_beef(data: bytes, offset: int = 0) -> dict[str, Transaction]:
    """Decode BEEF into ``{txid: Transaction}`` preserving order."""
    version, offset = _read(data, offset, 4)
    if version != BEEF_V1:
        raise TransactionError(f"Unsupported BEEF version {version.hex()}")

    bump_count, offset = read_varint(data, offset)
    if bump_count:
        raise TransactionError("BEEF merkle paths are not supported")

    tx_count, offset = read_varint(data, offset)
    transactions: dict[str, Transaction] = {}
    for _ in range(tx_count):
        tx, offset = parse_transaction(data, offset)
        has_bump, offset = _read(data, offset, 1)
        if has_bump != b"\x00":
            raise TransactionError("BEEF merkle paths are not supported")
        transactions[tx.txid] = tx

    if offset != len(data):
        raise TransactionError("Trailing data after BEEF")
    return transactions


def encode_atomic_beef(subject_txid: str, transactions: list[bytes]) -> bytes:
    """AtomicBEEF: BEEF whose last transaction is the declared subject."""
    return ATOMIC_BEEF_PREFIX + bytes.fromhex(subject_txid) + encode_beef(transactions)


def decode_atomic_beef(data: bytes) -> tuple[Transaction, dict[str, Transaction]]:
    """Return the subject transaction and every transaction in the bundle."""
    prefix, offset = _read(data, 0, 4)
    if prefix != ATOMIC_BEEF_PREFIX:
        raise TransactionError("Not an AtomicBEEF bundle")
    subject, offset = _read(data, offset, 32)
    transactions = decode_beef(data, offset)
    subject_txid = subject.hex()
    if subject_txid not in transactions:
        raise TransactionError(f"AtomicBEEF subject {subject_txid} missing from bundle")
    return transactions[subject_txid], transactions
