"""
Handoff wire format.

The payload is the only artifact that crosses the trust boundary between a
payer and a payee wallet. It is plain JSON so it can travel over any
out-of-band channel (file, QR code, chat message).
"""

from __future__ import annotations

import base64
import json
import secrets
from typing import Any

from pydantic import Field, ValidationError

from wbcore.constants import DERIVATION_SALT_BYTES, HANDOFF_PAYLOAD_VERSION, HANDOFF_RECORD_TYPE
from wbcore.errors import InvalidSpecError
from wbcore.models import HexBytes, Network, WalletModel


def generate_derivation_salt(n_bytes: int = DERIVATION_SALT_BYTES) -> str:
    """Fresh random derivation prefix or suffix, base64 encoded."""
    if n_bytes < DERIVATION_SALT_BYTES:
        raise ValueError(f"Derivation salts need at least {DERIVATION_SALT_BYTES} bytes")
    return base64.b64encode(secrets.token_bytes(n_bytes)).decode("ascii")


def format_key_id(derivation_prefix: str, derivation_suffix: str) -> str:
    """Key id under which wallet payments are derived."""
    return f"{derivation_prefix} {derivation_suffix}"


def handoff_record(
    derivation_prefix: str, derivation_suffix: str, counterparty_identity_key: str
) -> str:
    """customInstructions stored with a paid output so the payer can audit it later."""
    return json.dumps(
        {
            "type": HANDOFF_RECORD_TYPE,
            "derivationPrefix": derivation_prefix,
            "derivationSuffix": derivation_suffix,
            "counterpartyIdentityKey": counterparty_identity_key,
        }
    )


def parse_handoff_record(custom_instructions: str | None) -> dict[str, str] | None:
    """Return the handoff record stored with an output, if any."""
    if not custom_instructions:
        return None
    try:
        data = json.loads(custom_instructions)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("type") != HANDOFF_RECORD_TYPE:
        return None
    return data


class HandoffPayload(WalletModel):
    transaction_bytes: HexBytes
    output_index: int = Field(default=0, ge=0)
    derivation_prefix: str = Field(..., min_length=1)
    derivation_suffix: str = Field(..., min_length=1)
    sender_identity_key: str = Field(..., min_length=66, max_length=130)
    amount: int = Field(..., gt=0)
    network: Network | None = None
    version: int = HANDOFF_PAYLOAD_VERSION

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), indent=2)

    @classmethod
    def from_json(cls, data: str | bytes) -> HandoffPayload:
        try:
            raw: Any = json.loads(data)
        except json.JSONDecodeError as e:
            raise InvalidSpecError(f"Handoff payload is not valid JSON: {e}") from e
        try:
            payload = cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidSpecError(f"Malformed handoff payload: {e}") from e
        if payload.version > HANDOFF_PAYLOAD_VERSION:
            raise InvalidSpecError(f"Unsupported handoff payload version {payload.version}")
        return payload
