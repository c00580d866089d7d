"""
Configuration for payment handoffs.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

from wbcore.constants import DERIVATION_SALT_BYTES
from wbcore.models import Network


class DeriveSide(str, Enum):
    """Which wallet derives the payment key."""

    PAYER = "payer"  # forSelf=false, counterparty = payee
    PAYEE = "payee"  # forSelf=true, counterparty = payer


class EndpointConfig(BaseModel):
    """Where to reach one wallet of a handoff."""

    name: str = Field(..., min_length=1)
    storage_url: str = Field(..., min_length=1)
    # Declared network; the wallet's own answer must agree with it
    network: Network | None = None
    timeout: float = Field(default=30.0, gt=0)

    @field_validator("network", mode="before")
    @classmethod
    def parse_network(cls, v: str | Network | None) -> Network | None:
        return None if v is None else Network.parse(v)

    @field_validator("storage_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("storage_url must be an http(s) URL")
        return v


class HandoffConfig(BaseModel):
    """Parameters of a single payment handoff."""

    amount: int = Field(..., gt=0, description="Satoshis paid to the payee")
    description: str = Field(default="payment handoff", min_length=1, max_length=2000)
    labels: list[str] = Field(default_factory=lambda: ["handoff"])
    derive_on: DeriveSide = DeriveSide.PAYER
    salt_bytes: int = Field(
        default=DERIVATION_SALT_BYTES,
        ge=DERIVATION_SALT_BYTES,
        le=64,
        description="Random bytes per derivation prefix/suffix",
    )
