"""
Wallet interface data models using Pydantic for validation and serialization.

Attribute names are snake_case; the wire form uses the camelCase field names
of the wallet interface (``lockingScript``, ``derivationPrefix``, ...), so
always dump with ``by_alias=True`` when talking to another wallet.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from wbcore.constants import BASKET_INSERTION, DEFAULT_SEQUENCE, WALLET_PAYMENT

OUTPOINT_RE = re.compile(r"^[0-9a-f]{64}\.\d+$")
HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})*$")


def _coerce_bytes(value: Any) -> bytes:
    if isinstance(value, bytes | bytearray):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError as e:
            raise ValueError("expected hex encoded bytes") from e
    if isinstance(value, list):
        return bytes(value)
    raise ValueError(f"cannot interpret {type(value).__name__} as bytes")


# Raw bytes in Python, hex on the wire
HexBytes = Annotated[
    bytes,
    BeforeValidator(_coerce_bytes),
    PlainSerializer(lambda b: b.hex(), return_type=str, when_used="json"),
]


def _validate_hex(value: str) -> str:
    if not HEX_RE.match(value):
        raise ValueError("expected an even-length hex string")
    return value.lower()


class WalletModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class Network(str, Enum):
    MAIN = "main"
    TEST = "test"

    @classmethod
    def parse(cls, value: str | Network) -> Network:
        """Accept ``main``/``test`` as well as ``mainnet``/``testnet``."""
        if isinstance(value, Network):
            return value
        normalized = value.strip().lower()
        if normalized in ("main", "mainnet"):
            return cls.MAIN
        if normalized in ("test", "testnet"):
            return cls.TEST
        raise ValueError(f"Unknown network: {value}")


class ActionStatus(str, Enum):
    UNSIGNED = "unsigned"
    SIGNABLE = "signable"
    SIGNED = "signed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionStatus.SIGNED, ActionStatus.ABORTED, ActionStatus.FAILED)


# ---------------------------------------------------------------------------
# createAction / signAction / abortAction
# ---------------------------------------------------------------------------


class ActionInput(WalletModel):
    outpoint: str
    input_description: str = ""
    unlocking_script: str | None = None
    unlocking_script_length: int | None = Field(default=None, ge=0)
    sequence_number: int = Field(default=DEFAULT_SEQUENCE, ge=0, le=0xFFFFFFFF)

    @field_validator("outpoint")
    @classmethod
    def validate_outpoint(cls, v: str) -> str:
        if not OUTPOINT_RE.match(v):
            raise ValueError("outpoint must be '<txid>.<index>'")
        return v

    @field_validator("unlocking_script")
    @classmethod
    def validate_unlocking_script(cls, v: str | None) -> str | None:
        return None if v is None else _validate_hex(v)

    @model_validator(mode="after")
    def require_script_or_length(self) -> ActionInput:
        """An input must either be unlocked now or promise a script length."""
        if self.unlocking_script is None and self.unlocking_script_length is None:
            raise ValueError("unlockingScript or unlockingScriptLength is required")
        return self


class ActionOutput(WalletModel):
    locking_script: str
    satoshis: int = Field(..., gt=0)
    output_description: str = ""
    basket: str | None = None
    custom_instructions: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("locking_script")
    @classmethod
    def validate_locking_script(cls, v: str) -> str:
        if not v:
            raise ValueError("lockingScript must not be empty")
        return _validate_hex(v)


class CreateActionOptions(WalletModel):
    sign_and_process: bool = True
    accept_delayed_broadcast: bool = True
    return_txid_only: bool = False
    no_send: bool = False
    randomize_outputs: bool = True
    known_txids: list[str] = Field(default_factory=list)


class CreateActionArgs(WalletModel):
    description: str = Field(..., min_length=1, max_length=2000)
    input_beef: HexBytes | None = Field(default=None, alias="inputBEEF")
    inputs: list[ActionInput] = Field(default_factory=list)
    outputs: list[ActionOutput] = Field(default_factory=list)
    lock_time: int = Field(default=0, ge=0, le=0xFFFFFFFF)
    version: int = Field(default=1, ge=1)
    labels: list[str] = Field(default_factory=list)
    options: CreateActionOptions = Field(default_factory=CreateActionOptions)


class SignableTransaction(WalletModel):
    tx: HexBytes
    reference: str = Field(..., min_length=1)


class CreateActionResult(WalletModel):
    txid: str | None = None
    tx: HexBytes | None = None
    signable_transaction: SignableTransaction | None = None


class SpendArg(WalletModel):
    unlocking_script: str
    sequence_number: int | None = Field(default=None, ge=0, le=0xFFFFFFFF)

    @field_validator("unlocking_script")
    @classmethod
    def validate_unlocking_script(cls, v: str) -> str:
        return _validate_hex(v)


class SignActionArgs(WalletModel):
    reference: str = Field(..., min_length=1)
    spends: dict[int, SpendArg] = Field(default_factory=dict)
    return_txid_only: bool = False


class SignActionResult(WalletModel):
    txid: str
    tx: HexBytes | None = None


class AbortActionArgs(WalletModel):
    reference: str = Field(..., min_length=1)


class AbortActionResult(WalletModel):
    aborted: bool


# ---------------------------------------------------------------------------
# listActions
# ---------------------------------------------------------------------------


class ActionInputRecord(WalletModel):
    source_outpoint: str
    source_satoshis: int
    source_locking_script: str | None = None
    unlocking_script: str | None = None
    input_description: str = ""
    sequence_number: int = DEFAULT_SEQUENCE


class ActionOutputRecord(WalletModel):
    output_index: int | None = None
    satoshis: int
    locking_script: str | None = None
    spendable: bool = False
    output_description: str = ""
    basket: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_instructions: str | None = None


class Action(WalletModel):
    """A proposed or finalized value transfer inside one wallet."""

    txid: str | None = None
    reference: str | None = None
    status: ActionStatus
    satoshis: int = 0
    is_outgoing: bool = True
    description: str = ""
    version: int = 1
    lock_time: int = 0
    labels: list[str] | None = None
    inputs: list[ActionInputRecord] | None = None
    outputs: list[ActionOutputRecord] | None = None
    tx: HexBytes | None = None

    @model_validator(mode="after")
    def signable_needs_reference(self) -> Action:
        if self.status == ActionStatus.SIGNABLE and not self.reference:
            raise ValueError("a signable action must carry a reference")
        return self


class ListActionsArgs(WalletModel):
    labels: list[str] = Field(default_factory=list)
    label_query_mode: Literal["any", "all"] = "any"
    include_labels: bool = False
    include_inputs: bool = False
    include_outputs: bool = False
    limit: int = Field(default=10, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)


class ListActionsResult(WalletModel):
    total_actions: int
    actions: list[Action]


# ---------------------------------------------------------------------------
# internalizeAction
# ---------------------------------------------------------------------------


class PaymentRemittance(WalletModel):
    derivation_prefix: str = Field(..., min_length=1)
    derivation_suffix: str = Field(..., min_length=1)
    sender_identity_key: str = Field(..., min_length=66, max_length=130)


class InsertionRemittance(WalletModel):
    basket: str = Field(..., min_length=1)
    custom_instructions: str | None = None
    tags: list[str] = Field(default_factory=list)


class WalletPaymentOutput(WalletModel):
    output_index: int = Field(..., ge=0)
    protocol: Literal["wallet payment"] = WALLET_PAYMENT
    payment_remittance: PaymentRemittance


class BasketInsertionOutput(WalletModel):
    output_index: int = Field(..., ge=0)
    protocol: Literal["basket insertion"] = BASKET_INSERTION
    insertion_remittance: InsertionRemittance


InternalizeOutput = Annotated[
    WalletPaymentOutput | BasketInsertionOutput, Field(discriminator="protocol")
]


class InternalizeActionArgs(WalletModel):
    tx: HexBytes
    outputs: list[InternalizeOutput] = Field(..., min_length=1)
    description: str = Field(..., min_length=1, max_length=2000)
    labels: list[str] = Field(default_factory=list)
    seek_permission: bool = True

    @field_validator("outputs")
    @classmethod
    def unique_output_indexes(cls, v: list[Any]) -> list[Any]:
        indexes = [o.output_index for o in v]
        if len(indexes) != len(set(indexes)):
            raise ValueError("each output index may only be claimed once")
        return v


class InternalizeActionResult(WalletModel):
    accepted: bool


# ---------------------------------------------------------------------------
# listOutputs / relinquishOutput
# ---------------------------------------------------------------------------


class WalletOutput(WalletModel):
    outpoint: str
    satoshis: int = Field(..., gt=0)
    spendable: bool = True
    locking_script: str | None = None
    custom_instructions: str | None = None
    tags: list[str] | None = None
    labels: list[str] | None = None


class ListOutputsArgs(WalletModel):
    basket: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    tag_query_mode: Literal["any", "all"] = "any"
    include: Literal["locking scripts", "entire transactions"] | None = None
    include_custom_instructions: bool = False
    include_tags: bool = False
    include_labels: bool = False
    limit: int = Field(default=10, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)


class ListOutputsResult(WalletModel):
    total_outputs: int
    outputs: list[WalletOutput]
    beef: HexBytes | None = Field(default=None, alias="BEEF")


class RelinquishOutputArgs(WalletModel):
    basket: str = Field(..., min_length=1)
    output: str

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        if not OUTPOINT_RE.match(v):
            raise ValueError("output must be '<txid>.<index>'")
        return v


class RelinquishOutputResult(WalletModel):
    relinquished: bool


# ---------------------------------------------------------------------------
# Keys and linkage
# ---------------------------------------------------------------------------


ProtocolID = tuple[int, str]


def _validate_protocol_id(v: ProtocolID | None) -> ProtocolID | None:
    if v is None:
        return v
    level, name = v
    if level not in (0, 1, 2):
        raise ValueError("security level must be 0, 1 or 2")
    if not name.strip():
        raise ValueError("protocol name must not be empty")
    return v


class GetPublicKeyArgs(WalletModel):
    identity_key: bool = False
    protocol_id: ProtocolID | None = Field(default=None, alias="protocolID")
    key_id: str | None = Field(default=None, alias="keyID")
    counterparty: str | None = None
    for_self: bool = False
    privileged: bool = False

    @field_validator("protocol_id")
    @classmethod
    def validate_protocol_id(cls, v: ProtocolID | None) -> ProtocolID | None:
        return _validate_protocol_id(v)

    @model_validator(mode="after")
    def require_derivation_params(self) -> GetPublicKeyArgs:
        if not self.identity_key and (self.protocol_id is None or not self.key_id):
            raise ValueError("protocolID and keyID are required unless identityKey is set")
        return self


class GetPublicKeyResult(WalletModel):
    public_key: str


class GetNetworkResult(WalletModel):
    network: Network


class GetHeightResult(WalletModel):
    height: int = Field(..., ge=0)


class KeyLinkage(WalletModel):
    """Derived destination for one (prefix, suffix, counterparty) triple."""

    derivation_prefix: str
    derivation_suffix: str
    counterparty: str
    for_self: bool
    derived_public_key: str
    locking_script: str


class RevealCounterpartyKeyLinkageArgs(WalletModel):
    counterparty: str
    verifier: str
    privileged: bool = False


class RevealCounterpartyKeyLinkageResult(WalletModel):
    prover: str
    verifier: str
    counterparty: str
    revelation_time: str
    encrypted_linkage: HexBytes
    encrypted_linkage_proof: HexBytes


class RevealSpecificKeyLinkageArgs(WalletModel):
    counterparty: str
    verifier: str
    protocol_id: ProtocolID = Field(..., alias="protocolID")
    key_id: str = Field(..., alias="keyID", min_length=1)
    privileged: bool = False

    @field_validator("protocol_id")
    @classmethod
    def validate_protocol_id(cls, v: ProtocolID) -> ProtocolID:
        return _validate_protocol_id(v)  # type: ignore[return-value]


class RevealSpecificKeyLinkageResult(WalletModel):
    prover: str
    verifier: str
    counterparty: str
    protocol_id: ProtocolID = Field(..., alias="protocolID")
    key_id: str = Field(..., alias="keyID")
    encrypted_linkage: HexBytes
    encrypted_linkage_proof: HexBytes
    proof_type: int = 0


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


class Certificate(WalletModel):
    type: str = Field(..., min_length=1)
    subject: str
    serial_number: str = Field(..., min_length=1)
    certifier: str
    revocation_outpoint: str
    signature: str
    fields: dict[str, str] = Field(default_factory=dict)


class ListCertificatesArgs(WalletModel):
    certifiers: list[str] = Field(default_factory=list)
    types: list[str] = Field(default_factory=list)
    limit: int = Field(default=10, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)


class ListCertificatesResult(WalletModel):
    total_certificates: int
    certificates: list[Certificate]


class AcquireCertificateArgs(WalletModel):
    type: str = Field(..., min_length=1)
    certifier: str
    acquisition_protocol: Literal["direct", "issuance"] = "direct"
    fields: dict[str, str] = Field(default_factory=dict)
    serial_number: str | None = None
    revocation_outpoint: str | None = None
    signature: str | None = None
    subject: str | None = None
    certifier_url: str | None = None

    @model_validator(mode="after")
    def check_protocol_fields(self) -> AcquireCertificateArgs:
        if self.acquisition_protocol == "direct":
            missing = [
                name
                for name in ("serial_number", "revocation_outpoint", "signature")
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"direct acquisition requires {', '.join(missing)}")
        elif not self.certifier_url:
            raise ValueError("issuance requires certifierUrl")
        return self


class CertificateFilter(WalletModel):
    type: str | None = None
    serial_number: str | None = None
    certifier: str | None = None
    subject: str | None = None

    def matches(self, cert: Certificate) -> bool:
        return all(
            getattr(self, name) is None or getattr(self, name) == getattr(cert, name)
            for name in ("type", "serial_number", "certifier", "subject")
        )


class ProveCertificateArgs(WalletModel):
    certificate: CertificateFilter
    fields_to_reveal: list[str] = Field(..., min_length=1)
    verifier: str
    privileged: bool = False


class ProveCertificateResult(WalletModel):
    keyring_for_verifier: dict[str, str]


class RelinquishCertificateArgs(WalletModel):
    type: str
    serial_number: str
    certifier: str


class RelinquishCertificateResult(WalletModel):
    relinquished: bool


class DiscoverByIdentityKeyArgs(WalletModel):
    identity_key: str
    limit: int = Field(default=10, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)


class DiscoverByAttributesArgs(WalletModel):
    attributes: dict[str, str] = Field(..., min_length=1)
    limit: int = Field(default=10, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)


class DiscoverCertificatesResult(WalletModel):
    total_certificates: int
    certificates: list[Certificate]
