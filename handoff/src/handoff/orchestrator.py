"""
Payment handoff between two wallets.

Moves value from a payer wallet to a payee wallet using BRC-29 style key
derivation:
1. Validate that both endpoints are on the same network
2. Generate fresh derivation salts and derive the payee's one-time key
3. Create a funding action on the payer paying that key at output 0
4. Package the transaction and derivation metadata as a handoff payload
5. Internalize the payment on the payee, which re-derives and checks the key

Each step is guarded by the session state so steps cannot run out of order,
and a failure leaves the session at the last completed step.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from handoff.config import DeriveSide, HandoffConfig
from handoff.endpoint import WalletEndpoint
from handoff.guard import NetworkIdentityGuard
from handoff.transport import PayloadTransport
from wbcore.constants import DEFAULT_BASKET
from wbcore.errors import (
    ClaimRejectedError,
    HandoffStateError,
    InvalidSpecError,
    NetworkMismatchError,
    WalletBridgeError,
)
from wbcore.models import (
    Action,
    ActionOutput,
    ActionStatus,
    CreateActionArgs,
    CreateActionOptions,
    InternalizeActionArgs,
    InternalizeActionResult,
    KeyLinkage,
    ListOutputsArgs,
    Network,
    PaymentRemittance,
    WalletOutput,
    WalletPaymentOutput,
)
from wbcore.protocol import HandoffPayload, generate_derivation_salt, handoff_record
from wbwallet.backends.base import WalletInterface
from wbwallet.wallet.lifecycle import ActionLifecycleManager
from wbwallet.wallet.linkage import KeyLinkageDeriver

# The funding action keeps caller output order, so the payment is output 0
PAYMENT_OUTPUT_INDEX = 0

# Outputs fetched per listOutputs call when looking up a claimed payment
LIST_PAGE_SIZE = 100


class HandoffState(str, Enum):
    """Handoff progress; each value is the last step that completed."""

    IDLE = "idle"
    ENDPOINTS_VALIDATED = "endpoints_validated"
    KEY_DERIVED = "key_derived"
    FUNDING_ACTION_CREATED = "funding_action_created"
    TRANSACTION_EXCHANGED = "transaction_exchanged"
    COMMITTED = "committed"


@dataclass
class HandoffSession:
    """Everything one handoff has learned so far."""

    amount: int
    id: str = field(default_factory=lambda: secrets.token_hex(4))
    state: HandoffState = HandoffState.IDLE
    network: Network | None = None
    payer_identity_key: str = ""
    payee_identity_key: str = ""
    derivation_prefix: str = ""
    derivation_suffix: str = ""
    linkage: KeyLinkage | None = None
    action: Action | None = None
    payload: HandoffPayload | None = None
    # First failure, kept even if later calls fail differently
    error: WalletBridgeError | None = None
    # Set once the payee refused the claim; the metadata is never retried
    rejection: ClaimRejectedError | None = None


def build_claim(
    payload: HandoffPayload,
    sender_identity_key: str,
    description: str,
    labels: list[str],
) -> InternalizeActionArgs:
    """internalizeAction arguments claiming the payment described by ``payload``."""
    return InternalizeActionArgs(
        tx=payload.transaction_bytes,
        outputs=[
            WalletPaymentOutput(
                output_index=payload.output_index,
                payment_remittance=PaymentRemittance(
                    derivation_prefix=payload.derivation_prefix,
                    derivation_suffix=payload.derivation_suffix,
                    sender_identity_key=sender_identity_key,
                ),
            )
        ],
        description=description,
        labels=list(labels),
    )


def _is_claim_of(output: WalletOutput, payload: HandoffPayload, sender: str) -> bool:
    if not output.outpoint.endswith(f".{payload.output_index}"):
        return False
    try:
        remittance = json.loads(output.custom_instructions or "")
    except json.JSONDecodeError:
        return False
    return isinstance(remittance, dict) and (
        remittance.get("derivationPrefix") == payload.derivation_prefix
        and remittance.get("derivationSuffix") == payload.derivation_suffix
        and remittance.get("senderIdentityKey") == sender
    )


async def find_claimed_output(
    wallet: WalletInterface,
    payload: HandoffPayload,
    sender_identity_key: str | None = None,
) -> WalletOutput | None:
    """
    Look up the spendable output a wallet credited for ``payload``.

    Matched by the remittance the wallet stored with the output, so the
    amount reported is what the wallet holds rather than what the payload
    claims. Returns None once the output is spent or was never claimed.
    """
    sender = sender_identity_key or payload.sender_identity_key
    offset = 0
    while True:
        page = await wallet.list_outputs(
            ListOutputsArgs(
                basket=DEFAULT_BASKET,
                include_custom_instructions=True,
                limit=LIST_PAGE_SIZE,
                offset=offset,
            )
        )
        for output in page.outputs:
            if _is_claim_of(output, payload, sender):
                return output
        offset += len(page.outputs)
        if not page.outputs or offset >= page.total_outputs:
            return None


class PaymentHandoff:
    """
    Orchestrates a single payment from ``payer`` to ``payee``.
    """

    def __init__(
        self,
        payer: WalletEndpoint,
        payee: WalletEndpoint,
        config: HandoffConfig,
        guard: NetworkIdentityGuard | None = None,
        transport: PayloadTransport | None = None,
    ):
        """
        Initialize the handoff.

        Args:
            payer: Endpoint whose wallet funds the payment
            payee: Endpoint whose wallet receives it
            config: Amount, labels and derivation settings
            guard: Network/identity guard (a fresh one by default)
            transport: Channel the payload travels through, if any
        """
        self.payer = payer
        self.payee = payee
        self.config = config
        self.guard = guard or NetworkIdentityGuard()
        self.transport = transport

        self.payer_actions = ActionLifecycleManager(payer.wallet)
        self.payee_actions = ActionLifecycleManager(payee.wallet)
        self.session = HandoffSession(amount=config.amount)

    @property
    def state(self) -> HandoffState:
        return self.session.state

    def _require(self, step: str, *allowed: HandoffState) -> None:
        if self.session.state not in allowed:
            expected = " or ".join(s.value for s in allowed)
            raise HandoffStateError(
                f"Cannot {step} in state {self.session.state.value} (expected {expected})"
            )

    def _advance(self, state: HandoffState) -> None:
        logger.debug(f"Handoff {self.session.id}: {self.session.state.value} -> {state.value}")
        self.session.state = state

    def _fail(self, step: str, error: WalletBridgeError) -> None:
        if self.session.error is None:
            self.session.error = error
        logger.error(
            f"Handoff {self.session.id} failed to {step} "
            f"(state {self.session.state.value}): {error.code}: {error}"
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def validate_endpoints(self) -> Network:
        """Step 1: both wallets on one network; learn their identity keys."""
        self._require("validate endpoints", HandoffState.IDLE)
        logger.info(f"Step 1: Validating {self.payer.name} and {self.payee.name}...")
        try:
            network = await self.guard.validate(self.payer, self.payee)
            self.session.payer_identity_key = await self.guard.identity_of(self.payer)
            self.session.payee_identity_key = await self.guard.identity_of(self.payee)
        except WalletBridgeError as e:
            self._fail("validate endpoints", e)
            raise

        self.session.network = network
        self._advance(HandoffState.ENDPOINTS_VALIDATED)
        return network

    async def derive_key(self) -> KeyLinkage:
        """Step 2: fresh salts and the payee's one-time payment key."""
        self._require("derive key", HandoffState.ENDPOINTS_VALIDATED)
        logger.info(f"Step 2: Deriving payment key on the {self.config.derive_on.value} side...")
        try:
            prefix = generate_derivation_salt(self.config.salt_bytes)
            suffix = generate_derivation_salt(self.config.salt_bytes)
            if self.config.derive_on == DeriveSide.PAYER:
                linkage = await KeyLinkageDeriver(self.payer.wallet).derive(
                    prefix, suffix, self.session.payee_identity_key, for_self=False
                )
            else:
                linkage = await KeyLinkageDeriver(self.payee.wallet).derive(
                    prefix, suffix, self.session.payer_identity_key, for_self=True
                )
        except WalletBridgeError as e:
            self._fail("derive key", e)
            raise

        self.session.derivation_prefix = prefix
        self.session.derivation_suffix = suffix
        self.session.linkage = linkage
        self._advance(HandoffState.KEY_DERIVED)
        return linkage

    async def create_funding_action(self) -> Action:
        """Step 3: the payer funds an output paying the derived key."""
        self._require("create funding action", HandoffState.KEY_DERIVED)
        linkage = self.session.linkage
        if linkage is None:
            raise HandoffStateError("No derived key for the funding action")
        logger.info(f"Step 3: Creating funding action for {self.config.amount:,} sats...")

        args = CreateActionArgs(
            description=self.config.description,
            outputs=[
                ActionOutput(
                    locking_script=linkage.locking_script,
                    satoshis=self.config.amount,
                    output_description=f"payment to {self.payee.name}",
                    custom_instructions=handoff_record(
                        self.session.derivation_prefix,
                        self.session.derivation_suffix,
                        self.session.payee_identity_key,
                    ),
                )
            ],
            labels=list(self.config.labels),
            options=CreateActionOptions(randomize_outputs=False),
        )
        try:
            action = await self.payer_actions.create(args)
            if action.status == ActionStatus.SIGNABLE:
                action = await self._complete_signable(action)
            if not action.tx:
                raise InvalidSpecError("Funding action returned no transaction bytes")
        except WalletBridgeError as e:
            self._fail("create funding action", e)
            raise

        self.session.action = action
        self._advance(HandoffState.FUNDING_ACTION_CREATED)
        logger.info(f"Funding action signed: {action.txid}")
        return action

    async def _complete_signable(self, action: Action) -> Action:
        """Sign a funding action the wallet left signable; abort it if that fails."""
        reference = action.reference or ""
        try:
            return await self.payer_actions.sign(reference, {})
        except WalletBridgeError:
            try:
                await self.payer_actions.abort(reference)
            except WalletBridgeError as abort_error:
                logger.warning(f"Could not abort funding action {reference}: {abort_error}")
            raise

    async def exchange(self) -> HandoffPayload:
        """Step 4: package the payment and pass it through the transport."""
        self._require("exchange transaction", HandoffState.FUNDING_ACTION_CREATED)
        action = self.session.action
        if action is None or not action.tx:
            raise HandoffStateError("No funding transaction to exchange")
        logger.info("Step 4: Exchanging handoff payload...")

        payload = HandoffPayload(
            transaction_bytes=action.tx,
            output_index=PAYMENT_OUTPUT_INDEX,
            derivation_prefix=self.session.derivation_prefix,
            derivation_suffix=self.session.derivation_suffix,
            sender_identity_key=self.session.payer_identity_key,
            amount=self.config.amount,
            network=self.session.network,
        )
        try:
            if self.transport is not None:
                await self.transport.send(payload)
                payload = await self.transport.receive()
        except WalletBridgeError as e:
            self._fail("exchange transaction", e)
            raise

        self.session.payload = payload
        self._advance(HandoffState.TRANSACTION_EXCHANGED)
        return payload

    async def internalize(self) -> InternalizeActionResult:
        """
        Step 5: the payee claims the payment.

        May be repeated once committed; the wallet treats an already claimed
        output as a no-op. A rejected claim is final for this session.
        """
        if self.session.rejection is not None:
            raise self.session.rejection
        self._require(
            "internalize payment",
            HandoffState.TRANSACTION_EXCHANGED,
            HandoffState.COMMITTED,
        )
        payload = self.session.payload
        if payload is None:
            raise HandoffStateError("No handoff payload to internalize")
        logger.info(f"Step 5: Internalizing payment on {self.payee.name}...")

        claim = build_claim(
            payload,
            # Sender identity as verified by the guard, not as carried by the payload
            self.session.payer_identity_key,
            self.config.description,
            self.config.labels,
        )
        try:
            result = await self.payee_actions.internalize(claim)
        except ClaimRejectedError as e:
            self.session.rejection = e
            self._fail("internalize payment", e)
            raise
        except WalletBridgeError as e:
            self._fail("internalize payment", e)
            raise

        if self.session.state != HandoffState.COMMITTED:
            self._advance(HandoffState.COMMITTED)
        return result

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def prepare(self) -> HandoffPayload:
        """Run steps 1-4, leaving the payload ready for the payee."""
        await self.validate_endpoints()
        await self.derive_key()
        await self.create_funding_action()
        return await self.exchange()

    async def run(self) -> HandoffSession:
        """Run the complete handoff."""
        logger.info(
            f"Starting handoff {self.session.id}: {self.config.amount:,} sats "
            f"from {self.payer.name} to {self.payee.name}"
        )
        await self.prepare()
        await self.internalize()
        logger.info(
            f"Handoff {self.session.id} COMPLETE! txid: "
            f"{self.session.action.txid if self.session.action else 'unknown'}"
        )
        return self.session

    @classmethod
    async def receive(
        cls,
        payee: WalletEndpoint,
        payload: HandoffPayload,
        description: str = "payment handoff",
        labels: list[str] | None = None,
        guard: NetworkIdentityGuard | None = None,
    ) -> InternalizeActionResult:
        """
        Payee-only flow: claim a payload delivered out of band.

        The sender identity is taken from the payload, so the payee wallet's
        re-derivation is the only check that it is genuine.
        """
        guard = guard or NetworkIdentityGuard()
        network = await guard.network_of(payee)
        if payload.network is not None and payload.network != network:
            raise NetworkMismatchError(
                f"Payload was made on {payload.network.value}net "
                f"but {payee.name} is on {network.value}net"
            )

        logger.info(f"Claiming payment from {payload.sender_identity_key[:8]}...")
        claim = build_claim(
            payload,
            payload.sender_identity_key,
            description,
            ["handoff"] if labels is None else labels,
        )
        return await ActionLifecycleManager(payee.wallet).internalize(claim)
