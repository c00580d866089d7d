"""
Tests for the payment handoff orchestrator.
"""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock

import pytest

from handoff.config import DeriveSide, HandoffConfig
from handoff.endpoint import WalletEndpoint
from handoff.orchestrator import (
    HandoffState,
    PaymentHandoff,
    build_claim,
    find_claimed_output,
)
from handoff.transport import InProcessTransport
from wbcore.constants import DERIVATION_SALT_BYTES, HANDOFF_RECORD_TYPE
from wbcore.errors import (
    ClaimRejectedError,
    HandoffStateError,
    InsufficientFundsError,
    NetworkMismatchError,
    WalletBridgeError,
)
from wbcore.models import (
    ActionStatus,
    CreateActionResult,
    GetPublicKeyResult,
    ListActionsArgs,
    ListOutputsArgs,
    Network,
    SignableTransaction,
    SignActionResult,
)
from wbcore.protocol import HandoffPayload, parse_handoff_record
from wbwallet.backends.base import WalletInterface
from wbwallet.backends.memory import LocalWallet
from wbwallet.wallet.linkage import KeyLinkageDeriver


async def default_outputs(wallet: LocalWallet):
    return await wallet.list_outputs(
        ListOutputsArgs(basket="default", include="locking scripts", limit=100)
    )


class TestCompleteHandoff:
    @pytest.mark.asyncio
    async def test_payee_receives_exactly_the_amount(self, payer, payee, payee_wallet):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        session = await handoff.run()

        assert handoff.state == HandoffState.COMMITTED
        assert session.network == Network.TEST
        assert session.error is None

        listed = await default_outputs(payee_wallet)
        assert listed.total_outputs == 1
        assert listed.outputs[0].satoshis == 5000
        assert listed.outputs[0].spendable
        assert listed.outputs[0].outpoint == f"{session.action.txid}.0"
        assert payee_wallet.balance() == 5000

    @pytest.mark.asyncio
    async def test_payer_pays_amount_plus_fee(self, payer, payee, payer_wallet):
        await PaymentHandoff(payer, payee, HandoffConfig(amount=5000)).run()

        # One input, payment and change: 226 bytes at 100 sat/kB
        assert payer_wallet.balance() == 20_000 - 5000 - 23

    @pytest.mark.asyncio
    async def test_payment_is_output_zero(self, payer, payee):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        session = await handoff.run()

        payment = session.action.outputs[0]
        assert payment.output_index == 0
        assert payment.satoshis == 5000
        assert payment.locking_script == session.linkage.locking_script
        assert session.payload.output_index == 0

    @pytest.mark.asyncio
    async def test_payer_keeps_handoff_record(self, payer, payee, payer_wallet, payee_wallet):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        session = await handoff.run()

        listed = await payer_wallet.list_actions(
            ListActionsArgs(labels=["handoff"], include_outputs=True)
        )
        assert listed.total_actions == 1
        payment = listed.actions[0].outputs[0]
        record = parse_handoff_record(payment.custom_instructions)

        assert record is not None
        assert record["type"] == HANDOFF_RECORD_TYPE
        assert record["derivationPrefix"] == session.derivation_prefix
        assert record["derivationSuffix"] == session.derivation_suffix
        assert record["counterpartyIdentityKey"] == payee_wallet.identity_key

    @pytest.mark.asyncio
    async def test_fresh_salts_per_handoff(self, payer, payee):
        first = await PaymentHandoff(payer, payee, HandoffConfig(amount=1000)).run()
        second = await PaymentHandoff(payer, payee, HandoffConfig(amount=1000)).run()

        for salt in (first.derivation_prefix, first.derivation_suffix):
            assert len(base64.b64decode(salt)) >= DERIVATION_SALT_BYTES
        assert first.derivation_prefix != second.derivation_prefix
        assert first.linkage.derived_public_key != second.linkage.derived_public_key

    @pytest.mark.asyncio
    async def test_identities_recorded(self, payer, payee, payer_wallet, payee_wallet):
        session = await PaymentHandoff(payer, payee, HandoffConfig(amount=1000)).run()

        assert session.payer_identity_key == payer_wallet.identity_key
        assert session.payee_identity_key == payee_wallet.identity_key
        assert session.payload.sender_identity_key == payer_wallet.identity_key

    @pytest.mark.asyncio
    async def test_payee_side_derivation(self, payer, payee, payee_wallet):
        config = HandoffConfig(amount=5000, derive_on=DeriveSide.PAYEE)
        session = await PaymentHandoff(payer, payee, config).run()

        assert session.linkage.for_self
        assert session.linkage.counterparty == session.payer_identity_key
        assert payee_wallet.balance() == 5000

    @pytest.mark.asyncio
    async def test_both_sides_derive_the_same_key(self, payer, payee):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=1000))
        await handoff.validate_endpoints()
        linkage = await handoff.derive_key()

        mirrored = await KeyLinkageDeriver(payee.wallet).derive(
            linkage.derivation_prefix,
            linkage.derivation_suffix,
            handoff.session.payer_identity_key,
            for_self=True,
        )
        assert mirrored.derived_public_key == linkage.derived_public_key
        assert mirrored.locking_script == linkage.locking_script

    @pytest.mark.asyncio
    async def test_through_transport(self, payer, payee, payee_wallet):
        handoff = PaymentHandoff(
            payer, payee, HandoffConfig(amount=5000), transport=InProcessTransport()
        )
        session = await handoff.run()

        assert session.payload.transaction_bytes == session.action.tx
        assert payee_wallet.balance() == 5000


class TestNetworkGuard:
    @pytest.mark.asyncio
    async def test_mismatch_never_derives(self, payer, mainnet_payee, payer_wallet):
        handoff = PaymentHandoff(payer, mainnet_payee, HandoffConfig(amount=5000))

        with pytest.raises(NetworkMismatchError):
            await handoff.run()

        assert handoff.state == HandoffState.IDLE
        assert isinstance(handoff.session.error, NetworkMismatchError)
        assert handoff.session.linkage is None
        assert payer_wallet.balance() == 20_000

        with pytest.raises(HandoffStateError):
            await handoff.derive_key()

    @pytest.mark.asyncio
    async def test_declared_network_disagrees(self, payer, payee_wallet):
        declared = WalletEndpoint(name="payee", wallet=payee_wallet, network=Network.MAIN)
        handoff = PaymentHandoff(payer, declared, HandoffConfig(amount=5000))

        with pytest.raises(NetworkMismatchError, match="declared"):
            await handoff.validate_endpoints()
        assert handoff.state == HandoffState.IDLE

    @pytest.mark.asyncio
    async def test_declared_network_agrees(self, payer_wallet, payee_wallet):
        handoff = PaymentHandoff(
            WalletEndpoint(name="payer", wallet=payer_wallet, network=Network.TEST),
            WalletEndpoint(name="payee", wallet=payee_wallet, network=Network.TEST),
            HandoffConfig(amount=5000),
        )
        assert await handoff.validate_endpoints() == Network.TEST
        assert handoff.state == HandoffState.ENDPOINTS_VALIDATED


class TestStepOrder:
    @pytest.mark.asyncio
    async def test_steps_cannot_be_skipped(self, payer, payee):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))

        with pytest.raises(HandoffStateError):
            await handoff.derive_key()
        with pytest.raises(HandoffStateError):
            await handoff.create_funding_action()
        with pytest.raises(HandoffStateError):
            await handoff.exchange()
        with pytest.raises(HandoffStateError):
            await handoff.internalize()
        assert handoff.state == HandoffState.IDLE

    @pytest.mark.asyncio
    async def test_steps_cannot_repeat(self, payer, payee):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        await handoff.validate_endpoints()

        with pytest.raises(HandoffStateError):
            await handoff.validate_endpoints()
        assert handoff.state == HandoffState.ENDPOINTS_VALIDATED

    @pytest.mark.asyncio
    async def test_prepare_stops_before_internalize(self, payer, payee, payee_wallet):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        payload = await handoff.prepare()

        assert handoff.state == HandoffState.TRANSACTION_EXCHANGED
        assert payload.amount == 5000
        assert payload.network == Network.TEST
        assert payee_wallet.balance() == 0

    @pytest.mark.asyncio
    async def test_insufficient_funds_stays_at_key_derived(self, payer, payee, payer_wallet):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=1_000_000))

        with pytest.raises(InsufficientFundsError):
            await handoff.run()

        assert handoff.state == HandoffState.KEY_DERIVED
        assert isinstance(handoff.session.error, InsufficientFundsError)
        assert handoff.session.action is None
        assert payer_wallet.balance() == 20_000


class TestInternalize:
    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, payer, payee, payee_wallet):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        await handoff.run()

        result = await handoff.internalize()

        assert result.accepted
        assert handoff.state == HandoffState.COMMITTED
        assert (await default_outputs(payee_wallet)).total_outputs == 1
        assert payee_wallet.balance() == 5000

    @pytest.mark.asyncio
    async def test_tampered_suffix_is_rejected(self, payer, payee, payee_wallet):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        payload = await handoff.prepare()
        handoff.session.payload = payload.model_copy(update={"derivation_suffix": "dGFtcGVyZWQ="})

        with pytest.raises(ClaimRejectedError) as first:
            await handoff.internalize()

        assert handoff.state == HandoffState.TRANSACTION_EXCHANGED
        assert handoff.session.rejection is first.value
        assert handoff.session.error is first.value
        assert (await default_outputs(payee_wallet)).total_outputs == 0
        listed = await payee_wallet.list_actions(ListActionsArgs())
        assert listed.total_actions == 0

    @pytest.mark.asyncio
    async def test_rejection_is_final(self, payer, payee):
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        payload = await handoff.prepare()
        handoff.session.payload = payload.model_copy(update={"derivation_prefix": "b3RoZXI="})

        with pytest.raises(ClaimRejectedError) as first:
            await handoff.internalize()

        handoff.payee_actions.internalize = AsyncMock()
        with pytest.raises(ClaimRejectedError) as second:
            await handoff.internalize()

        assert second.value is first.value
        handoff.payee_actions.internalize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_payee_is_rejected(self, payer, payee):
        # The payment key was derived for ``payee``; a third wallet cannot claim it
        handoff = PaymentHandoff(payer, payee, HandoffConfig(amount=5000))
        payload = await handoff.prepare()
        intruder = WalletEndpoint(name="intruder", wallet=LocalWallet("c3" * 32))

        with pytest.raises(ClaimRejectedError):
            await PaymentHandoff.receive(intruder, payload)

    def test_build_claim(self, payer_wallet):
        payload_fields = {
            "transaction_bytes": b"\x01",
            "derivation_prefix": "cHJl",
            "derivation_suffix": "c3Vm",
            "sender_identity_key": payer_wallet.identity_key,
            "amount": 5000,
        }
        claim = build_claim(HandoffPayload(**payload_fields), payer_wallet.identity_key, "d", [])
        wire = claim.to_wire()

        assert wire["outputs"][0]["protocol"] == "wallet payment"
        assert wire["outputs"][0]["outputIndex"] == 0
        remittance = wire["outputs"][0]["paymentRemittance"]
        assert remittance["derivationPrefix"] == "cHJl"
        assert remittance["derivationSuffix"] == "c3Vm"
        assert remittance["senderIdentityKey"] == payer_wallet.identity_key


class TestReceive:
    @pytest.mark.asyncio
    async def test_payee_only_flow(self, payer, payee, payee_wallet):
        payload = await PaymentHandoff(payer, payee, HandoffConfig(amount=5000)).prepare()

        result = await PaymentHandoff.receive(payee, payload)

        assert result.accepted
        assert payee_wallet.balance() == 5000
        listed = await payee_wallet.list_actions(
            ListActionsArgs(labels=["handoff"], include_labels=True)
        )
        assert listed.total_actions == 1
        assert not listed.actions[0].is_outgoing

    @pytest.mark.asyncio
    async def test_payload_from_other_network(self, payer, payee):
        payload = await PaymentHandoff(payer, payee, HandoffConfig(amount=5000)).prepare()
        mainnet = WalletEndpoint(name="payee", wallet=LocalWallet("b2" * 32, network="main"))

        with pytest.raises(NetworkMismatchError):
            await PaymentHandoff.receive(mainnet, payload)
        assert mainnet.wallet.balance() == 0

    @pytest.mark.asyncio
    async def test_claimed_output_carries_credited_amount(self, payer, payee, payee_wallet):
        payload = await PaymentHandoff(payer, payee, HandoffConfig(amount=5000)).prepare()
        announced = payload.model_copy(update={"amount": 9999})

        assert await find_claimed_output(payee_wallet, announced) is None
        await PaymentHandoff.receive(payee, announced)

        claimed = await find_claimed_output(payee_wallet, announced)
        assert claimed is not None
        assert claimed.satoshis == 5000
        assert claimed.outpoint.endswith(".0")

    @pytest.mark.asyncio
    async def test_claimed_output_matches_remittance(self, payer, payee, payee_wallet):
        first = await PaymentHandoff(payer, payee, HandoffConfig(amount=5000)).run()
        second = await PaymentHandoff(payer, payee, HandoffConfig(amount=3000)).prepare()

        claimed = await find_claimed_output(payee_wallet, first.payload)
        assert claimed.satoshis == 5000
        # Same sender, different salts: nothing claimed yet
        assert await find_claimed_output(payee_wallet, second) is None


class TestSignableFunding:
    """Wallets that hand the funding action back for signing."""

    @pytest.fixture
    def deferred_payer(self, payer_wallet):
        wallet = AsyncMock(spec=WalletInterface)
        wallet.get_network.return_value = Network.TEST
        wallet.get_public_key.return_value = GetPublicKeyResult(
            public_key=payer_wallet.identity_key
        )
        wallet.create_action.return_value = CreateActionResult(
            signable_transaction=SignableTransaction(tx=b"\x01\x02", reference="ref-1")
        )
        wallet.sign_action.return_value = SignActionResult(txid="ab" * 32, tx=b"\x03\x04")
        return WalletEndpoint(name="payer", wallet=wallet)

    @pytest.mark.asyncio
    async def test_signable_funding_is_completed(self, deferred_payer, payee):
        config = HandoffConfig(amount=5000, derive_on=DeriveSide.PAYEE)
        handoff = PaymentHandoff(deferred_payer, payee, config)
        await handoff.validate_endpoints()
        await handoff.derive_key()

        action = await handoff.create_funding_action()

        assert action.status == ActionStatus.SIGNED
        assert action.txid == "ab" * 32
        assert action.tx == b"\x03\x04"
        assert handoff.state == HandoffState.FUNDING_ACTION_CREATED
        sent = deferred_payer.wallet.sign_action.await_args.args[0]
        assert sent.reference == "ref-1"
        assert sent.spends == {}

    @pytest.mark.asyncio
    async def test_failed_signing_aborts(self, deferred_payer, payee):
        deferred_payer.wallet.sign_action.side_effect = WalletBridgeError("broadcast refused")
        config = HandoffConfig(amount=5000, derive_on=DeriveSide.PAYEE)
        handoff = PaymentHandoff(deferred_payer, payee, config)
        await handoff.validate_endpoints()
        await handoff.derive_key()

        with pytest.raises(WalletBridgeError, match="broadcast refused"):
            await handoff.create_funding_action()

        deferred_payer.wallet.abort_action.assert_awaited_once()
        assert handoff.payer_actions.status_of("ref-1") == ActionStatus.ABORTED
        assert handoff.state == HandoffState.KEY_DERIVED
        assert handoff.session.action is None
