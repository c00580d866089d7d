"""
Tests for the in-memory wallet.
"""

from __future__ import annotations

import base64
import json

import pytest
from coincurve import PrivateKey

from wbcore.constants import WALLET_PAYMENT_PROTOCOL
from wbcore.crypto import p2pkh_locking_script
from wbcore.errors import (
    ClaimRejectedError,
    InsufficientFundsError,
    InvalidSpecError,
    UnknownOutputError,
    UnknownReferenceError,
)
from wbcore.models import (
    AbortActionArgs,
    AcquireCertificateArgs,
    ActionStatus,
    CertificateFilter,
    CreateActionArgs,
    DiscoverByAttributesArgs,
    DiscoverByIdentityKeyArgs,
    GetPublicKeyArgs,
    InternalizeActionArgs,
    ListActionsArgs,
    ListCertificatesArgs,
    ListOutputsArgs,
    Network,
    ProveCertificateArgs,
    RelinquishCertificateArgs,
    RelinquishOutputArgs,
    RevealCounterpartyKeyLinkageArgs,
    RevealSpecificKeyLinkageArgs,
    SignActionArgs,
)
from wbcore.protocol import format_key_id
from wbwallet.backends.memory import (
    COUNTERPARTY_LINKAGE_PROTOCOL,
    SPECIFIC_LINKAGE_PROTOCOL,
    LocalWallet,
)
from wbwallet.wallet.encryption import decrypt_from
from wbwallet.wallet.keys import compute_invoice_number
from wbwallet.wallet.transaction import (
    Transaction,
    TxInput,
    TxOutput,
    decode_atomic_beef,
    decode_beef,
    encode_atomic_beef,
    encode_beef,
    sign_p2pkh_input,
)

FOREIGN_KEY = PrivateKey(bytes.fromhex("44" * 32))
FOREIGN_SCRIPT = p2pkh_locking_script(FOREIGN_KEY.public_key.format().hex())


def pay_args(satoshis: int, script: str = FOREIGN_SCRIPT, **options) -> CreateActionArgs:
    return CreateActionArgs.model_validate(
        {
            "description": "test",
            "outputs": [{"lockingScript": script, "satoshis": satoshis}],
            "options": {"randomizeOutputs": False, **options},
        }
    )


async def send_payment(
    payer: LocalWallet,
    payee: LocalWallet,
    satoshis: int,
    prefix: str = "cHJl",
    suffix: str = "c3Vm",
) -> bytes:
    """Pay ``payee`` with a wallet payment output at index 0; returns AtomicBEEF."""
    derived = await payer.get_public_key(
        GetPublicKeyArgs(
            protocol_id=WALLET_PAYMENT_PROTOCOL,
            key_id=format_key_id(prefix, suffix),
            counterparty=payee.identity_key,
        )
    )
    result = await payer.create_action(pay_args(satoshis, p2pkh_locking_script(derived.public_key)))
    return result.tx


def payment_claim(tx: bytes, sender: str, prefix: str = "cHJl", suffix: str = "c3Vm"):
    return InternalizeActionArgs.model_validate(
        {
            "tx": tx.hex(),
            "description": "incoming payment",
            "outputs": [
                {
                    "outputIndex": 0,
                    "protocol": "wallet payment",
                    "paymentRemittance": {
                        "derivationPrefix": prefix,
                        "derivationSuffix": suffix,
                        "senderIdentityKey": sender,
                    },
                }
            ],
        }
    )


class TestCreateAction:
    @pytest.mark.asyncio
    async def test_sign_and_process(self, alice):
        result = await alice.create_action(pay_args(1000))

        assert result.txid is not None
        assert result.signable_transaction is None
        subject, _ = decode_atomic_beef(result.tx)
        assert subject.txid == result.txid
        assert subject.outputs[0].value == 1000
        assert subject.outputs[0].script.hex() == FOREIGN_SCRIPT

        fee = 50_000 - sum(o.value for o in subject.outputs)
        assert fee > 0
        assert alice.balance() == 100_000 - 1000 - fee

    @pytest.mark.asyncio
    async def test_atomic_beef_includes_parents(self, alice):
        result = await alice.create_action(pay_args(1000))
        subject, bundle = decode_atomic_beef(result.tx)
        for inp in subject.inputs:
            assert inp.txid in bundle

    @pytest.mark.asyncio
    async def test_return_txid_only(self, alice):
        result = await alice.create_action(pay_args(1000, returnTxidOnly=True))
        assert result.txid is not None
        assert result.tx is None

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, alice):
        with pytest.raises(InsufficientFundsError):
            await alice.create_action(pay_args(200_000))
        assert alice.balance() == 100_000

    @pytest.mark.asyncio
    async def test_empty_action(self, alice):
        with pytest.raises(InvalidSpecError):
            await alice.create_action(CreateActionArgs(description="nothing"))

    @pytest.mark.asyncio
    async def test_unknown_input(self, alice):
        args = CreateActionArgs.model_validate(
            {
                "description": "spend",
                "inputs": [{"outpoint": "ab" * 32 + ".0", "unlockingScriptLength": 107}],
            }
        )
        with pytest.raises(InvalidSpecError, match="not found"):
            await alice.create_action(args)

    @pytest.mark.asyncio
    async def test_basket_outputs_are_tracked(self, alice):
        args = CreateActionArgs.model_validate(
            {
                "description": "mint",
                "outputs": [
                    {
                        "lockingScript": FOREIGN_SCRIPT,
                        "satoshis": 1,
                        "basket": "tokens",
                        "tags": ["nft"],
                        "customInstructions": "token-1",
                    }
                ],
            }
        )
        await alice.create_action(args)

        listed = await alice.list_outputs(
            ListOutputsArgs(basket="tokens", tags=["nft"], include_custom_instructions=True)
        )
        assert listed.total_outputs == 1
        assert listed.outputs[0].custom_instructions == "token-1"

        none = await alice.list_outputs(ListOutputsArgs(basket="tokens", tags=["other"]))
        assert none.total_outputs == 0


class TestSignableActions:
    @pytest.mark.asyncio
    async def test_sign_later(self, alice):
        result = await alice.create_action(pay_args(1000, signAndProcess=False))
        signable = result.signable_transaction
        assert signable is not None
        assert result.txid is None

        signed = await alice.sign_action(SignActionArgs(reference=signable.reference))
        subject, _ = decode_atomic_beef(signed.tx)
        assert subject.txid == signed.txid
        assert all(inp.script for inp in subject.inputs)

    @pytest.mark.asyncio
    async def test_abort_releases_inputs(self, alice):
        result = await alice.create_action(pay_args(1000, signAndProcess=False))
        reference = result.signable_transaction.reference
        assert alice.balance() == 50_000

        aborted = await alice.abort_action(AbortActionArgs(reference=reference))
        assert aborted.aborted
        assert alice.balance() == 100_000

        with pytest.raises(UnknownReferenceError):
            await alice.sign_action(SignActionArgs(reference=reference))
        with pytest.raises(UnknownReferenceError):
            await alice.abort_action(AbortActionArgs(reference=reference))

    @pytest.mark.asyncio
    async def test_sign_twice(self, alice):
        result = await alice.create_action(pay_args(1000, signAndProcess=False))
        reference = result.signable_transaction.reference
        await alice.sign_action(SignActionArgs(reference=reference))

        with pytest.raises(UnknownReferenceError):
            await alice.sign_action(SignActionArgs(reference=reference))

    @pytest.mark.asyncio
    async def test_unexpected_spend(self, alice):
        result = await alice.create_action(pay_args(1000, signAndProcess=False))
        args = SignActionArgs.model_validate(
            {
                "reference": result.signable_transaction.reference,
                "spends": {"0": {"unlockingScript": "00"}},
            }
        )
        with pytest.raises(InvalidSpecError):
            await alice.sign_action(args)

    @pytest.mark.asyncio
    async def test_caller_signed_input(self, alice):
        parent = Transaction(
            inputs=[TxInput("00" * 32, 0xFFFFFFFF, b"\x05")],
            outputs=[TxOutput(10_000, bytes.fromhex(FOREIGN_SCRIPT))],
        )
        args = CreateActionArgs.model_validate(
            {
                "description": "spend foreign output",
                "inputBEEF": encode_beef([parent.serialize()]).hex(),
                "inputs": [{"outpoint": f"{parent.txid}.0", "unlockingScriptLength": 107}],
                "outputs": [{"lockingScript": FOREIGN_SCRIPT, "satoshis": 1000}],
                "options": {"randomizeOutputs": False},
            }
        )
        result = await alice.create_action(args)
        signable = result.signable_transaction
        assert signable is not None
        # Foreign inputs cover the payment, so no wallet output is reserved
        assert alice.balance() == 100_000

        unsigned, _ = decode_atomic_beef(signable.tx)
        unlocking = sign_p2pkh_input(
            unsigned, 0, bytes.fromhex(FOREIGN_SCRIPT), 10_000, FOREIGN_KEY
        )
        signed = await alice.sign_action(
            SignActionArgs.model_validate(
                {
                    "reference": signable.reference,
                    "spends": {0: {"unlockingScript": unlocking.hex()}},
                }
            )
        )
        subject, _ = decode_atomic_beef(signed.tx)
        change = subject.outputs[1].value
        assert alice.balance() == 100_000 + change

    @pytest.mark.asyncio
    async def test_missing_spend(self, alice):
        parent = Transaction(
            inputs=[TxInput("00" * 32, 0xFFFFFFFF, b"\x06")],
            outputs=[TxOutput(10_000, bytes.fromhex(FOREIGN_SCRIPT))],
        )
        args = CreateActionArgs.model_validate(
            {
                "description": "spend foreign output",
                "inputBEEF": encode_beef([parent.serialize()]).hex(),
                "inputs": [{"outpoint": f"{parent.txid}.0", "unlockingScriptLength": 107}],
                "outputs": [{"lockingScript": FOREIGN_SCRIPT, "satoshis": 1000}],
            }
        )
        result = await alice.create_action(args)
        with pytest.raises(InvalidSpecError, match="Missing"):
            await alice.sign_action(SignActionArgs(reference=result.signable_transaction.reference))


class TestInternalize:
    @pytest.mark.asyncio
    async def test_payment_becomes_spendable(self, alice, bob):
        tx = await send_payment(alice, bob, 5000)
        result = await bob.internalize_action(payment_claim(tx, alice.identity_key))

        assert result.accepted
        assert bob.balance() == 5000
        listed = await bob.list_outputs(
            ListOutputsArgs(basket="default", include_custom_instructions=True)
        )
        assert listed.total_outputs == 1
        assert listed.outputs[0].satoshis == 5000
        remittance = json.loads(listed.outputs[0].custom_instructions)
        assert remittance["senderIdentityKey"] == alice.identity_key

        actions = await bob.list_actions(ListActionsArgs())
        assert actions.total_actions == 1
        assert actions.actions[0].satoshis == 5000
        assert not actions.actions[0].is_outgoing

    @pytest.mark.asyncio
    async def test_idempotent(self, alice, bob):
        tx = await send_payment(alice, bob, 5000)
        claim = payment_claim(tx, alice.identity_key)
        await bob.internalize_action(claim)
        again = await bob.internalize_action(claim)

        assert again.accepted
        assert bob.balance() == 5000
        assert (await bob.list_actions(ListActionsArgs())).total_actions == 1

    @pytest.mark.asyncio
    async def test_wrong_derivation_rejected(self, alice, bob):
        tx = await send_payment(alice, bob, 5000)
        with pytest.raises(ClaimRejectedError):
            await bob.internalize_action(payment_claim(tx, alice.identity_key, suffix="b3RoZXI="))

        assert bob.balance() == 0
        assert (await bob.list_outputs(ListOutputsArgs(basket="default"))).total_outputs == 0
        assert (await bob.list_actions(ListActionsArgs())).total_actions == 0

    @pytest.mark.asyncio
    async def test_wrong_payee_rejected(self, alice, bob, carol):
        tx = await send_payment(alice, bob, 5000)
        with pytest.raises(ClaimRejectedError):
            await carol.internalize_action(payment_claim(tx, alice.identity_key))
        assert carol.balance() == 0

    @pytest.mark.asyncio
    async def test_output_index_out_of_range(self, alice, bob):
        tx = await send_payment(alice, bob, 5000)
        claim = payment_claim(tx, alice.identity_key)
        claim.outputs[0].output_index = 7
        with pytest.raises(ClaimRejectedError):
            await bob.internalize_action(claim)

    @pytest.mark.asyncio
    async def test_garbage_transaction(self, bob, alice):
        with pytest.raises(InvalidSpecError):
            await bob.internalize_action(payment_claim(b"\x00\x01", alice.identity_key))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cut", [40, 41])
    async def test_truncated_transaction(self, alice, bob, cut):
        tx = await send_payment(alice, bob, 5000)
        with pytest.raises(InvalidSpecError):
            await bob.internalize_action(payment_claim(tx[:cut], alice.identity_key))
        assert bob.balance() == 0

    @pytest.mark.asyncio
    async def test_zero_value_payment_rejected(self, alice, bob):
        derived = await alice.get_public_key(
            GetPublicKeyArgs(
                protocol_id=WALLET_PAYMENT_PROTOCOL,
                key_id=format_key_id("cHJl", "c3Vm"),
                counterparty=bob.identity_key,
            )
        )
        tx = Transaction(
            inputs=[TxInput("00" * 32, 0xFFFFFFFF, b"\x01")],
            outputs=[TxOutput(0, bytes.fromhex(p2pkh_locking_script(derived.public_key)))],
        )
        atomic = encode_atomic_beef(tx.txid, [tx.serialize()])

        with pytest.raises(ClaimRejectedError):
            await bob.internalize_action(payment_claim(atomic, alice.identity_key))

        listed = await bob.list_outputs(ListOutputsArgs(basket="default"))
        assert listed.total_outputs == 0
        assert (await bob.list_actions(ListActionsArgs())).total_actions == 0

    @pytest.mark.asyncio
    async def test_zero_value_insertion_rejected(self, bob):
        tx = Transaction(
            inputs=[TxInput("00" * 32, 0xFFFFFFFF, b"\x01")],
            outputs=[TxOutput(0, b"\x00\x6a")],
        )
        args = InternalizeActionArgs.model_validate(
            {
                "tx": encode_atomic_beef(tx.txid, [tx.serialize()]).hex(),
                "description": "data",
                "outputs": [
                    {
                        "outputIndex": 0,
                        "protocol": "basket insertion",
                        "insertionRemittance": {"basket": "imports"},
                    }
                ],
            }
        )

        with pytest.raises(InvalidSpecError):
            await bob.internalize_action(args)

        listed = await bob.list_outputs(ListOutputsArgs(basket="imports"))
        assert listed.total_outputs == 0

    @pytest.mark.asyncio
    async def test_received_output_can_be_spent(self, alice, bob):
        tx = await send_payment(alice, bob, 5000)
        await bob.internalize_action(payment_claim(tx, alice.identity_key))

        result = await bob.create_action(pay_args(1000))
        subject, bundle = decode_atomic_beef(result.tx)
        assert subject.outputs[0].value == 1000
        # Parent payment travels with the spend
        assert decode_atomic_beef(tx)[0].txid in bundle

    @pytest.mark.asyncio
    async def test_basket_insertion(self, alice, bob):
        result = await alice.create_action(pay_args(700))
        args = InternalizeActionArgs.model_validate(
            {
                "tx": result.tx.hex(),
                "description": "token",
                "outputs": [
                    {
                        "outputIndex": 0,
                        "protocol": "basket insertion",
                        "insertionRemittance": {"basket": "imports", "tags": ["a"]},
                    }
                ],
            }
        )
        await bob.internalize_action(args)

        listed = await bob.list_outputs(ListOutputsArgs(basket="imports", include_tags=True))
        assert listed.total_outputs == 1
        assert listed.outputs[0].tags == ["a"]
        # Basket insertions are not spendable funds
        assert bob.balance() == 0


class TestListing:
    @pytest.mark.asyncio
    async def test_label_filters(self, alice):
        await alice.create_action(pay_args(1000).model_copy(update={"labels": ["a", "b"]}))
        await alice.create_action(pay_args(1000).model_copy(update={"labels": ["a"]}))

        any_a = await alice.list_actions(ListActionsArgs(labels=["a"]))
        all_ab = await alice.list_actions(
            ListActionsArgs(labels=["a", "b"], label_query_mode="all")
        )
        any_bc = await alice.list_actions(ListActionsArgs(labels=["b", "c"], include_labels=True))

        assert any_a.total_actions == 2
        assert all_ab.total_actions == 1
        assert any_bc.total_actions == 1
        assert any_bc.actions[0].labels == ["a", "b"]

    @pytest.mark.asyncio
    async def test_pagination(self, alice):
        for _ in range(3):
            await alice.create_action(pay_args(100))
        page = await alice.list_actions(ListActionsArgs(limit=2, offset=2))
        assert page.total_actions == 3
        assert len(page.actions) == 1

    @pytest.mark.asyncio
    async def test_include_outputs_reports_spendable(self, alice):
        await alice.create_action(pay_args(1000))
        listed = await alice.list_actions(
            ListActionsArgs(include_outputs=True, include_inputs=True)
        )
        action = listed.actions[0]

        assert action.status == ActionStatus.SIGNED
        assert action.outputs[0].satoshis == 1000
        assert not action.outputs[0].spendable
        assert action.outputs[1].spendable
        assert action.inputs[0].source_satoshis == 50_000

    @pytest.mark.asyncio
    async def test_list_outputs_with_beef(self, alice):
        listed = await alice.list_outputs(
            ListOutputsArgs(basket="default", include="entire transactions")
        )
        assert listed.total_outputs == 2
        txids = {o.outpoint.split(".")[0] for o in listed.outputs}
        assert txids <= set(decode_beef(listed.beef))

    @pytest.mark.asyncio
    async def test_relinquish_output(self, alice):
        listed = await alice.list_outputs(ListOutputsArgs(basket="default"))
        outpoint = listed.outputs[0].outpoint

        result = await alice.relinquish_output(
            RelinquishOutputArgs(basket="default", output=outpoint)
        )
        assert result.relinquished
        assert (await alice.list_outputs(ListOutputsArgs(basket="default"))).total_outputs == 1

        with pytest.raises(UnknownOutputError):
            await alice.relinquish_output(RelinquishOutputArgs(basket="default", output=outpoint))


class TestKeysAndLinkage:
    @pytest.mark.asyncio
    async def test_identity_and_network(self, alice):
        identity = await alice.get_public_key(GetPublicKeyArgs(identity_key=True))
        assert identity.public_key == alice.identity_key
        assert await alice.get_network() == Network.TEST
        assert await alice.get_height() == 1

    @pytest.mark.asyncio
    async def test_derived_keys_agree(self, alice, bob):
        key_id = format_key_id("YQ==", "Yg==")
        for_bob = await alice.get_public_key(
            GetPublicKeyArgs(
                protocol_id=WALLET_PAYMENT_PROTOCOL, key_id=key_id, counterparty=bob.identity_key
            )
        )
        own = await bob.get_public_key(
            GetPublicKeyArgs(
                protocol_id=WALLET_PAYMENT_PROTOCOL,
                key_id=key_id,
                counterparty=alice.identity_key,
                for_self=True,
            )
        )
        assert for_bob.public_key == own.public_key

    @pytest.mark.asyncio
    async def test_reveal_counterparty_linkage(self, alice, bob, carol):
        result = await alice.reveal_counterparty_key_linkage(
            RevealCounterpartyKeyLinkageArgs(
                counterparty=carol.identity_key, verifier=bob.identity_key
            )
        )
        assert result.prover == alice.identity_key
        linkage = decrypt_from(
            bob.deriver,
            result.encrypted_linkage,
            COUNTERPARTY_LINKAGE_PROTOCOL,
            result.revelation_time,
            alice.identity_key,
        )
        assert linkage == carol.deriver.shared_secret(alice.deriver.identity_key)

    @pytest.mark.asyncio
    async def test_reveal_specific_linkage(self, alice, bob, carol):
        key_id = format_key_id("YQ==", "Yg==")
        result = await alice.reveal_specific_key_linkage(
            RevealSpecificKeyLinkageArgs(
                counterparty=carol.identity_key,
                verifier=bob.identity_key,
                protocol_id=WALLET_PAYMENT_PROTOCOL,
                key_id=key_id,
            )
        )
        assert result.proof_type == 0
        linkage = decrypt_from(
            bob.deriver,
            result.encrypted_linkage,
            SPECIFIC_LINKAGE_PROTOCOL,
            compute_invoice_number(WALLET_PAYMENT_PROTOCOL, key_id),
            alice.identity_key,
        )
        assert linkage == alice.deriver.reveal_specific_secret(
            carol.identity_key, WALLET_PAYMENT_PROTOCOL, key_id
        )


CERTIFIER = PrivateKey(bytes.fromhex("55" * 32)).public_key.format().hex()


def direct_certificate(serial: str = "c2VyaWFs", **fields) -> AcquireCertificateArgs:
    return AcquireCertificateArgs(
        type="aWRlbnRpdHk=",
        certifier=CERTIFIER,
        serial_number=serial,
        revocation_outpoint="00" * 32 + ".0",
        signature="3045",
        fields=fields or {"name": "Alice", "country": "PT"},
    )


class TestCertificates:
    @pytest.mark.asyncio
    async def test_acquire_and_list(self, alice):
        cert = await alice.acquire_certificate(direct_certificate())
        assert cert.subject == alice.identity_key

        listed = await alice.list_certificates(ListCertificatesArgs(certifiers=[CERTIFIER]))
        assert listed.total_certificates == 1
        other = await alice.list_certificates(ListCertificatesArgs(types=["other"]))
        assert other.total_certificates == 0

    @pytest.mark.asyncio
    async def test_reacquire_replaces(self, alice):
        await alice.acquire_certificate(direct_certificate(name="Alice"))
        await alice.acquire_certificate(direct_certificate(name="Alicia"))
        listed = await alice.list_certificates(ListCertificatesArgs())
        assert listed.total_certificates == 1
        assert listed.certificates[0].fields["name"] == "Alicia"

    @pytest.mark.asyncio
    async def test_issuance_unsupported(self, alice):
        args = AcquireCertificateArgs(
            type="aWRlbnRpdHk=",
            certifier=CERTIFIER,
            acquisition_protocol="issuance",
            certifier_url="https://certifier.example",
        )
        with pytest.raises(InvalidSpecError):
            await alice.acquire_certificate(args)

    @pytest.mark.asyncio
    async def test_prove_reveals_only_selected_fields(self, alice, bob):
        await alice.acquire_certificate(direct_certificate())
        proof = await alice.prove_certificate(
            ProveCertificateArgs(
                certificate=CertificateFilter(serial_number="c2VyaWFs"),
                fields_to_reveal=["name"],
                verifier=bob.identity_key,
            )
        )
        assert set(proof.keyring_for_verifier) == {"name"}

        plaintext = decrypt_from(
            bob.deriver,
            base64.b64decode(proof.keyring_for_verifier["name"]),
            (2, "certificate field encryption"),
            "c2VyaWFs name",
            alice.identity_key,
        )
        assert plaintext == b"Alice"

    @pytest.mark.asyncio
    async def test_prove_unknown_field(self, alice, bob):
        await alice.acquire_certificate(direct_certificate())
        with pytest.raises(InvalidSpecError):
            await alice.prove_certificate(
                ProveCertificateArgs(
                    certificate=CertificateFilter(),
                    fields_to_reveal=["email"],
                    verifier=bob.identity_key,
                )
            )

    @pytest.mark.asyncio
    async def test_discover(self, alice):
        await alice.acquire_certificate(direct_certificate())
        await alice.acquire_certificate(direct_certificate("b3RoZXI=", name="Bob", country="PT"))

        by_key = await alice.discover_by_identity_key(
            DiscoverByIdentityKeyArgs(identity_key=alice.identity_key)
        )
        by_attrs = await alice.discover_by_attributes(
            DiscoverByAttributesArgs(attributes={"country": "PT", "name": "Bob"})
        )
        assert by_key.total_certificates == 2
        assert by_attrs.total_certificates == 1
        assert by_attrs.certificates[0].serial_number == "b3RoZXI="

    @pytest.mark.asyncio
    async def test_relinquish(self, alice):
        await alice.acquire_certificate(direct_certificate())
        args = RelinquishCertificateArgs(
            type="aWRlbnRpdHk=", serial_number="c2VyaWFs", certifier=CERTIFIER
        )
        assert (await alice.relinquish_certificate(args)).relinquished
        assert (await alice.list_certificates(ListCertificatesArgs())).total_certificates == 0
        with pytest.raises(InvalidSpecError):
            await alice.relinquish_certificate(args)
