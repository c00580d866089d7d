"""
In-process reference wallet.

Keeps outputs, actions, transactions and certificates in memory and builds
real BSV transactions: P2PKH outputs derived with BRC-42, SIGHASH_FORKID
signatures and BEEF framing. It never broadcasts; a transaction is final as
soon as it is signed.
"""

from __future__ import annotations

import base64
import json
import math
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

from wbcore.constants import (
    ATOMIC_BEEF_PREFIX,
    CERTIFICATE_FIELD_PROTOCOL,
    DEFAULT_BASKET,
    DEFAULT_FEE_RATE,
    WALLET_PAYMENT_PROTOCOL,
)
from wbcore.crypto import p2pkh_locking_script, validate_public_key_hex
from wbcore.errors import (
    ClaimRejectedError,
    InsufficientFundsError,
    InvalidSpecError,
    UnknownOutputError,
    UnknownReferenceError,
)
from wbcore.models import (
    AbortActionArgs,
    AbortActionResult,
    AcquireCertificateArgs,
    Action,
    ActionInputRecord,
    ActionOutputRecord,
    ActionStatus,
    BasketInsertionOutput,
    Certificate,
    CreateActionArgs,
    CreateActionResult,
    DiscoverByAttributesArgs,
    DiscoverByIdentityKeyArgs,
    DiscoverCertificatesResult,
    GetPublicKeyArgs,
    GetPublicKeyResult,
    InternalizeActionArgs,
    InternalizeActionResult,
    ListActionsArgs,
    ListActionsResult,
    ListCertificatesArgs,
    ListCertificatesResult,
    ListOutputsArgs,
    ListOutputsResult,
    Network,
    ProveCertificateArgs,
    ProveCertificateResult,
    RelinquishCertificateArgs,
    RelinquishCertificateResult,
    RelinquishOutputArgs,
    RelinquishOutputResult,
    RevealCounterpartyKeyLinkageArgs,
    RevealCounterpartyKeyLinkageResult,
    RevealSpecificKeyLinkageArgs,
    RevealSpecificKeyLinkageResult,
    SignableTransaction,
    SignActionArgs,
    SignActionResult,
    WalletOutput,
    WalletPaymentOutput,
)
from wbcore.protocol import format_key_id, generate_derivation_salt
from wbwallet.backends.base import WalletInterface
from wbwallet.wallet.encryption import encrypt_for
from wbwallet.wallet.keys import SELF, KeyDeriver, compute_invoice_number
from wbwallet.wallet.transaction import (
    P2PKH_UNLOCKING_SCRIPT_LENGTH,
    Transaction,
    TransactionError,
    TxInput,
    TxOutput,
    decode_atomic_beef,
    decode_beef,
    deserialize_transaction,
    encode_atomic_beef,
    encode_beef,
    encode_varint,
    sign_p2pkh_input,
)

COUNTERPARTY_LINKAGE_PROTOCOL = (2, "counterparty linkage revelation")
SPECIFIC_LINKAGE_PROTOCOL = (2, "specific linkage revelation")

# Funding transactions spend this null outpoint, like a coinbase
NULL_TXID = "00" * 32


@dataclass
class OutputRecord:
    """An output the wallet tracks, with what it needs to unlock it"""

    txid: str
    vout: int
    satoshis: int
    locking_script: bytes
    basket: str | None = DEFAULT_BASKET
    spendable: bool = True
    reserved_by: str | None = None
    spent_by: str | None = None
    tags: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    custom_instructions: str | None = None
    # BRC-42 derivation of the key locking this output, if the wallet holds it
    protocol_id: tuple[int, str] | None = None
    key_id: str | None = None
    counterparty: str | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}.{self.vout}"

    @property
    def available(self) -> bool:
        return self.spendable and self.reserved_by is None and self.basket is not None


@dataclass
class InputSource:
    outpoint: str
    satoshis: int
    locking_script: bytes
    description: str = ""
    # Set for inputs the wallet unlocks itself
    owned: OutputRecord | None = None
    unlocking_script_length: int | None = None


@dataclass
class ActionRecord:
    reference: str
    status: ActionStatus
    description: str
    tx: Transaction
    sources: list[InputSource]
    outputs: list[ActionOutputRecord]
    labels: list[str] = field(default_factory=list)
    is_outgoing: bool = True
    satoshis: int = 0
    txid: str | None = None
    return_txid_only: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    # Output metadata used to create wallet records on commit
    tracked_outputs: dict[int, OutputRecord] = field(default_factory=dict)


def estimate_size(input_script_lengths: list[int], output_scripts: list[bytes]) -> int:
    size = 4 + len(encode_varint(len(input_script_lengths)))
    for length in input_script_lengths:
        size += 32 + 4 + len(encode_varint(length)) + length + 4
    size += len(encode_varint(len(output_scripts)))
    for script in output_scripts:
        size += 8 + len(encode_varint(len(script))) + len(script)
    return size + 4


def _random_reference() -> str:
    return base64.b64encode(secrets.token_bytes(12)).decode("ascii")


def _paginate(items: list, offset: int, limit: int) -> list:
    return items[offset : offset + limit]


class LocalWallet(WalletInterface):
    """
    Reference wallet storage that lives entirely in memory.

    Use :meth:`fund` to seed spendable outputs for development and tests.
    """

    def __init__(
        self,
        private_key_hex: str,
        network: Network = Network.TEST,
        fee_rate: int = DEFAULT_FEE_RATE,
        height: int = 0,
    ):
        self.deriver = KeyDeriver.from_hex(private_key_hex)
        self.network = Network.parse(network)
        self.fee_rate = fee_rate
        self.height = height

        self._outputs: dict[str, OutputRecord] = {}
        self._actions: dict[str, ActionRecord] = {}
        self._transactions: dict[str, bytes] = {}
        self._certificates: list[Certificate] = []

        logger.info(
            f"Initialized local wallet {self.identity_key[:8]}... on {self.network.value}net"
        )

    @property
    def identity_key(self) -> str:
        return self.deriver.identity_key_hex

    # ------------------------------------------------------------------
    # Funding and key helpers
    # ------------------------------------------------------------------

    def _new_self_output_key(self) -> tuple[str, bytes]:
        key_id = format_key_id(generate_derivation_salt(), generate_derivation_salt())
        pubkey = self.deriver.derive_public_key(WALLET_PAYMENT_PROTOCOL, key_id, SELF, True)
        script = bytes.fromhex(p2pkh_locking_script(pubkey.format(compressed=True).hex()))
        return key_id, script

    def fund(self, satoshis: int, count: int = 1) -> str:
        """Credit ``count`` new outputs of ``satoshis`` each, as if mined to us."""
        if satoshis <= 0 or count <= 0:
            raise InvalidSpecError("Funding needs a positive amount and count")

        self.height += 1
        coinbase = TxInput(
            NULL_TXID, 0xFFFFFFFF, self.height.to_bytes(4, "little") + secrets.token_bytes(8)
        )
        keys = [self._new_self_output_key() for _ in range(count)]
        tx = Transaction(
            inputs=[coinbase], outputs=[TxOutput(satoshis, script) for _, script in keys]
        )
        txid = tx.txid
        self._transactions[txid] = tx.serialize()

        for vout, (key_id, script) in enumerate(keys):
            record = OutputRecord(
                txid=txid,
                vout=vout,
                satoshis=satoshis,
                locking_script=script,
                protocol_id=WALLET_PAYMENT_PROTOCOL,
                key_id=key_id,
                counterparty=SELF,
            )
            self._outputs[record.outpoint] = record

        logger.info(f"Funded wallet with {count} x {satoshis:,} sats (txid {txid[:16]}...)")
        return txid

    def balance(self) -> int:
        return sum(
            o.satoshis
            for o in self._outputs.values()
            if o.available and o.basket == DEFAULT_BASKET and o.key_id is not None
        )

    def _fee(self, size: int) -> int:
        return max(1, math.ceil(size * self.fee_rate / 1000))

    def _ancestry(self, txids: list[str], known: set[str]) -> list[bytes]:
        """Raw transactions for ``txids`` and their stored ancestors, parents first."""
        ordered: list[str] = []
        seen: set[str] = set()

        def visit(txid: str) -> None:
            if txid in seen or txid not in self._transactions:
                return
            seen.add(txid)
            if txid not in known:
                tx = deserialize_transaction(self._transactions[txid])
                for inp in tx.inputs:
                    visit(inp.txid)
            ordered.append(txid)

        for txid in txids:
            visit(txid)
        return [self._transactions[t] for t in ordered]

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _resolve_inputs(self, args: CreateActionArgs) -> list[InputSource]:
        beef_txs: dict[str, Transaction] = {}
        if args.input_beef:
            try:
                if args.input_beef.startswith(ATOMIC_BEEF_PREFIX):
                    _, beef_txs = decode_atomic_beef(args.input_beef)
                else:
                    beef_txs = decode_beef(args.input_beef)
            except TransactionError as e:
                raise InvalidSpecError(f"Invalid inputBEEF: {e}") from e

        sources: list[InputSource] = []
        for inp in args.inputs:
            txid, vout_str = inp.outpoint.split(".")
            vout = int(vout_str)
            owned = self._outputs.get(inp.outpoint)
            if owned is not None:
                if not owned.available:
                    raise InvalidSpecError(f"Input {inp.outpoint} is not spendable")
                satoshis, script = owned.satoshis, owned.locking_script
            elif txid in beef_txs and vout < len(beef_txs[txid].outputs):
                source_out = beef_txs[txid].outputs[vout]
                satoshis, script = source_out.value, source_out.script
                self._transactions.setdefault(txid, beef_txs[txid].serialize())
            else:
                raise InvalidSpecError(f"Input {inp.outpoint} not found in wallet or inputBEEF")

            sources.append(
                InputSource(
                    outpoint=inp.outpoint,
                    satoshis=satoshis,
                    locking_script=script,
                    description=inp.input_description,
                    owned=None,
                    unlocking_script_length=(
                        len(inp.unlocking_script) // 2
                        if inp.unlocking_script is not None
                        else inp.unlocking_script_length
                    ),
                )
            )
        return sources

    async def create_action(self, args: CreateActionArgs) -> CreateActionResult:
        if not args.inputs and not args.outputs:
            raise InvalidSpecError("An action needs at least one input or output")

        sources = self._resolve_inputs(args)
        explicit_inputs = list(args.inputs)
        reference = _random_reference()

        # Requested outputs in caller order, paired with their listing metadata
        planned: list[tuple[TxOutput, ActionOutputRecord]] = [
            (
                TxOutput(out.satoshis, bytes.fromhex(out.locking_script)),
                ActionOutputRecord(
                    satoshis=out.satoshis,
                    locking_script=out.locking_script,
                    output_description=out.output_description,
                    basket=out.basket,
                    tags=list(out.tags),
                    custom_instructions=out.custom_instructions,
                ),
            )
            for out in args.outputs
        ]

        total_out = sum(out.satoshis for out in args.outputs)
        total_in = sum(s.satoshis for s in sources)
        script_lengths = [
            s.unlocking_script_length or P2PKH_UNLOCKING_SCRIPT_LENGTH for s in sources
        ]
        change_key_id, change_script = self._new_self_output_key()
        output_scripts = [tx_out.script for tx_out, _ in planned] + [change_script]

        explicit_outpoints = {s.outpoint for s in sources}
        candidates = sorted(
            (
                o
                for o in self._outputs.values()
                if o.available
                and o.basket == DEFAULT_BASKET
                and o.key_id is not None
                and o.outpoint not in explicit_outpoints
            ),
            key=lambda o: o.satoshis,
            reverse=True,
        )
        selected: list[OutputRecord] = []
        while True:
            size = estimate_size(
                script_lengths + [P2PKH_UNLOCKING_SCRIPT_LENGTH] * len(selected), output_scripts
            )
            fee = self._fee(size)
            excess = total_in - total_out - fee
            if excess >= 0:
                break
            if not candidates:
                raise InsufficientFundsError(
                    f"Insufficient funds: need {total_out + fee}, have {total_in}"
                )
            utxo = candidates.pop(0)
            selected.append(utxo)
            total_in += utxo.satoshis

        for utxo in selected:
            sources.append(
                InputSource(
                    outpoint=utxo.outpoint,
                    satoshis=utxo.satoshis,
                    locking_script=utxo.locking_script,
                    description="funding",
                    owned=utxo,
                )
            )
        change_index: int | None = None
        if excess > 0:
            planned.append(
                (
                    TxOutput(excess, change_script),
                    ActionOutputRecord(
                        satoshis=excess,
                        locking_script=change_script.hex(),
                        output_description="change",
                        basket=DEFAULT_BASKET,
                    ),
                )
            )
            change_index = len(planned) - 1

        order = list(range(len(planned)))
        if args.options.randomize_outputs:
            secrets.SystemRandom().shuffle(order)

        tx = Transaction(version=args.version, locktime=args.lock_time)
        for i, source in enumerate(sources):
            txid, vout = source.outpoint.split(".")
            script = b""
            sequence = explicit_inputs[i].sequence_number if i < len(explicit_inputs) else None
            if i < len(explicit_inputs) and explicit_inputs[i].unlocking_script is not None:
                script = bytes.fromhex(explicit_inputs[i].unlocking_script)
            tx.inputs.append(TxInput(txid, int(vout), script))
            if sequence is not None:
                tx.inputs[-1].sequence = sequence

        output_records: list[ActionOutputRecord] = []
        tracked: dict[int, OutputRecord] = {}
        for new_index, planned_index in enumerate(order):
            tx_out, meta = planned[planned_index]
            tx.outputs.append(tx_out)
            meta.output_index = new_index
            output_records.append(meta)
            if meta.basket is not None:
                tracked[new_index] = OutputRecord(
                    txid="",
                    vout=new_index,
                    satoshis=tx_out.value,
                    locking_script=tx_out.script,
                    basket=meta.basket,
                    tags=list(meta.tags),
                    labels=list(args.labels),
                    custom_instructions=meta.custom_instructions,
                )
                if planned_index == change_index:
                    tracked[new_index].protocol_id = WALLET_PAYMENT_PROTOCOL
                    tracked[new_index].key_id = change_key_id
                    tracked[new_index].counterparty = SELF

        spent_by_wallet = sum(s.satoshis for s in sources if s.outpoint in self._outputs)
        kept = sum(r.satoshis for r in tracked.values())
        record = ActionRecord(
            reference=reference,
            status=ActionStatus.UNSIGNED,
            description=args.description,
            tx=tx,
            sources=sources,
            outputs=output_records,
            labels=list(args.labels),
            satoshis=kept - spent_by_wallet,
            return_txid_only=args.options.return_txid_only,
            tracked_outputs=tracked,
        )
        self._actions[reference] = record
        for source in sources:
            if source.owned is not None:
                source.owned.reserved_by = reference
            elif source.outpoint in self._outputs:
                self._outputs[source.outpoint].reserved_by = reference

        needs_signatures = [
            i for i, inp in enumerate(explicit_inputs) if inp.unlocking_script is None
        ]
        if needs_signatures or not args.options.sign_and_process:
            record.status = ActionStatus.SIGNABLE
            unsigned = tx.serialize()
            parents = self._ancestry(
                [inp.txid for inp in tx.inputs], set(args.options.known_txids)
            )
            logger.info(
                f"Action {reference} is signable "
                f"({len(needs_signatures)} input(s) awaiting caller signatures)"
            )
            return CreateActionResult(
                signable_transaction=SignableTransaction(
                    tx=encode_atomic_beef(tx.txid, parents + [unsigned]),
                    reference=reference,
                )
            )

        txid = self._complete(record)
        if args.options.no_send:
            logger.debug(f"Action {txid} created with noSend")
        return self._result_for(record, txid, args.options.known_txids)

    def _result_for(
        self, record: ActionRecord, txid: str, known_txids: list[str] | None = None
    ) -> CreateActionResult:
        if record.return_txid_only:
            return CreateActionResult(txid=txid)
        return CreateActionResult(txid=txid, tx=self._atomic_beef(txid, set(known_txids or [])))

    def _atomic_beef(self, txid: str, known: set[str] | None = None) -> bytes:
        return encode_atomic_beef(txid, self._ancestry([txid], known or set()))

    def _complete(self, record: ActionRecord) -> str:
        """Sign wallet-owned inputs and commit the action."""
        tx = record.tx
        for index, source in enumerate(record.sources):
            if source.owned is None:
                continue
            owned = source.owned
            if owned.protocol_id is None or owned.key_id is None:
                raise InvalidSpecError(f"Wallet cannot unlock {owned.outpoint}")
            private_key = self.deriver.derive_private_key(
                owned.protocol_id, owned.key_id, owned.counterparty
            )
            tx.inputs[index].script = sign_p2pkh_input(
                tx, index, source.locking_script, source.satoshis, private_key
            )

        raw = tx.serialize()
        txid = tx.txid
        self._transactions[txid] = raw

        for source in record.sources:
            spent = self._outputs.get(source.outpoint)
            if spent is not None:
                spent.spendable = False
                spent.reserved_by = None
                spent.spent_by = txid

        for vout, tracked in record.tracked_outputs.items():
            tracked.txid = txid
            tracked.vout = vout
            self._outputs[tracked.outpoint] = tracked

        record.txid = txid
        record.status = ActionStatus.SIGNED
        logger.info(f"Action signed: {txid} ({len(raw)} bytes, net {record.satoshis:+,} sats)")
        return txid

    def _signable(self, reference: str) -> ActionRecord:
        record = self._actions.get(reference)
        if record is None or record.status != ActionStatus.SIGNABLE:
            raise UnknownReferenceError(f"Unknown or completed reference: {reference}")
        return record

    async def sign_action(self, args: SignActionArgs) -> SignActionResult:
        record = self._signable(args.reference)
        tx = record.tx

        awaiting = {
            i
            for i, source in enumerate(record.sources)
            if source.owned is None and not tx.inputs[i].script
        }
        unexpected = set(args.spends) - awaiting
        if unexpected:
            raise InvalidSpecError(f"No caller signature expected for inputs {sorted(unexpected)}")
        missing = awaiting - set(args.spends)
        if missing:
            raise InvalidSpecError(f"Missing unlocking scripts for inputs {sorted(missing)}")

        for index, spend in args.spends.items():
            tx.inputs[index].script = bytes.fromhex(spend.unlocking_script)
            if spend.sequence_number is not None:
                tx.inputs[index].sequence = spend.sequence_number

        txid = self._complete(record)
        if args.return_txid_only or record.return_txid_only:
            return SignActionResult(txid=txid)
        return SignActionResult(txid=txid, tx=self._atomic_beef(txid))

    async def abort_action(self, args: AbortActionArgs) -> AbortActionResult:
        record = self._signable(args.reference)
        released = 0
        for output in self._outputs.values():
            if output.reserved_by == args.reference:
                output.reserved_by = None
                released += 1
        record.status = ActionStatus.ABORTED
        logger.info(f"Action {args.reference} aborted, released {released} input(s)")
        return AbortActionResult(aborted=True)

    def _to_action(self, record: ActionRecord, args: ListActionsArgs) -> Action:
        action = Action(
            txid=record.txid,
            reference=record.reference,
            status=record.status,
            satoshis=record.satoshis,
            is_outgoing=record.is_outgoing,
            description=record.description,
            version=record.tx.version,
            lock_time=record.tx.locktime,
        )
        if args.include_labels:
            action.labels = list(record.labels)
        if args.include_inputs:
            action.inputs = [
                ActionInputRecord(
                    source_outpoint=source.outpoint,
                    source_satoshis=source.satoshis,
                    source_locking_script=source.locking_script.hex(),
                    unlocking_script=record.tx.inputs[i].script.hex() or None,
                    input_description=source.description,
                    sequence_number=record.tx.inputs[i].sequence,
                )
                for i, source in enumerate(record.sources)
            ]
        if args.include_outputs:
            outputs = []
            for out in record.outputs:
                tracked = (
                    self._outputs.get(f"{record.txid}.{out.output_index}") if record.txid else None
                )
                outputs.append(
                    out.model_copy(update={"spendable": bool(tracked and tracked.available)})
                )
            action.outputs = outputs
        return action

    async def list_actions(self, args: ListActionsArgs) -> ListActionsResult:
        wanted = set(args.labels)

        def matches(record: ActionRecord) -> bool:
            if not wanted:
                return True
            labels = set(record.labels)
            if args.label_query_mode == "all":
                return wanted <= labels
            return bool(wanted & labels)

        matching = [r for r in self._actions.values() if matches(r)]
        page = _paginate(matching, args.offset, args.limit)
        return ListActionsResult(
            total_actions=len(matching), actions=[self._to_action(r, args) for r in page]
        )

    # ------------------------------------------------------------------
    # Internalize
    # ------------------------------------------------------------------

    def _verify_payment(self, tx: Transaction, output: WalletPaymentOutput) -> OutputRecord:
        remittance = output.payment_remittance
        sender = validate_public_key_hex(remittance.sender_identity_key)
        key_id = format_key_id(remittance.derivation_prefix, remittance.derivation_suffix)

        if output.output_index >= len(tx.outputs):
            raise ClaimRejectedError(f"Transaction has no output {output.output_index}")

        derived = self.deriver.derive_public_key(WALLET_PAYMENT_PROTOCOL, key_id, sender, True)
        expected = p2pkh_locking_script(derived.format(compressed=True).hex())
        actual = tx.outputs[output.output_index]
        if actual.script.hex() != expected:
            raise ClaimRejectedError(
                f"Output {output.output_index} does not pay the key derived from the remittance"
            )
        if actual.value <= 0:
            raise ClaimRejectedError(f"Output {output.output_index} carries no value")

        return OutputRecord(
            txid=tx.txid,
            vout=output.output_index,
            satoshis=actual.value,
            locking_script=actual.script,
            custom_instructions=json.dumps(remittance.to_wire()),
            protocol_id=WALLET_PAYMENT_PROTOCOL,
            key_id=key_id,
            counterparty=sender,
        )

    def _insertion(self, tx: Transaction, output: BasketInsertionOutput) -> OutputRecord:
        if output.output_index >= len(tx.outputs):
            raise ClaimRejectedError(f"Transaction has no output {output.output_index}")
        remittance = output.insertion_remittance
        actual = tx.outputs[output.output_index]
        if actual.value <= 0:
            raise InvalidSpecError(f"Output {output.output_index} carries no value")
        return OutputRecord(
            txid=tx.txid,
            vout=output.output_index,
            satoshis=actual.value,
            locking_script=actual.script,
            basket=remittance.basket,
            tags=list(remittance.tags),
            custom_instructions=remittance.custom_instructions,
        )

    async def internalize_action(self, args: InternalizeActionArgs) -> InternalizeActionResult:
        try:
            subject, bundle = decode_atomic_beef(args.tx)
        except TransactionError as e:
            raise InvalidSpecError(f"Invalid AtomicBEEF: {e}") from e

        # Verify every claim before touching storage
        claims: list[tuple[OutputRecord, bool]] = []
        for output in args.outputs:
            if isinstance(output, WalletPaymentOutput):
                claims.append((self._verify_payment(subject, output), True))
            else:
                claims.append((self._insertion(subject, output), False))

        new_claims = [(r, paid) for r, paid in claims if r.outpoint not in self._outputs]
        if not new_claims:
            logger.debug(f"Transaction {subject.txid} already internalized")
            return InternalizeActionResult(accepted=True)

        for txid, tx in bundle.items():
            self._transactions.setdefault(txid, tx.serialize())

        for output_record, _ in new_claims:
            output_record.labels = list(args.labels)
            self._outputs[output_record.outpoint] = output_record

        received = sum(r.satoshis for r, paid in new_claims if paid)
        reference = _random_reference()
        self._actions[reference] = ActionRecord(
            reference=reference,
            status=ActionStatus.SIGNED,
            description=args.description,
            tx=subject,
            sources=[
                InputSource(outpoint=inp.outpoint, satoshis=0, locking_script=b"")
                for inp in subject.inputs
            ],
            outputs=[
                ActionOutputRecord(
                    output_index=r.vout,
                    satoshis=r.satoshis,
                    locking_script=r.locking_script.hex(),
                    basket=r.basket,
                    tags=list(r.tags),
                    custom_instructions=r.custom_instructions,
                )
                for r, _ in new_claims
            ],
            labels=list(args.labels),
            is_outgoing=False,
            satoshis=received,
            txid=subject.txid,
        )
        logger.info(
            f"Internalized {len(new_claims)} output(s) of {subject.txid[:16]}... "
            f"({received:,} sats received)"
        )
        return InternalizeActionResult(accepted=True)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    async def list_outputs(self, args: ListOutputsArgs) -> ListOutputsResult:
        wanted = set(args.tags)

        def matches(record: OutputRecord) -> bool:
            if not record.available or record.basket != args.basket:
                return False
            if not wanted:
                return True
            tags = set(record.tags)
            if args.tag_query_mode == "all":
                return wanted <= tags
            return bool(wanted & tags)

        matching = [o for o in self._outputs.values() if matches(o)]
        page = _paginate(matching, args.offset, args.limit)

        outputs = [
            WalletOutput(
                outpoint=o.outpoint,
                satoshis=o.satoshis,
                spendable=True,
                locking_script=o.locking_script.hex() if args.include else None,
                custom_instructions=(
                    o.custom_instructions if args.include_custom_instructions else None
                ),
                tags=list(o.tags) if args.include_tags else None,
                labels=list(o.labels) if args.include_labels else None,
            )
            for o in page
        ]
        beef = None
        if args.include == "entire transactions" and page:
            beef = encode_beef(self._ancestry(list(dict.fromkeys(o.txid for o in page)), set()))
        return ListOutputsResult(total_outputs=len(matching), outputs=outputs, beef=beef)

    async def relinquish_output(self, args: RelinquishOutputArgs) -> RelinquishOutputResult:
        record = self._outputs.get(args.output)
        if record is None or record.basket != args.basket:
            raise UnknownOutputError(f"Output {args.output} not found in basket {args.basket}")
        record.basket = None
        logger.info(f"Relinquished output {args.output}")
        return RelinquishOutputResult(relinquished=True)

    # ------------------------------------------------------------------
    # Keys and linkage
    # ------------------------------------------------------------------

    async def get_public_key(self, args: GetPublicKeyArgs) -> GetPublicKeyResult:
        if args.identity_key:
            return GetPublicKeyResult(public_key=self.identity_key)
        pubkey = self.deriver.derive_public_key(
            args.protocol_id,  # type: ignore[arg-type]
            args.key_id,  # type: ignore[arg-type]
            args.counterparty or SELF,
            args.for_self,
        )
        return GetPublicKeyResult(public_key=pubkey.format(compressed=True).hex())

    async def get_network(self) -> Network:
        return self.network

    async def get_height(self) -> int:
        return self.height

    async def reveal_counterparty_key_linkage(
        self, args: RevealCounterpartyKeyLinkageArgs
    ) -> RevealCounterpartyKeyLinkageResult:
        verifier = validate_public_key_hex(args.verifier)
        linkage = self.deriver.reveal_counterparty_secret(args.counterparty)
        revelation_time = datetime.now(UTC).isoformat()
        encrypted = encrypt_for(
            self.deriver, linkage, COUNTERPARTY_LINKAGE_PROTOCOL, revelation_time, verifier
        )
        logger.info(f"Revealed counterparty linkage for {args.counterparty[:8]}...")
        return RevealCounterpartyKeyLinkageResult(
            prover=self.identity_key,
            verifier=verifier,
            counterparty=args.counterparty,
            revelation_time=revelation_time,
            encrypted_linkage=encrypted,
            encrypted_linkage_proof=b"",
        )

    async def reveal_specific_key_linkage(
        self, args: RevealSpecificKeyLinkageArgs
    ) -> RevealSpecificKeyLinkageResult:
        verifier = validate_public_key_hex(args.verifier)
        linkage = self.deriver.reveal_specific_secret(
            args.counterparty, args.protocol_id, args.key_id
        )
        encrypted = encrypt_for(
            self.deriver,
            linkage,
            SPECIFIC_LINKAGE_PROTOCOL,
            compute_invoice_number(args.protocol_id, args.key_id),
            verifier,
        )
        return RevealSpecificKeyLinkageResult(
            prover=self.identity_key,
            verifier=verifier,
            counterparty=args.counterparty,
            protocol_id=args.protocol_id,
            key_id=args.key_id,
            encrypted_linkage=encrypted,
            encrypted_linkage_proof=b"",
            proof_type=0,
        )

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    async def list_certificates(self, args: ListCertificatesArgs) -> ListCertificatesResult:
        matching = [
            c
            for c in self._certificates
            if (not args.certifiers or c.certifier in args.certifiers)
            and (not args.types or c.type in args.types)
        ]
        return ListCertificatesResult(
            total_certificates=len(matching),
            certificates=_paginate(matching, args.offset, args.limit),
        )

    async def acquire_certificate(self, args: AcquireCertificateArgs) -> Certificate:
        if args.acquisition_protocol != "direct":
            raise InvalidSpecError("Certificate issuance needs a certifier service")
        cert = Certificate(
            type=args.type,
            subject=args.subject or self.identity_key,
            serial_number=args.serial_number,
            certifier=args.certifier,
            revocation_outpoint=args.revocation_outpoint,
            signature=args.signature,
            fields=dict(args.fields),
        )
        self._certificates = [
            c
            for c in self._certificates
            if (c.type, c.serial_number, c.certifier)
            != (cert.type, cert.serial_number, cert.certifier)
        ]
        self._certificates.append(cert)
        logger.info(f"Acquired certificate {cert.serial_number} from {cert.certifier[:8]}...")
        return cert

    async def prove_certificate(self, args: ProveCertificateArgs) -> ProveCertificateResult:
        matching = [c for c in self._certificates if args.certificate.matches(c)]
        if not matching:
            raise InvalidSpecError("No matching certificate")
        if len(matching) > 1:
            raise InvalidSpecError("Certificate filter matches more than one certificate")
        cert = matching[0]

        unknown = [name for name in args.fields_to_reveal if name not in cert.fields]
        if unknown:
            raise InvalidSpecError(f"Certificate has no field(s) {', '.join(unknown)}")

        verifier = validate_public_key_hex(args.verifier)
        keyring = {
            name: base64.b64encode(
                encrypt_for(
                    self.deriver,
                    cert.fields[name].encode("utf-8"),
                    CERTIFICATE_FIELD_PROTOCOL,
                    f"{cert.serial_number} {name}",
                    verifier,
                )
            ).decode("ascii")
            for name in args.fields_to_reveal
        }
        return ProveCertificateResult(keyring_for_verifier=keyring)

    async def relinquish_certificate(
        self, args: RelinquishCertificateArgs
    ) -> RelinquishCertificateResult:
        key = (args.type, args.serial_number, args.certifier)
        remaining = [
            c for c in self._certificates if (c.type, c.serial_number, c.certifier) != key
        ]
        if len(remaining) == len(self._certificates):
            raise InvalidSpecError(f"No certificate {args.serial_number} from {args.certifier}")
        self._certificates = remaining
        return RelinquishCertificateResult(relinquished=True)

    async def discover_by_identity_key(
        self, args: DiscoverByIdentityKeyArgs
    ) -> DiscoverCertificatesResult:
        matching = [c for c in self._certificates if c.subject == args.identity_key]
        return DiscoverCertificatesResult(
            total_certificates=len(matching),
            certificates=_paginate(matching, args.offset, args.limit),
        )

    async def discover_by_attributes(
        self, args: DiscoverByAttributesArgs
    ) -> DiscoverCertificatesResult:
        matching = [
            c
            for c in self._certificates
            if all(c.fields.get(k) == v for k, v in args.attributes.items())
        ]
        return DiscoverCertificatesResult(
            total_certificates=len(matching),
            certificates=_paginate(matching, args.offset, args.limit),
        )
