"""
Action lifecycle management.

Drives a single action through creation, optional cooperative signing and a
single terminal transition:

    unsigned -> signable -> signed | aborted
    unsigned -> signed          (signAndProcess, nothing left to sign)

Sign and abort on the same reference are serialized by a per-reference lock;
a second mutation arriving while the first is in flight is rejected rather
than queued, so callers always learn that they raced.
"""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from wbcore.errors import (
    ConcurrentMutationError,
    InvalidSpecError,
    UnknownReferenceError,
    WalletBridgeError,
)
from wbcore.models import (
    AbortActionArgs,
    Action,
    ActionOutputRecord,
    ActionStatus,
    CreateActionArgs,
    InternalizeActionArgs,
    InternalizeActionResult,
    ListActionsArgs,
    ListActionsResult,
    SignActionArgs,
    SpendArg,
)
from wbwallet.backends.base import WalletInterface

M = TypeVar("M", bound=BaseModel)

# Terminal references remembered locally; older ones are answered by the
# wallet's own UnknownReference
TERMINAL_HISTORY = 1000


def coerce_args(model: type[M], value: M | dict[str, Any]) -> M:
    """Validate wire-shaped arguments, reporting problems as InvalidSpec."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise InvalidSpecError(f"Invalid {model.__name__}: {e}") from e


class ActionLifecycleManager:
    """
    Front for the action operations of one wallet.

    Tracks actions it created while they are signable and remembers every
    reference that reached a terminal state.
    """

    def __init__(self, wallet: WalletInterface):
        self.wallet = wallet
        self._locks: dict[str, asyncio.Lock] = {}
        self._signable: dict[str, Action] = {}
        self._terminal: dict[str, ActionStatus] = {}

    def tracked(self, reference: str) -> Action | None:
        """Signable action created through this manager, if still open."""
        return self._signable.get(reference)

    def status_of(self, reference: str) -> ActionStatus | None:
        if reference in self._signable:
            return ActionStatus.SIGNABLE
        return self._terminal.get(reference)

    async def create(self, args: CreateActionArgs | dict[str, Any]) -> Action:
        """Create an action; returns it signed or signable."""
        args = coerce_args(CreateActionArgs, args)
        if not args.inputs and not args.outputs:
            raise InvalidSpecError("An action needs at least one input or output")

        result = await self.wallet.create_action(args)

        # Output positions are only known when the wallet keeps caller order
        keep_order = not args.options.randomize_outputs
        outputs = [
            ActionOutputRecord(
                output_index=i if keep_order else None,
                satoshis=out.satoshis,
                locking_script=out.locking_script,
                output_description=out.output_description,
                basket=out.basket,
                tags=list(out.tags),
                custom_instructions=out.custom_instructions,
            )
            for i, out in enumerate(args.outputs)
        ]
        common = {
            "description": args.description,
            "labels": list(args.labels),
            "version": args.version,
            "lock_time": args.lock_time,
            "outputs": outputs,
        }

        if result.signable_transaction is not None:
            reference = result.signable_transaction.reference
            action = Action(
                reference=reference,
                status=ActionStatus.SIGNABLE,
                tx=result.signable_transaction.tx,
                **common,
            )
            self._signable[reference] = action
            logger.info(f"Action {reference}: unsigned -> signable")
            return action

        if result.txid is None:
            raise WalletBridgeError("Wallet returned neither a txid nor a signable transaction")

        logger.info(f"Action {result.txid}: unsigned -> signed")
        return Action(txid=result.txid, status=ActionStatus.SIGNED, tx=result.tx, **common)

    def _lock_for(self, reference: str) -> asyncio.Lock:
        lock = self._locks.setdefault(reference, asyncio.Lock())
        if lock.locked():
            raise ConcurrentMutationError(f"Another mutation of {reference} is in progress")
        return lock

    def _release(self, reference: str) -> None:
        # Only open actions keep a lock between calls
        if reference not in self._signable:
            self._locks.pop(reference, None)

    def _ensure_open(self, reference: str) -> None:
        status = self._terminal.get(reference)
        if status is not None:
            raise UnknownReferenceError(f"Reference {reference} is already {status.value}")

    def _finish(self, reference: str, status: ActionStatus, **updates: Any) -> Action:
        action = self._signable.pop(reference, None)
        if action is None:
            action = Action(reference=reference, status=status)
        action.status = status
        for name, value in updates.items():
            setattr(action, name, value)
        self._terminal[reference] = status
        if len(self._terminal) > TERMINAL_HISTORY:
            del self._terminal[next(iter(self._terminal))]
        self._locks.pop(reference, None)
        logger.info(f"Action {reference}: signable -> {status.value}")
        return action

    def _mark_failed(self, reference: str) -> None:
        """The wallet no longer knows a reference we still hold as signable."""
        if reference in self._signable:
            self._finish(reference, ActionStatus.FAILED)
            logger.warning(f"Action {reference} vanished from wallet storage, marked failed")

    async def sign(
        self,
        reference: str,
        spends: dict[int, SpendArg | dict[str, Any]] | None = None,
        return_txid_only: bool = False,
    ) -> Action:
        """Complete a signable action with the caller's unlocking scripts."""
        lock = self._lock_for(reference)
        try:
            async with lock:
                self._ensure_open(reference)
                args = coerce_args(
                    SignActionArgs,
                    {
                        "reference": reference,
                        "spends": spends or {},
                        "return_txid_only": return_txid_only,
                    },
                )
                try:
                    result = await self.wallet.sign_action(args)
                except UnknownReferenceError:
                    self._mark_failed(reference)
                    raise
                return self._finish(
                    reference, ActionStatus.SIGNED, txid=result.txid, tx=result.tx
                )
        finally:
            self._release(reference)

    async def abort(self, reference: str) -> Action:
        """Abort a signable action, releasing its reserved inputs."""
        lock = self._lock_for(reference)
        try:
            async with lock:
                self._ensure_open(reference)
                try:
                    await self.wallet.abort_action(AbortActionArgs(reference=reference))
                except UnknownReferenceError:
                    self._mark_failed(reference)
                    raise
                return self._finish(reference, ActionStatus.ABORTED)
        finally:
            self._release(reference)

    async def list(self, args: ListActionsArgs | dict[str, Any] | None = None) -> ListActionsResult:
        return await self.wallet.list_actions(coerce_args(ListActionsArgs, args or {}))

    async def internalize(
        self, args: InternalizeActionArgs | dict[str, Any]
    ) -> InternalizeActionResult:
        args = coerce_args(InternalizeActionArgs, args)
        result = await self.wallet.internalize_action(args)
        logger.info(f"Internalized {len(args.outputs)} output(s): accepted={result.accepted}")
        return result
