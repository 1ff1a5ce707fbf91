"""Transaction dispatcher.

Every mutating ledger call goes through TransactionDispatcher. It follows
the same path each time:

    simulate (eth_estimateGas)   outside the lock, consumes no nonce
    └── serialize(identity)
        ├── assign nonce         platform backend only
        ├── backend.send()       broadcast
        └── wait_for_confirmation

Outcomes:
    confirmed, status 1  -> receipt returned
    confirmed, status 0  -> ContractRevertError with the decoded reason
    broadcast failure    -> SubmissionError, identity resynced for the retry
    any other send error -> re-raised, identity resynced
    no confirmation      -> ConfirmationTimeoutError; never retried here

Multi-step sequences that must not interleave with other sends from the same
identity (approve then deposit) call serialized() and submit() directly.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from core.errors import (
    ConfirmationTimeoutError,
    ContractRevertError,
    LedgerError,
    LedgerRPCError,
    SimulationRevertError,
    SubmissionError,
)
from ledger.abi import ContractErrorSpec, decode_revert_reason
from ledger.base import TransactionBackend
from ledger.nonce import NonceSequencer
from ledger.rpc import LedgerClient
from schemas.transaction import (
    PendingTransaction,
    TransactionReceipt,
    TransactionState,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIRMATIONS = 1
DEFAULT_CONFIRMATION_TIMEOUT_MS = 120_000


class TransactionDispatcher:
    """Submits and confirms ledger transactions for any backend.

    Attributes:
        ledger: JSON-RPC client.
        sequencer: Shared NonceSequencer. One instance per process.
        confirmations: Blocks required before a receipt counts as final.
        timeout_ms: How long to wait for that depth.
        known_errors: Custom contract errors used to decode revert data.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        sequencer: NonceSequencer,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        timeout_ms: int = DEFAULT_CONFIRMATION_TIMEOUT_MS,
        known_errors: Sequence[ContractErrorSpec] = (),
    ) -> None:
        self.ledger = ledger
        self.sequencer = sequencer
        self.confirmations = confirmations
        self.timeout_ms = timeout_ms
        self.known_errors = tuple(known_errors)

    def _reason(self, exc: LedgerRPCError) -> str:
        return decode_revert_reason(exc.data, self.known_errors) or str(exc)

    async def simulate(self, backend: TransactionBackend, target: str, calldata: str) -> int:
        """Dry-run a call and return a buffered gas limit.

        Raises:
            SimulationRevertError: If the call would revert.
        """
        try:
            estimate = await self.ledger.estimate_gas(
                {"from": backend.address, "to": target, "data": calldata}
            )
        except LedgerRPCError as exc:
            reason = self._reason(exc)
            logger.warning("Simulation of call to %s reverted: %s", target, reason)
            raise SimulationRevertError(f"simulation reverted: {reason}", reason=reason) from exc
        return estimate * 12 // 10

    async def serialized(self, backend: TransactionBackend, op: Callable[[], Awaitable[T]]) -> T:
        """Run op inside backend's identity lock."""
        identity = self.sequencer.identity_for(backend)
        return await self.sequencer.serialize(identity, op)

    async def dispatch(
        self,
        backend: TransactionBackend,
        target: str,
        calldata: str,
        gas_limit: int | None = None,
    ) -> TransactionReceipt:
        """Simulate, then submit and confirm one call.

        Args:
            backend: Signing backend.
            target: Contract address.
            calldata: ABI-encoded call.
            gas_limit: Fixed gas limit. The simulation still runs; its
                estimate is used only when this is None.

        Returns:
            The successful receipt.
        """
        estimate = await self.simulate(backend, target, calldata)
        gas = gas_limit or estimate
        return await self.serialized(backend, lambda: self.submit(backend, target, calldata, gas))

    async def submit(
        self,
        backend: TransactionBackend,
        target: str,
        calldata: str,
        gas: int,
    ) -> TransactionReceipt:
        """Broadcast and confirm. Must run inside serialized() for backend.

        Raises:
            RuntimeError: If called without holding the identity lock.
            SubmissionError: If the broadcast failed.
            ConfirmationTimeoutError: If confirmation did not arrive in time.
            ContractRevertError: If the transaction was mined but reverted.
        """
        identity = self.sequencer.identity_for(backend)
        if not identity.lock.locked():
            raise RuntimeError(f"submit for {backend.address} called outside its serialized section")

        tx = PendingTransaction(sender=backend.address, target=target, calldata=calldata, gas=gas)
        if backend.uses_local_nonce:
            tx.nonce = await self.sequencer.assign_nonce(identity)

        try:
            tx.tx_hash = await backend.send(tx)
        except SubmissionError:
            self.sequencer.invalidate(identity)
            raise
        except LedgerError as exc:
            self.sequencer.invalidate(identity)
            raise SubmissionError(f"broadcast to {target} failed: {exc}") from exc
        except Exception:
            self.sequencer.invalidate(identity)
            raise
        tx.status = TransactionStatus.SUBMITTED
        logger.info("Submitted %s to %s (nonce %s).", tx.tx_hash, target, tx.nonce)

        try:
            receipt = await self.ledger.wait_for_confirmation(tx.tx_hash, self.confirmations, self.timeout_ms)
        except ConfirmationTimeoutError:
            tx.status = TransactionStatus.TIMED_OUT
            logger.error(
                "Transaction %s not confirmed within %dms; reconcile with a status poll.",
                tx.tx_hash,
                self.timeout_ms,
            )
            raise

        if not receipt.succeeded:
            tx.status = TransactionStatus.REVERTED
            reason = await self._replay_revert(backend, target, calldata, receipt.block_number)
            logger.warning("Transaction %s reverted: %s", tx.tx_hash, reason)
            raise ContractRevertError(f"transaction reverted: {reason}", reason=reason, tx_hash=tx.tx_hash)

        tx.status = TransactionStatus.CONFIRMED
        logger.info("Confirmed %s in block %d.", tx.tx_hash, receipt.block_number)
        return receipt

    async def _replay_revert(self, backend: TransactionBackend, target: str, calldata: str, block: int) -> str:
        """Re-run a reverted call at its block to recover the reason."""
        try:
            await self.ledger.call({"from": backend.address, "to": target, "data": calldata}, block)
        except LedgerRPCError as exc:
            return self._reason(exc)
        except LedgerError as exc:
            return f"reason unavailable: {exc}"
        return "reverted without reason"

    async def transaction_status(self, tx_hash: str) -> TransactionState:
        """Poll the ledger for a transaction's state, e.g. after a timeout."""
        return await self.ledger.transaction_status(tx_hash)
