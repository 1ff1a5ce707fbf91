"""In-memory ledger and backend stubs shared by the ledger, contract and
reporter tests. Nothing here talks to a network.
"""

import asyncio
from collections import defaultdict

from eth_utils import to_checksum_address

from core.errors import ConfirmationTimeoutError, LedgerRPCError, SubmissionError
from ledger.abi import ContractErrorSpec
from ledger.base import TransactionBackend
from schemas.transaction import (
    LogEntry,
    PendingTransaction,
    TransactionReceipt,
    TransactionState,
    TransactionStatus,
)

ERROR_STRING = ContractErrorSpec("Error", ("string",))


def address(n: int) -> str:
    """A deterministic checksummed test address."""
    return to_checksum_address(f"0x{n:040x}")


def revert_data(reason: str) -> str:
    return ERROR_STRING.encode(reason)


class FakeLedger:
    """Stands in for LedgerClient.

    Behaviour per target address:
        simulate_reverts[target] = reason  -> eth_estimateGas fails
        mined_reverts[target] = reason     -> receipt status 0, replay gives reason
        unconfirmed                        -> wait_for_confirmation times out
        logs[target] = list | callable(tx) -> logs in the receipt
        views[(target, selector)] = hex | callable(tx) -> eth_call result
    """

    def __init__(self) -> None:
        self.pending: dict[str, int] = defaultdict(int)
        self.sent: list[PendingTransaction] = []
        self.receipts: dict[str, TransactionReceipt] = {}
        self.simulate_reverts: dict[str, str] = {}
        self.mined_reverts: dict[str, str] = {}
        self.unconfirmed: set[str] = set()
        self.logs: dict[str, object] = {}
        self.views: dict[tuple[str, str], object] = {}
        self.estimates: list[dict] = []
        self.block = 100
        self.head = 100

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        await asyncio.sleep(0)
        return self.pending[address]

    async def estimate_gas(self, tx: dict) -> int:
        self.estimates.append(tx)
        reason = self.simulate_reverts.get(tx["to"])
        if reason is not None:
            raise LedgerRPCError("execution reverted", code=3, data=revert_data(reason))
        return 100_000

    async def call(self, tx: dict, block="latest") -> str:
        if block != "latest" and tx["to"] in self.mined_reverts:
            raise LedgerRPCError("execution reverted", code=3, data=revert_data(self.mined_reverts[tx["to"]]))
        handler = self.views.get((tx["to"], tx["data"][:10]))
        if handler is None:
            raise LedgerRPCError(f"no view stubbed for {tx['to']} {tx['data'][:10]}")
        return handler(tx) if callable(handler) else handler

    def broadcast(self, tx: PendingTransaction) -> str:
        """Record a send from a FakeBackend and mine it immediately."""
        self.sent.append(tx.model_copy())
        if tx.nonce is not None:
            self.pending[tx.sender] = max(self.pending[tx.sender], tx.nonce + 1)
        tx_hash = f"0x{len(self.sent):064x}"
        logs = self.logs.get(tx.target, [])
        if callable(logs):
            logs = logs(tx)
        self.receipts[tx_hash] = TransactionReceipt(
            tx_hash=tx_hash,
            block_number=self.block,
            status=0 if tx.target in self.mined_reverts else 1,
            sender=tx.sender,
            target=tx.target,
            logs=list(logs),
        )
        self.head = self.block
        self.block += 1
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int, timeout_ms: int) -> TransactionReceipt:
        await asyncio.sleep(0)
        receipt = self.receipts[tx_hash]
        if receipt.target in self.unconfirmed:
            raise ConfirmationTimeoutError(f"no confirmation for {tx_hash}", tx_hash=tx_hash)
        return receipt

    async def transaction_status(self, tx_hash: str) -> TransactionState:
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            return TransactionState(tx_hash=tx_hash)
        if receipt.target in self.unconfirmed:
            return TransactionState(tx_hash=tx_hash, status=TransactionStatus.SUBMITTED)
        return TransactionState(
            tx_hash=tx_hash,
            status=TransactionStatus.CONFIRMED if receipt.succeeded else TransactionStatus.REVERTED,
            block_number=receipt.block_number,
            confirmations=self.head - receipt.block_number + 1,
        )

    def sent_to(self, target: str) -> list[PendingTransaction]:
        return [tx for tx in self.sent if tx.target == target]


class FakeBackend(TransactionBackend):
    """Backend that hands transactions straight to a FakeLedger.

    Args:
        fail_sends: Number of upcoming sends that raise SubmissionError.
        delay: Seconds each send sleeps, to widen race windows in tests.
    """

    def __init__(
        self,
        ledger: FakeLedger,
        addr: str,
        uses_local_nonce: bool = True,
        fail_sends: int = 0,
        delay: float = 0,
    ) -> None:
        self.ledger = ledger
        self.address = addr
        self.uses_local_nonce = uses_local_nonce
        self.fail_sends = fail_sends
        self.delay = delay

    async def send(self, tx: PendingTransaction) -> str:
        await asyncio.sleep(self.delay)
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise SubmissionError("node refused the transaction")
        return self.ledger.broadcast(tx)


def log_entry(event, emitter: str, **args) -> LogEntry:
    return event.encode_log(emitter, **args)
