"""Ledger transaction schemas.

PendingTransaction tracks one dispatch from nonce assignment to a terminal
state. TransactionReceipt is the subset of an EVM receipt the orchestrator
reads. Hashes and calldata are carried as 0x-prefixed hex strings.
"""

from enum import Enum

from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    """Lifecycle of a dispatched transaction.

    Values:
        SUBMITTED: Broadcast accepted by the node, not yet confirmed.
        CONFIRMED: Mined with success status and enough confirmations.
        REVERTED: Mined with failed status. Terminal.
        TIMED_OUT: No confirmation within the timeout. Ambiguous; never
            retried automatically.
    """

    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


class PendingTransaction(BaseModel):
    """One transaction as tracked by the dispatcher.

    Attributes:
        sender: Address of the signing identity.
        target: Contract the call is sent to.
        calldata: ABI-encoded call, hex.
        nonce: Nonce assigned by the NonceSequencer. None for backends that
            assign their own nonces (delegated custody).
        gas: Gas limit attached to the transaction.
        tx_hash: Set once the broadcast succeeds.
        status: Current lifecycle state. None until broadcast.
    """

    sender: str
    target: str
    calldata: str
    nonce: int | None = None
    gas: int | None = None
    tx_hash: str | None = None
    status: TransactionStatus | None = None


class LogEntry(BaseModel):
    """A single event log from a receipt."""

    address: str
    topics: list[str] = Field(default_factory=list)
    data: str = "0x"


class TransactionReceipt(BaseModel):
    """Receipt fields the orchestrator reads.

    Attributes:
        tx_hash: Transaction hash.
        block_number: Block the transaction was mined in.
        status: 1 for success, 0 for failure.
        sender: Sender address, when the node reports it.
        target: Recipient address, when the node reports it.
        gas_used: Gas consumed.
        logs: Emitted event logs, in order.
    """

    tx_hash: str
    block_number: int
    status: int
    sender: str | None = None
    target: str | None = None
    gas_used: int | None = None
    logs: list[LogEntry] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class TransactionState(BaseModel):
    """Answer to an explicit "what happened to this transaction?" poll.

    status is None when the node does not know the hash at all (dropped, or
    never broadcast). confirmations is 0 until mined.
    """

    tx_hash: str
    status: TransactionStatus | None = None
    block_number: int | None = None
    confirmations: int = 0
