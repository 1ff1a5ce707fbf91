"""Error taxonomy for the settlement orchestrator.

Every exception raised on purpose by this codebase derives from
SettlementError, so callers at a boundary can tell "our" failures apart from
programming errors.

Where each kind is handled:
    ConfigurationError       : fatal at startup, nothing proceeds.
    SimulationRevertError    : pre-flight dry-run failed; no nonce consumed.
    ContractRevertError      : the ledger rejected a mined transaction.
    SubmissionError          : broadcast failed; a retry gets a fresh nonce.
    ConfirmationTimeoutError : fate unknown; poll, never resubmit blindly.
    ConsensusDivergenceError : observers disagreed where agreement is required.
    QuorumNotReachedError    : too few observers answered.
    RunInProgressError       : another assessment run holds the execution lock.
    ReportWithdrawnError     : a stale report was dropped before broadcast.
"""


class SettlementError(Exception):
    """Base class for all errors raised by the orchestrator."""


class ConfigurationError(SettlementError):
    """A required address, key or setting is missing or invalid."""


# ── Ledger ────────────────────────────────────────────────────────────────────

class LedgerError(SettlementError):
    """Base class for failures talking to the ledger."""


class LedgerRPCError(LedgerError):
    """The JSON-RPC endpoint returned an error object.

    Attributes:
        code: JSON-RPC error code (3 is the conventional "execution reverted").
        data: Raw revert data as a hex string, when the node supplied it.
    """

    def __init__(self, message: str, code: int | None = None, data: str | None = None):
        super().__init__(message)
        self.code = code
        self.data = data


class LedgerRejection(LedgerError):
    """The ledger refused an operation. Expected, and never retried blindly.

    Attributes:
        reason: Decoded revert reason, or the node's message if undecodable.
    """

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.reason = reason


class SimulationRevertError(LedgerRejection):
    """Pre-flight simulation failed. Raised before any nonce is assigned."""


class ContractRevertError(LedgerRejection):
    """A broadcast transaction was mined with a failed status."""

    def __init__(self, message: str, reason: str | None = None, tx_hash: str | None = None):
        super().__init__(message, reason)
        self.tx_hash = tx_hash


class SubmissionError(LedgerError):
    """Broadcasting a signed transaction failed."""


class ConfirmationTimeoutError(LedgerError):
    """No confirmation arrived in time. The transaction may still be mined.

    Attributes:
        tx_hash: Hash to poll with TransactionDispatcher.transaction_status().
    """

    def __init__(self, message: str, tx_hash: str):
        super().__init__(message)
        self.tx_hash = tx_hash


class PoolCreationInconsistencyError(LedgerError):
    """The factory transaction confirmed but no PoolCreated event was found.

    The pool may exist on-ledger at an address nobody knows about yet, so this
    is reported separately from a transaction failure.
    """

    def __init__(self, message: str, tx_hash: str, block_number: int):
        super().__init__(message)
        self.tx_hash = tx_hash
        self.block_number = block_number


# ── Consensus ─────────────────────────────────────────────────────────────────

class ConsensusError(SettlementError):
    """Base class for observation-consensus failures."""


class ConsensusDivergenceError(ConsensusError):
    """Independent requesters returned different values where identity is required."""


class QuorumNotReachedError(ConsensusError):
    """Fewer requesters than the quorum produced a usable value."""


# ── Pipeline ──────────────────────────────────────────────────────────────────

class RunInProgressError(SettlementError):
    """An assessment run is already active; the new trigger is skipped."""


class ReportWithdrawnError(SettlementError):
    """A report was pulled before broadcast and nothing was sent.

    Raised when a report went stale while waiting to be submitted and could
    not be recomputed, or when recomputing it dropped the index below the
    damage threshold.

    Attributes:
        report: The report that was withdrawn, recomputed if that happened.
    """

    def __init__(self, message: str, report):
        super().__init__(message)
        self.report = report
