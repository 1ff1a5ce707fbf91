"""Settlement gateway.

Encodes a DamageReport as a receiveDamageReport call, has it attested by the
report signers and submits it as forwarder.report(receiver, rawReport,
context, signatures). The forwarder verifies the signatures and calls the
receiver. Every report is attested; there is no unsigned path.

The settlement contract independently re-checks caller identity, freshness,
threshold, payout arithmetic and claim limits. A rejection is raised to the
caller as a LedgerRejection and is an expected outcome.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_checksum_address

from contracts.definitions import DAMAGE_REPORT_RECEIVED, FORWARDER_REPORT, RECEIVE_DAMAGE_REPORT
from core.errors import ConfigurationError, ReportWithdrawnError
from ledger.abi import to_bytes
from ledger.base import TransactionBackend
from ledger.dispatcher import TransactionDispatcher
from schemas.report import DamageReport
from schemas.transaction import TransactionReceipt

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 500_000
DEFAULT_REPORT_MAX_AGE_SECONDS = 3600


# ── Attestation ──────────────────────────────────────────────────────────────

@dataclass
class AttestedReport:
    """A raw report plus the signatures that vouch for it.

    Attributes:
        raw_report: ABI-encoded receiveDamageReport calldata.
        context: Report context bound into every signature.
        signatures: One 65-byte signature per attestor.
    """

    raw_report: bytes
    context: bytes
    signatures: list[bytes] = field(default_factory=list)


def report_digest(raw_report: bytes, context: bytes) -> bytes:
    """Digest every attestor signs: keccak(keccak(raw_report) || context)."""
    return keccak(keccak(raw_report) + context)


class ReportAttestor(ABC):
    """Produces the signatures a forwarder checks before delivering a report."""

    @abstractmethod
    async def attest(self, raw_report: bytes, context: bytes) -> AttestedReport:
        ...


class LocalSignerAttestor(ReportAttestor):
    """Attests with a fixed set of locally held keys.

    Each key signs report_digest() as an EIP-191 message. The forwarder is
    expected to hold the matching signer set and quorum.
    """

    def __init__(self, private_keys: Sequence[str]) -> None:
        if not private_keys:
            raise ConfigurationError("at least one attestor key is required")
        self._accounts = [Account.from_key(key) for key in private_keys]

    @property
    def addresses(self) -> list[str]:
        return [account.address for account in self._accounts]

    async def attest(self, raw_report: bytes, context: bytes) -> AttestedReport:
        message = encode_defunct(primitive=report_digest(raw_report, context))
        signatures = [bytes(account.sign_message(message).signature) for account in self._accounts]
        return AttestedReport(raw_report=raw_report, context=context, signatures=signatures)


# ── Gateway ──────────────────────────────────────────────────────────────────

@dataclass
class SettlementReceipt:
    """Confirmed settlement.

    report is what was actually broadcast, which differs from the report
    passed in when it had to be recomputed. payout_amount and farmer come
    from the DamageReportReceived event and are None if the receipt did not
    carry it.
    """

    tx_hash: str
    block_number: int
    report: DamageReport | None = None
    payout_amount: int | None = None
    farmer: str | None = None


class SettlementGateway:
    """Submits attested damage reports through the report forwarder.

    Attributes:
        dispatcher: Shared transaction dispatcher.
        backend: Identity the pipeline submits from.
        attestor: Signs every report before it is forwarded.
        payout_receiver: Settlement contract exposing receiveDamageReport.
        forwarder: Report forwarder that verifies signatures and calls the
            receiver.
        workflow_address / workflow_id: Pipeline identity the receiver checks.
        gas_limit: Fixed gas limit for settlement transactions.
        max_report_age_seconds: A report older than this when its turn to
            broadcast comes is recomputed, never sent as is.
    """

    def __init__(
        self,
        dispatcher: TransactionDispatcher,
        backend: TransactionBackend,
        attestor: ReportAttestor,
        payout_receiver: str,
        workflow_address: str,
        workflow_id: int,
        forwarder: str | None = None,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        max_report_age_seconds: int = DEFAULT_REPORT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not payout_receiver:
            raise ConfigurationError("payout receiver address is not configured")
        if not workflow_address:
            raise ConfigurationError("workflow address is not configured")
        if not forwarder:
            raise ConfigurationError("report forwarder address is not configured")
        self.dispatcher = dispatcher
        self.backend = backend
        self.attestor = attestor
        self.payout_receiver = to_checksum_address(payout_receiver)
        self.forwarder = to_checksum_address(forwarder)
        self.workflow_address = to_checksum_address(workflow_address)
        self.workflow_id = workflow_id
        self.gas_limit = gas_limit
        self.max_report_age_seconds = max_report_age_seconds
        self._clock = clock

    def encode_report(self, report: DamageReport) -> str:
        """Encode report as receiveDamageReport calldata."""
        return RECEIVE_DAMAGE_REPORT.encode(
            (
                report.on_chain_policy_id,
                report.combined_index,
                report.weather_damage,
                report.vegetation_damage,
                report.payout_amount,
                report.assessed_at,
            ),
            self.workflow_address,
            self.workflow_id,
        )

    def report_context(self, report: DamageReport) -> bytes:
        return encode(
            ["address", "uint256", "uint256"],
            [self.workflow_address, self.workflow_id, report.assessed_at],
        )

    async def forwarder_calldata(self, report: DamageReport) -> str:
        """Attest report and wrap it in a forwarder report() call."""
        attested = await self.attestor.attest(to_bytes(self.encode_report(report)), self.report_context(report))
        return FORWARDER_REPORT.encode(
            self.payout_receiver, attested.raw_report, attested.context, attested.signatures
        )

    async def submit_report(
        self,
        report: DamageReport,
        refresh: Callable[[], Awaitable[DamageReport]] | None = None,
    ) -> SettlementReceipt:
        """Attest and submit one report, and wait for confirmation.

        The report is simulated up front, then its age is checked again inside
        the submitting identity's lock, right before broadcast. A report that
        went stale while queued behind other submissions is replaced by
        refresh(), re-attested and re-simulated.

        Args:
            report: Report to submit.
            refresh: Recomputes the report from fresh observations with a
                new timestamp. May raise ReportWithdrawnError.

        Raises:
            SimulationRevertError / ContractRevertError: The ledger rejected
                the report (already paid, stale, below its threshold, ...).
            ReportWithdrawnError: The report went stale and could not be
                recomputed, or no longer crosses the threshold.
            ConfirmationTimeoutError: Fate unknown; reconcile by status poll.
            SubmissionError: Broadcast failed.
        """
        calldata = await self.forwarder_calldata(report)
        await self.dispatcher.simulate(self.backend, self.forwarder, calldata)

        async def send() -> tuple[DamageReport, TransactionReceipt]:
            current, data = report, calldata
            age = current.age_seconds(self._clock())
            if age > self.max_report_age_seconds:
                if refresh is None:
                    raise ReportWithdrawnError(
                        f"report for policy {current.policy_id} is {age:.0f}s old and cannot be recomputed",
                        report=current,
                    )
                logger.info("Report for policy %s is %.0fs old at broadcast; recomputing.", current.policy_id, age)
                current = await refresh()
                data = await self.forwarder_calldata(current)
                await self.dispatcher.simulate(self.backend, self.forwarder, data)
            logger.info(
                "Submitting report for policy %s (index %d, payout %d).",
                current.policy_id,
                current.combined_index,
                current.payout_amount,
            )
            return current, await self.dispatcher.submit(self.backend, self.forwarder, data, self.gas_limit)

        submitted, receipt = await self.dispatcher.serialized(self.backend, send)

        event = DAMAGE_REPORT_RECEIVED.first_match(receipt.logs)
        if event is None:
            logger.warning("Settlement %s confirmed without a DamageReportReceived event.", receipt.tx_hash)
            return SettlementReceipt(tx_hash=receipt.tx_hash, block_number=receipt.block_number, report=submitted)
        return SettlementReceipt(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            report=submitted,
            payout_amount=event["payoutAmount"],
            farmer=event["farmer"],
        )
