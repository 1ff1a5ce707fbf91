"""Settlement reporter: the scheduled assessment pipeline.

One run, in order:
    1. Fetch the active-policy list from every policy-service requester and
       require identical answers. Any divergence or missing requester aborts
       the whole run.
    2. For each policy, concurrently (bounded by fetch_concurrency):
         a. Fetch weather and vegetation from every requester, per-field median.
         b. Score with DamageScorer.
         c. Below the threshold: stop here, nothing is submitted.
         d. Attest and submit through the SettlementGateway. If the report
            ages out while queued for broadcast, the gateway calls back to
            re-fetch and re-score it with a fresh timestamp.
         e. Notify the policy service of the payout (best effort).
    3. Return a RunSummary.

Only one run may be active at a time. A trigger that finds a run in progress
gets RunInProgressError and is skipped, never queued.

Each policy has its own exception boundary, like a parallel agent run: one
policy failing never affects the others. Ledger rejections (already paid,
stale, ...) are expected and counted as rejected, not errored. Nothing is
retried within a run and no paid-state is kept locally; the next run asks
the ledger again.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from aggregation.consensus import IdenticalAggregation, MedianByFields, ObservationConsensus
from contracts.settlement import SettlementGateway
from core.errors import (
    ConfirmationTimeoutError,
    ContractRevertError,
    LedgerRejection,
    ReportWithdrawnError,
    RunInProgressError,
)
from schemas.events import AssessmentEvent, Stage
from schemas.observation import VEGETATION_FIELDS, WEATHER_FIELDS, VegetationObservation, WeatherObservation
from schemas.policy import ActivePolicy, PayoutNotification
from schemas.report import DamageReport
from schemas.result import OutcomeStatus, PolicyOutcome, RunSummary
from scoring.damage import DamageScorer
from sources.policy_service import PolicyServiceClient
from sources.vegetation import VegetationSource
from sources.weather import WeatherXMClient

logger = logging.getLogger(__name__)

DEFAULT_DAMAGE_THRESHOLD = 30
DEFAULT_FETCH_CONCURRENCY = 4
DEFAULT_RUN_BUDGET_SECONDS = 900


class SettlementReporter:
    """Runs assessment cycles and submits settlement reports.

    Attributes:
        policy_sources: Independent policy-service requesters.
        weather_sources: Independent weather requesters.
        vegetation_sources: Independent vegetation requesters.
        consensus: Fetch fan-out and quorum settings.
        scorer: Damage scoring.
        settlement: Report submission.
        notifier: Policy service to notify of confirmed payouts, or None.
        damage_threshold: Minimum combined index that triggers a payout.
        fetch_concurrency: Policies whose observations are fetched at once.
        run_budget_seconds: Nominal run length; an overrun is only logged.
    """

    def __init__(
        self,
        policy_sources: Sequence[PolicyServiceClient],
        weather_sources: Sequence[WeatherXMClient],
        vegetation_sources: Sequence[VegetationSource],
        consensus: ObservationConsensus,
        scorer: DamageScorer,
        settlement: SettlementGateway,
        notifier: PolicyServiceClient | None = None,
        damage_threshold: int = DEFAULT_DAMAGE_THRESHOLD,
        fetch_concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        run_budget_seconds: int = DEFAULT_RUN_BUDGET_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy_sources = list(policy_sources)
        self.weather_sources = list(weather_sources)
        self.vegetation_sources = list(vegetation_sources)
        self.consensus = consensus
        self.scorer = scorer
        self.settlement = settlement
        self.notifier = notifier
        self.damage_threshold = damage_threshold
        self.fetch_concurrency = fetch_concurrency
        self.run_budget_seconds = run_budget_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._weather_median = MedianByFields(WeatherObservation, WEATHER_FIELDS)
        self._vegetation_median = MedianByFields(VegetationObservation, VEGETATION_FIELDS)

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(
        self,
        event_queue: asyncio.Queue | None = None,
        run_id: str | None = None,
    ) -> RunSummary:
        """Run one assessment cycle.

        Args:
            event_queue: Optional queue to emit AssessmentEvents into. The run
                behaves the same whether or not anything reads it.
            run_id: Identifier for the summary. Generated when None.

        Returns:
            RunSummary with one outcome per active policy.

        Raises:
            RunInProgressError: If another run holds the execution lock.
            ConsensusDivergenceError / QuorumNotReachedError: If the policy
                list could not be agreed on. No policy is assessed.
        """
        if self._lock.locked():
            raise RunInProgressError("an assessment run is already in progress")

        async with self._lock:
            return await self._run(event_queue, run_id)

    async def _run(self, event_queue: asyncio.Queue | None, run_id: str | None) -> RunSummary:
        started_at = self._clock()
        ids = {"run_id": run_id} if run_id else {}
        run_start = time.perf_counter()

        policies = await self._active_policies()
        logger.info("Assessment run started: %d active policies.", len(policies))

        if not policies:
            return RunSummary(**ids, started_at=started_at, finished_at=self._clock())

        semaphore = asyncio.Semaphore(self.fetch_concurrency)
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(
                    self._assess_safely(policy, semaphore, event_queue, run_start),
                    name=policy.policy_id,
                )
                for policy in policies
            ]

        summary = RunSummary(
            **ids,
            started_at=started_at,
            finished_at=self._clock(),
            policies=len(policies),
            outcomes=[t.result() for t in tasks],
        )

        elapsed = summary.finished_at - summary.started_at
        if elapsed > self.run_budget_seconds:
            logger.warning(
                "Run %s took %.0fs, over its %ds budget.", summary.run_id, elapsed, self.run_budget_seconds
            )
        logger.info("Assessment run %s finished: %s", summary.run_id, summary.counts())
        return summary

    async def _active_policies(self) -> list[ActivePolicy]:
        result = await self.consensus.fetch(
            self.policy_sources,
            lambda source: source.active_policies(),
            IdenticalAggregation(require_all=True),
            label="active policies",
        )
        return result.value

    # ── Per policy ───────────────────────────────────────────────────────────

    async def _assess_safely(
        self,
        policy: ActivePolicy,
        semaphore: asyncio.Semaphore,
        event_queue: asyncio.Queue | None,
        run_start: float,
    ) -> PolicyOutcome:
        """Assess one policy. Never raises; failures become an ERRORED outcome."""

        async def emit(stage: Stage, message: str) -> None:
            if event_queue is not None:
                await event_queue.put(AssessmentEvent(
                    policy_id=policy.policy_id,
                    stage=stage,
                    message=message,
                    timestamp_ms=(time.perf_counter() - run_start) * 1000,
                ))

        try:
            return await self._assess(policy, semaphore, emit)
        except Exception as exc:
            await emit(Stage.ERROR, str(exc))
            logger.error("Policy %s assessment failed: %s", policy.policy_id, exc)
            return PolicyOutcome(policy_id=policy.policy_id, status=OutcomeStatus.ERRORED, detail=str(exc))

    async def _observe_and_score(self, policy: ActivePolicy, semaphore: asyncio.Semaphore) -> DamageReport:
        """Fetch consensus observations for policy and score them, stamped now."""
        async with semaphore:
            weather, vegetation = await asyncio.gather(
                self.consensus.fetch(
                    self.weather_sources,
                    lambda source: source.observe(policy.plot_latitude, policy.plot_longitude),
                    self._weather_median,
                    label=f"weather for {policy.policy_id}",
                ),
                self.consensus.fetch(
                    self.vegetation_sources,
                    lambda source: source.observe(policy.plot_latitude, policy.plot_longitude),
                    self._vegetation_median,
                    label=f"vegetation for {policy.policy_id}",
                ),
            )
        return self.scorer.assess(policy, weather.value, vegetation.value, int(self._clock()))

    async def _assess(self, policy: ActivePolicy, semaphore: asyncio.Semaphore, emit) -> PolicyOutcome:
        await emit(Stage.FETCHING, "gathering observations...")
        report = await self._observe_and_score(policy, semaphore)
        await emit(Stage.SCORING, "scoring...")

        if report.combined_index < self.damage_threshold:
            return await self._below_threshold(policy, report, emit)

        async def refresh() -> DamageReport:
            await emit(Stage.FETCHING, "report aged out, re-fetching...")
            fresh = await self._observe_and_score(policy, semaphore)
            if fresh.combined_index < self.damage_threshold:
                raise ReportWithdrawnError(
                    f"recomputed index {fresh.combined_index} < {self.damage_threshold}", report=fresh
                )
            return fresh

        return await self._submit(policy, report, emit, refresh)

    async def _below_threshold(self, policy: ActivePolicy, report: DamageReport, emit) -> PolicyOutcome:
        await emit(Stage.BELOW_THRESHOLD, f"index {report.combined_index} < {self.damage_threshold}")
        logger.info(
            "Policy %s below threshold (index %d < %d).",
            policy.policy_id,
            report.combined_index,
            self.damage_threshold,
        )
        return PolicyOutcome(policy_id=policy.policy_id, status=OutcomeStatus.BELOW_THRESHOLD, report=report)

    async def _submit(self, policy: ActivePolicy, report: DamageReport, emit, refresh) -> PolicyOutcome:
        await emit(Stage.SUBMITTING, f"index {report.combined_index} ≥ {self.damage_threshold}, submitting")
        try:
            receipt = await self.settlement.submit_report(report, refresh=refresh)

        except ReportWithdrawnError as exc:
            if exc.report.combined_index < self.damage_threshold:
                return await self._below_threshold(policy, exc.report, emit)
            await emit(Stage.ERROR, str(exc))
            logger.error("Report for policy %s withdrawn: %s", policy.policy_id, exc)
            return PolicyOutcome(
                policy_id=policy.policy_id, status=OutcomeStatus.ERRORED, report=exc.report, detail=str(exc)
            )

        except LedgerRejection as exc:
            tx_hash = exc.tx_hash if isinstance(exc, ContractRevertError) else None
            await emit(Stage.REJECTED, exc.reason or str(exc))
            logger.warning("Ledger rejected report for policy %s: %s", policy.policy_id, exc.reason or exc)
            return PolicyOutcome(
                policy_id=policy.policy_id,
                status=OutcomeStatus.REJECTED,
                report=report,
                tx_hash=tx_hash,
                detail=exc.reason or str(exc),
            )

        except ConfirmationTimeoutError as exc:
            await emit(Stage.ERROR, f"unconfirmed {exc.tx_hash}")
            logger.error("Settlement for policy %s unconfirmed: %s", policy.policy_id, exc.tx_hash)
            return PolicyOutcome(
                policy_id=policy.policy_id,
                status=OutcomeStatus.ERRORED,
                report=report,
                tx_hash=exc.tx_hash,
                detail=str(exc),
            )

        except Exception as exc:
            await emit(Stage.ERROR, str(exc))
            logger.error("Settlement for policy %s failed: %s", policy.policy_id, exc)
            return PolicyOutcome(
                policy_id=policy.policy_id, status=OutcomeStatus.ERRORED, report=report, detail=str(exc)
            )

        report = receipt.report or report
        await emit(Stage.CONFIRMED, f"paid in {receipt.tx_hash}")
        logger.info(
            "Policy %s settled: index %d, payout %d, tx %s.",
            policy.policy_id,
            report.combined_index,
            report.payout_amount,
            receipt.tx_hash,
        )
        await self._notify(policy, report, receipt.tx_hash, receipt.block_number, receipt.payout_amount)
        return PolicyOutcome(
            policy_id=policy.policy_id, status=OutcomeStatus.SUBMITTED, report=report, tx_hash=receipt.tx_hash
        )

    async def _notify(
        self,
        policy: ActivePolicy,
        report: DamageReport,
        tx_hash: str,
        block_number: int,
        emitted_payout: int | None,
    ) -> None:
        """Post the payout notification. Failures are logged, never raised."""
        if self.notifier is None:
            return
        notification = PayoutNotification(
            policy_id=policy.policy_id,
            on_chain_policy_id=policy.on_chain_policy_id,
            damage_index=report.combined_index,
            payout_amount=emitted_payout if emitted_payout is not None else report.payout_amount,
            tx_hash=tx_hash,
            block_number=block_number,
        )
        try:
            await self.notifier.notify_payout(notification)
        except Exception as exc:
            logger.error("Payout notification for policy %s failed: %s", policy.policy_id, exc)
