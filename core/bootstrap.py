"""Runtime wiring.

build_runtime() turns Settings into the object graph the service and CLI
share. There is exactly one LedgerClient, one NonceSequencer and one
TransactionDispatcher per process; every gateway is handed the same
instances so per-identity serialization holds across all of them.
"""

import logging
from dataclasses import dataclass, field

from aggregation.consensus import ObservationConsensus
from config.settings import Settings
from contracts.definitions import KNOWN_ERRORS
from contracts.pools import PoolGateway
from contracts.settlement import LocalSignerAttestor, SettlementGateway
from core.reporter import SettlementReporter
from core.scheduler import AssessmentScheduler
from ledger.custody import CustodyWalletClient
from ledger.dispatcher import TransactionDispatcher
from ledger.nonce import NonceSequencer
from ledger.platform import PlatformWalletBackend
from ledger.rpc import LedgerClient
from scoring.damage import DamageScorer
from sources.policy_service import PolicyServiceClient
from sources.vegetation import PlanetClient, SentinelHubClient, SentinelTokenProvider, VegetationSource
from sources.weather import WeatherXMClient

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a process needs, built once at startup."""

    settings: Settings
    ledger: LedgerClient
    dispatcher: TransactionDispatcher
    platform: PlatformWalletBackend
    settlement: SettlementGateway
    reporter: SettlementReporter
    scheduler: AssessmentScheduler
    pools: PoolGateway | None = None
    custody: CustodyWalletClient | None = None
    _closables: list = field(default_factory=list)

    async def aclose(self) -> None:
        for resource in self._closables:
            await resource.aclose()


def _vegetation_sources(settings: Settings, closables: list) -> list[VegetationSource]:
    timeout = settings.fetch_timeout_seconds
    if settings.vegetation_provider == "planet":
        sources = [
            PlanetClient(f"planet-{i}", url, settings.planet_api_key, timeout_seconds=timeout)
            for i, url in enumerate(settings.planet_api_urls)
        ]
    else:
        tokens = SentinelTokenProvider(
            settings.sentinel_token_url, settings.sentinel_client_id, settings.sentinel_client_secret
        )
        closables.append(tokens)
        sources = [
            SentinelHubClient(f"sentinel-{i}", url, tokens, timeout_seconds=timeout)
            for i, url in enumerate(settings.sentinel_api_urls)
        ]
    closables.extend(sources)
    return sources


def build_runtime(settings: Settings) -> Runtime:
    """Construct the runtime from settings.

    Raises:
        ConfigurationError: If keys, addresses or weights are invalid.
    """
    closables: list = []

    ledger = LedgerClient(settings.rpc_url)
    closables.append(ledger)
    sequencer = NonceSequencer(ledger)
    dispatcher = TransactionDispatcher(
        ledger,
        sequencer,
        confirmations=settings.confirmations,
        timeout_ms=settings.confirmation_timeout_ms,
        known_errors=KNOWN_ERRORS,
    )
    platform = PlatformWalletBackend(settings.private_key, ledger, settings.chain_id)

    custody = None
    if settings.custody_enabled:
        custody = CustodyWalletClient(
            settings.custody_api_url, settings.custody_app_id, settings.custody_app_secret, settings.chain_id
        )
        closables.append(custody)

    pools = None
    if settings.contract_risk_pool_factory and settings.contract_usdc:
        pools = PoolGateway(
            dispatcher, ledger, settings.contract_risk_pool_factory, settings.contract_usdc, platform
        )
    else:
        logger.info("Pool factory or USDC address not set; pool operations disabled.")

    settlement = SettlementGateway(
        dispatcher,
        platform,
        LocalSignerAttestor(settings.attestor_keys),
        payout_receiver=settings.contract_payout_receiver,
        workflow_address=settings.workflow_address,
        workflow_id=settings.workflow_id,
        forwarder=settings.contract_report_forwarder,
        gas_limit=settings.gas_limit,
        max_report_age_seconds=settings.report_max_age_seconds,
    )

    timeout = settings.fetch_timeout_seconds
    policy_sources = [
        PolicyServiceClient(f"policy-{i}", url, settings.policy_service_api_key, timeout_seconds=timeout)
        for i, url in enumerate(settings.policy_service_urls)
    ]
    weather_sources = [
        WeatherXMClient(f"weather-{i}", url, settings.weather_api_key, timeout_seconds=timeout)
        for i, url in enumerate(settings.weather_api_urls)
    ]
    closables.extend(policy_sources)
    closables.extend(weather_sources)

    reporter = SettlementReporter(
        policy_sources=policy_sources,
        weather_sources=weather_sources,
        vegetation_sources=_vegetation_sources(settings, closables),
        consensus=ObservationConsensus(quorum=settings.consensus_quorum, timeout_seconds=timeout),
        scorer=DamageScorer(settings.weather_weight, settings.vegetation_weight),
        settlement=settlement,
        notifier=policy_sources[0],
        damage_threshold=settings.damage_threshold,
        fetch_concurrency=settings.fetch_concurrency,
        run_budget_seconds=settings.run_budget_seconds,
    )

    return Runtime(
        settings=settings,
        ledger=ledger,
        dispatcher=dispatcher,
        platform=platform,
        settlement=settlement,
        reporter=reporter,
        scheduler=AssessmentScheduler(reporter, settings.assessment_schedule),
        pools=pools,
        custody=custody,
        _closables=closables,
    )
