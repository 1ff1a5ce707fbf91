"""Runtime settings.

Values come from the environment, with a .env file loaded by python-dotenv
for local runs. Required variables are all checked at once so a bad deploy
reports every missing name in one ConfigurationError instead of failing on
the first.
"""

import os
from collections.abc import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.errors import ConfigurationError

REQUIRED = (
    "POLICY_SERVICE_URLS",
    "POLICY_SERVICE_API_KEY",
    "WEATHER_API_URLS",
    "WEATHER_API_KEY",
    "RPC_URL",
    "PRIVATE_KEY",
    "CONTRACT_PAYOUT_RECEIVER",
    "CONTRACT_REPORT_FORWARDER",
    "WORKFLOW_ADDRESS",
    "WORKFLOW_ID",
    "ATTESTOR_KEYS",
)

SENTINEL_REQUIRED = ("SENTINEL_API_URLS", "SENTINEL_TOKEN_URL", "SENTINEL_CLIENT_ID", "SENTINEL_CLIENT_SECRET")
PLANET_REQUIRED = ("PLANET_API_URLS", "PLANET_API_KEY")

DEFAULT_SENTINEL_TOKEN_URL = (
    "https://identity.dataspace.copernicus.eu/auth/realms/CDSE/protocol/openid-connect/token"
)


def _split(value: str | None) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class Settings(BaseModel):
    """Validated orchestrator configuration. See .env.example for every variable."""

    # Scheduling
    assessment_schedule: str = "0 */6 * * *"
    run_budget_seconds: int = Field(default=900, gt=0)

    # Requesters
    policy_service_urls: list[str]
    policy_service_api_key: str
    weather_api_urls: list[str]
    weather_api_key: str
    vegetation_provider: str = "sentinel"
    sentinel_api_urls: list[str] = Field(default_factory=list)
    sentinel_token_url: str = DEFAULT_SENTINEL_TOKEN_URL
    sentinel_client_id: str | None = None
    sentinel_client_secret: str | None = None
    planet_api_urls: list[str] = Field(default_factory=list)
    planet_api_key: str | None = None
    fetch_concurrency: int = Field(default=4, gt=0)
    fetch_timeout_seconds: float = Field(default=30, gt=0)
    consensus_quorum: int | None = Field(default=None, gt=0)

    # Scoring
    damage_threshold: int = Field(default=30, ge=0, le=100)
    weather_weight: float = Field(default=0.6, ge=0, le=1)
    vegetation_weight: float = Field(default=0.4, ge=0, le=1)
    report_max_age_seconds: int = Field(default=3600, gt=0)

    # Ledger
    rpc_url: str
    chain_id: int = 8453
    confirmations: int = Field(default=1, ge=1)
    confirmation_timeout_ms: int = Field(default=120_000, gt=0)
    gas_limit: int = Field(default=500_000, gt=0)
    private_key: str
    custody_api_url: str | None = None
    custody_app_id: str | None = None
    custody_app_secret: str | None = None

    # Contracts
    contract_risk_pool_factory: str | None = None
    contract_usdc: str | None = None
    contract_payout_receiver: str
    contract_report_forwarder: str
    workflow_address: str
    workflow_id: int
    attestor_keys: list[str]

    @field_validator("vegetation_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = value.lower()
        if value not in ("sentinel", "planet"):
            raise ValueError(f"VEGETATION_PROVIDER must be 'sentinel' or 'planet', got {value!r}")
        return value

    @property
    def custody_enabled(self) -> bool:
        return bool(self.custody_api_url and self.custody_app_id and self.custody_app_secret)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environ (default: os.environ after loading .env).

        Raises:
            ConfigurationError: Listing every missing required variable, or
                the first invalid value.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        required = list(REQUIRED)
        provider = environ.get("VEGETATION_PROVIDER", "sentinel").lower()
        if provider == "planet":
            required += PLANET_REQUIRED
        else:
            required += [name for name in SENTINEL_REQUIRED if name != "SENTINEL_TOKEN_URL"]
        missing = [name for name in required if not environ.get(name)]
        if missing:
            raise ConfigurationError(f"missing required environment variables: {', '.join(missing)}")

        list_fields = {
            "POLICY_SERVICE_URLS",
            "WEATHER_API_URLS",
            "SENTINEL_API_URLS",
            "PLANET_API_URLS",
            "ATTESTOR_KEYS",
        }
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = environ.get(name.upper())
            if raw is None or raw == "":
                continue
            values[name] = _split(raw) if name.upper() in list_fields else raw

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid configuration: {exc}") from exc
