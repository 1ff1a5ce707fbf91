"""Policy service client.

Reads the active-policy list from the policy service's internal API and
posts payout notifications back once a settlement confirms. One client is
one independent requester; the reporter runs several through identical
consensus.

Endpoints (authenticated with the x-api-key header):
    GET  /api/internal/active-policies  -> {"policies": [ActivePolicy, ...]}
    POST /api/internal/payouts          <- PayoutNotification
"""

import logging

import httpx

from schemas.policy import ActivePolicy, PayoutNotification

logger = logging.getLogger(__name__)


class PolicyServiceClient:
    """One policy-service requester.

    Attributes:
        name: Requester name used in consensus logs.
        base_url: Service base URL.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = {"x-api-key": api_key}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def active_policies(self) -> list[ActivePolicy]:
        """Fetch the policies currently eligible for assessment.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response.
            pydantic.ValidationError: If the body does not match ActivePolicy.
        """
        response = await self._client.get(
            f"{self.base_url}/api/internal/active-policies", headers=self._headers
        )
        response.raise_for_status()
        policies = [ActivePolicy.model_validate(p) for p in response.json()["policies"]]
        logger.debug("%s returned %d active policies.", self.name, len(policies))
        return policies

    async def notify_payout(self, notification: PayoutNotification) -> None:
        """Tell the policy service a settlement confirmed."""
        response = await self._client.post(
            f"{self.base_url}/api/internal/payouts",
            headers=self._headers,
            json=notification.model_dump(mode="json", by_alias=True),
        )
        response.raise_for_status()
