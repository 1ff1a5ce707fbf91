"""Delegated custody wallet backend.

Pool owners and depositors may hold keys in a hosted custody service rather
than with the platform. The service signs and sponsors gas, and assigns its
own nonces, so this backend never takes one from the NonceSequencer. Calls
for the same custody wallet are still serialized, which keeps an
approve-then-deposit pair in order.

Wire format (Privy-style server wallet RPC):
    POST {api_url}/v1/wallets/{wallet_id}/rpc
    {"method": "eth_sendTransaction", "caip2": "eip155:8453", "sponsor": true,
     "params": {"transaction": {"to": ..., "data": ..., "value": "0x0"}}}
    -> {"data": {"hash": "0x..."}}
"""

import logging

import httpx

from core.errors import ConfigurationError, SubmissionError
from ledger.base import TransactionBackend
from schemas.transaction import PendingTransaction

logger = logging.getLogger(__name__)


class CustodyWalletClient:
    """HTTP client for the custody service.

    Attributes:
        api_url: Service base URL.
        app_id: Application identifier, sent as a header and as the basic-auth
            user.
        caip2: Chain identifier in CAIP-2 form, e.g. "eip155:8453".
    """

    def __init__(
        self,
        api_url: str,
        app_id: str,
        app_secret: str,
        chain_id: int,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not (api_url and app_id and app_secret):
            raise ConfigurationError("custody service URL, app id and secret are all required")
        self.api_url = api_url.rstrip("/")
        self.app_id = app_id
        self.caip2 = f"eip155:{chain_id}"
        self._client = client or httpx.AsyncClient(
            auth=(app_id, app_secret),
            headers={"privy-app-id": app_id},
            timeout=30,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_transaction(self, wallet_id: str, to: str, data: str) -> str:
        """Ask the service to sign and broadcast a call from wallet_id.

        Raises:
            SubmissionError: If the service refuses or returns no hash.
        """
        body = {
            "method": "eth_sendTransaction",
            "caip2": self.caip2,
            "sponsor": True,
            "params": {"transaction": {"to": to, "data": data, "value": "0x0"}},
        }
        try:
            response = await self._client.post(f"{self.api_url}/v1/wallets/{wallet_id}/rpc", json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SubmissionError(f"custody wallet {wallet_id} send failed: {exc}") from exc

        tx_hash = response.json().get("data", {}).get("hash")
        if not tx_hash:
            raise SubmissionError(f"custody wallet {wallet_id} returned no transaction hash")
        return tx_hash


class CustodyWalletBackend(TransactionBackend):
    """One custody-held wallet.

    Attributes:
        wallet_id: Custody service wallet identifier.
        address: On-ledger address of that wallet.
    """

    uses_local_nonce = False

    def __init__(self, client: CustodyWalletClient, wallet_id: str, address: str) -> None:
        self.client = client
        self.wallet_id = wallet_id
        self.address = address

    @property
    def identity_key(self) -> str:
        return f"custody:{self.wallet_id}"

    async def send(self, tx: PendingTransaction) -> str:
        tx_hash = await self.client.send_transaction(self.wallet_id, tx.target, tx.calldata)
        logger.debug("Custody wallet %s broadcast %s.", self.wallet_id, tx_hash)
        return tx_hash
