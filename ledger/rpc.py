"""Ethereum JSON-RPC client.

A thin async wrapper over the node's JSON-RPC endpoint using httpx. It only
knows the handful of methods the orchestrator needs. Quantities are decoded
from hex to int at this boundary so nothing above it handles hex numbers.

Confirmation waiting lives here because it is pure polling: the dispatcher
decides what a timeout means, this module only reports it.
"""

import asyncio
import itertools
import logging
import time
from typing import Any

import httpx

from core.errors import ConfirmationTimeoutError, LedgerError, LedgerRPCError
from schemas.transaction import LogEntry, TransactionReceipt, TransactionState, TransactionStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2.0


def _quantity(value: str | None) -> int | None:
    return int(value, 16) if value is not None else None


def _receipt_from_rpc(raw: dict) -> TransactionReceipt:
    return TransactionReceipt(
        tx_hash=raw["transactionHash"],
        block_number=int(raw["blockNumber"], 16),
        status=int(raw.get("status", "0x1"), 16),
        sender=raw.get("from"),
        target=raw.get("to"),
        gas_used=_quantity(raw.get("gasUsed")),
        logs=[
            LogEntry(address=log["address"], topics=log.get("topics", []), data=log.get("data", "0x"))
            for log in raw.get("logs", [])
        ],
    )


class LedgerClient:
    """Async JSON-RPC client for one EVM chain.

    Example usage:
        ledger = LedgerClient("https://mainnet.base.org")
        nonce = await ledger.get_transaction_count(address)

    Attributes:
        rpc_url: Node endpoint.
        poll_interval: Seconds between receipt polls while waiting.
    """

    def __init__(
        self,
        rpc_url: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialise the client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            client: Optional pre-built httpx client. Tests pass one backed by
                httpx.MockTransport.
            timeout_seconds: Per-request HTTP timeout.
            poll_interval: Seconds between polls in wait_for_confirmation().
        """
        self.rpc_url = rpc_url
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Transport ────────────────────────────────────────────────────────────

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Send one JSON-RPC request and return its result.

        Raises:
            LedgerRPCError: If the node answered with an error object.
            LedgerError: If the HTTP request itself failed.
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LedgerError(f"{method} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerError(f"{method} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise LedgerError(f"{method} returned an unexpected body: {body!r}")
        error = body.get("error")
        if error:
            raise LedgerRPCError(
                error.get("message", "unknown RPC error"),
                code=error.get("code"),
                data=error.get("data"),
            )
        return body.get("result")

    # ── Reads ────────────────────────────────────────────────────────────────

    async def chain_id(self) -> int:
        return int(await self.request("eth_chainId"), 16)

    async def block_number(self) -> int:
        return int(await self.request("eth_blockNumber"), 16)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(await self.request("eth_getTransactionCount", [address, block]), 16)

    async def estimate_gas(self, tx: dict) -> int:
        return int(await self.request("eth_estimateGas", [tx]), 16)

    async def call(self, tx: dict, block: str | int = "latest") -> str:
        """Execute a read-only call and return the raw hex result."""
        tag = hex(block) if isinstance(block, int) else block
        return await self.request("eth_call", [tx, tag])

    async def gas_price(self) -> int:
        return int(await self.request("eth_gasPrice"), 16)

    async def max_priority_fee(self) -> int:
        return int(await self.request("eth_maxPriorityFeePerGas"), 16)

    async def fee_params(self) -> tuple[int, int]:
        """Return (max_fee_per_gas, max_priority_fee_per_gas) for an EIP-1559 tx.

        The max fee is twice the current gas price plus the tip, which
        survives a few full blocks of base-fee growth.
        """
        price, tip = await asyncio.gather(self.gas_price(), self.max_priority_fee())
        return price * 2 + tip, tip

    async def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        raw = await self.request("eth_getTransactionReceipt", [tx_hash])
        return _receipt_from_rpc(raw) if raw else None

    async def get_transaction(self, tx_hash: str) -> dict | None:
        return await self.request("eth_getTransactionByHash", [tx_hash])

    # ── Writes ───────────────────────────────────────────────────────────────

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self.request("eth_sendRawTransaction", [raw_tx])

    # ── Confirmation ─────────────────────────────────────────────────────────

    async def wait_for_confirmation(
        self,
        tx_hash: str,
        confirmations: int,
        timeout_ms: int,
    ) -> TransactionReceipt:
        """Poll until tx_hash is mined with the requested confirmation depth.

        A receipt with a failed status is returned as-is; interpreting it is
        the caller's job.

        Raises:
            ConfirmationTimeoutError: If the depth is not reached in time.
        """
        deadline = time.monotonic() + timeout_ms / 1000

        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                head = await self.block_number()
                if head - receipt.block_number + 1 >= confirmations:
                    return receipt

            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"no confirmation for {tx_hash} within {timeout_ms}ms",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(self.poll_interval)

    async def transaction_status(self, tx_hash: str) -> TransactionState:
        """Report the current ledger state of a transaction.

        This is the reconciliation path after a confirmation timeout.
        """
        receipt = await self.get_transaction_receipt(tx_hash)
        if receipt is None:
            known = await self.get_transaction(tx_hash)
            status = TransactionStatus.SUBMITTED if known else None
            return TransactionState(tx_hash=tx_hash, status=status)

        head = await self.block_number()
        return TransactionState(
            tx_hash=tx_hash,
            status=TransactionStatus.CONFIRMED if receipt.succeeded else TransactionStatus.REVERTED,
            block_number=receipt.block_number,
            confirmations=max(head - receipt.block_number + 1, 0),
        )
