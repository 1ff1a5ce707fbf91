"""Per-identity nonce sequencing.

Each signing identity owns one asyncio.Lock. Every sequence that consumes a
nonce for that identity (simulate-free submit, approve-then-deposit, ...)
runs inside serialize(), so two concurrent operations never read the same
pending count. Distinct identities never wait on each other.

The next nonce is seeded lazily from the node's pending transaction count on
first use and incremented locally after that. invalidate() drops the local
value so the next assignment reseeds from the node, which is what a failed
broadcast needs.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from ledger.base import TransactionBackend
from ledger.rpc import LedgerClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SigningIdentity:
    """Nonce state for one sender.

    Attributes:
        key: Identity key (see TransactionBackend.identity_key).
        address: Sender address.
        next_nonce: Next nonce to hand out. None until seeded or after
            invalidate().
        lock: Serializes every nonce-consuming sequence for this sender.
    """

    key: str
    address: str
    next_nonce: int | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class NonceSequencer:
    """Hands out strictly increasing nonces, one identity at a time.

    Attributes:
        ledger: Used to read the pending transaction count when seeding.
    """

    def __init__(self, ledger: LedgerClient) -> None:
        self.ledger = ledger
        self._identities: dict[str, SigningIdentity] = {}

    def identity_for(self, backend: TransactionBackend) -> SigningIdentity:
        """Return the identity for backend, creating it on first use."""
        identity = self._identities.get(backend.identity_key)
        if identity is None:
            identity = SigningIdentity(key=backend.identity_key, address=backend.address)
            self._identities[backend.identity_key] = identity
        return identity

    async def serialize(self, identity: SigningIdentity, op: Callable[[], Awaitable[T]]) -> T:
        """Run op while holding identity's lock.

        The lock is released on every exit path, including when op raises.
        The lock is not reentrant: op must not call serialize() for the same
        identity.
        """
        async with identity.lock:
            return await op()

    async def assign_nonce(self, identity: SigningIdentity) -> int:
        """Reserve the next nonce for identity.

        Raises:
            RuntimeError: If called outside serialize() for this identity.
        """
        if not identity.lock.locked():
            raise RuntimeError(f"nonce for {identity.address} assigned outside its lock")

        if identity.next_nonce is None:
            identity.next_nonce = await self.ledger.get_transaction_count(identity.address, "pending")
            logger.debug("Seeded nonce for %s at %d.", identity.address, identity.next_nonce)

        nonce = identity.next_nonce
        identity.next_nonce += 1
        return nonce

    def invalidate(self, identity: SigningIdentity) -> None:
        """Forget the local nonce so the next assignment reseeds from the node."""
        identity.next_nonce = None
