"""Abstract transaction backend.

A backend is one signing identity plus a way of getting a transaction onto
the ledger. The platform wallet signs locally and needs the NonceSequencer
to pick nonces; the custody wallet hands the call to a remote service that
assigns its own. Both are serialized the same way by the dispatcher.
"""

from abc import ABC, abstractmethod

from schemas.transaction import PendingTransaction


class TransactionBackend(ABC):
    """Interface every signing backend must implement.

    Attributes:
        address: Checksummed sender address.
        identity_key: Stable key the NonceSequencer uses to find this
            backend's lock. Two backend objects with the same key share one
            serialization lock.
        uses_local_nonce: True if the dispatcher must assign nonces.
    """

    address: str
    uses_local_nonce: bool = True

    @property
    def identity_key(self) -> str:
        return self.address.lower()

    @abstractmethod
    async def send(self, tx: PendingTransaction) -> str:
        """Sign (or delegate signing of) tx and broadcast it.

        Args:
            tx: Transaction with target, calldata and gas filled in. nonce is
                set when uses_local_nonce is True.

        Returns:
            The transaction hash.
        """
        ...
