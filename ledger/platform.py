"""Platform wallet backend.

Signs EIP-1559 transactions locally with the orchestrator's own key and
broadcasts them with eth_sendRawTransaction. Nonces come from the
NonceSequencer, already assigned on the PendingTransaction.
"""

import logging

from eth_account import Account
from eth_utils import encode_hex

from core.errors import ConfigurationError
from ledger.base import TransactionBackend
from ledger.rpc import LedgerClient
from schemas.transaction import PendingTransaction

logger = logging.getLogger(__name__)


class PlatformWalletBackend(TransactionBackend):
    """Backend for the platform's locally held signing key.

    Attributes:
        ledger: Used for fee data and broadcasting.
        chain_id: Chain the signatures are bound to.
        address: Checksummed address derived from the key.
    """

    uses_local_nonce = True

    def __init__(self, private_key: str, ledger: LedgerClient, chain_id: int) -> None:
        """Derive the account from private_key.

        Raises:
            ConfigurationError: If the key is empty or malformed.
        """
        if not private_key:
            raise ConfigurationError("platform signing key is not configured")
        try:
            self._account = Account.from_key(private_key)
        except Exception as exc:  # eth-keys raises its own ValidationError, not ValueError
            raise ConfigurationError(f"platform signing key is invalid: {exc}") from exc
        self.ledger = ledger
        self.chain_id = chain_id
        self.address = self._account.address

    async def send(self, tx: PendingTransaction) -> str:
        if tx.nonce is None or tx.gas is None:
            raise ValueError("platform transactions need nonce and gas before signing")

        max_fee, priority_fee = await self.ledger.fee_params()
        signed = self._account.sign_transaction({
            "type": 2,
            "chainId": self.chain_id,
            "nonce": tx.nonce,
            "to": tx.target,
            "data": tx.calldata,
            "value": 0,
            "gas": tx.gas,
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": priority_fee,
        })
        tx_hash = await self.ledger.send_raw_transaction(encode_hex(signed.raw_transaction))
        logger.debug("Broadcast %s from %s with nonce %d.", tx_hash, self.address, tx.nonce)
        return tx_hash
