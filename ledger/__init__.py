"""Ledger access: JSON-RPC, nonce sequencing, signing backends and dispatch."""

from ledger.base import TransactionBackend
from ledger.custody import CustodyWalletBackend, CustodyWalletClient
from ledger.dispatcher import TransactionDispatcher
from ledger.nonce import NonceSequencer, SigningIdentity
from ledger.platform import PlatformWalletBackend
from ledger.rpc import LedgerClient

__all__ = [
    "CustodyWalletBackend",
    "CustodyWalletClient",
    "LedgerClient",
    "NonceSequencer",
    "PlatformWalletBackend",
    "SigningIdentity",
    "TransactionBackend",
    "TransactionDispatcher",
]
