"""Capital pool schemas.

Pools are created once through the risk-pool factory and never deleted.
Deposits, withdrawals, whitelist edits and open/close toggles mutate them.
Amounts here are in human USDC units (Decimal); the gateway converts them to
6-decimal integers right before ABI encoding.
"""

from decimal import Decimal
from enum import Enum, IntEnum

from pydantic import BaseModel, Field, model_validator


class PoolVariant(str, Enum):
    """Pool access model. The int value is the factory contract's enum index."""

    PUBLIC = "public"
    PRIVATE = "private"
    MUTUAL = "mutual"

    @property
    def contract_code(self) -> int:
        return {"public": 0, "private": 1, "mutual": 2}[self.value]


class CoverageType(IntEnum):
    """Peril covered by a pool. Values match the contract enum."""

    DROUGHT = 0
    FLOOD = 1
    PEST = 2
    DISEASE = 3
    COMPREHENSIVE = 4


class PoolParams(BaseModel):
    """Fields every pool variant needs.

    Attributes:
        name: Pool share-token name.
        symbol: Pool share-token symbol.
        coverage_type: Peril the pool underwrites.
        region: Free-text region label stored on-ledger.
        target_capital: Capital the pool aims to raise, USDC.
        max_capital: Hard cap on pool capital, USDC. Must be >= target.
    """

    name: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    coverage_type: CoverageType = CoverageType.COMPREHENSIVE
    region: str
    target_capital: Decimal = Field(gt=0)
    max_capital: Decimal = Field(gt=0)

    @model_validator(mode="after")
    def _target_within_max(self):
        if self.target_capital > self.max_capital:
            raise ValueError(
                f"target_capital ({self.target_capital}) exceeds max_capital ({self.max_capital})"
            )
        return self


class PublicPoolParams(PoolParams):
    """Anyone may deposit. Only capital bounds are required."""


class PrivatePoolParams(PoolParams):
    """Whitelisted depositors only.

    Attributes:
        pool_owner: Address that administers the pool.
        min_deposit: Smallest accepted deposit, USDC.
        max_deposit: Largest accepted deposit, USDC.
        whitelist: Depositors added right after creation.
        product_builder: Address allowed to attach products. Defaults to the
            pool owner.
    """

    pool_owner: str
    min_deposit: Decimal = Field(ge=0)
    max_deposit: Decimal = Field(gt=0)
    whitelist: list[str] = Field(default_factory=list)
    product_builder: str | None = None

    @model_validator(mode="after")
    def _deposit_bounds(self):
        if self.min_deposit > self.max_deposit:
            raise ValueError(
                f"min_deposit ({self.min_deposit}) exceeds max_deposit ({self.max_deposit})"
            )
        return self


class MutualPoolParams(PoolParams):
    """Cooperative pool funded by fixed member contributions."""

    pool_owner: str
    member_contribution: Decimal = Field(gt=0)


VARIANT_PARAMS: dict[PoolVariant, type[PoolParams]] = {
    PoolVariant.PUBLIC: PublicPoolParams,
    PoolVariant.PRIVATE: PrivatePoolParams,
    PoolVariant.MUTUAL: MutualPoolParams,
}


class Pool(BaseModel):
    """A capital pool known to the orchestrator.

    Attributes:
        address: Pool contract address (checksummed).
        pool_id: Factory-assigned identifier. None for a pool referenced by
            address only.
        variant: Access model.
        target_capital / max_capital: Capital bounds, USDC.
        min_deposit / max_deposit: Deposit bounds, USDC (private pools).
        deposits_open / withdrawals_open: Current toggle state as last set
            through the gateway.
        whitelist: Known whitelisted depositors (private pools only).
    """

    address: str
    pool_id: int | None = None
    variant: PoolVariant
    target_capital: Decimal | None = None
    max_capital: Decimal | None = None
    min_deposit: Decimal | None = None
    max_deposit: Decimal | None = None
    deposits_open: bool = True
    withdrawals_open: bool = True
    whitelist: list[str] = Field(default_factory=list)


class PoolCreation(BaseModel):
    """Outcome of create_pool().

    Attributes:
        pool: The newly created pool.
        tx_hash / block_number: The factory transaction.
        unseeded_depositors: Whitelist seeds whose addDepositor call failed.
            The pool exists; these can be added again with add_depositor().
    """

    pool: Pool
    tx_hash: str
    block_number: int
    unseeded_depositors: list[str] = Field(default_factory=list)


class DepositResult(BaseModel):
    """Outcome of deposit_to_pool().

    shares_minted and share_price are None when the receipt carried no
    Deposited event.
    """

    tx_hash: str
    block_number: int
    approval_tx_hash: str | None = None
    shares_minted: Decimal | None = None
    share_price: Decimal | None = None


class WithdrawalResult(BaseModel):
    """Outcome of withdraw_from_pool(). proceeds is None without a Withdrawn event."""

    tx_hash: str
    block_number: int
    proceeds: Decimal | None = None


class PoolStats(BaseModel):
    """Capital snapshot read from a pool contract, USDC."""

    total_capital: Decimal
    total_premiums: Decimal
    total_payouts: Decimal

    @property
    def balance(self) -> Decimal:
        return self.total_capital + self.total_premiums - self.total_payouts
