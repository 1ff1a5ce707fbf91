"""Pool lifecycle gateway.

Creates capital pools through the risk-pool factory and runs deposits,
withdrawals, whitelist edits and open/close toggles against pool contracts.
Every write goes through the TransactionDispatcher, so simulation, nonce
sequencing and confirmation behave the same here as for settlement.

Amounts cross this boundary as human USDC Decimals and are converted with
utils.units right before encoding.
"""

import logging
from decimal import Decimal

from eth_utils import to_checksum_address

from contracts.definitions import (
    CREATE_MUTUAL_POOL,
    CREATE_PRIVATE_POOL,
    CREATE_PUBLIC_POOL,
    DEPOSITED,
    POOL_ADD_DEPOSITOR,
    POOL_CREATED,
    POOL_DEPOSIT,
    POOL_REMOVE_DEPOSITOR,
    POOL_SET_DEPOSITS_OPEN,
    POOL_SET_WITHDRAWALS_OPEN,
    POOL_TOTAL_CAPITAL,
    POOL_TOTAL_PAYOUTS,
    POOL_TOTAL_PREMIUMS,
    POOL_WITHDRAW,
    USDC_ALLOWANCE,
    USDC_APPROVE,
    WITHDRAWN,
)
from core.errors import ConfigurationError, LedgerError, PoolCreationInconsistencyError
from ledger.base import TransactionBackend
from ledger.dispatcher import TransactionDispatcher
from ledger.rpc import LedgerClient
from schemas.pool import (
    VARIANT_PARAMS,
    DepositResult,
    Pool,
    PoolCreation,
    PoolParams,
    PoolStats,
    PoolVariant,
    PrivatePoolParams,
    WithdrawalResult,
)
from schemas.transaction import TransactionReceipt
from utils.units import format_units, parse_units

logger = logging.getLogger(__name__)


class PoolGateway:
    """Contract gateway for capital pools.

    Example usage:
        gateway = PoolGateway(dispatcher, ledger, factory, usdc, platform)
        created = await gateway.create_pool(PoolVariant.PUBLIC, params)
        await gateway.deposit_to_pool(created.pool, Decimal("500"), Decimal("490"))

    Attributes:
        dispatcher: Shared transaction dispatcher.
        ledger: JSON-RPC client for read-only calls.
        factory_address: Risk-pool factory contract.
        usdc_address: USDC token contract.
        default_backend: Backend used when a call does not pass one.
    """

    def __init__(
        self,
        dispatcher: TransactionDispatcher,
        ledger: LedgerClient,
        factory_address: str | None,
        usdc_address: str | None,
        default_backend: TransactionBackend,
    ) -> None:
        """Initialise the gateway.

        Raises:
            ConfigurationError: If the factory or USDC address is missing.
        """
        if not factory_address:
            raise ConfigurationError("risk-pool factory address is not configured")
        if not usdc_address:
            raise ConfigurationError("USDC contract address is not configured")
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.factory_address = to_checksum_address(factory_address)
        self.usdc_address = to_checksum_address(usdc_address)
        self.default_backend = default_backend

    # ── Creation ─────────────────────────────────────────────────────────────

    def _creation_calldata(self, variant: PoolVariant, params: PoolParams) -> str:
        common = (params.name, params.symbol, int(params.coverage_type), params.region)
        target = parse_units(params.target_capital)
        cap = parse_units(params.max_capital)

        if variant is PoolVariant.PRIVATE:
            builder = params.product_builder or params.pool_owner
            return CREATE_PRIVATE_POOL.encode((
                *common,
                to_checksum_address(params.pool_owner),
                parse_units(params.min_deposit),
                parse_units(params.max_deposit),
                target,
                cap,
                to_checksum_address(builder),
            ))
        if variant is PoolVariant.MUTUAL:
            return CREATE_MUTUAL_POOL.encode((
                *common,
                to_checksum_address(params.pool_owner),
                parse_units(params.member_contribution),
                target,
                cap,
            ))
        return CREATE_PUBLIC_POOL.encode((*common, target, cap))

    async def create_pool(
        self,
        variant: PoolVariant,
        params: PoolParams,
        backend: TransactionBackend | None = None,
    ) -> PoolCreation:
        """Create a pool through the factory.

        For private pools the whitelist seed is added after creation, one
        addDepositor call per address. A seed that fails is reported in
        unseeded_depositors rather than failing the creation, because the
        pool already exists at that point.

        Args:
            variant: Access model of the new pool.
            params: Variant-specific parameters; must match variant.
            backend: Signing backend. Defaults to the platform wallet.

        Returns:
            PoolCreation with the pool and factory transaction.

        Raises:
            ValueError: If params are not the type variant requires.
            SimulationRevertError: If the factory would reject the call.
            PoolCreationInconsistencyError: If the transaction confirmed but no
                PoolCreated event could be decoded from its receipt.
        """
        expected = VARIANT_PARAMS[variant]
        if type(params) is not expected:
            raise ValueError(f"{variant.value} pools take {expected.__name__}, got {type(params).__name__}")

        backend = backend or self.default_backend
        receipt = await self.dispatcher.dispatch(
            backend, self.factory_address, self._creation_calldata(variant, params)
        )

        event = POOL_CREATED.first_match(receipt.logs)
        if event is None:
            logger.error(
                "Factory tx %s confirmed in block %d but emitted no PoolCreated event.",
                receipt.tx_hash,
                receipt.block_number,
            )
            raise PoolCreationInconsistencyError(
                f"pool creation {receipt.tx_hash} confirmed without a PoolCreated event",
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
            )

        pool = Pool(
            address=event["poolAddress"],
            pool_id=event["poolId"],
            variant=variant,
            target_capital=params.target_capital,
            max_capital=params.max_capital,
            min_deposit=getattr(params, "min_deposit", None),
            max_deposit=getattr(params, "max_deposit", None),
        )
        logger.info("Created %s pool %s at %s.", variant.value, pool.pool_id, pool.address)

        unseeded: list[str] = []
        if isinstance(params, PrivatePoolParams):
            for depositor in params.whitelist:
                try:
                    await self.add_depositor(pool, depositor, backend)
                except LedgerError as exc:
                    logger.warning("Could not whitelist %s on pool %s: %s", depositor, pool.address, exc)
                    unseeded.append(depositor)

        return PoolCreation(
            pool=pool,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            unseeded_depositors=unseeded,
        )

    # ── Capital movements ────────────────────────────────────────────────────

    async def _allowance(self, owner: str, spender: str) -> int:
        raw = await self.ledger.call({"to": self.usdc_address, "data": USDC_ALLOWANCE.encode(owner, spender)})
        (allowance,) = USDC_ALLOWANCE.decode_output(raw)
        return allowance

    async def deposit_to_pool(
        self,
        pool: Pool,
        amount: Decimal,
        min_shares_out: Decimal,
        backend: TransactionBackend | None = None,
    ) -> DepositResult:
        """Deposit USDC into a pool.

        Allowance check, optional approval and the deposit all run in one
        serialized section for the depositor, so no other send from that
        identity can slip between them. The approval is for exactly amount
        and is skipped when the existing allowance already covers it, which
        makes re-running a failed deposit safe.

        Args:
            pool: Target pool.
            amount: USDC to deposit.
            min_shares_out: Fewest pool shares to accept (slippage bound).
            backend: Depositor's backend. Defaults to the platform wallet.

        Returns:
            DepositResult with the deposit and optional approval hashes, and
            minted shares and share price from the Deposited event.
        """
        backend = backend or self.default_backend
        units = parse_units(amount)
        min_shares = parse_units(min_shares_out)
        deposit_calldata = POOL_DEPOSIT.encode(units, min_shares)

        async def approve_then_deposit() -> tuple[str | None, TransactionReceipt]:
            approval_hash = None
            allowance = await self._allowance(backend.address, pool.address)
            if allowance < units:
                approve_calldata = USDC_APPROVE.encode(pool.address, units)
                gas = await self.dispatcher.simulate(backend, self.usdc_address, approve_calldata)
                approval = await self.dispatcher.submit(backend, self.usdc_address, approve_calldata, gas)
                approval_hash = approval.tx_hash
                logger.info("Approved %s USDC for pool %s (%s).", amount, pool.address, approval_hash)
            else:
                logger.debug("Allowance %d already covers %d; skipping approval.", allowance, units)

            gas = await self.dispatcher.simulate(backend, pool.address, deposit_calldata)
            receipt = await self.dispatcher.submit(backend, pool.address, deposit_calldata, gas)
            return approval_hash, receipt

        approval_hash, receipt = await self.dispatcher.serialized(backend, approve_then_deposit)

        event = DEPOSITED.first_match(receipt.logs)
        if event is None:
            logger.warning("Deposit %s confirmed without a Deposited event.", receipt.tx_hash)
        return DepositResult(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            approval_tx_hash=approval_hash,
            shares_minted=format_units(event["tokensMinted"]) if event else None,
            share_price=format_units(event["tokenPrice"]) if event else None,
        )

    async def withdraw_from_pool(
        self,
        pool: Pool,
        share_amount: Decimal,
        min_proceeds_out: Decimal,
        backend: TransactionBackend | None = None,
    ) -> WithdrawalResult:
        """Redeem pool shares for USDC."""
        backend = backend or self.default_backend
        calldata = POOL_WITHDRAW.encode(parse_units(share_amount), parse_units(min_proceeds_out))
        receipt = await self.dispatcher.dispatch(backend, pool.address, calldata)

        event = WITHDRAWN.first_match(receipt.logs)
        if event is None:
            logger.warning("Withdrawal %s confirmed without a Withdrawn event.", receipt.tx_hash)
        return WithdrawalResult(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            proceeds=format_units(event["usdcReceived"]) if event else None,
        )

    # ── Administration ───────────────────────────────────────────────────────

    def _require_private(self, pool: Pool) -> None:
        if pool.variant is not PoolVariant.PRIVATE:
            raise ValueError(f"pool {pool.address} is {pool.variant.value}; only private pools have a whitelist")

    async def add_depositor(
        self,
        pool: Pool,
        depositor: str,
        backend: TransactionBackend | None = None,
    ) -> TransactionReceipt:
        """Whitelist depositor on a private pool."""
        self._require_private(pool)
        depositor = to_checksum_address(depositor)
        receipt = await self.dispatcher.dispatch(
            backend or self.default_backend, pool.address, POOL_ADD_DEPOSITOR.encode(depositor)
        )
        if depositor not in pool.whitelist:
            pool.whitelist.append(depositor)
        return receipt

    async def remove_depositor(
        self,
        pool: Pool,
        depositor: str,
        backend: TransactionBackend | None = None,
    ) -> TransactionReceipt:
        """Remove depositor from a private pool's whitelist."""
        self._require_private(pool)
        depositor = to_checksum_address(depositor)
        receipt = await self.dispatcher.dispatch(
            backend or self.default_backend, pool.address, POOL_REMOVE_DEPOSITOR.encode(depositor)
        )
        if depositor in pool.whitelist:
            pool.whitelist.remove(depositor)
        return receipt

    async def set_deposits_open(
        self,
        pool: Pool,
        is_open: bool,
        backend: TransactionBackend | None = None,
    ) -> TransactionReceipt:
        receipt = await self.dispatcher.dispatch(
            backend or self.default_backend, pool.address, POOL_SET_DEPOSITS_OPEN.encode(is_open)
        )
        pool.deposits_open = is_open
        return receipt

    async def set_withdrawals_open(
        self,
        pool: Pool,
        is_open: bool,
        backend: TransactionBackend | None = None,
    ) -> TransactionReceipt:
        receipt = await self.dispatcher.dispatch(
            backend or self.default_backend, pool.address, POOL_SET_WITHDRAWALS_OPEN.encode(is_open)
        )
        pool.withdrawals_open = is_open
        return receipt

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get_pool_stats(self, pool: Pool) -> PoolStats:
        """Read capital, premiums and payouts from the pool contract."""
        values = []
        for fn in (POOL_TOTAL_CAPITAL, POOL_TOTAL_PREMIUMS, POOL_TOTAL_PAYOUTS):
            raw = await self.ledger.call({"to": pool.address, "data": fn.encode()})
            (value,) = fn.decode_output(raw)
            values.append(format_units(value))
        capital, premiums, payouts = values
        return PoolStats(total_capital=capital, total_premiums=premiums, total_payouts=payouts)
