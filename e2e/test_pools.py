"""Tests for PoolGateway against FakeLedger."""

from decimal import Decimal

import pytest

from contracts.definitions import (
    CREATE_PRIVATE_POOL,
    CREATE_PUBLIC_POOL,
    DEPOSITED,
    POOL_CREATED,
    POOL_DEPOSIT,
    POOL_SET_DEPOSITS_OPEN,
    POOL_TOTAL_CAPITAL,
    POOL_TOTAL_PAYOUTS,
    POOL_TOTAL_PREMIUMS,
    USDC_ALLOWANCE,
    USDC_APPROVE,
    WITHDRAWN,
)
from contracts.pools import PoolGateway
from core.errors import ConfigurationError, PoolCreationInconsistencyError, SimulationRevertError, SubmissionError
from fakes import FakeBackend, FakeLedger, address, log_entry
from ledger.dispatcher import TransactionDispatcher
from ledger.nonce import NonceSequencer
from schemas.pool import (
    MutualPoolParams,
    Pool,
    PoolVariant,
    PrivatePoolParams,
    PublicPoolParams,
)

FACTORY = address(0xFAC)
USDC = address(0x05DC)
POOL = address(0x9001)
OWNER = address(0x0A)
DEPOSITOR = address(0xD1)


def word(value: int) -> str:
    return "0x" + f"{value:064x}"


def public_params(**overrides):
    fields = dict(name="Rift Valley Maize", symbol="RVM", region="Rift Valley",
                  target_capital=Decimal("50000"), max_capital=Decimal("100000"))
    fields.update(overrides)
    return PublicPoolParams(**fields)


def private_params(whitelist=()):
    return PrivatePoolParams(
        name="Coop Reserve", symbol="CR", region="Nakuru",
        target_capital=Decimal("10000"), max_capital=Decimal("20000"),
        pool_owner=OWNER, min_deposit=Decimal("100"), max_deposit=Decimal("5000"),
        whitelist=list(whitelist),
    )


def pool_created(pool_id=3, pool_type=0, name="Rift Valley Maize"):
    return log_entry(POOL_CREATED, FACTORY, poolAddress=POOL, poolId=pool_id, poolType=pool_type, name=name)


def make_pool(variant=PoolVariant.PUBLIC):
    return Pool(address=POOL, pool_id=3, variant=variant)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def backend(ledger):
    return FakeBackend(ledger, OWNER)


@pytest.fixture
def gateway(ledger, backend):
    dispatcher = TransactionDispatcher(ledger, NonceSequencer(ledger))
    return PoolGateway(dispatcher, ledger, FACTORY, USDC, backend)


@pytest.fixture
def allowance(ledger):
    """USDC allowance that a confirmed approve() call actually raises."""
    state = {"value": 0}

    def on_approve(tx):
        state["value"] = int(tx.calldata[-64:], 16)
        return []

    ledger.views[(USDC, USDC_ALLOWANCE.selector)] = lambda tx: word(state["value"])
    ledger.logs[USDC] = on_approve
    return state


# ── Creation ──────────────────────────────────────────────────────────────────

class TestCreatePool:
    async def test_public_pool_from_event(self, ledger, gateway):
        ledger.logs[FACTORY] = [pool_created()]

        created = await gateway.create_pool(PoolVariant.PUBLIC, public_params())

        assert created.pool.address == POOL
        assert created.pool.pool_id == 3
        assert created.pool.variant is PoolVariant.PUBLIC
        assert created.pool.max_capital == Decimal("100000")
        sent = ledger.sent_to(FACTORY)[0]
        assert sent.calldata.startswith(CREATE_PUBLIC_POOL.selector)

    async def test_capital_is_encoded_in_base_units(self, ledger, gateway):
        ledger.logs[FACTORY] = [pool_created()]
        await gateway.create_pool(PoolVariant.PUBLIC, public_params())
        calldata = ledger.sent_to(FACTORY)[0].calldata
        assert f"{50_000_000_000:064x}" in calldata
        assert f"{100_000_000_000:064x}" in calldata

    async def test_event_found_among_other_logs(self, ledger, gateway):
        ledger.logs[FACTORY] = [
            log_entry(DEPOSITED, USDC, investor=OWNER, usdcAmount=1, tokensMinted=1, tokenPrice=1),
            pool_created(pool_id=11),
        ]
        created = await gateway.create_pool(PoolVariant.PUBLIC, public_params())
        assert created.pool.pool_id == 11

    async def test_missing_event_is_an_inconsistency(self, ledger, gateway):
        with pytest.raises(PoolCreationInconsistencyError) as info:
            await gateway.create_pool(PoolVariant.PUBLIC, public_params())

        assert info.value.tx_hash == f"0x{1:064x}"
        assert info.value.block_number == 100

    async def test_params_must_match_variant(self, ledger, gateway):
        with pytest.raises(ValueError):
            await gateway.create_pool(PoolVariant.PRIVATE, public_params())
        assert ledger.sent == []

    async def test_factory_rejection_sends_nothing(self, ledger, gateway):
        ledger.simulate_reverts[FACTORY] = "max below target"
        with pytest.raises(SimulationRevertError):
            await gateway.create_pool(PoolVariant.PUBLIC, public_params())
        assert ledger.sent == []

    async def test_private_pool_seeds_whitelist(self, ledger, gateway):
        ledger.logs[FACTORY] = [pool_created(pool_type=1)]
        first, second = address(0xD1), address(0xD2)

        created = await gateway.create_pool(PoolVariant.PRIVATE, private_params([first, second]))

        assert ledger.sent[0].calldata.startswith(CREATE_PRIVATE_POOL.selector)
        assert len(ledger.sent_to(POOL)) == 2
        assert created.pool.whitelist == [first, second]
        assert created.unseeded_depositors == []
        assert created.pool.min_deposit == Decimal("100")

    async def test_failed_seed_is_reported_not_raised(self, ledger):
        bad = address(0xBAD)

        class PickyBackend(FakeBackend):
            async def send(self, tx):
                if tx.target == POOL and bad[2:].lower() in tx.calldata:
                    raise SubmissionError("rejected by node")
                return await super().send(tx)

        dispatcher = TransactionDispatcher(ledger, NonceSequencer(ledger))
        gateway = PoolGateway(dispatcher, ledger, FACTORY, USDC, PickyBackend(ledger, OWNER))
        ledger.logs[FACTORY] = [pool_created(pool_type=1)]

        created = await gateway.create_pool(PoolVariant.PRIVATE, private_params([bad, DEPOSITOR]))

        assert created.unseeded_depositors == [bad]
        assert created.pool.whitelist == [DEPOSITOR]

    async def test_mutual_pool(self, ledger, gateway):
        ledger.logs[FACTORY] = [pool_created(pool_type=2)]
        params = MutualPoolParams(
            name="Farmers Mutual", symbol="FM", region="Kisumu",
            target_capital=Decimal("1000"), max_capital=Decimal("2000"),
            pool_owner=OWNER, member_contribution=Decimal("25"),
        )
        created = await gateway.create_pool(PoolVariant.MUTUAL, params)
        assert created.pool.variant is PoolVariant.MUTUAL


class TestConfiguration:
    @pytest.mark.parametrize("factory,usdc", [(None, USDC), (FACTORY, ""), (None, None)])
    def test_missing_addresses_rejected(self, ledger, backend, factory, usdc):
        dispatcher = TransactionDispatcher(ledger, NonceSequencer(ledger))
        with pytest.raises(ConfigurationError):
            PoolGateway(dispatcher, ledger, factory, usdc, backend)


# ── Capital movements ─────────────────────────────────────────────────────────

class TestDeposit:
    async def test_approves_exact_amount_then_deposits(self, ledger, gateway, allowance):
        ledger.logs[POOL] = [log_entry(
            DEPOSITED, POOL, investor=OWNER, usdcAmount=500_000_000, tokensMinted=495_000_000, tokenPrice=1_010_000,
        )]

        result = await gateway.deposit_to_pool(make_pool(), Decimal("500"), Decimal("490"))

        assert [tx.target for tx in ledger.sent] == [USDC, POOL]
        assert [tx.nonce for tx in ledger.sent] == [0, 1]
        assert ledger.sent[0].calldata == USDC_APPROVE.encode(POOL, 500_000_000)
        assert ledger.sent[1].calldata == POOL_DEPOSIT.encode(500_000_000, 490_000_000)
        assert result.approval_tx_hash is not None
        assert result.shares_minted == Decimal("495")
        assert result.share_price == Decimal("1.01")

    async def test_sufficient_allowance_skips_approval(self, ledger, gateway, allowance):
        allowance["value"] = 10_000_000_000
        result = await gateway.deposit_to_pool(make_pool(), Decimal("500"), Decimal("0"))

        assert [tx.target for tx in ledger.sent] == [POOL]
        assert result.approval_tx_hash is None
        assert result.shares_minted is None

    async def test_retry_after_failed_deposit_does_not_reapprove(self, ledger, gateway, allowance):
        ledger.simulate_reverts[POOL] = "DepositsClosed()"
        with pytest.raises(SimulationRevertError):
            await gateway.deposit_to_pool(make_pool(), Decimal("500"), Decimal("490"))
        assert [tx.target for tx in ledger.sent] == [USDC]

        del ledger.simulate_reverts[POOL]
        result = await gateway.deposit_to_pool(make_pool(), Decimal("500"), Decimal("490"))

        assert [tx.target for tx in ledger.sent] == [USDC, POOL]
        assert result.approval_tx_hash is None

    async def test_withdraw_reads_proceeds(self, ledger, gateway):
        ledger.logs[POOL] = [log_entry(WITHDRAWN, POOL, investor=OWNER, tokenAmount=100_000_000, usdcReceived=101_500_000)]
        result = await gateway.withdraw_from_pool(make_pool(), Decimal("100"), Decimal("99"))
        assert result.proceeds == Decimal("101.5")


# ── Administration and reads ──────────────────────────────────────────────────

class TestAdministration:
    async def test_whitelist_on_public_pool_rejected(self, ledger, gateway):
        with pytest.raises(ValueError):
            await gateway.add_depositor(make_pool(PoolVariant.PUBLIC), DEPOSITOR)
        with pytest.raises(ValueError):
            await gateway.remove_depositor(make_pool(PoolVariant.MUTUAL), DEPOSITOR)
        assert ledger.sent == []

    async def test_add_then_remove_depositor(self, gateway):
        pool = make_pool(PoolVariant.PRIVATE)
        await gateway.add_depositor(pool, DEPOSITOR.lower())
        assert pool.whitelist == [DEPOSITOR]
        await gateway.remove_depositor(pool, DEPOSITOR)
        assert pool.whitelist == []

    async def test_close_deposits(self, ledger, gateway):
        pool = make_pool()
        await gateway.set_deposits_open(pool, False)
        assert pool.deposits_open is False
        assert ledger.sent[0].calldata == POOL_SET_DEPOSITS_OPEN.encode(False)

    async def test_close_withdrawals(self, gateway):
        pool = make_pool()
        await gateway.set_withdrawals_open(pool, False)
        assert pool.withdrawals_open is False

    async def test_stats(self, ledger, gateway):
        ledger.views[(POOL, POOL_TOTAL_CAPITAL.selector)] = word(50_000_000_000)
        ledger.views[(POOL, POOL_TOTAL_PREMIUMS.selector)] = word(2_500_000_000)
        ledger.views[(POOL, POOL_TOTAL_PAYOUTS.selector)] = word(1_000_500_000)

        stats = await gateway.get_pool_stats(make_pool())

        assert stats.total_capital == Decimal("50000")
        assert stats.total_premiums == Decimal("2500")
        assert stats.total_payouts == Decimal("1000.5")
        assert stats.balance == Decimal("51499.5")
