"""Tests for the ledger layer: ABI codec, nonce sequencing, the dispatcher,
the JSON-RPC client and both signing backends.

The dispatcher and sequencer run against FakeLedger. The RPC and custody
clients run against httpx.MockTransport, so no node or service is needed.
"""

import asyncio
import json

import httpx
import pytest
from eth_account import Account

from core.errors import (
    ConfigurationError,
    ConfirmationTimeoutError,
    ContractRevertError,
    LedgerError,
    LedgerRPCError,
    SimulationRevertError,
    SubmissionError,
)
from fakes import FakeBackend, FakeLedger, address, revert_data
from ledger.abi import (
    ContractErrorSpec,
    ContractFunction,
    EventInput,
    EventSpec,
    decode_revert_reason,
)
from ledger.custody import CustodyWalletBackend, CustodyWalletClient
from ledger.dispatcher import TransactionDispatcher
from ledger.nonce import NonceSequencer
from ledger.platform import PlatformWalletBackend
from ledger.rpc import LedgerClient
from schemas.transaction import LogEntry, PendingTransaction, TransactionStatus

TRANSFER = ContractFunction("transfer", ("address", "uint256"), ("bool",))
BALANCE_OF = ContractFunction("balanceOf", ("address",), ("uint256",))
TRANSFER_EVENT = EventSpec("Transfer", (
    EventInput("from", "address", indexed=True),
    EventInput("to", "address", indexed=True),
    EventInput("value", "uint256"),
))
APPROVAL_EVENT = EventSpec("Approval", (
    EventInput("owner", "address", indexed=True),
    EventInput("spender", "address", indexed=True),
    EventInput("value", "uint256"),
))
INSUFFICIENT = ContractErrorSpec("InsufficientBalance", ("uint256", "uint256"))

TARGET = address(0xC0FFEE)
SENDER = address(0xA11CE)

# Well-known throwaway key from the eth-account documentation.
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def receipt_hash(n: int) -> str:
    """Hash FakeLedger assigns to the n-th broadcast."""
    return f"0x{n:064x}"


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def dispatcher(ledger):
    return TransactionDispatcher(ledger, NonceSequencer(ledger), known_errors=(INSUFFICIENT,))


# ── ABI codec ─────────────────────────────────────────────────────────────────

class TestAbi:
    def test_selector_matches_erc20(self):
        assert TRANSFER.selector == "0xa9059cbb"

    def test_encode_prefixes_selector(self):
        calldata = TRANSFER.encode(TARGET, 1_000_000)
        assert calldata.startswith("0xa9059cbb")
        assert len(calldata) == 2 + 8 + 64 * 2

    def test_encode_rejects_wrong_arity(self):
        with pytest.raises(ValueError):
            TRANSFER.encode(TARGET)

    def test_decode_output(self):
        data = "0x" + f"{42:064x}"
        assert BALANCE_OF.decode_output(data) == (42,)

    def test_event_topic_matches_erc20(self):
        assert TRANSFER_EVENT.topic == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

    def test_event_decodes_indexed_and_data_fields(self):
        log = TRANSFER_EVENT.encode_log(TARGET, **{"from": SENDER, "to": TARGET, "value": 5})
        event = TRANSFER_EVENT.decode(log)
        assert event["from"] == SENDER
        assert event["to"] == TARGET
        assert event["value"] == 5
        assert event.address == TARGET

    def test_other_event_is_not_a_match(self):
        log = APPROVAL_EVENT.encode_log(TARGET, owner=SENDER, spender=TARGET, value=5)
        assert TRANSFER_EVENT.decode(log) is None

    def test_malformed_log_is_not_a_match(self):
        log = LogEntry(address=TARGET, topics=[TRANSFER_EVENT.topic], data="0x")
        assert TRANSFER_EVENT.decode(log) is None

    def test_first_match_skips_unrelated_logs(self):
        logs = [
            APPROVAL_EVENT.encode_log(TARGET, owner=SENDER, spender=TARGET, value=1),
            LogEntry(address=TARGET, topics=[], data="0x"),
            TRANSFER_EVENT.encode_log(TARGET, **{"from": SENDER, "to": TARGET, "value": 2}),
            TRANSFER_EVENT.encode_log(TARGET, **{"from": SENDER, "to": TARGET, "value": 3}),
        ]
        assert TRANSFER_EVENT.first_match(logs)["value"] == 2

    def test_first_match_none_when_absent(self):
        assert TRANSFER_EVENT.first_match([]) is None


class TestRevertReasons:
    def test_error_string(self):
        assert decode_revert_reason(revert_data("policy already paid")) == "policy already paid"

    def test_panic(self):
        data = "0x4e487b71" + f"{0x11:064x}"
        assert decode_revert_reason(data) == "panic 0x11"

    def test_known_custom_error(self):
        data = INSUFFICIENT.encode(10, 20)
        assert decode_revert_reason(data, (INSUFFICIENT,)) == "InsufficientBalance(10, 20)"

    def test_unknown_custom_error_reported_by_selector(self):
        data = INSUFFICIENT.encode(10, 20)
        assert decode_revert_reason(data) == f"custom error {INSUFFICIENT.selector}"

    @pytest.mark.parametrize("data", [None, "", "0x", "0x1234"])
    def test_no_reason(self, data):
        assert decode_revert_reason(data) is None

    @pytest.mark.parametrize("data,expected", [
        ("Reverted PolicyAlreadyPaid", "Reverted PolicyAlreadyPaid"),
        ({"message": "paid"}, "{'message': 'paid'}"),
    ])
    def test_non_hex_data_is_returned_as_text(self, data, expected):
        assert decode_revert_reason(data) == expected


# ── Nonce sequencing ──────────────────────────────────────────────────────────

class TestNonceSequencer:
    async def test_concurrent_dispatches_get_strictly_increasing_nonces(self, ledger, dispatcher):
        ledger.pending[SENDER] = 5
        backend = FakeBackend(ledger, SENDER, delay=0.01)
        calldata = TRANSFER.encode(TARGET, 1)

        await asyncio.gather(*(dispatcher.dispatch(backend, TARGET, calldata) for _ in range(5)))

        assert [tx.nonce for tx in ledger.sent] == [5, 6, 7, 8, 9]

    async def test_distinct_identities_do_not_wait_on_each_other(self, ledger, dispatcher):
        slow = FakeBackend(ledger, address(1))
        fast = FakeBackend(ledger, address(2))
        release = asyncio.Event()

        async def hold():
            await release.wait()

        holder = asyncio.create_task(dispatcher.serialized(slow, hold))
        await asyncio.sleep(0)

        receipt = await asyncio.wait_for(
            dispatcher.dispatch(fast, TARGET, TRANSFER.encode(TARGET, 1)), timeout=1
        )
        assert receipt.succeeded

        release.set()
        await holder

    async def test_same_identity_waits_for_the_lock(self, ledger, dispatcher):
        backend = FakeBackend(ledger, SENDER)
        release = asyncio.Event()

        async def hold():
            await release.wait()

        holder = asyncio.create_task(dispatcher.serialized(backend, hold))
        await asyncio.sleep(0)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1)), timeout=0.05
            )
        release.set()
        await holder

    async def test_assign_outside_lock_raises(self, ledger):
        sequencer = NonceSequencer(ledger)
        identity = sequencer.identity_for(FakeBackend(ledger, SENDER))
        with pytest.raises(RuntimeError):
            await sequencer.assign_nonce(identity)

    async def test_invalidate_reseeds_from_pending_count(self, ledger):
        sequencer = NonceSequencer(ledger)
        identity = sequencer.identity_for(FakeBackend(ledger, SENDER))

        async def take():
            return await sequencer.assign_nonce(identity)

        assert await sequencer.serialize(identity, take) == 0
        assert await sequencer.serialize(identity, take) == 1

        ledger.pending[SENDER] = 7
        sequencer.invalidate(identity)
        assert await sequencer.serialize(identity, take) == 7

    async def test_lock_released_when_op_raises(self, ledger):
        sequencer = NonceSequencer(ledger)
        identity = sequencer.identity_for(FakeBackend(ledger, SENDER))

        async def boom():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await sequencer.serialize(identity, boom)
        assert not identity.lock.locked()

    def test_backends_with_same_address_share_identity(self, ledger):
        sequencer = NonceSequencer(ledger)
        a = FakeBackend(ledger, SENDER)
        b = FakeBackend(ledger, SENDER.lower())
        assert sequencer.identity_for(a) is sequencer.identity_for(b)


# ── Dispatcher ────────────────────────────────────────────────────────────────

class TestDispatcher:
    async def test_success_returns_receipt(self, ledger, dispatcher):
        backend = FakeBackend(ledger, SENDER)
        receipt = await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        assert receipt.succeeded
        assert ledger.sent[0].nonce == 0

    async def test_gas_estimate_is_buffered(self, ledger, dispatcher):
        backend = FakeBackend(ledger, SENDER)
        await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        assert ledger.sent[0].gas == 120_000

    async def test_fixed_gas_limit_still_simulates(self, ledger, dispatcher):
        backend = FakeBackend(ledger, SENDER)
        await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1), gas_limit=500_000)
        assert ledger.sent[0].gas == 500_000
        assert len(ledger.estimates) == 1

    async def test_simulation_revert_consumes_no_nonce(self, ledger, dispatcher):
        ledger.pending[SENDER] = 3
        ledger.simulate_reverts[TARGET] = "deposits closed"
        backend = FakeBackend(ledger, SENDER)

        with pytest.raises(SimulationRevertError) as info:
            await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))

        assert info.value.reason == "deposits closed"
        assert ledger.sent == []
        assert dispatcher.sequencer.identity_for(backend).next_nonce is None

        del ledger.simulate_reverts[TARGET]
        await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        assert ledger.sent[0].nonce == 3

    async def test_submission_failure_resyncs_nonce(self, ledger, dispatcher):
        ledger.pending[SENDER] = 4
        backend = FakeBackend(ledger, SENDER, fail_sends=1)

        with pytest.raises(SubmissionError):
            await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))

        await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        assert [tx.nonce for tx in ledger.sent] == [4]

    async def test_ledger_error_on_send_becomes_submission_error(self, ledger, dispatcher):
        class BrokenBackend(FakeBackend):
            async def send(self, tx):
                raise LedgerError("connection reset")

        with pytest.raises(SubmissionError, match="connection reset"):
            await dispatcher.dispatch(BrokenBackend(ledger, SENDER), TARGET, TRANSFER.encode(TARGET, 1))

    async def test_unexpected_send_error_resyncs_nonce(self, ledger, dispatcher):
        class FlakyBackend(FakeBackend):
            failed = False

            async def send(self, tx):
                if not self.failed:
                    self.failed = True
                    raise ValueError("signer rejected the transaction")
                return await super().send(tx)

        backend = FlakyBackend(ledger, SENDER)
        with pytest.raises(ValueError):
            await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))

        await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        assert [tx.nonce for tx in ledger.sent] == [0]

    async def test_simulation_with_text_revert_data(self, ledger, dispatcher):
        async def estimate_gas(tx):
            raise LedgerRPCError("execution reverted", code=3, data="Reverted PolicyAlreadyPaid")

        ledger.estimate_gas = estimate_gas
        with pytest.raises(SimulationRevertError) as info:
            await dispatcher.dispatch(FakeBackend(ledger, SENDER), TARGET, TRANSFER.encode(TARGET, 1))
        assert info.value.reason == "Reverted PolicyAlreadyPaid"

    async def test_mined_revert_with_text_data(self, ledger, dispatcher):
        ledger.mined_reverts[TARGET] = "unused"

        async def call(tx, block="latest"):
            raise LedgerRPCError("execution reverted", code=3, data="ReportTooOld")

        ledger.call = call
        with pytest.raises(ContractRevertError) as info:
            await dispatcher.dispatch(FakeBackend(ledger, SENDER), TARGET, TRANSFER.encode(TARGET, 1))
        assert info.value.reason == "ReportTooOld"

    async def test_mined_revert_carries_reason_and_hash(self, ledger, dispatcher):
        ledger.mined_reverts[TARGET] = "report too old"
        backend = FakeBackend(ledger, SENDER)

        with pytest.raises(ContractRevertError) as info:
            await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))

        assert info.value.reason == "report too old"
        assert info.value.tx_hash == receipt_hash(1)

    async def test_revert_consumes_the_nonce(self, ledger, dispatcher):
        ledger.mined_reverts[TARGET] = "nope"
        backend = FakeBackend(ledger, SENDER)
        with pytest.raises(ContractRevertError):
            await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))

        del ledger.mined_reverts[TARGET]
        await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        assert [tx.nonce for tx in ledger.sent] == [0, 1]

    async def test_timeout_is_surfaced_not_retried(self, ledger, dispatcher):
        ledger.unconfirmed.add(TARGET)
        backend = FakeBackend(ledger, SENDER)

        with pytest.raises(ConfirmationTimeoutError) as info:
            await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))

        assert len(ledger.sent) == 1
        state = await dispatcher.transaction_status(info.value.tx_hash)
        assert state.status == TransactionStatus.SUBMITTED

    async def test_status_of_confirmed_transaction(self, ledger, dispatcher):
        backend = FakeBackend(ledger, SENDER)
        receipt = await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        state = await dispatcher.transaction_status(receipt.tx_hash)
        assert state.status == TransactionStatus.CONFIRMED
        assert state.confirmations == 1

    async def test_submit_outside_serialized_raises(self, ledger, dispatcher):
        backend = FakeBackend(ledger, SENDER)
        with pytest.raises(RuntimeError):
            await dispatcher.submit(backend, TARGET, TRANSFER.encode(TARGET, 1), 100_000)

    async def test_delegated_backend_gets_no_local_nonce(self, ledger, dispatcher):
        backend = FakeBackend(ledger, SENDER, uses_local_nonce=False)
        await dispatcher.dispatch(backend, TARGET, TRANSFER.encode(TARGET, 1))
        assert ledger.sent[0].nonce is None


# ── JSON-RPC client ───────────────────────────────────────────────────────────

def rpc_client(results: dict, calls: list | None = None) -> LedgerClient:
    """LedgerClient whose node answers from results[method].

    A value may be a callable taking the params list, or a dict with an
    "error" key to answer with a JSON-RPC error object.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if calls is not None:
            calls.append(payload["method"])
        answer = results[payload["method"]]
        if callable(answer):
            answer = answer(payload["params"])
        if isinstance(answer, dict) and "error" in answer:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": answer["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": answer})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LedgerClient("http://node.test", client=client, poll_interval=0)


RAW_RECEIPT = {
    "transactionHash": "0xabc",
    "blockNumber": "0x10",
    "status": "0x1",
    "from": SENDER,
    "to": TARGET,
    "gasUsed": "0x5208",
    "logs": [{"address": TARGET, "topics": [TRANSFER_EVENT.topic], "data": "0x"}],
}


class TestLedgerClient:
    async def test_quantities_are_decoded(self):
        ledger = rpc_client({"eth_getTransactionCount": "0x1a", "eth_chainId": "0x2105"})
        assert await ledger.get_transaction_count(SENDER) == 26
        assert await ledger.chain_id() == 8453

    async def test_error_object_raises_rpc_error(self):
        data = revert_data("nope")
        ledger = rpc_client({"eth_estimateGas": {"error": {"code": 3, "message": "execution reverted", "data": data}}})
        with pytest.raises(LedgerRPCError) as info:
            await ledger.estimate_gas({"to": TARGET, "data": "0x"})
        assert info.value.code == 3
        assert info.value.data == data

    async def test_http_error_raises_ledger_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        ledger = LedgerClient("http://node.test", client=client)
        with pytest.raises(LedgerError):
            await ledger.block_number()

    async def test_non_json_body_raises_ledger_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>busy</html>")))
        ledger = LedgerClient("http://node.test", client=client)
        with pytest.raises(LedgerError, match="non-JSON"):
            await ledger.block_number()

    async def test_receipt_parsing(self):
        ledger = rpc_client({"eth_getTransactionReceipt": RAW_RECEIPT})
        receipt = await ledger.get_transaction_receipt("0xabc")
        assert receipt.block_number == 16
        assert receipt.succeeded
        assert receipt.gas_used == 21000
        assert receipt.logs[0].topics == [TRANSFER_EVENT.topic]

    async def test_call_encodes_block_number(self):
        seen = []
        ledger = rpc_client({"eth_call": lambda params: seen.append(params[1]) or "0x"})
        await ledger.call({"to": TARGET, "data": "0x"}, 255)
        assert seen == ["0xff"]

    async def test_fee_params(self):
        ledger = rpc_client({"eth_gasPrice": hex(10), "eth_maxPriorityFeePerGas": hex(2)})
        assert await ledger.fee_params() == (22, 2)

    async def test_wait_for_confirmation_waits_for_depth(self):
        heads = iter(["0x10", "0x11", "0x12"])
        ledger = rpc_client({
            "eth_getTransactionReceipt": RAW_RECEIPT,
            "eth_blockNumber": lambda params: next(heads),
        })
        receipt = await ledger.wait_for_confirmation("0xabc", confirmations=3, timeout_ms=5_000)
        assert receipt.block_number == 16

    async def test_wait_for_confirmation_times_out(self):
        ledger = rpc_client({"eth_getTransactionReceipt": None})
        with pytest.raises(ConfirmationTimeoutError) as info:
            await ledger.wait_for_confirmation("0xabc", confirmations=1, timeout_ms=0)
        assert info.value.tx_hash == "0xabc"

    async def test_status_of_unknown_transaction(self):
        ledger = rpc_client({"eth_getTransactionReceipt": None, "eth_getTransactionByHash": None})
        state = await ledger.transaction_status("0xabc")
        assert state.status is None

    async def test_status_of_pending_transaction(self):
        ledger = rpc_client({"eth_getTransactionReceipt": None, "eth_getTransactionByHash": {"hash": "0xabc"}})
        state = await ledger.transaction_status("0xabc")
        assert state.status == TransactionStatus.SUBMITTED

    async def test_status_of_reverted_transaction(self):
        ledger = rpc_client({
            "eth_getTransactionReceipt": {**RAW_RECEIPT, "status": "0x0"},
            "eth_blockNumber": "0x14",
        })
        state = await ledger.transaction_status("0xabc")
        assert state.status == TransactionStatus.REVERTED
        assert state.confirmations == 5


# ── Custody backend ───────────────────────────────────────────────────────────

def custody_client(handler) -> CustodyWalletClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CustodyWalletClient("https://custody.test/", "app-1", "secret", 8453, client=client)


class TestCustody:
    async def test_send_posts_sponsored_transaction(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {"hash": "0xfeed"}})

        backend = CustodyWalletBackend(custody_client(handler), "wallet-9", SENDER)
        tx = PendingTransaction(sender=SENDER, target=TARGET, calldata="0x1234")

        assert await backend.send(tx) == "0xfeed"
        assert seen["url"] == "https://custody.test/v1/wallets/wallet-9/rpc"
        assert seen["body"]["caip2"] == "eip155:8453"
        assert seen["body"]["sponsor"] is True
        assert seen["body"]["params"]["transaction"] == {"to": TARGET, "data": "0x1234", "value": "0x0"}

    async def test_refusal_raises_submission_error(self):
        client = custody_client(lambda r: httpx.Response(400, json={"error": "insufficient funds"}))
        with pytest.raises(SubmissionError):
            await client.send_transaction("wallet-9", TARGET, "0x")

    async def test_missing_hash_raises_submission_error(self):
        client = custody_client(lambda r: httpx.Response(200, json={"data": {}}))
        with pytest.raises(SubmissionError):
            await client.send_transaction("wallet-9", TARGET, "0x")

    def test_identity_is_per_wallet(self):
        client = custody_client(lambda r: httpx.Response(200))
        backend = CustodyWalletBackend(client, "wallet-9", SENDER)
        assert backend.identity_key == "custody:wallet-9"
        assert backend.uses_local_nonce is False

    def test_missing_credentials_rejected(self):
        with pytest.raises(ConfigurationError):
            CustodyWalletClient("https://custody.test", "app-1", "", 8453)


# ── Platform backend ──────────────────────────────────────────────────────────

class StubFeeLedger:
    def __init__(self):
        self.raw: list[str] = []

    async def fee_params(self):
        return 2_000_000_000, 1_000_000

    async def send_raw_transaction(self, raw_tx):
        self.raw.append(raw_tx)
        return "0x" + "ab" * 32


class TestPlatformBackend:
    async def test_signs_type2_transaction_from_key_address(self):
        ledger = StubFeeLedger()
        backend = PlatformWalletBackend(TEST_KEY, ledger, chain_id=8453)
        tx = PendingTransaction(
            sender=backend.address, target=TARGET, calldata=TRANSFER.encode(TARGET, 1), nonce=3, gas=90_000,
        )

        await backend.send(tx)

        raw = ledger.raw[0]
        assert raw.startswith("0x02")
        assert Account.recover_transaction(raw) == backend.address

    async def test_requires_nonce_and_gas(self):
        backend = PlatformWalletBackend(TEST_KEY, StubFeeLedger(), chain_id=8453)
        with pytest.raises(ValueError):
            await backend.send(PendingTransaction(sender=backend.address, target=TARGET, calldata="0x"))

    def test_address_is_derived_from_key(self):
        backend = PlatformWalletBackend(TEST_KEY, StubFeeLedger(), chain_id=8453)
        assert backend.address == Account.from_key(TEST_KEY).address

    @pytest.mark.parametrize("key", ["", "0x1234", "not-a-key"])
    def test_bad_key_rejected(self, key):
        with pytest.raises(ConfigurationError):
            PlatformWalletBackend(key, StubFeeLedger(), chain_id=8453)
