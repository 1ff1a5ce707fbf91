"""Contract functions, events and errors the orchestrator uses.

Only the entries the gateways call are listed. Struct parameters are
written as tuple types in field order.
"""

from ledger.abi import ContractErrorSpec, ContractFunction, EventInput, EventSpec

# ── Risk-pool factory ─────────────────────────────────────────────────────────

# (name, symbol, coverageType, region, targetCapital, maxCapital)
CREATE_PUBLIC_POOL = ContractFunction(
    "createPublicPool",
    ("(string,string,uint8,string,uint256,uint256)",),
    ("address", "uint256"),
)

# (name, symbol, coverageType, region, poolOwner, minDeposit, maxDeposit,
#  targetCapital, maxCapital, productBuilder)
CREATE_PRIVATE_POOL = ContractFunction(
    "createPrivatePool",
    ("(string,string,uint8,string,address,uint256,uint256,uint256,uint256,address)",),
    ("address", "uint256"),
)

# (name, symbol, coverageType, region, poolOwner, memberContribution,
#  targetCapital, maxCapital)
CREATE_MUTUAL_POOL = ContractFunction(
    "createMutualPool",
    ("(string,string,uint8,string,address,uint256,uint256,uint256)",),
    ("address", "uint256"),
)

POOL_CREATED = EventSpec("PoolCreated", [
    EventInput("poolAddress", "address", indexed=True),
    EventInput("poolId", "uint256", indexed=True),
    EventInput("poolType", "uint8"),
    EventInput("name", "string"),
])

# ── USDC ──────────────────────────────────────────────────────────────────────

USDC_APPROVE = ContractFunction("approve", ("address", "uint256"), ("bool",))
USDC_ALLOWANCE = ContractFunction("allowance", ("address", "address"), ("uint256",))

# ── Risk pool ─────────────────────────────────────────────────────────────────

POOL_DEPOSIT = ContractFunction("deposit", ("uint256", "uint256"))
POOL_WITHDRAW = ContractFunction("withdraw", ("uint256", "uint256"))
POOL_ADD_DEPOSITOR = ContractFunction("addDepositor", ("address",))
POOL_REMOVE_DEPOSITOR = ContractFunction("removeDepositor", ("address",))
POOL_SET_DEPOSITS_OPEN = ContractFunction("setDepositsOpen", ("bool",))
POOL_SET_WITHDRAWALS_OPEN = ContractFunction("setWithdrawalsOpen", ("bool",))
POOL_TOTAL_CAPITAL = ContractFunction("totalCapital", (), ("uint256",))
POOL_TOTAL_PREMIUMS = ContractFunction("totalPremiums", (), ("uint256",))
POOL_TOTAL_PAYOUTS = ContractFunction("totalPayouts", (), ("uint256",))

DEPOSITED = EventSpec("Deposited", [
    EventInput("investor", "address", indexed=True),
    EventInput("usdcAmount", "uint256"),
    EventInput("tokensMinted", "uint256"),
    EventInput("tokenPrice", "uint256"),
])

WITHDRAWN = EventSpec("Withdrawn", [
    EventInput("investor", "address", indexed=True),
    EventInput("tokenAmount", "uint256"),
    EventInput("usdcReceived", "uint256"),
])

# ── Settlement ────────────────────────────────────────────────────────────────

# report = (policyId, damagePercentage, weatherDamage, satelliteDamage,
#           payoutAmount, assessedAt)
DAMAGE_REPORT_TUPLE = "(uint256,uint256,uint256,uint256,uint256,uint256)"

RECEIVE_DAMAGE_REPORT = ContractFunction(
    "receiveDamageReport",
    (DAMAGE_REPORT_TUPLE, "address", "uint256"),
)

# report(receiver, rawReport, reportContext, signatures)
FORWARDER_REPORT = ContractFunction("report", ("address", "bytes", "bytes", "bytes[]"))

DAMAGE_REPORT_RECEIVED = EventSpec("DamageReportReceived", [
    EventInput("policyId", "uint256", indexed=True),
    EventInput("damagePercentage", "uint256"),
    EventInput("payoutAmount", "uint256"),
    EventInput("farmer", "address", indexed=True),
])

# ── Revert errors ─────────────────────────────────────────────────────────────

KNOWN_ERRORS = (
    ContractErrorSpec("PolicyAlreadyPaid", ("uint256",)),
    ContractErrorSpec("PolicyNotActive", ("uint256",)),
    ContractErrorSpec("ReportTooOld", ("uint256",)),
    ContractErrorSpec("InvalidWorkflow", ("address", "uint256")),
    ContractErrorSpec("DepositsClosed", ()),
    ContractErrorSpec("WithdrawalsClosed", ()),
    ContractErrorSpec("NotWhitelisted", ("address",)),
    ContractErrorSpec("CapitalCapExceeded", ("uint256",)),
    ContractErrorSpec("SlippageExceeded", ("uint256", "uint256")),
)
