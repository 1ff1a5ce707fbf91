"""Settlement orchestrator CLI.

Usage:
    python cli.py run                                  # one assessment cycle with live per-policy panels
    python cli.py tx <hash>                            # poll the ledger for a transaction's state
    python cli.py pool create private params.json      # create a pool from a JSON parameter file
    python cli.py pool deposit <pool> 500 --min-shares 490 --custody-wallet <id> --custody-address <addr>
    python cli.py pool stats <pool>

Pool commands send from the platform wallet unless --custody-wallet names a
custody-held wallet.

Configuration comes from the environment / .env, exactly as for the service.
"""

import argparse
import asyncio
import logging
import pathlib
import sys
from decimal import Decimal

from eth_utils import to_checksum_address
from rich.console import Console
from rich.table import Table

from config.settings import Settings
from core.bootstrap import build_runtime
from core.errors import ConfigurationError, SettlementError
from display.live import LiveDisplay
from ledger.base import TransactionBackend
from ledger.custody import CustodyWalletBackend
from schemas.pool import VARIANT_PARAMS, Pool, PoolVariant
from schemas.result import OutcomeStatus, RunSummary
from schemas.transaction import TransactionState, TransactionStatus
from utils.units import format_units

console = Console()


# ── Results table ─────────────────────────────────────────────────────────────

def _print_summary(summary: RunSummary) -> None:
    """Render per-policy outcomes and the run counts."""
    if not summary.outcomes:
        console.print("\n[yellow]No active policies.[/yellow]")
        return

    colors = {
        OutcomeStatus.SUBMITTED: "green",
        OutcomeStatus.BELOW_THRESHOLD: "dim",
        OutcomeStatus.REJECTED: "magenta",
        OutcomeStatus.ERRORED: "red",
    }

    table = Table(title="Assessment Run", show_lines=True, border_style="bright_black")
    table.add_column("Policy",  style="bold", min_width=14)
    table.add_column("Weather", width=8,  justify="right")
    table.add_column("Veg.",    width=6,  justify="right")
    table.add_column("Index",   width=6,  justify="right")
    table.add_column("Payout (USDC)", width=14, justify="right")
    table.add_column("Outcome", width=16, justify="center")
    table.add_column("Tx / detail", style="dim", min_width=20)

    for outcome in summary.outcomes:
        report = outcome.report
        color = colors[outcome.status]
        table.add_row(
            outcome.policy_id,
            str(report.weather_damage) if report else "-",
            str(report.vegetation_damage) if report else "-",
            str(report.combined_index) if report else "-",
            f"{format_units(report.payout_amount):,.2f}" if report else "-",
            f"[{color}]{outcome.status.value}[/{color}]",
            outcome.tx_hash or outcome.detail or "",
        )

    console.print()
    console.print(table)
    counts = summary.counts()
    console.print(
        f"\n  submitted [green]{counts['submitted']}[/green]"
        f"  rejected [magenta]{counts['rejected']}[/magenta]"
        f"  errored [red]{counts['errored']}[/red]"
        f"  below threshold {counts['below_threshold']}"
        f"  of {counts['policies']}"
    )
    console.print(f"[dim]run: {summary.run_id}[/dim]\n")


def _print_transaction(state: TransactionState) -> None:
    colors = {
        TransactionStatus.CONFIRMED: "green",
        TransactionStatus.REVERTED: "red",
        TransactionStatus.SUBMITTED: "yellow",
    }
    if state.status is None:
        console.print(f"[yellow]{state.tx_hash} is unknown to the node (dropped or never broadcast).[/yellow]")
        return
    color = colors.get(state.status, "white")
    console.print(f"  tx            [cyan]{state.tx_hash}[/cyan]")
    console.print(f"  status        [{color}]{state.status.value}[/{color}]")
    if state.block_number is not None:
        console.print(f"  block         {state.block_number}")
        console.print(f"  confirmations {state.confirmations}")


def _print_fields(title: str, fields: dict) -> None:
    console.print(f"[bold green]✓ {title}[/bold green]")
    for name, value in fields.items():
        if value is not None and value != []:
            console.print(f"  {name:<14}{value}")


# ── Commands ──────────────────────────────────────────────────────────────────

async def _run() -> None:
    runtime = build_runtime(Settings.from_env())
    display = LiveDisplay()
    event_queue: asyncio.Queue = asyncio.Queue()

    console.rule("[bold]Crop settlement[/bold]")
    console.print(f"  chain        [cyan]{runtime.settings.chain_id}[/cyan]")
    console.print(f"  requesters   [cyan]{len(runtime.settings.policy_service_urls)} policy, "
                  f"{len(runtime.settings.weather_api_urls)} weather[/cyan]")
    console.print()

    try:
        with display.make_live() as live:
            run = asyncio.create_task(runtime.reporter.run(event_queue))
            consumer = asyncio.create_task(display.consume(event_queue, live))
            try:
                summary = await run
            finally:
                await event_queue.put(None)   # sentinel: tell consumer to stop
                await consumer
    finally:
        await runtime.aclose()

    _print_summary(summary)


async def _tx(tx_hash: str) -> None:
    runtime = build_runtime(Settings.from_env())
    try:
        state = await runtime.dispatcher.transaction_status(tx_hash)
    finally:
        await runtime.aclose()
    _print_transaction(state)


# ── Pool commands ─────────────────────────────────────────────────────────────

def _backend(runtime, args: argparse.Namespace) -> TransactionBackend | None:
    """Custody wallet named on the command line, or None for the platform wallet."""
    if not args.custody_wallet:
        return None
    if runtime.custody is None:
        raise ConfigurationError(
            "--custody-wallet needs CUSTODY_API_URL, CUSTODY_APP_ID and CUSTODY_APP_SECRET"
        )
    if not args.custody_address:
        raise ConfigurationError("--custody-wallet needs --custody-address")
    return CustodyWalletBackend(runtime.custody, args.custody_wallet, to_checksum_address(args.custody_address))


async def _pool_command(runtime, args: argparse.Namespace) -> None:
    """Run one pool subcommand against runtime.pools."""
    pools = runtime.pools
    if pools is None:
        raise ConfigurationError("pool commands need CONTRACT_RISK_POOL_FACTORY and CONTRACT_USDC")

    if args.action == "create":
        variant = PoolVariant(args.variant)
        params = VARIANT_PARAMS[variant].model_validate_json(pathlib.Path(args.params).read_text())
        created = await pools.create_pool(variant, params, _backend(runtime, args))
        _print_fields(f"{variant.value} pool created", {
            "address": created.pool.address,
            "pool id": created.pool.pool_id,
            "tx": created.tx_hash,
            "not seeded": created.unseeded_depositors,
        })
        return

    pool = Pool(address=to_checksum_address(args.pool), variant=PoolVariant(args.variant))

    if args.action == "stats":
        stats = await pools.get_pool_stats(pool)
        _print_fields(f"pool {pool.address}", {
            "capital": f"{stats.total_capital:,.2f}",
            "premiums": f"{stats.total_premiums:,.2f}",
            "payouts": f"{stats.total_payouts:,.2f}",
            "balance": f"{stats.balance:,.2f}",
        })
        return

    backend = _backend(runtime, args)
    if args.action == "deposit":
        result = await pools.deposit_to_pool(pool, Decimal(args.amount), Decimal(args.min_shares), backend)
        _print_fields("deposit confirmed", {
            "tx": result.tx_hash,
            "approval": result.approval_tx_hash,
            "shares": result.shares_minted,
            "share price": result.share_price,
        })
    elif args.action == "withdraw":
        result = await pools.withdraw_from_pool(pool, Decimal(args.shares), Decimal(args.min_proceeds), backend)
        _print_fields("withdrawal confirmed", {"tx": result.tx_hash, "proceeds": result.proceeds})
    elif args.action == "whitelist":
        change = pools.add_depositor if args.change == "add" else pools.remove_depositor
        receipt = await change(pool, args.depositor, backend)
        _print_fields(f"depositor {args.change}", {"depositor": args.depositor, "tx": receipt.tx_hash})
    else:
        toggle = pools.set_deposits_open if args.action == "deposits" else pools.set_withdrawals_open
        receipt = await toggle(pool, args.state == "open", backend)
        _print_fields(f"{args.action} {args.state}", {"pool": pool.address, "tx": receipt.tx_hash})


async def _pool(args: argparse.Namespace) -> None:
    runtime = build_runtime(Settings.from_env())
    try:
        await _pool_command(runtime, args)
    finally:
        await runtime.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cli.py", description="Crop settlement orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="run one assessment cycle")
    tx = sub.add_parser("tx", help="show a transaction's ledger state")
    tx.add_argument("tx_hash")

    pool = sub.add_parser("pool", help="capital pool operations")
    actions = pool.add_subparsers(dest="action", required=True)
    variants = [v.value for v in PoolVariant]

    def action(name: str, help: str, needs_pool: bool = True) -> argparse.ArgumentParser:
        p = actions.add_parser(name, help=help)
        if needs_pool:
            p.add_argument("pool", help="pool contract address")
            p.add_argument("--variant", choices=variants, default="public")
        p.add_argument("--custody-wallet", help="send from this custody wallet id instead of the platform wallet")
        p.add_argument("--custody-address", help="on-ledger address of --custody-wallet")
        return p

    create = action("create", "create a pool through the factory", needs_pool=False)
    create.add_argument("variant", choices=variants)
    create.add_argument("params", help="JSON file with the pool parameters")

    action("stats", "read capital, premiums and payouts")

    deposit = action("deposit", "deposit USDC")
    deposit.add_argument("amount")
    deposit.add_argument("--min-shares", default="0")

    withdraw = action("withdraw", "redeem pool shares")
    withdraw.add_argument("shares")
    withdraw.add_argument("--min-proceeds", default="0")

    whitelist = action("whitelist", "edit a private pool's whitelist")
    whitelist.add_argument("change", choices=["add", "remove"])
    whitelist.add_argument("depositor")

    for name in ("deposits", "withdrawals"):
        toggle = action(name, f"open or close {name}")
        toggle.add_argument("state", choices=["open", "close"])

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-8s  %(name)s  %(message)s")

    try:
        if args.command == "run":
            asyncio.run(_run())
        elif args.command == "tx":
            asyncio.run(_tx(args.tx_hash))
        else:
            asyncio.run(_pool(args))
    except (SettlementError, ValueError) as exc:
        console.print(f"[bold red]✗ {type(exc).__name__}:[/bold red] {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
