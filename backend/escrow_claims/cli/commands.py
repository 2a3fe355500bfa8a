import asyncio
import logging
from datetime import datetime

import click
from rich.logging import RichHandler

from escrow_claims import config
from escrow_claims.cli import (
    console, print_status, print_panel, print_transition, print_reasons,
    progress_bar, print_json, print_table, symbol_map,
)
from escrow_claims.engine import ClaimEngine
from escrow_claims.errors import EscrowEngineError
from escrow_claims.models import ClaimRequest
from escrow_claims.tokens import default_registry, format_amount

logger = logging.getLogger("escrow_claims.cli")


def _setup_logging(verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _run(ctx, action):
    """Build an engine, run ``action(engine)`` on the event loop and close the engine."""
    factory = ctx.obj["engine_factory"]

    async def main():
        async with factory(**ctx.obj["engine_options"]) as engine:
            return await action(engine)

    try:
        return asyncio.run(main())
    except EscrowEngineError as e:
        raise click.ClickException(f"{e.code}: {e.message}")


def _short(value, width=18):
    value = str(value or "")
    return value if len(value) <= width else value[:width] + "..."


def _when(timestamp):
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(int(timestamp)).strftime("%Y-%m-%d %H:%M")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option("--chain-id", default=None, type=click.Choice([str(c) for c in config.SUPPORTED_CHAINS]),
              help="Chain to use (defaults to ESCROW_CHAIN_ID).")
@click.option("--rpc-url", default=None, help="Override the RPC endpoint.")
@click.option("--no-cache", is_flag=True, help="Do not read or write the reconciled-escrow cache.")
@click.pass_context
def cli(ctx, verbose, chain_id, rpc_url, no_cache):
    """Escrow Claims CLI"""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("engine_factory", ClaimEngine.from_env)
    ctx.obj["engine_options"] = {
        "chain_id": int(chain_id) if chain_id else None,
        "rpc_url": rpc_url,
        "use_cache": not no_cache,
    }
    ctx.obj["chain_id"] = int(chain_id) if chain_id else config.CHAIN_ID


@click.command()
@click.pass_context
def tokens(ctx):
    """List the tokens registered on the selected chain."""
    chain_id = ctx.obj["chain_id"]
    rows = [
        (t.symbol, t.name, t.decimals, t.display_decimals, "native" if t.native else t.address_on(chain_id))
        for t in default_registry().for_chain(chain_id)
    ]
    print_table(["Symbol", "Name", "Decimals", "Display", "Address"], rows, title=f"Tokens on chain {chain_id}")


@click.command()
@click.argument("addresses", nargs=-1, required=True)
@click.option("--max-age", default=None, type=float, help="Serve cached records younger than this many seconds.")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
@click.pass_context
def reconcile(ctx, addresses, max_age, as_json):
    """Reconcile every escrow the given addresses send to or receive from."""

    async def action(engine):
        with progress_bar() as progress:
            progress.add_task("Reading escrows...", total=None)
            return await engine.reconcile_escrows(addresses, max_age=max_age)

    batch = _run(ctx, action)

    if as_json:
        print_json(batch.to_dict())
        return

    if not batch.indexer_available:
        print_status("Indexer unavailable, escrows listed from chain", level="warn")

    rows = []
    for record in batch.records:
        room, token = record.room, record.room.token
        rows.append((
            _short(room.escrow_id),
            record.family,
            token.symbol,
            format_amount(room.total_allocated, token),
            format_amount(room.total_withdrawn, token),
            format_amount(room.available_balance, token),
            len(record.receivers),
            _when(room.created_at),
            "partial" if record.partial else "ok",
        ))
    print_table(
        ["Escrow", "Family", "Token", "Allocated", "Withdrawn", "Available", "Receivers", "Created", "Data"],
        rows, title=f"{len(batch.records)} escrows",
    )
    for escrow_id, error in batch.failures.items():
        print_status(f"{_short(escrow_id)}: {error.code} {error.message}", level="warn")


def _request(escrow_id, receiver, amount, claim_all, family):
    if claim_all and amount is not None:
        raise click.UsageError("Use either --amount or --all, not both.")
    if not claim_all and amount is None:
        raise click.UsageError("Pass --amount or --all.")
    return ClaimRequest(escrow_id=escrow_id, receiver=receiver, amount=amount, claim_all=claim_all, family=family)


@click.command()
@click.argument("escrow_id")
@click.option("--receiver", default=None, help="Receiver address (defaults to the configured wallet).")
@click.option("--amount", default=None, help="Amount to claim, in token units (e.g. 12.5).")
@click.option("--all", "claim_all", is_flag=True, help="Claim everything currently available.")
@click.option("--family", default=None, help="Escrow family (USDC or IDRX); detected when omitted.")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
@click.pass_context
def evaluate(ctx, escrow_id, receiver, amount, claim_all, family, as_json):
    """Check whether a claim would be accepted, without sending anything."""
    request = _request(escrow_id, receiver, amount, claim_all, family)

    async def action(engine):
        return await engine.evaluate_claim(request)

    result = _run(ctx, action)
    if as_json:
        print_json(result.to_dict())
        return

    token = result.token
    rows = [
        ("Token", token.symbol),
        ("Available", f"{format_amount(result.available, token)} {token.symbol}"),
        ("Requested", "-" if result.requested is None else f"{format_amount(result.requested, token)} {token.symbol}"),
    ]
    if result.vesting is not None:
        rows.append(("Vested", f"{result.vesting.progress_pct:.2f}%"))
    print_table(["Field", "Value"], rows, title="Claim evaluation")

    if result.eligible:
        print_status(f"Eligible {symbol_map['arrow']} {format_amount(result.claimable, token)} {token.symbol}",
                     level="success")
    else:
        print_status("Not eligible", level="error")
        print_reasons(result.reasons)


@click.command()
@click.argument("escrow_id")
@click.option("--amount", default=None, help="Amount to claim, in token units (e.g. 12.5).")
@click.option("--all", "claim_all", is_flag=True, help="Claim everything currently available.")
@click.option("--family", default=None, help="Escrow family (USDC or IDRX); detected when omitted.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def claim(ctx, escrow_id, amount, claim_all, family, yes):
    """Withdraw vested funds from an escrow to the configured wallet."""
    request = _request(escrow_id, None, amount, claim_all, family)
    if not yes:
        what = "everything available" if claim_all else amount
        click.confirm(f"Claim {what} from escrow {_short(escrow_id)}?", abort=True)

    print_panel("Claim escrow funds", tone="info")

    async def action(engine):
        return await engine.execute_claim(request, on_transition=print_transition)

    result = _run(ctx, action)

    if result.success:
        print_status(f"Tx {symbol_map['arrow']} {config.explorer_url(result.tx_hash, ctx.obj['chain_id'])}",
                     level="success")
        return
    if result.tx_hash:
        print_status(f"Tx {symbol_map['arrow']} {result.tx_hash}", level="warn")
    print_reasons(result.reasons)
    raise click.ClickException(f"{result.error_code}: {result.message}")


@click.command("top-up")
@click.argument("escrow_id")
@click.argument("amount")
@click.option("--family", default=None, help="Escrow family (USDC or IDRX); detected when omitted.")
@click.pass_context
def top_up(ctx, escrow_id, amount, family):
    """Deposit more funds into an escrow you created."""
    print_panel("Top up escrow", tone="info")

    async def action(engine):
        return await engine.top_up(escrow_id, amount, family=family)

    outcome = _run(ctx, action)
    _print_outcome(ctx, outcome)


@click.command("add-receiver")
@click.argument("escrow_id")
@click.argument("receiver")
@click.argument("amount")
@click.option("--family", default=None, help="Escrow family (USDC or IDRX); detected when omitted.")
@click.pass_context
def add_receiver(ctx, escrow_id, receiver, amount, family):
    """Add a receiver to an escrow you created, funding their allocation."""
    print_panel("Add receiver", tone="info")

    async def action(engine):
        return await engine.add_receiver(escrow_id, receiver, amount, family=family)

    outcome = _run(ctx, action)
    _print_outcome(ctx, outcome)


def _print_outcome(ctx, outcome):
    plan = outcome.plan
    if outcome.approval_tx_hash:
        print_status(f"Approved {format_amount(plan.required, plan.token)} {plan.token.symbol} "
                     f"{symbol_map['arrow']} {outcome.approval_tx_hash}", level="success")
    print_status(f"Confirmed {symbol_map['arrow']} {config.explorer_url(outcome.spend_tx_hash, ctx.obj['chain_id'])}",
                 level="success")


@click.command()
@click.option("--receiver", default=None, help="Only claims by this receiver.")
@click.option("--escrow-id", default=None, help="Only claims on this escrow.")
@click.option("--limit", default=20, show_default=True, type=int)
@click.pass_context
def history(ctx, receiver, escrow_id, limit):
    """Show recorded claim results (requires DATABASE_URL)."""

    async def action(engine):
        if engine.ledger is None:
            raise click.ClickException("No claim ledger configured. Set DATABASE_URL.")
        return engine.history(receiver=receiver, escrow_id=escrow_id, limit=limit)

    records = _run(ctx, action)
    rows = [
        (r["created_at"], _short(r["escrow_id"]), r["token"], r["amount"], r["state"],
         _short(r["tx_hash"]), r["error_code"] or "")
        for r in records
    ]
    print_table(["When", "Escrow", "Token", "Amount", "State", "Tx", "Error"], rows, title="Claim history")


cli.add_command(tokens)
cli.add_command(reconcile)
cli.add_command(evaluate)
cli.add_command(claim)
cli.add_command(top_up)
cli.add_command(add_receiver)
cli.add_command(history)

if __name__ == "__main__":
    cli()
