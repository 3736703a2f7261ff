# Operator CLI for the share ledger
import asyncio
import json
import sys
from decimal import Decimal, InvalidOperation

import click
from pydantic import ValidationError

from app.containers import AppContainer
from app.main import main as run_app
from core.logging import configure_logging
from core.utils.exceptions import SettlementEngineException
from services.ledger.models import MAX_MONEY_AMOUNT, TradeSide, quantize_money
from services.settlement.models import Order


def _echo_json(payload):
    click.echo(json.dumps(payload, indent=2, default=str))


async def _run_with_container(operation):
    """Build the container, bring the ledger backend up, run ``operation(container)``."""
    container = AppContainer()
    settings = container.settings()
    configure_logging(settings)

    db_manager = container.db_manager() if settings.uses_database() else None
    if db_manager:
        await db_manager.init()
    try:
        return await operation(container)
    finally:
        if settings.settlement.distributed_locks_enabled:
            await container.redis_client().aclose()
        if db_manager:
            await db_manager.shutdown()


def _run(operation) -> int:
    try:
        return asyncio.run(_run_with_container(operation))
    except SettlementEngineException as e:
        _echo_json({"error": type(e).__name__, "message": e.message})
        return 2
    except ValidationError as e:
        _echo_json({"error": "ValidationError", "message": str(e)})
        return 2


def _parse_price(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise click.BadParameter(f"not a decimal amount: {value}")


def _parse_balance(value: str) -> Decimal:
    amount = _parse_price(value)
    if not amount.is_finite() or not 0 <= amount <= MAX_MONEY_AMOUNT:
        raise click.BadParameter(f"balance must be between 0 and {MAX_MONEY_AMOUNT}, got {value}",
                                 param_hint="--balance")
    return quantize_money(amount)


@click.group()
def cli():
    """Share ledger CLI"""
    pass


@cli.command()
def run():
    """Run the settlement engine with its scheduled auditor"""
    click.echo("Starting share ledger...")
    asyncio.run(run_app())


@cli.command("init-db")
def init_db():
    """Create the ledger tables"""
    async def _init(container):
        # Schema creation happens while the container starts the database
        if not container.settings().uses_database():
            raise click.UsageError("LEDGER__BACKEND is not 'database'")
        click.echo("Ledger schema ready")
        return 0

    sys.exit(_run(_init))


@cli.command("create-account")
@click.argument("owner_id")
@click.option("--balance", default=None, help="Starting balance (defaults to issuance.default_starting_balance)")
def create_account(owner_id, balance):
    """Provision a cash account"""
    starting_balance = _parse_balance(balance) if balance is not None else None

    async def _create(container):
        settings = container.settings()
        amount = starting_balance if starting_balance is not None else settings.issuance.default_starting_balance
        account = await container.ledger_store().create_cash_account(owner_id, amount)
        _echo_json(account.model_dump(mode="json"))
        return 0

    sys.exit(_run(_create))


@cli.command("create-issuer")
@click.argument("issuer_id")
@click.option("--shares", type=click.IntRange(min=1), default=None,
              help="Total shares (defaults to issuance.default_total_shares)")
def create_issuer(issuer_id, shares):
    """Provision an issuer's share supply"""
    async def _create(container):
        settings = container.settings()
        total = shares if shares is not None else settings.issuance.default_total_shares
        supply = await container.ledger_store().create_issuer_supply(issuer_id, total)
        _echo_json(supply.model_dump(mode="json"))
        return 0

    sys.exit(_run(_create))


@cli.command()
@click.argument("buyer_id")
@click.argument("issuer_id")
@click.argument("side", type=click.Choice([s.value for s in TradeSide]))
@click.argument("quantity", type=int)
@click.argument("price")
def settle(buyer_id, issuer_id, side, quantity, price):
    """Settle one order and print the outcome"""
    order = Order(buyer_id=buyer_id, issuer_id=issuer_id, side=TradeSide(side),
                  quantity=quantity, price_per_unit=_parse_price(price))

    async def _settle(container):
        outcome = await container.settlement_coordinator().settle(order)
        _echo_json(outcome.to_dict())
        return 0 if outcome.is_settled else 1

    sys.exit(_run(_settle))


@cli.command()
@click.argument("issuer_id")
def audit(issuer_id):
    """Compare an issuer's supply counter with the transaction log"""
    async def _audit(container):
        report = await container.invariant_auditor().audit(issuer_id)
        _echo_json(report.to_dict())
        return 0 if report.consistent else 1

    sys.exit(_run(_audit))


@cli.command()
@click.argument("issuer_id")
def repair(issuer_id):
    """Reset an issuer's supply counter from the transaction log"""
    async def _repair(container):
        result = await container.invariant_auditor().repair(issuer_id)
        _echo_json(result.to_dict())
        return 0

    sys.exit(_run(_repair))


@cli.command("audit-all")
@click.option("--repair", "repair_discrepancies", is_flag=True, help="Repair every discrepancy found")
def audit_all(repair_discrepancies):
    """Audit every issuer"""
    async def _sweep(container):
        auditor = container.invariant_auditor()
        sweep = await (auditor.repair_all() if repair_discrepancies else auditor.audit_all())
        _echo_json(sweep.to_dict())
        if sweep.failures:
            return 1
        return 0 if repair_discrepancies or sweep.clean else 1

    sys.exit(_run(_sweep))


@cli.command()
@click.argument("owner_id")
def summary(owner_id):
    """Per-issuer trading totals and positions for one owner"""
    async def _summary(container):
        owner_summary = await container.invariant_auditor().summarize_owner(owner_id)
        _echo_json(owner_summary.to_dict())
        return 0 if not owner_summary.mismatched_holdings else 1

    sys.exit(_run(_summary))


if __name__ == "__main__":
    cli()
