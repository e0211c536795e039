"""
Clearhouse CLI - Command Line Interface for the settlement engine

Main entry point for manual triggers, the scheduler and demo mode.
"""

import json
import sys
import tempfile
from pathlib import Path

import click

from clearhouse.utils.logger import setup_logging, get_logger


def _service(ctx):
    """Build the settlement service once per invocation."""
    from clearhouse.core.service import SettlementService

    if "service" not in ctx.obj:
        service = SettlementService(ctx.obj["config"])
        ctx.obj["service"] = service
        ctx.call_on_close(service.close)
    return ctx.obj["service"]


def _echo_count(name: str, count: int) -> None:
    click.echo(json.dumps({"pass": name, "processed": count}))


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="dotenv file to load")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None, help="SQLite database path")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, env_file, db_path):
    """Clearhouse - receivable claim auction and maturity settlement"""
    import logging

    from clearhouse.core.config import load_config

    try:
        config = load_config(env_file, db_path=Path(db_path) if db_path else None)
    except ValueError as e:
        raise click.BadParameter(str(e))

    level = logging.DEBUG if debug else getattr(logging, config.log_level.upper(), logging.INFO)
    setup_logging(level=level, log_dir=str(config.log_dir))

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    config.ensure_dirs()


# =============================================================================
# Store Commands
# =============================================================================


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the database schema"""
    from clearhouse.core.storage import StorageManager

    config = ctx.obj["config"]
    storage = StorageManager.from_path(config.db_path)
    storage.close()
    click.echo(f"✓ Database ready at {config.db_path}")


@cli.command("status")
@click.pass_context
def status(ctx):
    """Show entity counts by lifecycle state"""
    click.echo(json.dumps(_service(ctx).stats(), indent=2))


# =============================================================================
# Auction Commands
# =============================================================================


@cli.command("finalize")
@click.argument("auction_id")
@click.pass_context
def finalize(ctx, auction_id):
    """Finalize one expired auction"""
    outcome = _service(ctx).finalize_auction(auction_id)
    click.echo(outcome.model_dump_json())
    if outcome.outcome.value == "error":
        ctx.exit(1)


@cli.command("process-expired")
@click.pass_context
def process_expired(ctx):
    """Finalize every expired auction"""
    _echo_count("auctions", _service(ctx).process_expired_auctions())


# =============================================================================
# Maturity Commands
# =============================================================================


@cli.command("process-matured")
@click.pass_context
def process_matured(ctx):
    """Open payments for matured claims"""
    _echo_count("matured", _service(ctx).process_matured_claims())


@cli.command("mark-overdue")
@click.pass_context
def mark_overdue(ctx):
    """Escalate payments past the grace period"""
    _echo_count("overdue", _service(ctx).mark_overdue_payments())


@cli.command("record-instrument")
@click.argument("payment_id")
@click.argument("instrument_id")
@click.option("--confirmation", default=None, help="Ledger reference of the instrument creation")
@click.pass_context
def record_instrument(ctx, payment_id, instrument_id, confirmation):
    """Record the debtor's payment instrument"""
    outcome = _service(ctx).record_instrument_created(payment_id, instrument_id, confirmation)
    click.echo(outcome.model_dump_json())
    if not outcome.ok:
        ctx.exit(1)


@cli.command("confirm-cashed")
@click.argument("payment_id")
@click.pass_context
def confirm_cashed(ctx, payment_id):
    """Confirm the creditor cashed the payment instrument"""
    outcome = _service(ctx).confirm_instrument_cashed(payment_id)
    click.echo(outcome.model_dump_json())
    if not outcome.ok:
        ctx.exit(1)


@cli.command("cleanup")
@click.pass_context
def cleanup(ctx):
    """Delete stale minting and failed claims"""
    _echo_count("cleanup", _service(ctx).cleanup_stale_claims())


# =============================================================================
# Scheduler
# =============================================================================


@cli.command("serve")
@click.option("--allow-simulated", is_flag=True, help="Run against the in-memory simulated ledger")
@click.pass_context
def serve(ctx, allow_simulated):
    """Run the auction and maturity schedulers"""
    import asyncio

    from clearhouse.core.config import SIMULATED_GATEWAY
    from clearhouse.core.scheduler import SettlementScheduler

    config = ctx.obj["config"]
    if config.gateway_factory == SIMULATED_GATEWAY and not allow_simulated:
        raise click.UsageError(
            "No ledger gateway configured. Set CLEARHOUSE_GATEWAY_FACTORY to a "
            "'module:callable' factory, or pass --allow-simulated."
        )
    scheduler = SettlementScheduler(_service(ctx), config)

    click.echo("🕒 Starting schedulers")
    click.echo(f"   Auctions: every {config.auction_interval_seconds}s")
    click.echo(f"   Maturity: every {config.maturity_interval_seconds}s")
    click.echo("   Press Ctrl+C to stop.")

    try:
        asyncio.run(scheduler.run_forever())
    except KeyboardInterrupt:
        click.echo("\nSchedulers stopped.")


# =============================================================================
# Demo
# =============================================================================


@cli.command("demo")
@click.option("--keep-db", is_flag=True, help="Use the configured database instead of a temporary one")
@click.pass_context
def demo(ctx, keep_db):
    """Run a full auction against the simulated ledger"""
    from clearhouse.core.ledger import SimulatedLedger
    from clearhouse.core.service import SettlementService
    from clearhouse.core.storage import StorageManager

    config = ctx.obj["config"]
    logger = get_logger("cli.demo")

    with tempfile.TemporaryDirectory() as tmp:
        db_path = config.db_path if keep_db else Path(tmp) / "demo.db"
        clock = _DemoClock(1_700_000_000)
        ledger = SimulatedLedger(config.settlement_currency)
        service = SettlementService(config, StorageManager.from_path(db_path), ledger, clock=clock)

        click.echo("Auction Demo (simulated ledger)")
        click.echo("-" * 40)

        claim = service.issue_claim("debtor", "creditor", 1000, clock() + 90 * 86400)
        ledger.register_asset(claim.claim_id, "creditor")
        service.confirm_minted(claim.claim_id)
        service.accept_claim(claim.claim_id, "creditor")
        auction = service.list_claim(claim.claim_id, "creditor", clock() + 3600, min_bid=800)
        click.echo(f"  Claim {claim.claim_id[:16]}... listed, min bid 800")

        for bidder, amount, balance in (("alice", 900, 2000), ("bob", 950, 500)):
            ledger.fund(bidder, balance)
            instrument = ledger.create_instrument(bidder, "creditor", amount)
            service.place_bid(auction.auction_id, bidder, amount, instrument.instrument_id,
                              instrument.confirmation)
            click.echo(f"  {bidder} bids {amount} (balance {balance})")

        clock.advance(3601)
        outcome = service.finalize_auction(auction.auction_id)
        logger.debug(f"Demo outcome: {outcome}")

        click.echo("")
        if outcome.outcome.value == "completed":
            click.echo(f"✅ Auction completed: {outcome.winner} pays {outcome.final_price}")
        else:
            click.echo(f"❌ Auction {outcome.outcome.value}: {outcome.detail}")
        for attempt in outcome.attempts:
            click.echo(f"   - {attempt}")
        click.echo(f"   Claim owner on ledger: {ledger.owners[claim.claim_id]}")
        click.echo(outcome.model_dump_json())
        service.storage.close()

    if outcome.outcome.value != "completed":
        sys.exit(1)


class _DemoClock:
    """Manually advanced clock for demo mode."""

    def __init__(self, start: int):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


if __name__ == "__main__":
    cli()
