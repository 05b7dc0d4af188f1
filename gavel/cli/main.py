"""
Gavel CLI - Command Line Interface for the auction settlement engine

Main entry point for all CLI commands.
"""

import asyncio
import json
import tempfile
from pathlib import Path

import click

from gavel import __version__
from gavel.core.config import load_config
from gavel.core.errors import GavelError
from gavel.utils.logger import setup_from_config


def _engine(ctx):
    from gavel.core.container import open_engine

    return open_engine(ctx.obj["config"])


def _fail(error: GavelError):
    raise click.ClickException(f"{error} {json.dumps(error.context, default=str)}")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--db", "db_path", default=None, help="SQLite database path (overrides GAVEL_DB_PATH)")
@click.option("--env-file", default=None, help="Path to a .env file")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, debug, db_path, env_file):
    """Gavel - Auction settlement and consistency engine"""
    config = load_config(env_file)
    if db_path:
        config.db_path = Path(db_path).expanduser()
    if debug:
        config.log_level = "DEBUG"

    try:
        setup_from_config(config)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="GAVEL_LOG_LEVEL / GAVEL_LOG_LEVELS")

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# Store Commands
# =============================================================================


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the database schema"""
    engine = _engine(ctx)
    click.echo(f"✓ Schema ready at {engine.store.adapter.db_path}")
    engine.close()


# =============================================================================
# Relay Commands
# =============================================================================


@cli.command("relay")
@click.option("--duration", default=None, type=float, help="Stop after N seconds (default: run until Ctrl+C)")
@click.pass_context
def relay(ctx, duration):
    """Run the outbox relay"""
    engine = _engine(ctx)

    async def run_relay():
        replayed = await engine.relay.start()
        click.echo(f"Relay running ({replayed} replayed). Press Ctrl+C to stop.")
        try:
            if duration is None:
                while True:
                    await asyncio.sleep(10)
                    click.echo(f"  Stats: {engine.relay.stats}")
            else:
                await asyncio.sleep(duration)
        finally:
            await engine.relay.stop()

    try:
        asyncio.run(run_relay())
    except KeyboardInterrupt:
        click.echo("\nRelay stopped.")
    finally:
        engine.close()


# =============================================================================
# Settlement Commands
# =============================================================================


@cli.command("settle")
@click.argument("auction_id")
@click.option("--force", is_flag=True, help="Settle before the end time")
@click.pass_context
def settle(ctx, auction_id, force):
    """Settle one auction"""
    engine = _engine(ctx)
    try:
        record = engine.resolver.settle(auction_id, force=force)
    except GavelError as e:
        _fail(e)
    finally:
        engine.close()
    click.echo(json.dumps(record.to_dict(), indent=2))


@cli.command("sweep")
@click.pass_context
def sweep(ctx):
    """Activate due auctions, settle ended ones and escalate overdue violations"""
    engine = _engine(ctx)
    try:
        activated = engine.auctions.activate_due()
        settled = engine.resolver.settle_due()
        escalated = engine.rules.sweep_escalations()
    finally:
        engine.close()
    click.echo(f"  Activated: {len(activated)}")
    click.echo(f"  Settled: {len(settled)}")
    click.echo(f"  Escalated: {len(escalated)}")


@cli.command("price")
@click.argument("auction_id")
@click.pass_context
def price(ctx, auction_id):
    """Show current price and provisional winner"""
    engine = _engine(ctx)
    try:
        auction = engine.auctions.get_auction(auction_id)
        bids = engine.ledger.get_bid_history(auction_id)
        current = engine.oracle.current_price(auction, bids)
        minimum = engine.oracle.minimum_bid(auction, bids)
        winner = engine.oracle.determine(auction, bids).winner
    except GavelError as e:
        _fail(e)
    finally:
        engine.close()

    click.echo(f"Auction {auction_id} ({auction.auction_type.value}, {auction.status.value})")
    click.echo(f"  Current price: {current}")
    click.echo(f"  Next bid boundary: {minimum}")
    click.echo(f"  Bids: {sum(1 for b in bids if b.is_live)} live / {len(bids)} total")
    if winner:
        click.echo(f"  Leading: {winner.bidder_id} at {winner.price}")


# =============================================================================
# Demo
# =============================================================================


DEMO_SCENARIOS = {
    "english": (
        {"auction_type": "english", "starting_price": 100, "min_increment": 10, "reserve_price": 150},
        [("alice", 100), ("bob", 120), ("carol", 150), ("alice", 170)],
    ),
    "vickrey": (
        {"auction_type": "vickrey", "starting_price": 50, "min_increment": 1},
        [("alice", 100), ("bob", 80), ("carol", 60)],
    ),
    "multi_unit": (
        {"auction_type": "multi_unit", "starting_price": 10, "min_increment": 1, "params": {"total_units": 2}},
        [("alice", 50), ("bob", 40), ("carol", 30)],
    ),
}


@cli.command("demo")
@click.option(
    "--scenario",
    default="english",
    type=click.Choice(sorted(DEMO_SCENARIOS)),
    help="Demo scenario to run",
)
def demo(scenario):
    """Run an auction end to end against a throwaway database"""
    from gavel.core.config import EngineConfig
    from gavel.core.container import open_engine
    from gavel.core.market.types import now_ms

    click.echo("=" * 60)
    click.echo(f"  GAVEL - {scenario.upper()} DEMO")
    click.echo("=" * 60)
    click.echo()

    with tempfile.TemporaryDirectory() as tmp:
        engine = open_engine(EngineConfig(db_path=Path(tmp) / "demo.db"))
        template, bids = DEMO_SCENARIOS[scenario]
        start = now_ms()

        click.echo("📦 Creating auction...")
        auction = engine.auctions.create_auction(
            {**template, "title": f"{scenario} demo", "start_time": start, "end_time": start + 60_000, "activate": True}
        )
        engine.auctions.activate_due(now=start)
        click.echo(f"  ✓ {auction.auction_type.value} auction {auction.auction_id[:8]}")
        click.echo()

        click.echo("🔨 Bidding...")
        for offset, (bidder, amount) in enumerate(bids, start=1):
            request = {"auction_id": auction.auction_id, "bidder_id": bidder, "amount": amount}
            try:
                bid_id = engine.ledger.place_bid(request, idempotency_key=f"{bidder}-{offset}", now=start + offset)
                click.echo(f"  ✓ {bidder} bids {amount} ({bid_id[:8]})")
            except GavelError as e:
                click.echo(f"  ✗ {bidder} bids {amount}: {e}")
        click.echo()

        click.echo("⚖️  Settling...")
        record = engine.resolver.settle(auction.auction_id, force=True, now=start + 1000)
        click.echo(f"  ✓ Result: {record.result_type.value} ({record.determination_method})")
        for award in record.awards:
            click.echo(f"  ✓ {award['bidder_id']} wins {award['quantity']} at {award['price']}")
        click.echo()

        click.echo("📣 Relaying outbox...")
        delivered = asyncio.run(engine.relay.replay())
        click.echo(f"  ✓ {delivered} event(s) published")
        for message in engine.bus.messages():
            click.echo(f"    #{message['eventId']} {message['eventType']}")
        click.echo()

        status = engine.auctions.get_auction(auction.auction_id).status
        click.echo(f"  Auction status: {status.value}")
        engine.close()

    click.echo("✅ Demo complete!")


if __name__ == "__main__":
    cli()
