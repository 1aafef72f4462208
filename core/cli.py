"""
Command-line interface for BackerStore operators
"""
import asyncio
import json

import click

from core.config import settings
from core.exceptions import BackerStoreError
from core.logging import get_logger
from database.base import Base
from database.session import engine, get_db_sync

logger = get_logger(__name__)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


async def _with_gateway(operation):
    """Run operation(stripe_client, notifications) and close both clients afterwards"""
    from d0_gateway.providers.stripe import StripeClient
    from d9_delivery.notifications import NotificationService

    notifications = NotificationService()
    async with StripeClient() as stripe_client:
        try:
            return await operation(stripe_client, notifications)
        finally:
            await notifications.close()


@click.group()
@click.version_option(version=settings.app_version)
def cli():
    """BackerStore CLI - backer checkout, reconciliation and bulk capture"""
    pass


@cli.command()
def init_db():
    """Initialize database with tables"""
    # Register every model on the metadata
    import d7_storefront.models  # noqa: F401
    import database.models  # noqa: F401

    click.echo("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    click.echo("Database initialized successfully!")


@cli.command()
def seed_rules():
    """Insert missing default rules (existing values are kept)"""
    from d1_profiles.rules import seed_default_rules

    with get_db_sync() as db:
        inserted = seed_default_rules(db)
    click.echo(f"Inserted {inserted} default rules")


@cli.command()
def bulk_capture():
    """Capture every card_saved order and print the summary"""
    from d7_storefront.bulk_capture import BulkCaptureSweep

    async def run(stripe_client, notifications):
        with get_db_sync() as db:
            sweep = BulkCaptureSweep(db, stripe_client=stripe_client, notifications=notifications)
            return await sweep.run()

    summary = asyncio.run(_with_gateway(run))
    _echo_json(summary.to_dict())


@cli.command()
@click.argument("order_id")
def capture_order(order_id: str):
    """Retry capture for a single card_saved or charge_failed order"""
    from d7_storefront.bulk_capture import BulkCaptureSweep

    async def run(stripe_client, notifications):
        with get_db_sync() as db:
            sweep = BulkCaptureSweep(db, stripe_client=stripe_client, notifications=notifications)
            return await sweep.capture_order(order_id)

    try:
        outcome = asyncio.run(_with_gateway(run))
    except BackerStoreError as e:
        _echo_json(e.to_dict())
        raise SystemExit(1)
    _echo_json(outcome.to_dict())
    if not outcome.succeeded:
        raise SystemExit(1)


@cli.command()
@click.argument("payment_intent_id")
def sync_payment(payment_intent_id: str):
    """Pull a payment intent from Stripe and reconcile its order"""
    from d7_storefront.reconciliation import ReconciliationEngine

    async def run(stripe_client, notifications):
        with get_db_sync() as db:
            engine_ = ReconciliationEngine(db, stripe_client=stripe_client, notifications=notifications)
            return await engine_.sync_payment_intent(payment_intent_id)

    try:
        result = asyncio.run(_with_gateway(run))
    except BackerStoreError as e:
        _echo_json(e.to_dict())
        raise SystemExit(1)
    _echo_json(result)


@cli.command()
@click.argument("email")
def profile(email: str):
    """Show the resolved profile for an account email"""
    from d1_profiles.context import RequestContext
    from d1_profiles.profiles import ProfileService

    with get_db_sync() as db:
        try:
            backer_profile = ProfileService(RequestContext.for_session(db)).get_profile_by_email(email)
        except BackerStoreError as e:
            _echo_json(e.to_dict())
            raise SystemExit(1)
        _echo_json(backer_profile.to_dict())


@cli.command("metrics")
def show_metrics():
    """Print current metrics in Prometheus exposition format"""
    from core.metrics import get_metrics_response

    body, _ = get_metrics_response()
    click.echo(body.decode("utf-8"))


@cli.command()
def env_info():
    """Display environment information"""
    click.echo(f"{settings.app_name} v{settings.app_version}")
    click.echo(f"Environment: {settings.environment}")
    click.echo(f"Database: {settings.database_url}")
    click.echo(f"Use stubs: {settings.use_stubs}")
    click.echo(f"Currency: {settings.currency}")
    click.echo(f"Rule cache TTL: {settings.rule_cache_ttl_seconds}s")


def main():
    """Main entry point"""
    cli()


if __name__ == "__main__":
    main()
