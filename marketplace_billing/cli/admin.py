import click
from marketplace_billing.core.database import SessionLocal
from marketplace_billing.models.account import Account
from marketplace_billing.models.subscription import Subscription
from marketplace_billing.services.subscription_state import effective_status_of
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


def _init_sinks():
    """Services write analytics to Firestore, so jobs need Firebase up"""
    from marketplace_billing.core.firebase import init_firebase
    init_firebase()


def _find_account(db, email, account_id):
    if account_id:
        return db.query(Account).filter(Account.id == account_id).first()
    return db.query(Account).filter(Account.email == email).first()


@click.group()
def cli():
    """Marketplace billing CLI commands"""
    pass


@cli.command()
@click.option('--email', required=False, help='Account email')
@click.option('--id', 'account_id', required=False, help='Account id (Firebase UID)')
@click.option('--set', 'set_admin', is_flag=True, help='Grant admin')
@click.option('--remove', 'remove_admin', is_flag=True, help='Revoke admin')
@click.option('--list', 'list_admins', is_flag=True, help='List all admins')
def admin(email, account_id, set_admin, remove_admin, list_admins):
    """Manage the stored admin flag of accounts"""
    db = SessionLocal()
    try:
        if list_admins:
            admins = db.query(Account).filter(Account.is_admin == True).all()  # noqa: E712
            if not admins:
                click.echo("No admins found")
            else:
                click.echo(f"\nFound {len(admins)} admins:\n")
                for account in admins:
                    click.echo(f"  - {account.email} (ID: {account.id})")
            return

        if not email and not account_id:
            click.echo("❌ Please provide --email or --id for this operation", err=True)
            return

        account = _find_account(db, email, account_id)
        if not account:
            click.echo(f"❌ Account not found: {account_id or email}", err=True)
            return

        if set_admin or remove_admin:
            account.is_admin = bool(set_admin)
            db.commit()
            click.echo(f"✓ {'Granted' if set_admin else 'Revoked'} admin for {account.email}")
        else:
            click.echo(f"Account {account.email} is {'an admin' if account.is_admin else 'not an admin'}")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command()
@click.option('--email', required=False, help='Account email')
@click.option('--id', 'account_id', required=False, help='Account id (Firebase UID)')
def show(email, account_id):
    """Show an account's subscriptions with their effective status"""
    db = SessionLocal()
    try:
        if not email and not account_id:
            click.echo("❌ Please provide --email or --id for this operation", err=True)
            return
        account = _find_account(db, email, account_id)
        if not account:
            click.echo(f"❌ Account not found: {account_id or email}", err=True)
            return

        now = datetime.utcnow()
        subscriptions = db.query(Subscription).filter(
            Subscription.account_id == account.id
        ).order_by(Subscription.created_at.desc()).all()
        click.echo(f"\n{account.email} (ID: {account.id}, verified: {account.email_verified})\n")
        if not subscriptions:
            click.echo("No subscriptions")
        for sub in subscriptions:
            flag = " [cancels at period end]" if sub.cancel_at_period_end else ""
            scheduled = f" -> {sub.scheduled_plan_id} at renewal" if sub.scheduled_plan_id else ""
            click.echo(
                f"  - {sub.id}: plan {sub.plan_id} ({sub.billing_cycle.value}), "
                f"status {effective_status_of(sub, now).value} (stored {sub.status.value}), "
                f"period ends {sub.current_period_end.isoformat()}{flag}{scheduled}"
            )
    finally:
        db.close()


@cli.command('sync-subscriptions')
def sync_subscriptions():
    """Overwrite local subscription state with Stripe's"""
    _init_sinks()
    from marketplace_billing.services.subscription_service import SubscriptionService
    db = SessionLocal()
    try:
        result = SubscriptionService().sync_all(db)
        click.echo(f"✓ Synced {result['synced']} subscriptions ({result['failed']} failed)")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command('suspend-past-due')
def suspend_past_due():
    """Suspend past_due subscriptions whose grace window has ended"""
    _init_sinks()
    from marketplace_billing.services.subscription_service import SubscriptionService
    db = SessionLocal()
    try:
        count = SubscriptionService().suspend_past_due(db)
        click.echo(f"✓ Suspended {count} subscriptions")
    except Exception as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command('expire-subscriptions')
def expire_subscriptions():
    """Persist expired status for cancellations and trials whose period has ended"""
    _init_sinks()
    from marketplace_billing.services.subscription_service import SubscriptionService
    db = SessionLocal()
    try:
        count = SubscriptionService().expire_elapsed(db)
        click.echo(f"✓ Expired {count} subscriptions")
    except Exception as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command('expire-upsells')
def expire_upsells():
    """Flip elapsed add-on and featured grants to expired"""
    _init_sinks()
    from marketplace_billing.services.upsell_service import UpsellService
    db = SessionLocal()
    try:
        result = UpsellService().expire_upsells(db)
        click.echo(f"✓ Expired {result['upsells']} upsell grants and {result['featured']} featured grants")
    except Exception as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


if __name__ == '__main__':
    cli()
