"""CLI tools for mailbox administration."""

from uuid import UUID

import click

from mailpilot.db.session import SessionLocal
from mailpilot.services import (
    connection_service,
    follow_up_service,
    mailbox_service,
    reconcile_service,
    sync_service,
    watch_service,
)
from mailpilot.services.errors import MailpilotError


@click.group()
def cli():
    """Mailpilot CLI tools."""
    pass


def _load_mailbox(db, mailbox: str):
    """Accept either a mailbox id or its email address."""
    try:
        found = mailbox_service.get_mailbox(db, UUID(mailbox))
    except ValueError:
        found = mailbox_service.get_mailbox_by_email(db, mailbox)
    if found is None:
        raise click.ClickException(f"Mailbox not found: {mailbox}")
    return found


@cli.command()
@click.option("--email", required=True, help="Mailbox address")
@click.option("--refresh-token", required=True, help="OAuth refresh token from the consent flow")
@click.option("--access-token", default="", help="Current access token (refreshed on first use if empty)")
@click.option("--display-name", default=None, help="Optional display name")
def connect_mailbox(email: str, refresh_token: str, access_token: str, display_name: str | None):
    """
    Connect a mailbox with tokens from the external OAuth flow.

    Example:
        mailpilot connect-mailbox --email "inbox@example.com" --refresh-token "1//0g..."
    """
    with SessionLocal() as db:
        mailbox = connection_service.connect_mailbox(
            db,
            email_address=email,
            access_token=access_token,
            refresh_token=refresh_token,
            display_name=display_name,
        )
        click.echo(f"✓ Connected mailbox {mailbox.email_address}")
        click.echo(f"  ID: {mailbox.id}")
        if mailbox.watch_last_error:
            click.echo(f"  Watch error: {mailbox.watch_last_error}")


@cli.command()
@click.argument("mailbox")
def start_watch(mailbox: str):
    """Start (or renew) the Gmail watch for MAILBOX (id or address)."""
    with SessionLocal() as db:
        found = _load_mailbox(db, mailbox)
        try:
            result = watch_service.start_watch(db, found)
        except MailpilotError as e:
            raise click.ClickException(f"Watch failed: {e}") from e
        click.echo(f"✓ Watching {found.email_address}")
        click.echo(f"  Cursor: {result.cursor}")
        click.echo(f"  Expires: {result.expires_at}")


@cli.command()
@click.argument("mailbox")
def reconcile(mailbox: str):
    """Run one history reconciliation for MAILBOX now."""
    with SessionLocal() as db:
        found = _load_mailbox(db, mailbox)
        try:
            result = reconcile_service.reconcile_mailbox(db, found.id, reason="cli")
        except MailpilotError as e:
            raise click.ClickException(f"Reconcile failed: {e}") from e
        click.echo(f"✓ {len(result.new_inbound_events)} inbound message(s), cursor {result.new_cursor}")
        for thread_id, outcome in result.outcomes.items():
            click.echo(f"  {thread_id}: {outcome}")


@cli.command()
def sweep_follow_ups():
    """Send due follow-ups immediately (the worker does this hourly)."""
    with SessionLocal() as db:
        result = follow_up_service.sweep(db)
    click.echo(f"✓ {result.due} due, {result.sent} sent, {result.failed} failed")


@cli.command()
def schedule_sync():
    """Queue reconcile and watch-refresh jobs for every enabled mailbox."""
    with SessionLocal() as db:
        counts = sync_service.schedule_mailbox_sync(db)
    for key, value in counts.items():
        click.echo(f"  {key}: {value}")


@cli.command()
@click.argument("mailbox")
@click.confirmation_option(prompt="Disconnect this mailbox and delete its credential?")
def disconnect_mailbox(mailbox: str):
    """Stop the watch and remove MAILBOX and its credential."""
    with SessionLocal() as db:
        found = _load_mailbox(db, mailbox)
        address = found.email_address
        connection_service.disconnect_mailbox(db, found)
    click.echo(f"✓ Disconnected {address}")


if __name__ == "__main__":
    cli()
