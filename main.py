import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import typer
from rich.console import Console

from config import settings
from bookshare.credentials import KeyringCredentialStore
from bookshare.exceptions import NotFound, ShareServiceError
from bookshare.policy import available_actions
from bookshare.services.chat_channel import ChatChannelManager
from bookshare.services.chat_session import ChatSession
from bookshare.services.http_client import ShareApiClient
from bookshare.services.notification_cache import NotificationCache
from bookshare.services.share_service import ShareService
from bookshare.share import Share
from bookshare.share_status import next_status
from bookshare.timeline import derive_timeline
from bookshare.utils.ui_helpers import (
    print_actions,
    print_messages,
    print_notifications,
    print_share_list,
    print_timeline,
    set_output_mode,
)
from bookshare.utils.validators import ReturnDateValidator

APP_NAME = "BookShare CLI"

console = Console()
logger = logging.getLogger(__name__)


def get_credential_store() -> KeyringCredentialStore:
    return KeyringCredentialStore()


def _run(action: Callable[[ShareService], Awaitable[Any]]) -> Any:
    """Run ``action`` against a fresh service, turning service errors into exit code 1."""
    credentials = get_credential_store()

    async def runner():
        client = ShareApiClient(credential_store=credentials)
        service = ShareService(client, notification_cache=NotificationCache(client))
        try:
            return await action(service)
        finally:
            await client.close()

    try:
        return asyncio.run(runner())
    except (ShareServiceError, ValueError) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)


async def _load_share(service: ShareService, share_id: int) -> Share:
    """Find a share among the current user's active and archived listings."""
    for archived in (False, True):
        await service.list_borrower_shares(archived=archived)
        await service.list_lender_shares(archived=archived)
        share = service.find_share(share_id)
        if share is not None:
            return share
    raise NotFound(f"Share {share_id} not found.")


def _badges(cache: NotificationCache, shares: List[Share]) -> Dict[int, int]:
    return {s.id: cache.unread_count(s.id) for s in shares}


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    logging.basicConfig(level=settings.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    if output:
        set_output_mode(output)


@app.command("login")
def cli_login(token: str, user_id: str = typer.Option(..., "--user-id", help="Your user id")):
    """Store an access token and user id in the system keyring."""
    get_credential_store().save(token, user_id)
    print("Credentials saved.")


@app.command("logout")
def cli_logout():
    """Remove stored credentials."""
    get_credential_store().clear()
    print("Credentials removed.")


@app.command("shares")
def cli_shares(
    lender: bool = typer.Option(False, "--lender", help="Shares of books you lend out"),
    archived: bool = typer.Option(False, "--archived", help="Show archived shares"),
):
    """List your shares, borrowed by default."""

    async def action(service: ShareService):
        if lender:
            shares = await service.list_lender_shares(archived=archived)
        else:
            shares = await service.list_borrower_shares(archived=archived)
        cache = service.notification_cache
        await cache.refresh()
        for error in service.read_errors.values():
            console.print(f"[yellow]Showing cached shares: {error}[/]")
        return shares, _badges(cache, shares)

    shares, badges = _run(action)
    print_share_list(shares, badges)


@app.command("timeline")
def cli_timeline(share_id: int):
    """Show the progress timeline of a share."""
    share = _run(lambda service: _load_share(service, share_id))
    print_timeline(derive_timeline(share))


@app.command("actions")
def cli_actions(share_id: int):
    """List what you can do with a share right now."""
    user_id = get_credential_store().get_user_id()

    async def action(service: ShareService):
        share = await _load_share(service, share_id)
        archived_ids = {s.id for s in service.cached_listing("borrower", True) + service.cached_listing("lender", True)}
        return available_actions(share, user_id, archived=share_id in archived_ids)

    print_actions(_run(action))


@app.command("advance")
def cli_advance(share_id: int):
    """Move a share to its next status."""
    user_id = get_credential_store().get_user_id()

    async def action(service: ShareService):
        share = await _load_share(service, share_id)
        target = next_status(share.status)
        if target is None:
            raise ValueError(f"Share {share_id} is already closed.")
        return await service.advance_status(share_id, target, current=share, user_id=user_id)

    share = _run(action)
    print(f"Share {share.id} is now {share.status.name}.")


@app.command("decline")
def cli_decline(share_id: int):
    """Decline a share request (owner only)."""
    user_id = get_credential_store().get_user_id()

    async def action(service: ShareService):
        share = await _load_share(service, share_id)
        return await service.decline(share_id, current=share, user_id=user_id)

    _run(action)
    print(f"Share {share_id} declined.")


@app.command("dispute")
def cli_dispute(share_id: int):
    """Raise a dispute on a share."""
    user_id = get_credential_store().get_user_id()

    async def action(service: ShareService):
        share = await _load_share(service, share_id)
        return await service.dispute(share_id, current=share, user_id=user_id)

    _run(action)
    print(f"Share {share_id} disputed.")


@app.command("archive")
def cli_archive(share_id: int):
    """Hide a closed share from the default listings."""
    user_id = get_credential_store().get_user_id()

    async def action(service: ShareService):
        share = await _load_share(service, share_id)
        await service.archive(share_id, current=share, user_id=user_id)

    _run(action)
    print(f"Share {share_id} archived.")


@app.command("unarchive")
def cli_unarchive(share_id: int):
    """Bring an archived share back to the default listings."""
    user_id = get_credential_store().get_user_id()

    async def action(service: ShareService):
        share = await _load_share(service, share_id)
        await service.unarchive(share_id, current=share, user_id=user_id)

    _run(action)
    print(f"Share {share_id} unarchived.")


@app.command("return-date")
def cli_return_date(share_id: int, new_date: str):
    """Change the return date of a share (owner only), YYYY-MM-DD."""
    user_id = get_credential_store().get_user_id()

    async def action(service: ShareService):
        when = ReturnDateValidator.parse(new_date)
        if not ReturnDateValidator.is_in_future(when):
            raise ValueError("Return date cannot be in the past.")
        share = await _load_share(service, share_id)
        return await service.update_return_date(share_id, when, current=share, user_id=user_id)

    share = _run(action)
    print(f"Share {share.id} is now due {share.return_date.date().isoformat()}.")


@app.command("notifications")
def cli_notifications():
    """Show unread notifications."""

    async def action(service: ShareService):
        cache = service.notification_cache
        notifications = await cache.refresh()
        if cache.last_error is not None:
            raise cache.last_error
        return notifications

    print_notifications(_run(action))


@app.command("mark-read")
def cli_mark_read(share_id: int, chat: bool = typer.Option(False, "--chat", help="Only chat message notifications")):
    """Mark a share's notifications as read."""

    async def action(service: ShareService):
        cache = service.notification_cache
        await cache.refresh()
        if chat:
            await cache.mark_chat_notifications_read(share_id)
        else:
            await cache.mark_share_notifications_read(share_id)

    _run(action)
    print(f"Notifications for share {share_id} marked as read.")


@app.command("chat")
def cli_chat(
    share_id: int,
    page: int = typer.Option(1, "--page", help="History page, newest first"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep listening for new messages"),
):
    """Show the chat history of a share."""
    if not follow:
        result = _run(lambda service: service.get_chat_messages(share_id, page=page))
        print_messages(result.messages)
        if result.has_next_page:
            print(f"More messages: --page {result.page + 1}")
        return

    credentials = get_credential_store()

    async def action(service: ShareService):
        channel = ChatChannelManager(credential_store=credentials)
        async with ChatSession(share_id, service, channel, notification_cache=service.notification_cache) as session:
            print_messages(session.messages)
            if session.error:
                console.print(f"[yellow]Live updates unavailable: {session.error}[/]")
                return
            channel.on_message(lambda m: print_messages([m]) if m.share_id == share_id else None)
            console.print("[dim]Listening for messages, Ctrl+C to stop[/]")
            await asyncio.Event().wait()

    try:
        _run(action)
    except KeyboardInterrupt:
        print()


@app.command("send")
def cli_send(share_id: int, text: str):
    """Send a chat message to a share."""
    message = _run(lambda service: service.send_chat_message(share_id, text))
    print(f"Sent: {message.content}")


if __name__ == "__main__":
    app()
