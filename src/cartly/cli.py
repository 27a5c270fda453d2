"""CLI entry point for cartly."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import click

from cartly.client import MnexiumClient
from cartly.config import get_identity_path
from cartly.errors import ServiceError, describe_error
from cartly.identity import IdentityStore
from cartly.session import connect

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from cartly.models import Identity

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHAT_FAILURE = "Chat request failed. Please try again."
HISTORY_FAILURE = "Could not load chat history."
RECEIPTS_FAILURE = "Could not load receipts."
CAPTURE_FAILURE = "Receipt capture failed. Please try again."


async def _with_client(action: Callable[[MnexiumClient], Awaitable[T]]) -> T:
    connection = await connect()
    if connection.config is None:
        raise click.ClickException(connection.reason or "Not connected to Mnexium.")
    async with MnexiumClient(connection.config) as client:
        return await action(client)


def _run(action: Callable[[MnexiumClient], Awaitable[T]], fallback_message: str) -> T:
    """Run one client action, reporting service errors in user terms."""
    try:
        return asyncio.run(_with_client(action))
    except ServiceError as exc:
        report = describe_error(exc, fallback_message)
        logger.error(
            "Command failed. code=%s status=%s retryable=%s error=%s",
            report.code,
            report.status_code,
            str(report.retryable).lower(),
            exc,
        )
        raise click.ClickException(report.user_message) from exc


def _identity(ctx: click.Context) -> Identity:
    store: IdentityStore = ctx.obj["identity_store"]
    return store.current_identity()


def _format_when(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value is not None else "-"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Cartly: receipts and chat on Mnexium."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj.setdefault("identity_store", IdentityStore(get_identity_path()))


@cli.command()
@click.argument("message")
@click.pass_context
def chat(ctx: click.Context, message: str) -> None:
    """Send MESSAGE to the current chat and stream the reply."""
    identity = _identity(ctx)

    async def action(client: MnexiumClient) -> None:
        async for chunk in client.stream_chat_message(message, identity.subject_id, identity.chat_id):
            click.echo(chunk, nl=False)
        click.echo()

    _run(action, CHAT_FAILURE)


@cli.command()
@click.option("--limit", default=50, show_default=True, help="Maximum threads to list.")
@click.pass_context
def chats(ctx: click.Context, limit: int) -> None:
    """List chat threads, most recent first."""
    identity = _identity(ctx)
    summaries = _run(lambda client: client.list_chats(identity.subject_id, limit=limit), HISTORY_FAILURE)
    if not summaries:
        click.echo("No chats found.")
        return
    for summary in summaries:
        marker = "*" if summary.chat_id == identity.chat_id else " "
        click.echo(f"{marker} {summary.chat_id}  {_format_when(summary.updated_at or summary.created_at)}  {summary.title}")


@cli.command()
@click.option("--chat-id", default=None, help="Thread to read (defaults to the current chat).")
@click.option("--limit", default=200, show_default=True, help="Maximum messages to read.")
@click.pass_context
def history(ctx: click.Context, chat_id: str | None, limit: int) -> None:
    """Show the messages of a chat thread."""
    identity = _identity(ctx)
    messages = _run(
        lambda client: client.read_chat_history(identity.subject_id, chat_id or identity.chat_id, limit=limit),
        HISTORY_FAILURE,
    )
    if not messages:
        click.echo("No messages.")
        return
    for message in messages:
        click.echo(f"[{message.kind}] {message.content}")


@cli.command("new-chat")
@click.pass_context
def new_chat(ctx: click.Context) -> None:
    """Start a new chat thread."""
    store: IdentityStore = ctx.obj["identity_store"]
    identity = store.start_new_chat()
    click.echo(f"New chat: {identity.chat_id}")


@cli.command("use-chat")
@click.argument("chat_id")
@click.pass_context
def use_chat(ctx: click.Context, chat_id: str) -> None:
    """Make CHAT_ID the current chat thread."""
    store: IdentityStore = ctx.obj["identity_store"]
    try:
        identity = store.set_chat_id(chat_id)
    except ServiceError as exc:
        raise click.BadParameter(str(exc), param_hint="CHAT_ID") from exc
    click.echo(f"Current chat: {identity.chat_id}")


@cli.command()
@click.option("--limit", default=100, show_default=True, help="Maximum receipts to list.")
@click.pass_context
def receipts(ctx: click.Context, limit: int) -> None:
    """List stored receipts, newest purchase first."""
    identity = _identity(ctx)
    records = _run(lambda client: client.list_receipt_records(identity.subject_id, limit=limit), RECEIPTS_FAILURE)
    if not records:
        click.echo("No receipts found.")
        return
    for record in records:
        click.echo(
            f"{record.purchased_at:%Y-%m-%d}  {record.store_name}  {record.total} {record.currency}  {record.id}"
        )


@cli.command()
@click.argument("receipt_id")
@click.option("--limit", default=200, show_default=True, help="Maximum items to list.")
@click.pass_context
def items(ctx: click.Context, receipt_id: str, limit: int) -> None:
    """List the line items of RECEIPT_ID."""
    identity = _identity(ctx)
    rows = _run(
        lambda client: client.query_receipt_items(identity.subject_id, receipt_id, limit=limit),
        RECEIPTS_FAILURE,
    )
    if not rows:
        click.echo("No items found.")
        return
    for item in rows:
        quantity = f"{item.quantity:g}" if item.quantity is not None else "-"
        line_total = f"{item.line_total:.2f}" if item.line_total is not None else "-"
        click.echo(f"{item.item_name}  qty={quantity}  total={line_total}")


@cli.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def capture(ctx: click.Context, image: Path) -> None:
    """Read the JPEG receipt IMAGE and store it as records."""
    identity = _identity(ctx)
    data = image.read_bytes()
    result = _run(
        lambda client: client.capture_receipt_to_records(data, identity.subject_id, identity.chat_id),
        CAPTURE_FAILURE,
    )
    click.echo(f"Created: {len(result.created)}  Updated: {len(result.updated)}")
    if result.primary_record_id:
        click.echo(f"Receipt record: {result.primary_record_id}")
    if result.metadata_missing:
        click.echo("Warning: the server did not report which records were written.", err=True)
