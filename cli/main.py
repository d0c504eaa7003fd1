"""threadline CLI: run the feed server and chat from the terminal."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Optional

import typer
import uvicorn

from backend.app.config import settings as server_settings
from threadline.config import settings
from threadline.errors import ChatError, TransientFeedError
from threadline.log import setup_logging
from threadline.models import Message, NamedEntry, ReplyQuote, Scope, Session
from threadline.remote import RemoteFeed
from threadline.session import ChatSession

app = typer.Typer(
    help="threadline - realtime group chat over a live change feed",
    no_args_is_help=True,
)

RoomOpt = typer.Option(None, "--room", "-r", help="Room id (omit for the single-room layout)")
ChannelOpt = typer.Option(..., "--channel", "-c", help="Channel id")
UidOpt = typer.Option(None, "--uid", envvar="THREADLINE_UID", help="Your user id")
UsernameOpt = typer.Option(None, "--username", envvar="THREADLINE_USERNAME", help="Your display name")


def _fmt_time(ts: int) -> str:
    return datetime.fromtimestamp(ts / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _format_message(message: Message) -> str:
    edited = " • edited" if message.edited else ""
    return f"[{message.id}] {message.author_name} • {_fmt_time(message.created_at)}{edited}\n    {message.text}"


def _session_user(uid: Optional[str], username: Optional[str]) -> Optional[Session]:
    if not uid:
        return None
    return Session(uid=uid, username=username or uid)


def _run(factory: Callable[[RemoteFeed], Awaitable[Any]]) -> Any:
    """Run one async command against the remote feed, mapping errors to exit codes."""

    async def _main() -> Any:
        async with RemoteFeed.from_settings() as feed:
            return await factory(feed)

    try:
        return asyncio.run(_main())
    except ChatError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Console log level"),
) -> None:
    setup_logging(log_level)


@app.command()
def serve(
    host: str = typer.Option(server_settings.host, "--host", help="Bind address"),
    port: int = typer.Option(server_settings.port, "--port", "-p", help="Port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
) -> None:
    """Start the feed server (REST + WebSocket)."""
    typer.secho("threadline feed server", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  API:  http://{host}:{port}/api")
    typer.echo(f"  WS:   ws://{host}:{port}/ws")
    typer.echo(f"  Data: {server_settings.db_path}")
    uvicorn.run("backend.app.main:app", host=host, port=port, reload=reload, log_config=None)


@app.command()
def rooms(
    watch: bool = typer.Option(False, "--watch", "-w", help="Keep following the room list"),
) -> None:
    """List rooms."""

    def _show(entries: list[NamedEntry]) -> None:
        if watch:
            typer.secho(f"-- {len(entries)} room(s)", fg=typer.colors.GREEN)
        for entry in entries:
            typer.echo(f"{entry.id}  {entry.name}")

    async def _go(feed: RemoteFeed) -> None:
        chat = ChatSession(feed)
        if not watch:
            _show(await chat.list_rooms())
            return
        await chat.watch_rooms(_show)
        try:
            await asyncio.Event().wait()
        finally:
            await chat.close()

    try:
        _run(_go)
    except KeyboardInterrupt:
        typer.echo("")


@app.command()
def channels(room: Optional[str] = typer.Argument(None, help="Room id (omit for single-room)")) -> None:
    """List channels of a room."""

    async def _go(feed: RemoteFeed) -> None:
        chat = ChatSession(feed, single_room=room is None)
        for entry in await chat.list_channels(room):
            typer.echo(f"{entry.id}  {entry.name}")

    _run(_go)


@app.command("create-room")
def create_room(name: str = typer.Argument(..., help="Room name")) -> None:
    """Create a room and print its id."""

    async def _go(feed: RemoteFeed) -> None:
        typer.echo(await ChatSession(feed).create_room(name))

    _run(_go)


@app.command("create-channel")
def create_channel(
    name: str = typer.Argument(..., help="Channel name"),
    room: Optional[str] = RoomOpt,
) -> None:
    """Create a channel and print its id."""

    async def _go(feed: RemoteFeed) -> None:
        chat = ChatSession(feed, single_room=room is None)
        typer.echo(await chat.create_channel(name, room))

    _run(_go)


@app.command()
def tail(
    channel: str = ChannelOpt,
    room: Optional[str] = RoomOpt,
) -> None:
    """Follow a channel live: messages, edits, reply quotes and reactions."""

    def _added(message: Message, index: int) -> None:
        typer.echo(_format_message(message))

    def _changed(old: Message, new: Message) -> None:
        typer.secho(f"(edited) {_format_message(new)}", fg=typer.colors.YELLOW)

    def _quote(reply: Message, quote: ReplyQuote) -> None:
        typer.secho(f"    ↪ [{reply.id}] replying to {quote.render()}", fg=typer.colors.CYAN)

    def _reactions(message_id: str, counts: dict[str, int]) -> None:
        shown = "  ".join(f"{emoji} {count}" for emoji, count in counts.items()) or "(none)"
        typer.secho(f"    [{message_id}] reactions: {shown}", fg=typer.colors.MAGENTA)

    async def _go(feed: RemoteFeed) -> None:
        chat = ChatSession(
            feed,
            single_room=room is None,
            on_message_added=_added,
            on_message_changed=_changed,
            on_quote=_quote,
            on_reactions=_reactions,
        )
        await chat.switch_scope(Scope(room_id=room, channel_id=channel))
        typer.secho(f"Following {chat.scope} (Ctrl+C to stop)", fg=typer.colors.GREEN)
        try:
            await asyncio.Event().wait()
        finally:
            await chat.close()

    try:
        _run(_go)
    except KeyboardInterrupt:
        typer.echo("")


async def _open(
    feed: RemoteFeed, room: Optional[str], channel: str, user: Optional[Session], load: bool = True
) -> ChatSession:
    """Attach to a channel; with ``load`` also wait for its message window."""
    chat = ChatSession(feed, user, single_room=room is None)
    scope = Scope(room_id=room, channel_id=channel)
    await chat.switch_scope(scope)
    if load and not await chat.wait_loaded(settings.request_timeout):
        await chat.close()
        raise TransientFeedError(f"timed out loading {scope}")
    return chat


@app.command()
def send(
    text: str = typer.Argument(..., help="Message text"),
    channel: str = ChannelOpt,
    room: Optional[str] = RoomOpt,
    uid: Optional[str] = UidOpt,
    username: Optional[str] = UsernameOpt,
    reply_to: Optional[str] = typer.Option(None, "--reply-to", help="Id of the message to reply to"),
) -> None:
    """Post a message (optionally as a reply) and print its id."""

    async def _go(feed: RemoteFeed) -> None:
        chat = await _open(feed, room, channel, _session_user(uid, username), load=bool(reply_to))
        try:
            if reply_to:
                target = chat.store.get(reply_to)
                if target is None:
                    typer.secho(f"Message {reply_to} is not in the loaded window", fg=typer.colors.RED, err=True)
                    raise typer.Exit(code=1)
                chat.set_reply_draft(target)
            typer.echo(await chat.send(text))
        finally:
            await chat.close()

    _run(_go)


@app.command()
def edit(
    message_id: str = typer.Argument(..., help="Id of your message"),
    text: str = typer.Argument(..., help="New text"),
    channel: str = ChannelOpt,
    room: Optional[str] = RoomOpt,
    uid: Optional[str] = UidOpt,
    username: Optional[str] = UsernameOpt,
) -> None:
    """Edit one of your own messages."""

    async def _go(feed: RemoteFeed) -> None:
        chat = await _open(feed, room, channel, _session_user(uid, username), load=False)
        try:
            await chat.edit(message_id, text)
            typer.secho("Edited.", fg=typer.colors.GREEN)
        finally:
            await chat.close()

    _run(_go)


@app.command()
def react(
    message_id: str = typer.Argument(..., help="Message id"),
    emoji: str = typer.Argument(..., help="Emoji to toggle"),
    channel: str = ChannelOpt,
    room: Optional[str] = RoomOpt,
    uid: Optional[str] = UidOpt,
    username: Optional[str] = UsernameOpt,
) -> None:
    """Toggle an emoji reaction on a message."""

    async def _go(feed: RemoteFeed) -> None:
        chat = await _open(feed, room, channel, _session_user(uid, username))
        try:
            added = await chat.toggle_reaction(message_id, emoji)
            counts = chat.reactions.snapshot(message_id)
            typer.echo(f"{'Added' if added else 'Removed'} {emoji} now {counts.get(emoji, 0)}")
        finally:
            await chat.close()

    _run(_go)


@app.command()
def search(
    query: str = typer.Argument(..., help="Text, author name or emoji"),
    channel: str = ChannelOpt,
    room: Optional[str] = RoomOpt,
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum results"),
) -> None:
    """Search the loaded window of a channel, newest first."""

    async def _go(feed: RemoteFeed) -> None:
        chat = await _open(feed, room, channel, None)
        try:
            hits = chat.search(query, limit=limit)
            for message in hits:
                typer.echo(_format_message(message))
            if not hits:
                typer.secho("No matches.", fg=typer.colors.YELLOW)
        finally:
            await chat.close()

    _run(_go)


if __name__ == "__main__":
    app()
