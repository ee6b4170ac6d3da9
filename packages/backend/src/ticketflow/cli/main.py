"""TicketFlow CLI — run the server, mint dev tokens, watch the realtime feed.

Usage:
    ticketflow serve                                  # Run the API + WebSocket server
    ticketflow token user-1 --role agent              # Print an access token
    ticketflow listen --user-id user-1 --ticket 42    # Follow realtime events
    ticketflow notify "Maintenance" "Down at 22:00"   # Broadcast a system notification
    ticketflow health                                 # Server status
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from ticketflow import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("TICKETFLOW_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: Optional[str] = None) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the TicketFlow backend."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. CliRunner inside an async test) by
    offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _token_from_ctx(token: Optional[str]) -> str:
    """Resolve the bearer token from flag or TICKETFLOW_TOKEN env var."""
    tok = token or os.environ.get("TICKETFLOW_TOKEN")
    if not tok:
        click.secho(
            "Error: --token required (or set TICKETFLOW_TOKEN env var)",
            fg="red",
            err=True,
        )
        sys.exit(1)
    return tok


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


_VARIANT_COLORS = {
    "default": "cyan",
    "destructive": "red",
}


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="ticketflow")
def main():
    """TicketFlow — helpdesk backend with realtime WebSocket fan-out."""


# ---------------------------------------------------------------------------
# ticketflow serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: settings.host)")
@click.option("--port", type=int, default=None, help="Port (default: settings.port)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the HTTP + WebSocket server under uvicorn."""
    import uvicorn

    from ticketflow.config import settings

    uvicorn.run(
        "ticketflow.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


# ---------------------------------------------------------------------------
# ticketflow token
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--role", "-r", default=None, help="Role claim (admin, manager, agent, customer)")
@click.option("--expires", type=int, default=None, help="Lifetime in minutes")
def token(user_id: str, role: Optional[str], expires: Optional[int]):
    """Print a signed access token for USER_ID (local development)."""
    from ticketflow.auth.jwt import create_access_token

    click.echo(create_access_token(user_id, role=role, expires_minutes=expires))


# ---------------------------------------------------------------------------
# ticketflow health
# ---------------------------------------------------------------------------


@main.command()
def health():
    """Show server, database and realtime status."""
    _run(_health_impl())


async def _health_impl():
    async with _client() as c:
        r = await c.get("/api/v1/health")
        r.raise_for_status()
        click.echo(_pretty_json(r.json()))


# ---------------------------------------------------------------------------
# ticketflow notify
# ---------------------------------------------------------------------------


@main.command()
@click.argument("title")
@click.argument("message")
@click.option("--variant", default="default", help="default | destructive")
@click.option("--user", "user_ids", multiple=True, help="Recipient user id (repeatable; default everyone)")
@click.option("--token", "-k", help="Admin bearer token (or set TICKETFLOW_TOKEN)")
def notify(title: str, message: str, variant: str, user_ids: tuple[str, ...], token: Optional[str]):
    """Broadcast a system notification."""
    _run(_notify_impl(title, message, variant, list(user_ids), token))


async def _notify_impl(title: str, message: str, variant: str,
                       user_ids: list[str], token: Optional[str]):
    tok = _token_from_ctx(token)
    body = {"title": title, "message": message, "variant": variant}
    if user_ids:
        body["user_ids"] = user_ids

    async with _client(tok) as c:
        r = await c.post("/api/v1/notifications", json=body)
        if r.status_code >= 400:
            click.secho(f"Error {r.status_code}: {r.text}", fg="red", err=True)
            sys.exit(1)
    target = ", ".join(user_ids) if user_ids else "everyone"
    click.secho(f"Notification sent to {target}", fg="green")


# ---------------------------------------------------------------------------
# ticketflow listen
# ---------------------------------------------------------------------------


@main.command()
@click.option("--url", default=None, help="Server origin (default: TICKETFLOW_API_URL)")
@click.option("--user-id", "-u", required=True, help="Principal to authenticate as")
@click.option("--token", "-k", default=None, help="Access token (or set TICKETFLOW_TOKEN)")
@click.option("--ticket", "tickets", multiple=True, help="Ticket id to subscribe to (repeatable)")
def listen(url: Optional[str], user_id: str, token: Optional[str], tickets: tuple[str, ...]):
    """Connect over WebSocket and print every event, invalidation and notice."""
    try:
        _run(_listen_impl(url or _api_url(), user_id, token or os.environ.get("TICKETFLOW_TOKEN"), tickets))
    except KeyboardInterrupt:
        click.echo()


async def _listen_impl(url: str, user_id: str, token: Optional[str], tickets: tuple[str, ...],
                       connector=None, sleep=None):
    from ticketflow.client.cache import QueryCache
    from ticketflow.client.channel import ReconnectingChannel
    from ticketflow.client.router import InvalidationRouter

    def show_notice(notice):
        color = _VARIANT_COLORS.get(notice.variant, "white")
        click.secho(f"  ! {notice.title}", fg=color, bold=True)
        if notice.description:
            click.echo(f"    {notice.description}")

    def show_result(event, result):
        click.secho(f"[{event.timestamp:%H:%M:%S}] {event.type}", bold=True)
        if result is None:
            return
        if result.dropped:
            click.secho("  (duplicate, dropped)", fg="yellow")
        for key in result.invalidated:
            click.echo(f"  ~ {' / '.join(str(part) for part in key)}")

    router = InvalidationRouter(QueryCache(), notify=show_notice, principal=lambda: user_id)
    async with ReconnectingChannel(
        url, router,
        notify=show_notice, on_result=show_result, connector=connector, sleep=sleep,
    ) as channel:
        click.secho(f"Listening on {channel.url} as {user_id} (Ctrl-C to stop)", fg="cyan")
        for ticket_id in tickets:
            await channel.subscribe(ticket_id)
        await channel.authenticate(user_id, token)
        await channel.gave_up.wait()
        click.secho(
            f"Error: gave up reconnecting to {channel.url} after {channel.state.attempts} retries",
            fg="red",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
