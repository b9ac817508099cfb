import argparse
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import Settings, load_settings, parse_relay_url
from .cooldown import format_remaining
from .errors import CheckInError, ConfigurationError
from .events import (
    CheckInReceived,
    ConnectionChanged,
    CooldownTick,
    ErrorNotice,
    Event,
    EventStream,
    HistoryReady,
    OnlineCountChanged,
)
from .messages import CheckIn
from .node import CheckInClient, RelayServer, static_token_provider

"""
run_node.py — single entry point to run the check-in network in different modes.

What you can do here:
- Relay:   the broadcast server every client connects through
- Client:  a long-running watcher that prints the live check-in board
- CLI:     one-shot helpers (checkin, history, online)
"""

logger = logging.getLogger(__name__)

CLI_WAIT_SECONDS = 5.0


# -------------------------
# Terminal rendering
# -------------------------

def time_ago(ts: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    seconds = int((now - ts).total_seconds())
    if seconds < 20:
        return "just now"
    if seconds < 60:
        return f"{seconds} seconds ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    days = hours // 24
    return f"{days} day{'' if days == 1 else 's'} ago"


def initials(identity: str) -> str:
    """Avatar fallback: first letters of up to two name parts."""
    parts = [p for p in identity.replace("-", " ").replace("_", " ").split() if p]
    if not parts:
        return "?"
    return "".join(p[0] for p in parts[:2]).upper()


def render_checkin(checkin: CheckIn, now: Optional[datetime] = None, me: Optional[str] = None) -> str:
    avatar = "" if checkin.avatar_ref else f"({initials(checkin.identity)}) "
    line = f"{avatar}{checkin.identity}"
    if me is not None and checkin.identity == me:
        line += " (you)"
    line += f" · {time_ago(checkin.timestamp, now)}"
    if checkin.pending:
        line += " · sending…"
    if checkin.tags:
        line += "  [" + ", ".join(checkin.tags) + "]"
    if checkin.message:
        line += f"\n    {checkin.message}"
    if checkin.decorative_snippet:
        line += f"\n    {checkin.decorative_snippet}"
    return line


def print_board(entries: List[CheckIn], me: Optional[str] = None) -> None:
    print("=" * 60)
    if not entries:
        print("No check-ins yet.")
    for checkin in entries:
        print(render_checkin(checkin, me=me))
    print("=" * 60)


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_relay(settings: Settings, host: str, port: int) -> None:
    """Spin up the relay and serve forever on host:port."""
    relay = RelayServer(host, port, settings)
    await relay.start()


def make_client(settings: Settings, **options) -> CheckInClient:
    return CheckInClient(settings, identity_provider=static_token_provider(settings.auth_token), **options)


async def run_client(settings: Settings, ident: Optional[str] = None) -> None:
    """
    Connect and keep a live board in the terminal. This is the single
    subscriber loop over the client's event stream. `ident`, when given, marks
    our own entry on the board.
    """
    client = make_client(settings)
    await client.start()
    try:
        async for event in client.events:
            if isinstance(event, ConnectionChanged):
                suffix = f" ({event.error})" if event.error else ""
                print(f"[connection] {event.state.value}{suffix}")
            elif isinstance(event, HistoryReady):
                print_board(client.snapshot(), ident)
            elif isinstance(event, CheckInReceived):
                if event.changed and client.connection.history_complete:
                    print_board(client.snapshot(), ident)
            elif isinstance(event, OnlineCountChanged):
                print(f"[online] {event.count} developer{'' if event.count == 1 else 's'} online")
            elif isinstance(event, CooldownTick):
                print(f"[cooldown] {format_remaining(event.remaining)}")
            elif isinstance(event, ErrorNotice):
                print(f"[relay] {event.error}")
    finally:
        await client.stop()


async def wait_for(events: EventStream, predicate: Callable[[Event], bool], timeout: float) -> Optional[Event]:
    """Pull events until one matches, or give up after `timeout` seconds."""
    async def _scan() -> Event:
        while True:
            event = await events.get()
            if predicate(event):
                return event

    try:
        return await asyncio.wait_for(_scan(), timeout)
    except asyncio.TimeoutError:
        return None


# -------------------------
# One-shot CLI (handy for tests and scripts)
# -------------------------

async def run_cli(settings: Settings, args: argparse.Namespace) -> None:
    """
    Minimal CLI client:
      - checkin:   submit one check-in and wait for the relay's echo
      - history:   print the relay's recent history
      - online:    print how many clients are connected
    """
    client = make_client(settings, auto_reconnect=False)
    await client.start()
    if not client.connected:
        await client.stop()
        raise SystemExit(f"Could not connect to relay at {settings.relay_url}")

    try:
        if args.command == "checkin":
            if not args.ident:
                raise SystemExit("--id is required for checkin")
            sent = await client.submit(args.ident, " ".join(args.message or []), args.tags or [])
            if sent is None:
                raise SystemExit(f"Cooling down: {client.cooldown.formatted()}")

            def settled(event: Event) -> bool:
                if isinstance(event, ErrorNotice):
                    return True
                # History replayed on connect carries older entries for the same identity.
                return (
                    isinstance(event, CheckInReceived)
                    and event.checkin.identity == sent.identity
                    and event.checkin.timestamp == sent.timestamp
                    and not event.checkin.pending
                )

            result = await wait_for(client.events, settled, CLI_WAIT_SECONDS)
            if isinstance(result, ErrorNotice):
                raise SystemExit(f"Relay rejected check-in: {result.error}")
            if result is None:
                print("Check-in sent, but the relay has not confirmed it yet.")
            else:
                print(render_checkin(result.checkin))

        elif args.command == "history":
            await wait_for(client.events, lambda e: isinstance(e, HistoryReady), CLI_WAIT_SECONDS)
            print_board(client.snapshot())

        elif args.command == "online":
            await client.request_online_users()
            event = await wait_for(client.events, lambda e: isinstance(e, OnlineCountChanged), CLI_WAIT_SECONDS)
            print(f"{client.online_count if event is None else event.count} online")

        else:
            raise SystemExit("cli mode needs a command: checkin, history or online")
    except CheckInError as exc:
        raise SystemExit(f"Check-in failed: {exc}") from exc
    finally:
        await client.stop()


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse modes and subcommands.

    Quick examples:
      Relay:        checkins-node --mode relay --host 127.0.0.1 --port 9000
      Client:       checkins-node --mode client --id alice --relay tcp://127.0.0.1:9000
      CLI checkin:  checkins-node --mode cli --id alice checkin --tag python debugging
      CLI history:  checkins-node --mode cli history
    """
    p = argparse.ArgumentParser(prog="checkins-node")
    p.add_argument("--mode", choices=["relay", "client", "cli"], required=True)
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("--id", dest="ident")
    p.add_argument("--relay", dest="relay_url", help="relay URL, e.g. tcp://127.0.0.1:9000")
    p.add_argument("--env-file", default=os.getenv("CHECKINS_ENV"))

    sub = p.add_subparsers(dest="command")
    sub.required = False

    sp = sub.add_parser("checkin")
    sp.add_argument("--tag", dest="tags", action="append", help="activity tag (up to 3)")
    sp.add_argument("message", nargs=argparse.REMAINDER)

    sub.add_parser("history")
    sub.add_parser("online")

    return p.parse_args(argv)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    try:
        settings = load_settings(args.env_file)
        if args.relay_url:
            parse_relay_url(args.relay_url)
            settings.relay_url = args.relay_url
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.mode == "relay":
        default_host, default_port = parse_relay_url(settings.relay_url)
        asyncio.run(run_relay(settings, args.host or default_host, args.port or default_port))

    elif args.mode == "client":
        asyncio.run(run_client(settings, args.ident))

    elif args.mode == "cli":
        asyncio.run(run_cli(settings, args))


if __name__ == "__main__":
    main()
