import asyncio
import logging
import math
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from . import messages as m
from .config import Settings
from .connection import RelayConnection
from .cooldown import CooldownGate, format_remaining
from .errors import (
    INVALID_SIGNATURE,
    MALFORMED,
    RATE_LIMITED,
    STALE_SIGNATURE,
    UNAUTHENTICATED,
    AuthenticationError,
    CheckInError,
    ParseError,
    TransportError,
)
from .events import CheckInReceived, CooldownTick, EventStream
from .framing import read_frame, write_frame
from .history import HistoryBuffer
from .messages import CheckIn
from .snippets import SnippetPicker

"""
node.py — relay + client roles for the check-in network.

Relay:
- Accepts connections, counts them, and broadcasts the count on every change.
- Validates submissions (shape, token, signature, freshness, rate limit) and
  fans accepted ones out to everybody, sender included, with auth data stripped.
- Keeps the authoritative recent history and replays it on hello or request.

Client:
- Wires the relay connection, reconciliation buffer, cooldown gate and signer
  together behind submit()/snapshot(), publishing everything on one EventStream.
"""

logger = logging.getLogger(__name__)

TokenVerifier = Callable[[Optional[str]], Awaitable[Optional[str]]]
TokenProvider = Callable[[], Awaitable[Optional[str]]]
TagSource = Callable[[], Sequence[str]]


def static_token_verifier(tokens: Dict[str, str]) -> TokenVerifier:
    """Verifier backed by a fixed token -> identity table."""
    async def verify(token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return tokens.get(token)
    return verify


def static_token_provider(token: Optional[str]) -> TokenProvider:
    """Identity provider that always hands out the same token (or none)."""
    async def provide() -> Optional[str]:
        return token
    return provide


class ConnectionContext:
    """Tiny wrapper to keep reader/writer and what the handshake told us."""
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.identity: Optional[str] = None
        self.greeted = False

    @property
    def peer(self) -> str:
        return str(self.writer.get_extra_info("peername"))


class RateLimiter:
    """identity -> last accepted submission time. Independent of any client gate."""
    def __init__(self, period: float, clock: Callable[[], float] = time.time) -> None:
        self.period = period
        self.clock = clock
        self._last: Dict[str, float] = {}

    def retry_after(self, identity: str) -> float:
        last = self._last.get(identity)
        if last is None:
            return 0.0
        remaining = self.period - (self.clock() - last)
        if remaining <= 0:
            del self._last[identity]
            return 0.0
        return remaining

    def record(self, identity: str) -> None:
        now = self.clock()
        # Only identities still inside their window are kept.
        expired = [ident for ident, last in self._last.items() if now - last >= self.period]
        for ident in expired:
            del self._last[ident]
        self._last[identity] = now

    def __len__(self) -> int:
        return len(self._last)


class RelayServer:
    """
    Broadcast relay:
      - Optional token handshake (close on failure, everything else stays open).
      - HMAC-checked, freshness-checked, rate-limited submissions.
      - In-memory recent history, newest-per-identity, bounded.
    """
    def __init__(
        self,
        host: str,
        port: int,
        settings: Settings,
        token_verifier: Optional[TokenVerifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.host = host
        self.port = port
        self.secret = settings.signing_secret
        self.max_message_chars = settings.max_message_chars
        self.signature_window_ms = settings.signature_window_seconds * 1000
        self.clock = clock
        self.history = HistoryBuffer(settings.max_history_size)
        self.limiter = RateLimiter(settings.cooldown_period, clock)
        if token_verifier is None and settings.relay_tokens:
            token_verifier = static_token_verifier(settings.relay_tokens)
        self.token_verifier = token_verifier
        self.conn_to_ctx: Dict[asyncio.StreamWriter, ConnectionContext] = {}
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def online_count(self) -> int:
        return len(self.conn_to_ctx)

    @property
    def bound_port(self) -> int:
        """Actual listening port (useful when started on port 0)."""
        if self._server is None or not self._server.sockets:
            return self.port
        return self._server.sockets[0].getsockname()[1]

    async def listen(self) -> asyncio.AbstractServer:
        """Bind and start accepting; returns the asyncio server."""
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Relay listening on %s", addrs)
        return self._server

    async def start(self) -> None:
        """Listen for TCP connections and serve forever."""
        server = await self.listen()
        async with server:
            await server.serve_forever()

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
        for writer in list(self.conn_to_ctx):
            writer.close()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: read frames and pass to process_frame()."""
        ctx = ConnectionContext(reader, writer)
        self.conn_to_ctx[writer] = ctx
        logger.info("Client connected from %s (%d online)", ctx.peer, self.online_count)
        await self.broadcast_online_count()
        try:
            while True:
                try:
                    frame = await read_frame(reader)
                except ParseError as exc:
                    await self.reject(ctx, str(exc), MALFORMED)
                    continue
                if not await self.process_frame(ctx, frame):
                    break
        except asyncio.IncompleteReadError:
            # Peer went away; nothing to do.
            pass
        except (OSError, TransportError) as exc:
            logger.info("Connection error from %s: %s", ctx.peer, exc)
        except Exception:
            logger.exception("Unexpected error on connection from %s", ctx.peer)
        finally:
            self.conn_to_ctx.pop(writer, None)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            logger.info("Client %s disconnected (%d online)", ctx.peer, self.online_count)
            await self.broadcast_online_count()

    async def process_frame(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> bool:
        """Route one frame. Returns False when the connection must be closed."""
        msg_type = frame.get("type")

        if msg_type == m.HELLO:
            return await self.handle_hello(ctx, frame)

        if self.token_verifier is not None and not ctx.greeted:
            await self.reject(ctx, "handshake required", UNAUTHENTICATED)
            return False

        if msg_type == m.CHECKIN:
            return await self.handle_checkin(ctx, frame)

        if msg_type == m.HISTORY_REQUEST:
            await self.replay_history(ctx.writer)
            return True

        if msg_type == m.ONLINE_USERS_REQUEST:
            await self.send(ctx.writer, m.online_users(self.online_count))
            return True

        await self.reject(ctx, f"unknown message type {msg_type!r}", MALFORMED)
        return True

    async def handle_hello(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> bool:
        if self.token_verifier is not None:
            identity = await self.token_verifier(frame.get("authToken"))
            if identity is None:
                await self.reject(ctx, "authentication failed: invalid or missing token", UNAUTHENTICATED)
                return False
            ctx.identity = identity
        ctx.greeted = True
        await self.replay_history(ctx.writer)
        return True

    async def handle_checkin(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> bool:
        try:
            checkin = CheckIn.from_wire(frame)
        except ParseError as exc:
            await self.reject(ctx, str(exc), MALFORMED)
            return True
        if len(checkin.tags) > m.MAX_TAGS:
            await self.reject(ctx, f"at most {m.MAX_TAGS} tags allowed", MALFORMED)
            return True

        if not m.verify_checkin(frame, self.secret):
            await self.reject(ctx, "invalid signature", INVALID_SIGNATURE)
            return True
        if not self._fresh(frame.get("signingTimestamp")):
            await self.reject(ctx, "signature expired", STALE_SIGNATURE)
            return True

        if self.token_verifier is not None:
            identity = ctx.identity
            if frame.get("authToken"):
                identity = await self.token_verifier(frame.get("authToken"))
            if identity is None or identity != checkin.identity:
                await self.reject(ctx, "authentication failed: token does not match identity", UNAUTHENTICATED)
                return False

        retry = self.limiter.retry_after(checkin.identity)
        if retry > 0:
            await self.reject(
                ctx,
                f"please wait {format_remaining(retry)} before checking in again",
                RATE_LIMITED,
                retryAfter=math.ceil(retry),
            )
            return True
        self.limiter.record(checkin.identity)

        accepted = replace(checkin, message=m.truncate_message(checkin.message, self.max_message_chars))
        self.history.upsert(accepted)
        logger.info("Accepted check-in from %s", accepted.identity)
        # to_wire() only emits public fields; token and signature never leave.
        await self.broadcast(accepted.to_wire())
        return True

    def _fresh(self, signing_ts: Any) -> bool:
        try:
            ts = int(signing_ts)
        except (TypeError, ValueError):
            return False
        return abs(self.clock() * 1000 - ts) <= self.signature_window_ms

    async def replay_history(self, writer: asyncio.StreamWriter) -> None:
        """Send the current snapshot oldest-first, then an explicit end marker."""
        for checkin in reversed(self.history.snapshot()):
            await self.send(writer, checkin.to_wire())
        await self.send(writer, m.history_end())

    async def reject(self, ctx: ConnectionContext, message: str, code: str, **extra: Any) -> None:
        logger.info("Rejected frame from %s (%s): %s", ctx.peer, code, message)
        await self.send(ctx.writer, m.error(message, code, **extra))

    async def send(self, writer: asyncio.StreamWriter, frame: Dict[str, Any]) -> None:
        try:
            await write_frame(writer, frame)
        except OSError as exc:
            logger.info("Failed to write to client: %s", exc)

    async def broadcast(self, frame: Dict[str, Any], exclude: Optional[asyncio.StreamWriter] = None) -> None:
        """Best-effort write to all peers except `exclude`. Failures are logged and skipped."""
        for w, ctx in list(self.conn_to_ctx.items()):
            if w is exclude:
                continue
            try:
                await write_frame(w, frame)
            except OSError as exc:
                logger.info("Broadcast to %s failed: %s", ctx.peer, exc)

    async def broadcast_online_count(self) -> None:
        await self.broadcast(m.online_users(self.online_count))


class CheckInClient:
    """
    Client facade:
      - One RelayConnection feeding a HistoryBuffer.
      - Local cooldown gate, checked before anything goes on the wire.
      - Optimistic local echo, marked pending until the relay confirms it.
    """
    def __init__(
        self,
        settings: Settings,
        identity_provider: Optional[TokenProvider] = None,
        tag_source: Optional[TagSource] = None,
        events: Optional[EventStream] = None,
        snippets: Optional[SnippetPicker] = None,
        clock: Callable[[], float] = time.time,
        **connection_options: Any,
    ) -> None:
        self.settings = settings
        self.identity_provider = identity_provider
        self.tag_source = tag_source
        self.events = events or EventStream()
        self.history = HistoryBuffer(settings.max_history_size)
        self.cooldown = CooldownGate(settings.cooldown_period, clock=clock, events=self.events)
        self.snippets = snippets or SnippetPicker(settings.snippets_path)
        self.authenticated = identity_provider is not None
        self.connection = RelayConnection(
            settings.relay_url,
            self.events,
            token_provider=identity_provider,
            on_checkin=self.history.upsert,
            **connection_options,
        )

    @property
    def connected(self) -> bool:
        return self.connection.connected

    @property
    def online_count(self) -> int:
        return self.connection.online_count

    def snapshot(self) -> List[CheckIn]:
        return self.history.snapshot()

    async def start(self) -> None:
        await self.connection.connect()

    async def stop(self) -> None:
        self.cooldown.stop_ticker()
        await self.connection.close()

    async def request_history(self) -> None:
        await self.connection.request_history()

    async def request_online_users(self) -> None:
        await self.connection.request_online_users()

    async def set_authenticated(self, authenticated: bool) -> None:
        """
        Follow the identity provider's sign-in state: connect on sign-in (this
        also clears a previous auth rejection), disconnect on sign-out.
        """
        self.authenticated = authenticated
        if authenticated:
            if not self.connection.connected and self.connection.auto_reconnect:
                await self.connection.connect()
        elif self.connection.connected:
            await self.connection.disconnect()

    async def submit(self, identity: str, message: str = "", tags: Optional[Sequence[str]] = None) -> Optional[CheckIn]:
        """
        Validate, sign and send one check-in.

        Returns the (pending) local copy on success, or None while cooling down;
        the wait is published as a CooldownTick. Raises ValidationError,
        TransportError or AuthenticationError.
        """
        if tags is None and self.tag_source is not None:
            tags = list(self.tag_source())
        checkin = m.new_checkin(
            identity,
            tags,
            message,
            avatar_ref=self.settings.avatar_for(identity),
            decorative_snippet=self.snippets.pick(),
            max_chars=self.settings.max_message_chars,
            pending=True,
        )

        if not self.cooldown.can_submit():
            remaining = self.cooldown.remaining()
            logger.info("Check-in for %s refused locally, %s left", identity, format_remaining(remaining))
            self.events.emit(CooldownTick(remaining))
            return None

        # Claim the slot before the first await so an overlapping submit() sees it.
        previous = self.cooldown.record()
        try:
            if not self.connection.connected:
                raise TransportError("not connected to relay")
            token = await self._submission_token()
            frame = m.signed_checkin_frame(checkin, self.settings.signing_secret, token)
            await self.connection.send(frame)
        except BaseException:
            self.cooldown.restore(previous)
            raise

        self.cooldown.start_ticker()
        changed = self.history.upsert(checkin)
        self.events.emit(CheckInReceived(checkin, changed))
        logger.info("Sent check-in for %s", identity)
        return checkin

    async def _submission_token(self) -> Optional[str]:
        if self.identity_provider is None:
            return None
        try:
            return await asyncio.wait_for(self.identity_provider(), self.connection.token_timeout)
        except asyncio.TimeoutError as exc:
            raise AuthenticationError("identity token fetch timed out") from exc
        except CheckInError:
            raise
        except Exception as exc:  # external collaborator
            raise AuthenticationError(f"identity token fetch failed: {exc}") from exc
