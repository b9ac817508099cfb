import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from . import messages as m
from .config import parse_relay_url
from .errors import (
    UNAUTHENTICATED,
    AuthenticationError,
    CheckInError,
    ParseError,
    TransportError,
    from_notice,
)
from .events import (
    CheckInReceived,
    ConnectionChanged,
    ConnectionState,
    ErrorNotice,
    EventStream,
    HistoryReady,
    OnlineCountChanged,
)
from .framing import read_frame, write_frame
from .messages import CheckIn

"""
connection.py — the client's single relay connection and its lifecycle.

States: DISCONNECTED -> CONNECTING -> OPEN, and back to DISCONNECTED on close
or error. CLOSING is only seen inside an explicit disconnect().

What it owns:
- connect/disconnect/reconnect, with a connect timeout and a settle delay.
- Reconnect with multiplicative backoff after an unexpected close. An auth
  failure from the relay stops the loop until someone reconnects explicitly.
- The "initial history" window after every (re)connect: each replayed
  check-in restarts a short idle timer; silence, an explicit history_end, or
  a hard ceiling ends the window and fires HistoryReady once.
- Parsing inbound frames into events. Bad frames are logged and dropped, the
  connection stays up.

There are no locks here. Everything runs on one event loop, and duplicate
connects are blocked by looking at `state`.
"""

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
TOKEN_TIMEOUT = 10.0
SETTLE_DELAY = 1.0
HISTORY_IDLE = 1.0
HISTORY_CEILING = 3.0

TokenProvider = Callable[[], Awaitable[Optional[str]]]
CheckInSink = Callable[[CheckIn], bool]


class Backoff:
    """Delay before the next reconnect: base, then x factor per failure, capped."""

    def __init__(self, base: float = 5.0, factor: float = 1.5, cap: float = 30.0) -> None:
        self.base = base
        self.factor = factor
        self.cap = cap
        self.current = base

    def next_delay(self) -> float:
        delay = self.current
        self.current = min(self.current * self.factor, self.cap)
        return delay

    def reset(self) -> None:
        self.current = self.base


class RelayConnection:
    def __init__(
        self,
        url: str,
        events: EventStream,
        token_provider: Optional[TokenProvider] = None,
        on_checkin: Optional[CheckInSink] = None,
        auto_reconnect: bool = True,
        backoff: Optional[Backoff] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        token_timeout: float = TOKEN_TIMEOUT,
        settle_delay: float = SETTLE_DELAY,
        history_idle: float = HISTORY_IDLE,
        history_ceiling: float = HISTORY_CEILING,
    ) -> None:
        self.host, self.port = parse_relay_url(url)
        self.events = events
        self.token_provider = token_provider
        self.on_checkin = on_checkin
        self.auto_reconnect = auto_reconnect
        self.backoff = backoff or Backoff()
        self.connect_timeout = connect_timeout
        self.token_timeout = token_timeout
        self.settle_delay = settle_delay
        self.history_idle = history_idle
        self.history_ceiling = history_ceiling

        self.state = ConnectionState.DISCONNECTED
        self.online_count = 0
        self.history_complete = False
        self._receiving_history = False
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._ceiling_timer: Optional[asyncio.TimerHandle] = None
        self._attempt = 0
        self._auth_error: Optional[AuthenticationError] = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    def _set_state(self, state: ConnectionState, error: Optional[CheckInError] = None) -> None:
        self.state = state
        self.events.emit(ConnectionChanged(state, error))

    # -------------------------
    # Lifecycle
    # -------------------------

    async def connect(self) -> None:
        """Open the relay connection. A no-op (status re-emitted) if one is in flight or open."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug("connect() while %s; not starting another attempt", self.state.value)
            self.events.emit(ConnectionChanged(self.state))
            return

        self._cancel_reconnect()
        self._auth_error = None
        self._set_state(ConnectionState.CONNECTING)
        token = await self._fetch_token()
        if self.state is not ConnectionState.CONNECTING:
            # disconnect() ran while we were waiting on the identity provider.
            return

        logger.info("Connecting to relay %s:%d", self.host, self.port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.connect_timeout
            )
        except asyncio.TimeoutError:
            self._connection_failed(
                TransportError(f"connect to {self.host}:{self.port} timed out after {self.connect_timeout}s")
            )
            return
        except OSError as exc:
            self._connection_failed(TransportError(f"connect to {self.host}:{self.port} failed: {exc}"))
            return

        if self.state is not ConnectionState.CONNECTING:
            writer.close()
            return

        self._reader, self._writer = reader, writer
        self.backoff.reset()
        self._set_state(ConnectionState.OPEN)
        logger.info("Connected to relay %s:%d", self.host, self.port)

        self._begin_history()
        self._reader_task = asyncio.create_task(self._read_loop(reader))
        try:
            await write_frame(writer, m.hello(token))
        except (OSError, TransportError) as exc:
            # The read loop sees the dead socket and handles the close.
            logger.warning("Failed to send hello: %s", exc)

    async def disconnect(self) -> None:
        """Tear down deterministically. Always reports DISCONNECTED, even if already closed."""
        self._cancel_reconnect()
        self._cancel_history_timers()
        self._receiving_history = False

        writer, task = self._writer, self._reader_task
        self._reader = self._writer = None
        self._reader_task = None

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if writer is not None:
            self.state = ConnectionState.CLOSING
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as exc:
                logger.debug("Error while closing relay socket: %s", exc)
            logger.info("Disconnected from relay")

        self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> None:
        """
        Drop the current connection (if any), settle, then connect again.

        Every call gets a fresh attempt id; a call that has been overtaken by a
        newer reconnect() while it was settling gives up without doing anything.
        """
        self._attempt += 1
        attempt = self._attempt
        if self.state is not ConnectionState.DISCONNECTED:
            await self.disconnect()
            await asyncio.sleep(self.settle_delay)
        if attempt != self._attempt:
            logger.debug("Reconnect attempt %d superseded by %d", attempt, self._attempt)
            return
        await self.connect()

    async def close(self) -> None:
        """Disconnect for good: no automatic reconnects afterwards."""
        self.auto_reconnect = False
        await self.disconnect()

    async def _fetch_token(self) -> Optional[str]:
        if self.token_provider is None:
            return None
        try:
            return await asyncio.wait_for(self.token_provider(), self.token_timeout)
        except asyncio.TimeoutError:
            logger.warning("Identity token fetch timed out; connecting unauthenticated")
        except Exception as exc:  # external collaborator; any failure means "no token"
            logger.warning("Identity token fetch failed (%s); connecting unauthenticated", exc)
        return None

    # -------------------------
    # Failure handling & backoff
    # -------------------------

    def _connection_failed(self, error: CheckInError) -> None:
        logger.warning("Relay connection failed: %s", error)
        self._cancel_history_timers()
        self._receiving_history = False
        self._set_state(ConnectionState.DISCONNECTED, error)
        self._schedule_reconnect()

    def _handle_closed(self, error: Optional[CheckInError]) -> None:
        writer = self._writer
        self._reader = self._writer = None
        self._reader_task = None
        if writer is not None:
            writer.close()
        if self._auth_error is not None:
            error = self._auth_error
        elif error is None:
            error = TransportError("relay closed the connection")
        self._connection_failed(error)

    def _schedule_reconnect(self) -> None:
        if not self.auto_reconnect:
            return
        if self._auth_error is not None:
            logger.warning("Not reconnecting: relay rejected our credentials")
            return
        delay = self.backoff.next_delay()
        logger.info("Will attempt reconnect in %.1f seconds", delay)
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._delayed_connect(delay, self._attempt))

    async def _delayed_connect(self, delay: float, attempt: int) -> None:
        await asyncio.sleep(delay)
        if attempt != self._attempt:
            return
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # -------------------------
    # Initial history window
    # -------------------------

    def _begin_history(self) -> None:
        self._cancel_history_timers()
        self.history_complete = False
        self._receiving_history = True
        loop = asyncio.get_running_loop()
        self._ceiling_timer = loop.call_later(self.history_ceiling, self._complete_history)

    def _restart_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.history_idle, self._complete_history)

    def _complete_history(self) -> None:
        if not self._receiving_history:
            return
        self._receiving_history = False
        self.history_complete = True
        self._cancel_history_timers()
        self.events.emit(HistoryReady())

    def _cancel_history_timers(self) -> None:
        for timer in (self._idle_timer, self._ceiling_timer):
            if timer is not None:
                timer.cancel()
        self._idle_timer = self._ceiling_timer = None

    # -------------------------
    # Inbound
    # -------------------------

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        """Background task: read frames until the relay goes away."""
        error: Optional[CheckInError] = None
        try:
            while True:
                try:
                    frame = await read_frame(reader)
                except ParseError as exc:
                    logger.warning("Dropping malformed frame from relay: %s", exc)
                    continue
                self._dispatch(frame)
        except asyncio.IncompleteReadError:
            pass  # EOF
        except TransportError as exc:
            error = exc
        except OSError as exc:
            error = TransportError(str(exc))
        self._handle_closed(error)

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        msg_type = frame.get("type")

        if msg_type == m.NEW_CHECKIN:
            try:
                checkin = CheckIn.from_wire(frame)
            except ParseError as exc:
                logger.warning("Dropping malformed check-in: %s", exc)
                return
            changed = self.on_checkin(checkin) if self.on_checkin is not None else True
            if self._receiving_history:
                self._restart_idle_timer()
            self.events.emit(CheckInReceived(checkin, changed))

        elif msg_type == m.ONLINE_USERS:
            count = frame.get("count")
            if not isinstance(count, int) or isinstance(count, bool) or count < 0:
                logger.warning("Dropping online_users frame with bad count %r", count)
                return
            self.online_count = count
            self.events.emit(OnlineCountChanged(count))

        elif msg_type == m.HISTORY_END:
            self._complete_history()

        elif msg_type == m.ERROR:
            code = frame.get("code")
            retry_after = frame.get("retryAfter")
            if not isinstance(retry_after, (int, float)):
                retry_after = None
            error = from_notice(code, str(frame.get("message") or "relay error"), retry_after)
            if code == UNAUTHENTICATED:
                self._auth_error = error
            logger.info("Relay error notice (%s): %s", code, error)
            self.events.emit(ErrorNotice(error))

        else:
            logger.warning("Ignoring frame with unknown type %r", msg_type)

    # -------------------------
    # Outbound
    # -------------------------

    async def send(self, frame: Dict[str, Any]) -> None:
        if self.state is not ConnectionState.OPEN or self._writer is None:
            raise TransportError("not connected to relay")
        try:
            await write_frame(self._writer, frame)
        except OSError as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def request_history(self) -> None:
        """Ask for a replay. Offline, just report what we already have."""
        if self.state is not ConnectionState.OPEN:
            self.history_complete = True
            self.events.emit(HistoryReady())
            return
        self._begin_history()
        await self.send(m.history_request())

    async def request_online_users(self) -> None:
        if self.state is ConnectionState.OPEN:
            await self.send(m.online_users_request())
