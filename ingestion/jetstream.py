"""
Jetstream Ingestor

Consumes the real-time commit stream over a websocket and hands each decoded
message to an event handler. Unexpected closes are retried with capped
exponential backoff on an event-loop timer:

    delay(attempt) = min(base * 2 ** (attempt - 1), cap)

States:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED    -> RECONNECTING -> CONNECTING -> ...
    any          -> CLOSED        (disconnect(), or reconnect budget exhausted)

Usage:
    ingestor = JetstreamIngestor(handler, ['app.test.post'])
    await ingestor.connect()
    await ingestor.wait_closed()      # raises StreamConnectionError on give-up
"""

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.config import DEFAULT_JETSTREAM_URL
from core.errors import StreamClosedError, StreamConnectionError

logger = logging.getLogger(__name__)


EventHandler = Callable[[Any], Union[None, Awaitable[None]]]

# Errors that mean "the transport is unavailable", as opposed to bugs
TRANSPORT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class ConnectionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    RECONNECTING = 'reconnecting'
    CLOSED = 'closed'


class JetstreamIngestor:
    """
    Reconnecting websocket consumer for one Jetstream instance.

    The connector is injectable; it is called with the subscribe URL and
    must return an awaitable resolving to an async-iterable connection with
    an async close().
    """

    def __init__(
        self,
        handler: EventHandler,
        wanted_collections: List[str],
        instance_url: Optional[str] = None,
        max_reconnect_attempts: int = 10,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        reconnect: bool = True,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        on_failure: Optional[Callable[[Exception], None]] = None
    ):
        """
        Args:
            handler: Called with every decoded message (sync or async)
            wanted_collections: Collections to subscribe to
            instance_url: Jetstream base URL
            max_reconnect_attempts: Attempts before giving up
            base_delay: First reconnect delay in seconds
            max_delay: Reconnect delay cap in seconds
            reconnect: Reconnect after unexpected closes
            connector: Websocket opener; defaults to websockets.connect
            on_failure: Called once with the terminal StreamConnectionError
        """
        self.handler = handler
        self.wanted_collections = list(wanted_collections)
        self.instance_url = (instance_url or DEFAULT_JETSTREAM_URL).rstrip('/')
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.connector = connector or websockets.connect
        self.on_failure = on_failure

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempt = 0
        self.last_reconnect_delay: Optional[float] = None
        self.last_time_us: Optional[int] = None
        self.failure: Optional[StreamConnectionError] = None
        self.messages_received = 0

        self._should_reconnect = reconnect
        self._ws = None
        self._reader: Optional[asyncio.Future] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Future] = None
        self._closed = asyncio.Event()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def reconnect_delay(self, attempt: int) -> float:
        """Delay in seconds before reconnect attempt `attempt` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def construct_url(self) -> str:
        """Subscribe URL, resuming from the last seen event when there is one."""
        params = {}
        if self.wanted_collections:
            params['wantedCollections'] = ','.join(self.wanted_collections)
        if self.last_time_us is not None:
            params['cursor'] = str(self.last_time_us)
        return f'{self.instance_url}/subscribe?{urlencode(params, safe=",")}'

    async def connect(self) -> None:
        """
        Open the stream.

        Raises:
            StreamClosedError: if the ingestor was closed
            OSError / WebSocketException: if the first attempt fails (a
                reconnect is already scheduled when this propagates)
        """
        if self.state is ConnectionState.CLOSED:
            raise StreamClosedError()
        await self._open()

    async def disconnect(self) -> None:
        """Close the stream for good; no further reconnects happen."""
        self._should_reconnect = False
        self.state = ConnectionState.CLOSED

        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        current = asyncio.current_task()
        if self._reconnect_task is not None and self._reconnect_task is not current:
            self._reconnect_task.cancel()
        self._reconnect_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f'Error closing websocket: {e}')

        reader, self._reader = self._reader, None
        if reader is not None and reader is not current and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        self._closed.set()
        logger.info('Disconnected from Jetstream')

    async def wait_closed(self) -> None:
        """
        Wait until the ingestor is closed.

        Raises:
            StreamConnectionError: if it closed because reconnecting gave up
        """
        await self._closed.wait()
        if self.failure is not None:
            raise self.failure

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def _open(self) -> None:
        self.state = ConnectionState.CONNECTING
        url = self.construct_url()

        try:
            ws = await self.connector(url)
        except TRANSPORT_ERRORS as e:
            logger.warning(f'Jetstream connection failed: {e}', extra={'url': url})
            if self.state is not ConnectionState.CLOSED:
                self.state = ConnectionState.DISCONNECTED
                self._schedule_reconnect()
            raise

        if self.state is ConnectionState.CLOSED:
            await ws.close()
            return

        self._ws = ws
        self.state = ConnectionState.CONNECTED
        self.reconnect_attempt = 0
        self._reader = asyncio.ensure_future(self._read_loop(ws))
        logger.info('Connected to Jetstream', extra={'url': url})

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect:
            self._finish()
            return

        if self.reconnect_attempt >= self.max_reconnect_attempts:
            logger.error(f'Failed to reconnect after {self.max_reconnect_attempts} attempts')
            self._finish(StreamConnectionError(
                f'Failed to reconnect after {self.max_reconnect_attempts} attempts',
                attempts=self.reconnect_attempt
            ))
            return

        self.reconnect_attempt += 1
        delay = self.reconnect_delay(self.reconnect_attempt)
        self.last_reconnect_delay = delay
        self.state = ConnectionState.RECONNECTING

        logger.info(
            f'Attempting to reconnect ({self.reconnect_attempt}/{self.max_reconnect_attempts}) '
            f'in {delay:g} seconds'
        )
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._start_reconnect)

    def _start_reconnect(self) -> None:
        self._retry_handle = None
        if self.state is ConnectionState.CLOSED:
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        logger.info(f'Reconnecting... Attempt {self.reconnect_attempt}')
        try:
            await self._open()
        except TRANSPORT_ERRORS:
            # _open() already scheduled the next attempt
            pass

    def _finish(self, failure: Optional[StreamConnectionError] = None) -> None:
        self.state = ConnectionState.CLOSED
        self.failure = failure
        self._closed.set()

        if failure is not None and self.on_failure is not None:
            try:
                self.on_failure(failure)
            except Exception:
                logger.exception('on_failure callback raised')

    def _on_close(self, ws) -> None:
        if self._ws is ws:
            self._ws = None
        self._reader = None
        if self.state is ConnectionState.CLOSED:
            return

        logger.info('Disconnected from Jetstream')
        self.state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    # =========================================================================
    # Messages
    # =========================================================================

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                await self._dispatch(message)
        except ConnectionClosed as e:
            logger.warning(f'Jetstream connection closed: {e}')
        except TRANSPORT_ERRORS as e:
            logger.warning(f'Jetstream read failed: {e}')
        self._on_close(ws)

    async def _dispatch(self, message: Union[str, bytes]) -> None:
        try:
            data = json.loads(message)
        except (ValueError, TypeError) as e:
            logger.error(f'Error decoding message: {e}')
            return

        self.messages_received += 1
        if isinstance(data, dict):
            time_us = data.get('time_us')
            if isinstance(time_us, int) and not isinstance(time_us, bool):
                self.last_time_us = time_us

        try:
            result = self.handler(data)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception('Event handler failed')
