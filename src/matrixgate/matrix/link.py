"""Connection manager for the matrix device's TCP line protocol.

The device speaks a half-duplex protocol over a single session: one
command line out, one or more response lines back. Two commands in
flight on the same connection would interleave their responses, so
every operation on :class:`MatrixLink` runs under one ``asyncio.Lock``
and concurrent callers queue.

Reconnection is rate-limited to one attempt per ``reconnect_cooldown``
seconds. Inside :meth:`MatrixLink.send`'s retry loop the reconnects are
paced by ``retry_delay`` instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from matrixgate.config.settings import MatrixConfig
from matrixgate.errors import (
    InvalidCommandError,
    LinkError,
    NotConnectedError,
    RetriesExhaustedError,
)
from matrixgate.matrix.protocol import is_valid_command

logger = logging.getLogger(__name__)

Opener = Callable[[str, int], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

# Errors that mean the transport is unusable and the command may be retried
TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError)


class MatrixLink:
    """Owns the single connection to the matrix device.

    Usage::

        link = MatrixLink(host="192.168.2.142", port=23)
        if await link.ensure_connected():
            ack = await link.send("SET SW in1 out2\\r\\n")
        await link.disconnect()
    """

    def __init__(
        self,
        host: str,
        port: int = 23,
        connect_timeout: float = 2.0,
        send_timeout: float = 1.0,
        response_idle: float = 0.2,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        reconnect_cooldown: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        opener: Opener | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout
        self._send_timeout = send_timeout
        self._response_idle = response_idle
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._reconnect_cooldown = reconnect_cooldown
        self._clock = clock
        self._opener = opener
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._connected = False
        self._last_attempt_at: float | None = None
        self._closed = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: MatrixConfig, opener: Opener | None = None) -> MatrixLink:
        return cls(
            host=config.host,
            port=config.port,
            connect_timeout=config.connect_timeout,
            send_timeout=config.send_timeout,
            response_idle=config.response_idle,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            reconnect_cooldown=config.reconnect_cooldown,
            opener=opener,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def last_attempt_at(self) -> float | None:
        return self._last_attempt_at

    # -------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------

    async def ensure_connected(self) -> bool:
        """Connect if needed. Returns False inside the reconnect cooldown."""
        async with self._lock:
            return await self._ensure_connected(respect_cooldown=True)

    async def _ensure_connected(self, respect_cooldown: bool) -> bool:
        if self._connected:
            return True
        if self._closed:
            return False

        now = self._clock()
        if (
            respect_cooldown
            and self._last_attempt_at is not None
            and now - self._last_attempt_at < self._reconnect_cooldown
        ):
            logger.debug("Reconnect to %s:%d suppressed (cooldown)", self._host, self._port)
            return False
        self._last_attempt_at = now

        opener = self._opener or asyncio.open_connection
        try:
            reader, writer = await asyncio.wait_for(
                opener(self._host, self._port), self._connect_timeout
            )
        except TRANSPORT_ERRORS as e:
            logger.error(
                "Failed to connect to matrix at %s:%d: %s",
                self._host, self._port, _describe(e),
            )
            self._reset()
            return False

        self._reader = reader
        self._writer = writer
        self._connected = True
        logger.info("Connected to video matrix at %s:%d", self._host, self._port)
        return True

    async def disconnect(self) -> None:
        """Close the connection if open; a no-op otherwise.

        Raises:
            LinkError: The transport reported an error while closing. The
                link is marked disconnected regardless.
        """
        async with self._lock:
            if not self._connected:
                return
            writer = self._writer
            self._reset()
            if writer is None:
                return
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), self._connect_timeout)
            except TRANSPORT_ERRORS as e:
                raise LinkError(f"Error closing matrix connection: {_describe(e)}") from e
            logger.info("Disconnected from video matrix")

    async def shutdown(self, timeout: float = 2.0) -> None:
        """Best-effort disconnect for process exit.

        Marks the link closed so a retry loop in progress gives up at its
        next attempt. If a command still holds the lock after *timeout*
        seconds, the transport is closed underneath it.
        """
        self._closed = True
        try:
            await asyncio.wait_for(self.disconnect(), timeout)
        except asyncio.TimeoutError:
            if self._writer is not None:
                self._writer.close()
            self._reset()
            logger.warning("Matrix link closed while a command was in flight")
        except LinkError as e:
            logger.warning("Matrix link shutdown: %s", e)
        logger.info("Matrix link shut down")

    def _reset(self) -> None:
        self._reader = None
        self._writer = None
        self._connected = False

    async def _drop_transport(self) -> None:
        """Discard a failed connection without raising."""
        writer = self._writer
        self._reset()
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), self._connect_timeout)
        except TRANSPORT_ERRORS as e:
            logger.debug("Ignoring error while dropping matrix connection: %s", _describe(e))

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------

    async def send(self, command: str, timeout: float | None = None) -> str:
        """Send one command line and return the raw response text.

        Args:
            command: A complete command including the trailing CRLF.
            timeout: Per-attempt response timeout; defaults to
                ``send_timeout``.

        Raises:
            InvalidCommandError: The command is not on the allow-list.
            NotConnectedError: No connection could be established, or the
                link has been shut down.
            RetriesExhaustedError: Every attempt failed on the transport.
        """
        label = command.strip()
        if not is_valid_command(command):
            logger.error("Rejected command %r", command)
            raise InvalidCommandError("Invalid command format", command=label)

        response_timeout = timeout if timeout is not None else self._send_timeout
        async with self._lock:
            for attempt in range(1, self._max_retries + 1):
                if self._closed:
                    raise NotConnectedError("Matrix link is shut down", command=label)

                if not self._connected:
                    connected = await self._ensure_connected(respect_cooldown=attempt == 1)
                    if not connected and attempt == 1:
                        raise NotConnectedError("Not connected to video matrix", command=label)

                if self._connected:
                    try:
                        response = await self._exchange(command, response_timeout)
                    except TRANSPORT_ERRORS as e:
                        logger.warning(
                            "Command %r failed (attempt %d/%d): %s",
                            label, attempt, self._max_retries, _describe(e),
                        )
                        await self._drop_transport()
                    else:
                        logger.info("Sent: %s | Response: %s", label, response.strip())
                        return response
                else:
                    logger.warning(
                        "Reconnect for %r failed (attempt %d/%d)",
                        label, attempt, self._max_retries,
                    )

                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_delay)

        logger.error("Command %r failed after %d attempts", label, self._max_retries)
        raise RetriesExhaustedError(
            "Command failed after maximum retries",
            command=label,
            attempts=self._max_retries,
        )

    async def _exchange(self, command: str, timeout: float) -> str:
        """Write *command* and collect response lines until the device goes quiet."""
        reader, writer = self._reader, self._writer
        if reader is None or writer is None:
            raise ConnectionError("Matrix connection is not open")

        writer.write(command.encode("ascii"))
        await asyncio.wait_for(writer.drain(), timeout)

        first = await asyncio.wait_for(reader.readline(), timeout)
        if not first:
            raise ConnectionResetError("Connection closed by matrix")

        lines = [first]
        while True:
            try:
                line = await asyncio.wait_for(reader.readline(), self._response_idle)
            except asyncio.TimeoutError:
                break
            if not line:
                break
            lines.append(line)

        if reader.at_eof():
            logger.info("Matrix closed the connection after responding")
            await self._drop_transport()
        return b"".join(lines).decode("ascii", errors="replace")


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
