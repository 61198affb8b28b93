"""Command gateway: the single path from an API call to the wire.

Each operation checks the caller's permission, validates its
parameters, and only then talks to the :class:`MatrixLink`. A
successful switch invalidates the :class:`StatusCache`; routing queries
are answered from the cache while it is fresh.
"""

from __future__ import annotations

import asyncio
import logging

from matrixgate.auth.access import AccessControl
from matrixgate.config.settings import MatrixConfig
from matrixgate.domain.models import Permission, RoutingSnapshot, Session
from matrixgate.errors import EmptyResponseError, InvalidParameterError
from matrixgate.matrix.cache import StatusCache
from matrixgate.matrix.link import MatrixLink
from matrixgate.matrix.protocol import QUERY_ALL_COMMAND, parse_snapshot, switch_command

logger = logging.getLogger(__name__)


class CommandGateway:
    def __init__(
        self,
        access: AccessControl,
        link: MatrixLink,
        cache: StatusCache,
        inputs: int = 8,
        outputs: int = 8,
        query_timeout: float | None = None,
    ) -> None:
        self._access = access
        self._link = link
        self._cache = cache
        self._inputs = inputs
        self._outputs = outputs
        self._query_timeout = query_timeout
        self._query_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: MatrixConfig,
        access: AccessControl,
        link: MatrixLink,
        cache: StatusCache,
    ) -> CommandGateway:
        return cls(
            access=access,
            link=link,
            cache=cache,
            inputs=config.inputs,
            outputs=config.outputs,
            query_timeout=config.query_timeout,
        )

    @property
    def link(self) -> MatrixLink:
        return self._link

    @property
    def cache(self) -> StatusCache:
        return self._cache

    async def switch_route(self, session: Session | None, input_number: int, output_number: int) -> str:
        """Route *input_number* (0 = off) to *output_number*.

        Returns the device's acknowledgment with surrounding whitespace
        removed.

        Raises:
            NotAuthenticatedError / ForbiddenError: The caller may not switch.
            InvalidParameterError: A number is outside the matrix.
            LinkError: The device could not be reached.
        """
        self._access.require(session, Permission.SWITCH)
        if not _in_range(input_number, 0, self._inputs):
            raise InvalidParameterError("Invalid input value")
        if not _in_range(output_number, 1, self._outputs):
            raise InvalidParameterError("Invalid output value")

        response = await self._link.send(switch_command(input_number, output_number))
        self._cache.invalidate()
        logger.info(
            "Routed input %d to output %d%s",
            input_number, output_number,
            f" ({session.username})" if session is not None else "",
        )
        return response.strip()

    async def query_routing(self, session: Session | None) -> RoutingSnapshot:
        """Return the output -> input table, from cache when fresh.

        Raises:
            NotAuthenticatedError / ForbiddenError: The caller may not query.
            EmptyResponseError: The device answered without any mapping line.
            LinkError: The device could not be reached.
        """
        self._access.require(session, Permission.QUERY)
        cached = self._cache.get()
        if cached is not None:
            logger.debug("Routing served from cache")
            return cached

        # concurrent misses share one wire query
        async with self._query_lock:
            cached = self._cache.get()
            if cached is not None:
                return cached
            response = await self._link.send(QUERY_ALL_COMMAND, timeout=self._query_timeout)
            snapshot = parse_snapshot(response, max_input=self._inputs, max_output=self._outputs)
            if not snapshot.routes:
                logger.error("Status query returned no mappings: %r", response[:200])
                raise EmptyResponseError(
                    "No mapping data received", command=QUERY_ALL_COMMAND.strip()
                )
            self._cache.put(snapshot)
            return snapshot

    async def connect(self, session: Session | None) -> bool:
        """Open the device link on demand (subject to the reconnect cooldown)."""
        self._access.require(session, Permission.SWITCH)
        return await self._link.ensure_connected()

    async def disconnect(self, session: Session | None) -> None:
        self._access.require(session)
        await self._link.disconnect()

    def status(self, session: Session | None) -> dict[str, object]:
        self._access.require(session)
        return {
            "connected": self._link.is_connected,
            "device_address": self._link.host,
            "device_port": self._link.port,
        }


def _in_range(value: object, low: int, high: int) -> bool:
    # bool is an int subclass; reject it explicitly
    if not isinstance(value, int) or isinstance(value, bool):
        return False
    return low <= value <= high
