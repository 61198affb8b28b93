"""Line protocol spoken by the video matrix.

Commands are ASCII lines terminated with CRLF::

    SET SW in<N> out<M>     route input N (0 = off) to output M
    GET MP all              list every output's current input

A query answers with one ``MP in<N> out<M>`` line per output, possibly
mixed with banner or blank lines that are ignored.
"""

from __future__ import annotations

import logging
import re

from matrixgate.domain.models import RoutingSnapshot

logger = logging.getLogger(__name__)

LINE_END = "\r\n"

QUERY_ALL_COMMAND = "GET MP all" + LINE_END

# Only these commands may be written to the device.
COMMAND_PATTERN = re.compile(r"(?:SET SW in\d{1,2} out\d{1,2}|GET MP all)\r\n")

MAPPING_PATTERN = re.compile(r"MP\s+in(\d+)\s+out(\d+)", re.IGNORECASE)


def switch_command(input_number: int, output_number: int) -> str:
    """Build the command routing *input_number* to *output_number*."""
    return f"SET SW in{input_number} out{output_number}{LINE_END}"


def is_valid_command(command: str) -> bool:
    return COMMAND_PATTERN.fullmatch(command) is not None


def parse_routing(
    response: str,
    max_input: int | None = None,
    max_output: int | None = None,
) -> dict[int, int]:
    """Extract the output -> input table from a ``GET MP all`` response.

    Lines that do not match are skipped. When the same output appears
    more than once the last line wins. If *max_input* / *max_output* are
    given, lines naming numbers outside the matrix are skipped too.
    """
    routes: dict[int, int] = {}
    for line in response.splitlines():
        match = MAPPING_PATTERN.search(line)
        if match is None:
            continue
        input_number, output_number = int(match.group(1)), int(match.group(2))
        if output_number < 1 or (max_output is not None and output_number > max_output):
            logger.debug("Ignoring mapping for unknown output: %r", line)
            continue
        if max_input is not None and input_number > max_input:
            logger.debug("Ignoring mapping for unknown input: %r", line)
            continue
        routes[output_number] = input_number
    return routes


def parse_snapshot(
    response: str,
    max_input: int | None = None,
    max_output: int | None = None,
) -> RoutingSnapshot:
    return RoutingSnapshot(routes=parse_routing(response, max_input, max_output))
