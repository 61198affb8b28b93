"""matrixgate -- HTTP control gateway for a telnet-driven video matrix.

This package exposes a small REST API that switches routes on a hardware
video-routing matrix over its line-oriented TCP protocol. Every command
passes through session authentication, per-permission authorization and
brute-force lockout before it is serialized onto the single device link.
"""

__version__ = "0.1.0"
