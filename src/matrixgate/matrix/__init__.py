"""Matrix device access for matrixgate.

Public API:
    MatrixLink -- Serialized connection to the device with retry/backoff
    StatusCache -- Freshness-bounded routing snapshot cache
    CommandGateway -- Permission-checked switch/query operations
"""

from matrixgate.matrix.cache import StatusCache
from matrixgate.matrix.gateway import CommandGateway
from matrixgate.matrix.link import MatrixLink

__all__ = ["CommandGateway", "MatrixLink", "StatusCache"]
