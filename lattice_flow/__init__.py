"""
lattice_flow - 策略驅動的格子Boltzmann引擎

同一份碰撞/串流/邊界演算法可在順序、執行緒池、資料平行與
Taichi 卸載四種執行策略下運行。
"""

from .core import (
    BoundaryPoint, ObstaclePoint, NodeType, ConstructionInfo, build_lattice,
    Lattice, LatticeConfiguration,
)
from .error_handling import (
    CFDError, ConfigurationError, GeometryError,
    NumericalInstabilityError, ComputeExecutionError,
)

__version__ = "0.1.0"

__all__ = [
    'BoundaryPoint', 'ObstaclePoint', 'NodeType', 'ConstructionInfo', 'build_lattice',
    'Lattice', 'LatticeConfiguration',
    'CFDError', 'ConfigurationError', 'GeometryError',
    'NumericalInstabilityError', 'ComputeExecutionError',
]
