"""LBM核心：速度集合、幾何、物理策略與網格主體"""

from .velocity_sets import VelocitySet, D1Q3, D2Q9, D3Q19, velocity_set
from .geometry import BoundaryPoint, ObstaclePoint, NodeType, ConstructionInfo, build_lattice
from .equilibrium import DefaultEquilibrium
from .collisions import BGKCollision, TRTCollision
from .boundaries import BounceBackPolicy, PSBounceBackPolicy, ZouHePolicy
from .initializers import VelocityInitializer
from .lattice import Lattice, LatticeConfiguration

__all__ = [
    'VelocitySet', 'D1Q3', 'D2Q9', 'D3Q19', 'velocity_set',
    'BoundaryPoint', 'ObstaclePoint', 'NodeType', 'ConstructionInfo', 'build_lattice',
    'DefaultEquilibrium',
    'BGKCollision', 'TRTCollision',
    'BounceBackPolicy', 'PSBounceBackPolicy', 'ZouHePolicy',
    'VelocityInitializer',
    'Lattice', 'LatticeConfiguration',
]
