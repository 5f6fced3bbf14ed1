"""
平衡態分佈函數

f_eq = w ρ (1 + c·u/cs² + (c·u)²/(2cs⁴) − u²/(2cs²))
"""

import numpy as np

from ..config.core import INV_CS2
from .velocity_sets import VelocitySet


class DefaultEquilibrium:
    """
    二階截斷 Maxwell-Boltzmann 平衡態

    純函數：輸出僅取決於方向、密度與速度。純量與批次形式使用相同
    的運算順序，使各執行策略結果逐位一致。
    """

    def __init__(self, velocity_set: VelocitySet):
        self.velocity_set = velocity_set

    def equilibrium(self, direction: int, density: float, velocity) -> float:
        vs = self.velocity_set
        u = np.asarray(velocity, dtype=np.float64)
        cu = float(np.dot(vs.c[direction], u))
        usq = float(np.dot(u, u))
        return float(vs.w[direction] * density *
                     (1.0 + INV_CS2 * cu + 0.5 * INV_CS2 * INV_CS2 * cu * cu - 0.5 * INV_CS2 * usq))

    def populations(self, density: np.ndarray, velocity: np.ndarray) -> np.ndarray:
        """
        批次計算平衡態

        Args:
            density: (M,)
            velocity: (M, D)

        Returns:
            (M, Q) 平衡態分佈
        """
        vs = self.velocity_set
        density = np.asarray(density, dtype=np.float64)
        velocity = np.asarray(velocity, dtype=np.float64)
        cu = velocity @ vs.c.T
        usq = np.sum(velocity * velocity, axis=-1)[..., None]
        return vs.w * density[..., None] * (
            1.0 + INV_CS2 * cu + 0.5 * INV_CS2 * INV_CS2 * cu * cu - 0.5 * INV_CS2 * usq)

    def __call__(self, direction, density, velocity):
        return self.equilibrium(direction, density, velocity)
