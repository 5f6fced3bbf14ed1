"""
離散速度集合 (DdQq)

每個速度集合為不可變的速度向量與權重表，並提供靜止方向索引
與反向方向映射 (bounce-back 所需)。
"""

from typing import Dict, Sequence

import numpy as np

from ..error_handling import ConfigurationError


class VelocitySet:
    """
    DdQq 離散速度集合

    Attributes:
        name: 名稱，例如 "D2Q9"
        c: 離散速度向量 (Q, D) int
        w: 權重 (Q,)
        opposite: 反向方向索引 (Q,)，滿足 c[opposite[q]] == -c[q]
        rest_index: 靜止方向 (零速度) 索引
    """

    def __init__(self, name: str, c: Sequence[Sequence[int]], w: Sequence[float]):
        c = np.array(c, dtype=np.int64)
        w = np.array(w, dtype=np.float64)
        if c.ndim != 2 or c.shape[0] != w.shape[0]:
            raise ConfigurationError(f"{name}: 速度向量與權重數量不符")
        if abs(w.sum() - 1.0) > 1e-12:
            raise ConfigurationError(f"{name}: 權重總和 {w.sum()} ≠ 1.0")

        self.name = name
        self.c = c
        self.w = w
        self.opposite = self._find_opposites(c)
        rest = np.flatnonzero(~c.any(axis=1))
        if rest.size != 1:
            raise ConfigurationError(f"{name}: 必須恰有一個靜止方向")
        self.rest_index = int(rest[0])

        for arr in (self.c, self.w, self.opposite):
            arr.setflags(write=False)

    @staticmethod
    def _find_opposites(c: np.ndarray) -> np.ndarray:
        opposite = np.empty(c.shape[0], dtype=np.int64)
        for q, cq in enumerate(c):
            match = np.flatnonzero((c == -cq).all(axis=1))
            if match.size != 1:
                raise ConfigurationError(f"方向 {q} 沒有唯一的反向方向")
            opposite[q] = match[0]
        return opposite

    @property
    def dim(self) -> int:
        return self.c.shape[1]

    @property
    def q(self) -> int:
        return self.c.shape[0]

    def __repr__(self):
        return f"VelocitySet({self.name})"


D1Q3 = VelocitySet(
    "D1Q3",
    c=[[0], [1], [-1]],
    w=[2.0/3.0, 1.0/6.0, 1.0/6.0],
)

# 0: 靜止, 1-4: 軸向, 5-8: 對角
D2Q9 = VelocitySet(
    "D2Q9",
    c=[[0, 0], [1, 0], [0, 1], [-1, 0], [0, -1],
       [1, 1], [-1, 1], [-1, -1], [1, -1]],
    w=[4.0/9.0] + [1.0/9.0]*4 + [1.0/36.0]*4,
)

D3Q19 = VelocitySet(
    "D3Q19",
    c=[[0, 0, 0],
       [1, 0, 0], [-1, 0, 0], [0, 1, 0], [0, -1, 0], [0, 0, 1], [0, 0, -1],      # 1-6: 面鄰居
       [1, 1, 0], [-1, -1, 0], [1, -1, 0], [-1, 1, 0],                          # 7-10: xy邊
       [1, 0, 1], [-1, 0, -1], [1, 0, -1], [-1, 0, 1],                          # 11-14: xz邊
       [0, 1, 1], [0, -1, -1], [0, 1, -1], [0, -1, 1]],                         # 15-18: yz邊
    w=[1.0/3.0] + [1.0/18.0]*6 + [1.0/36.0]*12,
)

VELOCITY_SETS: Dict[str, VelocitySet] = {vs.name: vs for vs in (D1Q3, D2Q9, D3Q19)}


def velocity_set(name: str) -> VelocitySet:
    """依名稱取得速度集合"""
    try:
        return VELOCITY_SETS[name.upper()]
    except KeyError:
        raise ConfigurationError(
            f"不支援的速度集合: {name} (可用: {', '.join(VELOCITY_SETS)})") from None
