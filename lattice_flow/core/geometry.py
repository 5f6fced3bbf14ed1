"""
格點分類與幾何建構

提供節點類型、邊界點記錄，以及由使用者描述 (周界、區間、障礙物)
建構節點分類陣列的 ConstructionInfo / build_lattice。
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from ..error_handling import GeometryError

logger = logging.getLogger(__name__)


class NodeType(IntEnum):
    """節點分類，每個節點恰屬一類"""
    FLUID = 0
    BOUNDARY = 1    # 靜態固體壁面
    OBSTACLE = 2    # 固體，可帶部分佔據權重
    INLET = 3
    OUTLET = 4


@dataclass(frozen=True)
class BoundaryPoint:
    """入口/出口節點座標，建構後不可變"""
    coords: Tuple[int, ...]

    def __post_init__(self):
        object.__setattr__(self, "coords", tuple(int(x) for x in self.coords))

    @property
    def dim(self) -> int:
        return len(self.coords)


@dataclass(frozen=True)
class ObstaclePoint:
    """障礙物節點座標與固體佔據權重 w ∈ [0, 1]"""
    coords: Tuple[int, ...]
    weight: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "coords", tuple(int(x) for x in self.coords))
        if not 0.0 <= self.weight <= 1.0:
            raise GeometryError(f"障礙物權重必須在 [0, 1]: {self.weight}")


@dataclass(frozen=True)
class HyperSphere:
    center: Tuple[float, ...]
    radius: float

    def contains(self, points: np.ndarray) -> np.ndarray:
        """points (..., D) 是否位於球內"""
        d2 = np.sum((points - np.asarray(self.center, dtype=np.float64)) ** 2, axis=-1)
        return d2 <= self.radius ** 2


# ===========================================
# 座標工具
# ===========================================

def to_linear(coords, dims: Sequence[int]) -> np.ndarray:
    """座標 (N, D) 轉為線性索引 (N,)；越界時拋出 GeometryError"""
    coords = np.asarray(coords, dtype=np.intp).reshape(-1, len(dims))
    if coords.size and (np.any(coords < 0) or np.any(coords >= np.asarray(dims))):
        bad = coords[np.any((coords < 0) | (coords >= np.asarray(dims)), axis=1)][0]
        raise GeometryError(f"座標 {tuple(bad)} 超出網格範圍 {tuple(dims)}")
    if coords.shape[0] == 0:
        return np.empty(0, dtype=np.intp)
    return np.ravel_multi_index(tuple(coords.T), tuple(dims)).astype(np.intp)


def to_coords(indices: np.ndarray, dims: Sequence[int]) -> np.ndarray:
    """線性索引 (N,) 轉為座標 (N, D)"""
    return np.stack(np.unravel_index(np.asarray(indices, dtype=np.intp), tuple(dims)), axis=-1)


def points_to_linear(points: Iterable[BoundaryPoint], dims: Sequence[int]) -> np.ndarray:
    coords = [p.coords for p in points]
    for p in coords:
        if len(p) != len(dims):
            raise GeometryError(f"點 {p} 維度與網格 {tuple(dims)} 不符")
    return to_linear(np.array(coords, dtype=np.intp).reshape(-1, len(dims)), dims)


def find_duplicates(indices: np.ndarray) -> np.ndarray:
    values, counts = np.unique(indices, return_counts=True)
    return values[counts > 1]


def inward_normals(indices: np.ndarray, dims: Sequence[int]) -> np.ndarray:
    """
    計算周界節點的向內法向量

    節點位於某軸最小邊時該軸分量為 +1，最大邊時為 -1，其餘為 0。
    非周界節點回傳零向量。
    """
    coords = to_coords(indices, dims)
    upper = np.asarray(dims) - 1
    normals = np.zeros_like(coords)
    normals[coords == 0] = 1
    normals[coords == upper] = -1
    return normals


def solid_adjacent_to_fluid(types: np.ndarray, c: np.ndarray, node_type: NodeType) -> np.ndarray:
    """
    回傳 node_type 節點中至少有一個網格內非同類鄰居的線性索引
    """
    dims = types.shape
    candidates = np.flatnonzero(types.reshape(-1) == node_type)
    if candidates.size == 0:
        return candidates.astype(np.intp)
    coords = to_coords(candidates, dims)
    flat_types = types.reshape(-1)
    keep = np.zeros(candidates.size, dtype=bool)
    for cq in c:
        if not cq.any():
            continue
        nb = coords + cq
        inside = np.all((nb >= 0) & (nb < np.asarray(dims)), axis=1)
        if not inside.any():
            continue
        nb_idx = np.ravel_multi_index(tuple(nb[inside].T), dims)
        keep[inside] |= flat_types[nb_idx] != node_type
    return candidates[keep].astype(np.intp)


# ===========================================
# 幾何建構
# ===========================================

class ConstructionInfo:
    """
    網格建構描述

    依加入順序記錄周界、區間與障礙物請求，由 build_lattice 解析為
    節點分類陣列。
    """

    def __init__(self):
        self.dimensions: Tuple[int, ...] = ()
        self.requests: List[Tuple[str, tuple, NodeType]] = []
        self.obstacle_spheres: List[HyperSphere] = []

    def attach_domain_dimensions(self, dims: Sequence[int]):
        dims = tuple(int(n) for n in dims)
        if not dims or any(n < 1 for n in dims):
            raise GeometryError(f"網格尺寸不合法: {dims}")
        self.dimensions = dims
        return self

    def _require_dims(self, length: int):
        if not self.dimensions:
            raise GeometryError("必須先呼叫 attach_domain_dimensions")
        if length != len(self.dimensions):
            raise GeometryError(f"座標維度 {length} 與網格維度 {len(self.dimensions)} 不符")

    def add_perimeter_nodes(self, node_type: NodeType):
        self._require_dims(len(self.dimensions))
        self.requests.append(("perimeter", (), NodeType(node_type)))
        return self

    def add_nodes_interval(self, start: Sequence[int], end: Sequence[int], node_type: NodeType):
        """加入 [start, end] (含端點) 的矩形區間節點"""
        self._require_dims(len(start))
        self._require_dims(len(end))
        if NodeType(node_type) == NodeType.FLUID:
            raise GeometryError("區間節點類型不可為 FLUID")
        self.requests.append(("interval", (tuple(start), tuple(end)), NodeType(node_type)))
        return self

    def add_obstacle_hyper_sphere(self, center: Sequence[float], radius: float):
        self._require_dims(len(center))
        if radius <= 0:
            raise GeometryError(f"障礙物半徑必須為正: {radius}")
        sphere = HyperSphere(tuple(float(x) for x in center), float(radius))
        self.obstacle_spheres.append(sphere)
        self.requests.append(("sphere", (sphere,), NodeType.OBSTACLE))
        return self

    def add_obstacle_hyper_rectangle(self, start: Sequence[int], end: Sequence[int]):
        return self.add_nodes_interval(start, end, NodeType.OBSTACLE)

    def _mask(self, kind: str, args: tuple) -> np.ndarray:
        dims = self.dimensions
        if kind == "perimeter":
            grid = np.indices(dims)
            mask = np.zeros(dims, dtype=bool)
            for axis, n in enumerate(dims):
                mask |= (grid[axis] == 0) | (grid[axis] == n - 1)
            return mask
        if kind == "interval":
            start, end = args
            for s, e, n in zip(start, end, dims):
                if not 0 <= s <= e < n:
                    raise GeometryError(f"區間 {start}-{end} 超出網格 {dims}")
            mask = np.zeros(dims, dtype=bool)
            mask[tuple(slice(s, e + 1) for s, e in zip(start, end))] = True
            return mask
        if kind == "sphere":
            points = np.moveaxis(np.indices(dims), 0, -1).astype(np.float64)
            return args[0].contains(points)
        raise GeometryError(f"未知的建構請求: {kind}")


def _resolve(types: np.ndarray, mask: np.ndarray, node_type: NodeType, label: str):
    current = types[mask]
    # INLET/OUTLET 可覆寫 BOUNDARY；BOUNDARY 不覆寫 INLET/OUTLET
    override = (current == NodeType.BOUNDARY) & np.isin(node_type, (NodeType.INLET, NodeType.OUTLET))
    keep_io = (node_type == NodeType.BOUNDARY) & np.isin(current, (NodeType.INLET, NodeType.OUTLET))
    conflict = ~((current == NodeType.FLUID) | (current == node_type) | override | keep_io)
    if np.any(conflict):
        coords = np.argwhere(mask)[np.flatnonzero(conflict)[0]]
        other = NodeType(int(current[np.flatnonzero(conflict)[0]]))
        raise GeometryError(
            f"節點 {tuple(int(x) for x in coords)} 同時被分類為 {other.name} 與 {node_type.name} ({label})",
            {"phase": "geometry"})
    assign = ~keep_io
    sub = types[mask]
    sub[assign] = node_type
    types[mask] = sub


def build_node_types(info: ConstructionInfo) -> np.ndarray:
    """解析 ConstructionInfo 為節點分類陣列"""
    if not info.dimensions:
        raise GeometryError("ConstructionInfo 尚未設定網格尺寸", {"phase": "geometry"})
    types = np.full(info.dimensions, NodeType.FLUID, dtype=np.int8)
    for kind, args, node_type in info.requests:
        _resolve(types, info._mask(kind, args), node_type, kind)
    return types


def build_lattice(lattice, info: ConstructionInfo):
    """
    由 ConstructionInfo 建構網格並將節點清單交給各策略

    Args:
        lattice: Lattice 實例
        info: 建構描述

    Raises:
        GeometryError: 節點分類衝突或越界
    """
    types = build_node_types(info)
    counts = {t.name: int(np.count_nonzero(types == t)) for t in NodeType}
    logger.info(f"🏗️ 網格建構完成 {info.dimensions}: {counts}")
    lattice.set_node_types(types, obstacle_spheres=info.obstacle_spheres)
    return lattice
