"""
入口/出口速度初始化器

每個時間步開始時，以使用者提供的逐維度函數 fn[j](time, point)
更新入口與出口節點的目標速度。
"""

import sys
import logging
from typing import Callable, List, Optional, Sequence

import numpy as np

from ..error_handling import ConfigurationError, GeometryError, NumericalInstabilityError
from .backends.compute_backends import NodeKernel
from .geometry import BoundaryPoint, find_duplicates, points_to_linear, to_coords
from .policy import Policy

logger = logging.getLogger(__name__)

UpdateFunction = Callable[[float, BoundaryPoint], float]


class VelocityInitializer(Policy):
    """
    速度初始化器

    節點與更新函數皆為實例狀態；重新 attach_nodes 會取代先前的節點集合。
    """

    def __init__(self, strategy, dimensions: Optional[Sequence[int]] = None):
        super().__init__(strategy)
        self.dimensions = tuple(dimensions) if dimensions is not None else None
        self.inlet_points: List[BoundaryPoint] = []
        self.outlet_points: List[BoundaryPoint] = []
        self.inlet_nodes = np.empty(0, dtype=np.intp)
        self.outlet_nodes = np.empty(0, dtype=np.intp)
        self.inlet_functions: Optional[Sequence[UpdateFunction]] = None
        self.outlet_functions: Optional[Sequence[UpdateFunction]] = None

    def set_dimensions(self, dimensions: Sequence[int]) -> None:
        self._check_mutable("set_dimensions")
        self.dimensions = tuple(int(n) for n in dimensions)

    def attach_nodes(self, inlet_points: Sequence[BoundaryPoint],
                     outlet_points: Sequence[BoundaryPoint]) -> None:
        """
        註冊入口與出口節點，取代先前的註冊

        Raises:
            ConfigurationError: 尚未設定網格尺寸
            GeometryError: 座標重複或超出網格
        """
        self._check_mutable("attach_nodes")
        if self.dimensions is None:
            raise ConfigurationError("VelocityInitializer: 尚未設定網格尺寸", {"phase": "setup"})
        inlet_points = [p if isinstance(p, BoundaryPoint) else BoundaryPoint(p) for p in inlet_points]
        outlet_points = [p if isinstance(p, BoundaryPoint) else BoundaryPoint(p) for p in outlet_points]
        inlets = points_to_linear(inlet_points, self.dimensions)
        outlets = points_to_linear(outlet_points, self.dimensions)

        duplicates = find_duplicates(np.concatenate([inlets, outlets]))
        if duplicates.size:
            coords = tuple(int(x) for x in to_coords(duplicates[:1], self.dimensions)[0])
            raise GeometryError(f"入口/出口節點座標重複: {coords}", {"phase": "setup"})

        self.inlet_points, self.outlet_points = inlet_points, outlet_points
        self.inlet_nodes, self.outlet_nodes = inlets, outlets
        logger.info(f"初始化器節點: {len(inlet_points)} 入口, {len(outlet_points)} 出口")

    def attach_update_functions(self, inlet_functions: Optional[Sequence[UpdateFunction]],
                                outlet_functions: Optional[Sequence[UpdateFunction]]) -> None:
        self._check_mutable("attach_update_functions")
        for label, fns in (("inlet", inlet_functions), ("outlet", outlet_functions)):
            if fns is not None and any(fn is not None and not callable(fn) for fn in fns):
                raise ConfigurationError(f"{label} 更新函數必須可呼叫", {"phase": "setup"})
        self.inlet_functions = inlet_functions
        self.outlet_functions = outlet_functions

    def _functions_for(self, label: str, points, functions):
        if not points:
            return None
        dim = len(self.dimensions)
        if functions is None or len(functions) != dim or any(fn is None for fn in functions):
            raise ConfigurationError(
                f"{len(points)} 個 {label} 節點需要 {dim} 個更新函數", {"phase": "initialize"})
        return functions

    def validate(self) -> None:
        self._functions_for("inlet", self.inlet_points, self.inlet_functions)
        self._functions_for("outlet", self.outlet_points, self.outlet_functions)

    def update_nodes(self, time: float, velocity: np.ndarray, density: Optional[np.ndarray] = None) -> None:
        """
        寫入目標速度：velocity[p + (j,)] = fn[j](time, p)，先入口後出口

        Raises:
            ConfigurationError: 有節點但缺少更新函數
            NumericalInstabilityError: 更新函數回傳非有限值
        """
        if not velocity.flags.c_contiguous:
            raise ConfigurationError("velocity 欄位必須為 C 連續陣列", {"phase": "initialize"})
        U = velocity.reshape(-1, velocity.shape[-1])
        for label, points, nodes, functions in (
                ("inlet", self.inlet_points, self.inlet_nodes, self.inlet_functions),
                ("outlet", self.outlet_points, self.outlet_nodes, self.outlet_functions)):
            functions = self._functions_for(label, points, functions)
            if functions is None:
                continue
            self.strategy.for_each(np.arange(len(points), dtype=np.intp),
                                   self._kernel(label, time, points, nodes, functions, U))

    @staticmethod
    def _evaluate(label, time, points, functions, positions) -> np.ndarray:
        values = np.array([[fn(time, points[k]) for fn in functions] for k in positions],
                          dtype=np.float64).reshape(len(positions), len(functions))
        if not np.all(np.isfinite(values)):
            k = positions[np.flatnonzero(~np.isfinite(values).all(axis=1))[0]]
            raise NumericalInstabilityError(
                f"{label} 更新函數在 t={time} 節點 {points[k].coords} 回傳非有限值",
                {"phase": "initialize"})
        return values

    def _kernel(self, label, time, points, nodes, functions, U) -> NodeKernel:
        def host(positions):
            U[nodes[positions]] = self._evaluate(label, time, points, functions, positions)

        def device(kernels, positions):
            # 使用者函數為任意 Python 可呼叫物件，只能在主機端求值
            values = self._evaluate(label, time, points, functions, positions)
            kernels.scatter_velocity(U, nodes[positions], values)

        return NodeKernel(f"update_{label}", host, device)

    def print_data(self, stream=None) -> None:
        """輸出入口/出口節點座標 (預設 sys.stdout)"""
        stream = stream or sys.stdout
        for label, points in (("Inlet", self.inlet_points), ("Outlet", self.outlet_points)):
            stream.write(f"{label} nodes ({len(points)}):\n")
            for p in points:
                stream.write("  " + " ".join(str(x) for x in p.coords) + "\n")


INITIALIZERS = {
    "velocity": VelocityInitializer,
}
