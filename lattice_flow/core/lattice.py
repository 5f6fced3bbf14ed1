"""
格子Boltzmann模擬主體

LatticeConfiguration 將速度集合、執行策略與各物理策略綁成一組；
Lattice 擁有分佈函數與巨觀量欄位，並以固定順序推進時間步：

    (a) 初始化器更新邊界目標速度
    (b) 串流 (pull)
    (c) 邊界策略
    (d) 碰撞
    (e) 巨觀量計算

每個階段在下一階段開始前完全結束。
"""

import sys
import time
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ..config.core import OBSTACLE_SUBSAMPLES, STABILITY_CHECK_INTERVAL
from ..error_handling import ConfigurationError, GeometryError, phase_guard
from ..diagnostics.lbm_diagnostics import LBMDiagnostics
from ..diagnostics.numerical_stability import NumericalStabilityMonitor
from .backends.compute_backends import ExecutionStrategy, ExecutionStrategyFactory, NodeKernel
from .boundaries import BounceBackPolicy, PSBounceBackPolicy, ZouHePolicy
from .collisions import COLLISIONS, CollisionPolicy
from .equilibrium import DefaultEquilibrium
from .geometry import (
    BoundaryPoint, ConstructionInfo, NodeType, ObstaclePoint, build_lattice,
    solid_adjacent_to_fluid, to_coords,
)
from .initializers import VelocityInitializer
from .velocity_sets import VelocitySet, velocity_set as lookup_velocity_set

logger = logging.getLogger(__name__)


@dataclass
class LatticeConfiguration:
    """一組相容的策略：每個 Lattice 擁有各自的實例"""
    velocity_set: VelocitySet
    strategy: ExecutionStrategy
    equilibrium: DefaultEquilibrium
    collision: CollisionPolicy
    bounce_back: BounceBackPolicy
    psbb: PSBounceBackPolicy
    inlet: ZouHePolicy
    outlet: ZouHePolicy
    initializer: VelocityInitializer

    @classmethod
    def create(cls, velocity_set: str = "D2Q9", execution: str = "sequential",
               collision: str = "trt", max_workers: Optional[int] = None,
               arch: str = "cpu", outlet_mode: str = "velocity",
               outlet_density: float = 1.0) -> "LatticeConfiguration":
        """
        由名稱建立策略組

        Raises:
            ConfigurationError: 未知的速度集合、執行策略或碰撞模型
        """
        vs = lookup_velocity_set(velocity_set)
        strategy = ExecutionStrategyFactory.create(execution, max_workers=max_workers, arch=arch)
        if collision not in COLLISIONS:
            raise ConfigurationError(f"未知的碰撞模型: {collision}", {"phase": "config"})
        equilibrium = DefaultEquilibrium(vs)
        return cls(
            velocity_set=vs,
            strategy=strategy,
            equilibrium=equilibrium,
            collision=COLLISIONS[collision](equilibrium, strategy),
            bounce_back=BounceBackPolicy(vs, strategy),
            psbb=PSBounceBackPolicy(equilibrium, strategy),
            inlet=ZouHePolicy(equilibrium, strategy, mode="velocity"),
            outlet=ZouHePolicy(equilibrium, strategy, mode=outlet_mode, density=outlet_density),
            initializer=VelocityInitializer(strategy),
        )

    @property
    def policies(self):
        return (self.initializer, self.bounce_back, self.psbb,
                self.inlet, self.outlet, self.collision)


class Lattice:
    """
    格子Boltzmann網格

    欄位為 C 連續 float64 陣列：
        populations (*dims, Q), density (*dims), velocity (*dims, D)
    """

    def __init__(self, configuration: LatticeConfiguration):
        self.configuration = configuration
        self.velocity_set = configuration.velocity_set
        self.strategy = configuration.strategy
        self._dims = None
        self._node_types = None
        self._populations = None
        self._density = None
        self._velocity = None
        self._obstacle_weight = None
        self._obstacle_spheres = ()
        self._weights_computed = False
        self._nodes = {}
        self._sources = None
        self.time_step = 0
        self.stability_monitor = NumericalStabilityMonitor()
        self.diagnostics = LBMDiagnostics(self)

    # ===========================================
    # 建構
    # ===========================================

    def build(self, info: ConstructionInfo) -> "Lattice":
        return build_lattice(self, info)

    def set_node_types(self, node_types, obstacle_spheres: Sequence = ()) -> None:
        """
        設定節點分類並配置欄位、節點清單與各策略

        Raises:
            GeometryError: 維度不符、分類值不合法、或 Zou-He 節點不在周界
        """
        types = np.ascontiguousarray(node_types, dtype=np.int8)
        vs = self.velocity_set
        if types.ndim != vs.dim:
            raise GeometryError(f"節點分類維度 {types.ndim} 與速度集合 {vs.name} 不符",
                                {"phase": "geometry"})
        valid = np.isin(types, [int(t) for t in NodeType])
        if not valid.all():
            raise GeometryError(f"不合法的節點分類值: {np.unique(types[~valid])}",
                                {"phase": "geometry"})

        self._dims = tuple(types.shape)
        self._node_types = types
        self._obstacle_spheres = tuple(obstacle_spheres)
        self._weights_computed = False
        flat = types.reshape(-1)
        self._nodes = {t: np.flatnonzero(flat == t).astype(np.intp) for t in NodeType}
        self._nodes["wall"] = solid_adjacent_to_fluid(types, vs.c, NodeType.BOUNDARY)
        self._sources = self._build_source_table()

        self._populations = np.zeros(self._dims + (vs.q,), dtype=np.float64)
        self._density = np.ones(self._dims, dtype=np.float64)
        self._velocity = np.zeros(self._dims + (vs.dim,), dtype=np.float64)
        self._obstacle_weight = np.zeros(self._dims, dtype=np.float64)
        self._obstacle_weight.reshape(-1)[self.obstacle_nodes] = 1.0

        cfg = self.configuration
        cfg.collision.attach_nodes(self.collision_nodes)
        cfg.bounce_back.attach_nodes(self.wall_nodes)
        cfg.psbb.attach_nodes(self.obstacle_nodes, np.ones(self.obstacle_nodes.size))
        with phase_guard("geometry"):
            cfg.inlet.attach_nodes(self.inlet_nodes, self._dims)
            cfg.outlet.attach_nodes(self.outlet_nodes, self._dims)
        cfg.initializer.set_dimensions(self._dims)
        # 壓力出口的速度由 Zou-He 求得，不需要更新函數
        outlets = self.outlet_nodes if cfg.outlet.mode == "velocity" else self.outlet_nodes[:0]
        cfg.initializer.attach_nodes(self._points(self.inlet_nodes), self._points(outlets))

        self.initialize_fields()
        logger.info(f"🧱 網格就緒 {self._dims} ({vs.name}, {self.strategy.backend_type}): "
                    f"流體 {self.fluid_nodes.size}, 壁面 {self.wall_nodes.size}, "
                    f"障礙物 {self.obstacle_nodes.size}, 入口 {self.inlet_nodes.size}, "
                    f"出口 {self.outlet_nodes.size}")

    def _points(self, nodes):
        return [BoundaryPoint(tuple(x)) for x in to_coords(nodes, self._dims)]

    def obstacle_points(self) -> List[ObstaclePoint]:
        """障礙物節點座標與目前權重"""
        weights = self._obstacle_weight.reshape(-1)
        return [ObstaclePoint(tuple(x), float(weights[n]))
                for n, x in zip(self.obstacle_nodes, to_coords(self.obstacle_nodes, self._dims))]

    def _build_source_table(self) -> np.ndarray:
        """
        pull 串流來源表 (N, Q)：sources[n, q] = n - c_q

        來源落在網格外時指向節點自身，串流後保留原值。
        """
        dims = np.asarray(self._dims)
        n_nodes = int(np.prod(dims))
        own = np.arange(n_nodes, dtype=np.intp)
        coords = to_coords(own, self._dims)
        sources = np.empty((n_nodes, self.velocity_set.q), dtype=np.intp)
        for q, cq in enumerate(self.velocity_set.c):
            src = coords - cq
            inside = np.all((src >= 0) & (src < dims), axis=1)
            clipped = np.clip(src, 0, dims - 1)
            sources[:, q] = np.where(inside, np.ravel_multi_index(tuple(clipped.T), self._dims), own)
        return sources

    def _require_built(self):
        if self._dims is None:
            raise ConfigurationError("網格尚未建構：請先呼叫 build() 或 set_node_types()",
                                     {"phase": "setup"})

    def initialize_fields(self, density: float = 1.0, velocity=None) -> None:
        """以平衡態初始化分佈函數；BOUNDARY 節點速度為零"""
        self._require_built()
        self._density[...] = density
        if velocity is None:
            self._velocity[...] = 0.0
        else:
            self._velocity[...] = np.asarray(velocity, dtype=np.float64)
        self._velocity[self._node_types == NodeType.BOUNDARY] = 0.0
        if np.any(self._density <= 0):
            raise ConfigurationError("初始密度必須為正", {"phase": "setup"})
        eq = self.configuration.equilibrium.populations(
            self._density.reshape(-1), self._velocity.reshape(-1, self.velocity_set.dim))
        self._populations.reshape(-1, self.velocity_set.q)[...] = eq
        self.time_step = 0

    def compute_obstacle_weight(self) -> np.ndarray:
        """
        計算障礙物節點的固體佔據權重

        超球內的節點以每軸 OBSTACLE_SUBSAMPLES 個子取樣點估計覆蓋比例，
        限制於 (0, 1]；其餘障礙物節點權重為 1。
        """
        self._require_built()
        nodes = self.obstacle_nodes
        weights = np.ones(nodes.size, dtype=np.float64)
        if nodes.size and self._obstacle_spheres:
            dim = len(self._dims)
            s = OBSTACLE_SUBSAMPLES
            axis_offsets = (np.arange(s) + 0.5) / s - 0.5
            offsets = np.stack(np.meshgrid(*([axis_offsets] * dim), indexing="ij"), axis=-1).reshape(-1, dim)
            centres = to_coords(nodes, self._dims).astype(np.float64)
            in_sphere = np.zeros(nodes.size, dtype=bool)
            covered = np.zeros((nodes.size, offsets.shape[0]), dtype=bool)
            for sphere in self._obstacle_spheres:
                in_sphere |= sphere.contains(centres)
                covered |= sphere.contains(centres[:, None, :] + offsets[None, :, :])
            fraction = np.clip(covered.mean(axis=1), 1.0 / offsets.shape[0], 1.0)
            weights[in_sphere] = fraction[in_sphere]

        self.configuration.psbb.attach_nodes(nodes, weights)
        self._obstacle_weight.setflags(write=True)
        self._obstacle_weight.reshape(-1)[nodes] = weights
        self._obstacle_weight.setflags(write=False)
        self._weights_computed = True
        logger.info(f"🪨 障礙物權重: {nodes.size} 節點, 平均 w = "
                    f"{weights.mean() if nodes.size else 0.0:.4f}")
        return self._obstacle_weight

    def restore_state(self, populations, density, velocity, step: int) -> None:
        self._require_built()
        self._populations[...] = populations
        self._density[...] = density
        self._velocity[...] = velocity
        self.time_step = int(step)

    # ===========================================
    # 時間推進
    # ===========================================

    def _flat(self):
        vs = self.velocity_set
        return (self._populations.reshape(-1, vs.q), self._density.reshape(-1),
                self._velocity.reshape(-1, vs.dim))

    def stream(self) -> None:
        F, _, _ = self._flat()
        snapshot = F.copy()
        sources = self._sources
        directions = np.arange(self.velocity_set.q)

        def host(batch):
            F[batch] = snapshot[sources[batch], directions]

        def device(kernels, nodes):
            kernels.stream(F, snapshot, sources, nodes)

        self.strategy.for_each(np.arange(F.shape[0], dtype=np.intp), NodeKernel("stream", host, device))

    def apply_boundaries(self) -> None:
        cfg = self.configuration
        fields = (self._populations, self._density, self._velocity)
        cfg.bounce_back.apply(*fields)
        cfg.psbb.apply(*fields)
        cfg.inlet.apply(*fields)
        cfg.outlet.apply(*fields)

    def compute_macroscopic(self) -> None:
        """
        FLUID/OBSTACLE: ρ 與 u；INLET/OUTLET: 只更新 ρ (速度保持目標值)；
        BOUNDARY: ρ 且 u = 0
        """
        F, R, U = self._flat()
        vs = self.velocity_set
        c = vs.c
        groups = (
            (0, np.concatenate([self.fluid_nodes, self.obstacle_nodes])),
            (1, np.concatenate([self.inlet_nodes, self.outlet_nodes])),
            (2, self.boundary_nodes),
        )
        for mode, nodes in groups:
            def host(batch, mode=mode):
                fb = F[batch]
                rho = fb.sum(axis=1)
                R[batch] = rho
                if mode == 0:
                    U[batch] = (fb @ c) / rho[:, None]
                elif mode == 2:
                    U[batch] = 0.0

            def device(kernels, batch, mode=mode):
                kernels.macroscopic(F, R, U, batch, vs, mode)

            self.strategy.for_each(nodes, NodeKernel("macroscopic", host, device))

    def check_stability(self, step: Optional[int] = None):
        return self.stability_monitor.check(self._density, self._velocity,
                                            mask=self.non_wall_mask, step=step)

    def seal(self) -> None:
        """封存所有策略；之後的 attach/initialize 呼叫皆拋出 ConfigurationError"""
        self._require_built()
        if self.obstacle_nodes.size and not self._weights_computed:
            self.compute_obstacle_weight()
        for policy in self.configuration.policies:
            if not policy.sealed:
                policy.seal()

    def perform_lbm(self, num_steps: int, macroscopic_output_interval: int = 0,
                    checkpoint_interval: int = 0, output_dir: Optional[str] = None,
                    stability_interval: int = STABILITY_CHECK_INTERVAL) -> None:
        """
        執行 num_steps 個時間步

        Args:
            num_steps: 時間步數
            macroscopic_output_interval: 每幾步寫出巨觀量快照 (0 = 不輸出)
            checkpoint_interval: 每幾步寫出檢查點 (0 = 不輸出)
            output_dir: 輸出目錄
            stability_interval: 每幾步檢查數值穩定性 (0 = 不檢查)

        Raises:
            ConfigurationError: 策略前置條件不滿足
            NumericalInstabilityError: 數值發散
            ComputeExecutionError: 階段內其他錯誤
        """
        if num_steps < 0:
            raise ConfigurationError(f"步數不可為負: {num_steps}", {"phase": "setup"})
        with phase_guard("setup"):
            self.seal()

        cfg = self.configuration
        logger.info(f"🚀 開始模擬: {num_steps} 步 ({self.strategy.backend_type})")
        start = time.time()

        for _ in range(num_steps):
            step = self.time_step
            with phase_guard("initialize", step):
                cfg.initializer.update_nodes(float(step), self._velocity, self._density)
            with phase_guard("stream", step):
                self.stream()
            with phase_guard("boundary", step):
                self.apply_boundaries()
            with phase_guard("collide", step):
                cfg.collision.collide(self._populations, self._density, self._velocity)
            with phase_guard("macroscopic", step):
                self.compute_macroscopic()
            self.time_step += 1

            if stability_interval > 0 and self.time_step % stability_interval == 0:
                with phase_guard("stability", step):
                    self.check_stability(step)
            if macroscopic_output_interval > 0 and self.time_step % macroscopic_output_interval == 0:
                with phase_guard("output", step):
                    self.diagnostics.update_diagnostics()
                    self.diagnostics.write_snapshot(self.time_step, output_dir)
            if checkpoint_interval > 0 and self.time_step % checkpoint_interval == 0:
                with phase_guard("checkpoint", step):
                    self.diagnostics.write_checkpoint(self.time_step, output_dir)
            logger.debug(f"step {self.time_step} 完成")

        elapsed = time.time() - start
        logger.info(f"✅ 模擬完成: {num_steps} 步, {elapsed:.2f}s")

    # ===========================================
    # 輸出
    # ===========================================

    def print_lattice_structure(self, stream=None, verbose: bool = False) -> None:
        """輸出網格結構；verbose 時列出所有非流體節點"""
        self._require_built()
        stream = stream or sys.stdout
        vs = self.velocity_set
        stream.write(f"Lattice dimensions: {' x '.join(str(n) for n in self._dims)}\n")
        stream.write(f"Velocity set: {vs.name} (D={vs.dim}, Q={vs.q})\n")
        stream.write(f"Execution: {self.strategy.backend_type}\n")
        for t in NodeType:
            stream.write(f"{t.name}: {self._nodes[t].size}\n")
        if not verbose:
            return
        for t in (NodeType.BOUNDARY, NodeType.INLET, NodeType.OUTLET):
            for x in to_coords(self._nodes[t], self._dims):
                stream.write(f"{t.name} " + " ".join(str(int(v)) for v in x) + "\n")
        for point in self.obstacle_points():
            stream.write("OBSTACLE " + " ".join(str(v) for v in point.coords)
                         + f" w={point.weight:.6f}\n")
        self.configuration.initializer.print_data(stream)

    # ===========================================
    # 屬性
    # ===========================================

    @property
    def dimensions(self):
        return self._dims

    @property
    def populations(self) -> np.ndarray:
        return self._populations

    @property
    def density(self) -> np.ndarray:
        return self._density

    @property
    def velocity(self) -> np.ndarray:
        return self._velocity

    @property
    def node_types(self) -> np.ndarray:
        return self._node_types

    @property
    def obstacle_weight(self) -> np.ndarray:
        return self._obstacle_weight

    @property
    def non_wall_mask(self) -> np.ndarray:
        return self._node_types != NodeType.BOUNDARY

    @property
    def fluid_nodes(self) -> np.ndarray:
        return self._nodes[NodeType.FLUID]

    @property
    def collision_nodes(self) -> np.ndarray:
        """碰撞作用的節點：FLUID 與 Zou-He 入口/出口 (重建後仍需鬆弛)"""
        return np.sort(np.concatenate([self.fluid_nodes, self.inlet_nodes, self.outlet_nodes]))

    @property
    def boundary_nodes(self) -> np.ndarray:
        return self._nodes[NodeType.BOUNDARY]

    @property
    def wall_nodes(self) -> np.ndarray:
        """與非壁面節點相鄰的 BOUNDARY 節點 (反彈作用的節點)"""
        return self._nodes["wall"]

    @property
    def obstacle_nodes(self) -> np.ndarray:
        return self._nodes[NodeType.OBSTACLE]

    @property
    def inlet_nodes(self) -> np.ndarray:
        return self._nodes[NodeType.INLET]

    @property
    def outlet_nodes(self) -> np.ndarray:
        return self._nodes[NodeType.OUTLET]

    def close(self) -> None:
        self.strategy.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
