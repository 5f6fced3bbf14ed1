"""
邊界策略

- BounceBackPolicy: 全反彈 (no-slip 靜止壁面)
- PSBounceBackPolicy: 部分飽和反彈，障礙物節點依固體佔據權重混合
- ZouHePolicy: Zou-He 速度/壓力邊界 (直壁與角點)

每個策略只寫入自己註冊的節點。
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from ..config.core import (
    CS2, INV_CS2, DEFAULT_DELTA_T, MIN_TAU_STABLE, PSBB_DEFAULT_TAU_RANGE,
)
from ..error_handling import ConfigurationError, GeometryError, NumericalInstabilityError
from .backends.compute_backends import NodeKernel
from .collisions import local_moments
from .equilibrium import DefaultEquilibrium
from .geometry import inward_normals, to_coords
from .policy import Policy, flat_fields
from .velocity_sets import VelocitySet

logger = logging.getLogger(__name__)


class BounceBackPolicy(Policy):
    """全反彈：f_q ↔ f_opp(q)，節點速度設為零"""

    def __init__(self, velocity_set: VelocitySet, strategy):
        super().__init__(strategy)
        self.velocity_set = velocity_set
        self.nodes = np.empty(0, dtype=np.intp)

    def attach_nodes(self, wall_nodes) -> None:
        self._check_mutable("attach_nodes")
        self.nodes = np.asarray(wall_nodes, dtype=np.intp).reshape(-1)

    def apply(self, populations, density, velocity) -> None:
        F, _, U = flat_fields(populations, density, velocity)
        opp = self.velocity_set.opposite
        vs = self.velocity_set

        def host(batch):
            F[batch] = F[batch][:, opp]
            U[batch] = 0.0

        def device(kernels, nodes):
            kernels.bounce_back(F, U, nodes, vs)

        self.strategy.for_each(self.nodes, NodeKernel("bounce_back", host, device))


class PSBounceBackPolicy(Policy):
    """
    部分飽和反彈 (Noble-Torczynski 權重)

    對權重 w 的障礙物節點：
        f ← (1 − B) BGK(f) + B f[opp],  B = w(τ̃ − ½) / ((1 − w) + (τ̃ − ½))
    w = 0 時等同流體 BGK 更新，w = 1 時等同全反彈。
    """

    def __init__(self, equilibrium: DefaultEquilibrium, strategy):
        super().__init__(strategy)
        self.equilibrium = equilibrium
        self.velocity_set = equilibrium.velocity_set
        self.nodes = np.empty(0, dtype=np.intp)
        self.weights = np.empty(0, dtype=np.float64)
        self.tau = None
        self.delta_t = DEFAULT_DELTA_T
        self.tau_range: Tuple[float, float] = PSBB_DEFAULT_TAU_RANGE

    @property
    def initialized(self) -> bool:
        return self.tau is not None

    def initialize(self, tau: float, delta_t: float = DEFAULT_DELTA_T) -> None:
        self._check_mutable("initialize")
        if delta_t <= 0:
            raise ConfigurationError(f"Δt 必須為正: {delta_t}", {"phase": "setup"})
        self._check_stable(float(tau), float(delta_t))
        self.tau = float(tau)
        self.delta_t = float(delta_t)
        logger.info(f"PSBB 初始化: τ={self.tau}, Δt={self.delta_t}")

    def allowed_tau(self, tau_min: float, tau_max: float) -> None:
        self._check_mutable("allowed_tau")
        if not tau_min < tau_max:
            raise ConfigurationError(f"τ 範圍不合法: [{tau_min}, {tau_max}]", {"phase": "setup"})
        tau_range = (float(tau_min), float(tau_max))
        if self.initialized:
            self._check_tau(self.tau, self.delta_t, tau_range)
        self.tau_range = tau_range

    @staticmethod
    def _check_stable(tau: float, delta_t: float) -> None:
        if not np.isfinite(tau) or tau / delta_t <= MIN_TAU_STABLE:
            raise NumericalInstabilityError(
                f"PSBB τ/Δt = {tau / delta_t:.4f} 必須 > {MIN_TAU_STABLE}", {"phase": "setup"})

    @staticmethod
    def _check_tau(tau: float, delta_t: float, tau_range) -> None:
        PSBounceBackPolicy._check_stable(tau, delta_t)
        tau_min, tau_max = tau_range
        if not tau_min <= tau <= tau_max:
            raise NumericalInstabilityError(
                f"PSBB τ={tau} 不在允許範圍 [{tau_min}, {tau_max}]", {"phase": "setup"})

    def attach_nodes(self, obstacle_nodes, weights) -> None:
        self._check_mutable("attach_nodes")
        nodes = np.asarray(obstacle_nodes, dtype=np.intp).reshape(-1)
        weights = np.asarray(weights, dtype=np.float64).reshape(-1)
        if nodes.shape != weights.shape:
            raise GeometryError(f"障礙物節點數 {nodes.size} 與權重數 {weights.size} 不符",
                                {"phase": "setup"})
        if weights.size and (np.any(weights < 0.0) or np.any(weights > 1.0)):
            raise GeometryError("障礙物權重必須在 [0, 1]", {"phase": "setup"})
        self.nodes = nodes
        self.weights = weights

    def validate(self) -> None:
        if self.nodes.size == 0:
            return
        if not self.initialized:
            raise ConfigurationError("PSBounceBackPolicy: 尚未呼叫 initialize()",
                                     {"phase": "boundary"})
        self._check_tau(self.tau, self.delta_t, self.tau_range)

    def blending(self, weights) -> np.ndarray:
        """Noble-Torczynski 混合係數 B(w)"""
        excess = self.tau / self.delta_t - 0.5
        weights = np.asarray(weights, dtype=np.float64)
        return weights * excess / ((1.0 - weights) + excess)

    def apply(self, populations, density, velocity) -> None:
        if self.nodes.size == 0:
            return
        self.validate()
        F, _, _ = flat_fields(populations, density, velocity)
        vs = self.velocity_set
        c, opp = vs.c, vs.opposite
        feq = self.equilibrium.populations
        omega = self.delta_t / self.tau
        nodes = self.nodes
        blend = self.blending(self.weights)

        def host(positions):
            n = nodes[positions]
            fb = F[n]
            rho, u = local_moments(fb, c)
            fluid = fb - omega * (fb - feq(rho, u))
            b = blend[positions][:, None]
            F[n] = (1.0 - b) * fluid + b * fb[:, opp]

        def device(kernels, positions):
            kernels.psbb(F, nodes[positions], blend[positions], vs, omega)

        self.strategy.for_each(np.arange(nodes.size, dtype=np.intp),
                               NodeKernel("psbb", host, device))


class ZouHePolicy(Policy):
    """
    Zou-He 邊界

    mode="velocity": 速度由速度場 (初始化器寫入的目標值) 給定，密度由
    已知分佈求得。mode="pressure": 密度固定為 density，法向速度由已知
    分佈求得、切向速度為零。

    直壁 (法向量僅一個非零分量) 以非平衡反彈補上未知分佈；
    角點/稜線節點以內側鄰居的密度 (或速度) 設為平衡態。
    """

    MODES = ("velocity", "pressure")

    def __init__(self, equilibrium: DefaultEquilibrium, strategy,
                 mode: str = "velocity", density: float = 1.0):
        super().__init__(strategy)
        if mode not in self.MODES:
            raise ConfigurationError(f"未知的 Zou-He 模式: {mode}", {"phase": "setup"})
        if density <= 0:
            raise ConfigurationError(f"Zou-He 目標密度必須為正: {density}", {"phase": "setup"})
        self.equilibrium = equilibrium
        self.velocity_set = equilibrium.velocity_set
        self.mode = mode
        self.density = float(density)
        self.nodes = np.empty(0, dtype=np.intp)
        self.normals = np.empty((0, self.velocity_set.dim), dtype=np.int64)
        self.neighbours = np.empty(0, dtype=np.intp)
        self._straight = np.empty(0, dtype=np.intp)
        self._corner = np.empty(0, dtype=np.intp)

    def attach_nodes(self, nodes, dimensions: Sequence[int],
                     normals: Optional[np.ndarray] = None) -> None:
        """
        註冊周界上的 Zou-He 節點

        Args:
            nodes: 線性節點索引
            dimensions: 網格尺寸
            normals: 向內法向量 (N, D)；省略時由節點所在的邊界軸計算

        Raises:
            GeometryError: 節點不在網格周界上
        """
        self._check_mutable("attach_nodes")
        nodes = np.asarray(nodes, dtype=np.intp).reshape(-1)
        dims = tuple(int(n) for n in dimensions)
        if normals is None:
            normals = inward_normals(nodes, dims)
        normals = np.asarray(normals, dtype=np.int64).reshape(nodes.size, len(dims))
        off = ~normals.any(axis=1)
        if np.any(off):
            coords = to_coords(nodes[off][:1], dims)[0]
            raise GeometryError(f"Zou-He 節點 {tuple(int(x) for x in coords)} 不在網格周界上",
                                {"phase": "geometry"})

        coords = to_coords(nodes, dims)
        inward = coords + normals
        if nodes.size and np.any((inward < 0) | (inward >= np.asarray(dims))):
            raise GeometryError("Zou-He 節點的內側鄰居超出網格", {"phase": "geometry"})
        self.nodes = nodes
        self.normals = normals
        self.neighbours = (np.ravel_multi_index(tuple(inward.T), dims).astype(np.intp)
                           if nodes.size else np.empty(0, dtype=np.intp))
        n_axes = np.count_nonzero(normals, axis=1)
        self._straight = np.flatnonzero(n_axes == 1).astype(np.intp)
        self._corner = np.flatnonzero(n_axes > 1).astype(np.intp)
        logger.debug(f"Zou-He ({self.mode}): {self._straight.size} 直壁, {self._corner.size} 角點")

    def apply(self, populations, density, velocity) -> None:
        F, R, U = flat_fields(populations, density, velocity)
        self.strategy.for_each(self._straight, self._straight_kernel(F, R, U))
        self.strategy.for_each(self._corner, self._corner_kernel(F, R, U))

    def _straight_kernel(self, F, R, U) -> NodeKernel:
        vs = self.velocity_set
        c, w, opp = vs.c, vs.w, vs.opposite
        nodes, normals = self.nodes, self.normals
        pressure = self.mode == "pressure"
        target = self.density

        def host(positions):
            n = nodes[positions]
            nrm = normals[positions]
            fb = F[n]
            cn = nrm @ c.T
            tangential = cn == 0
            known_sum = (np.where(tangential, fb, 0.0).sum(axis=1)
                         + 2.0 * np.where(cn < 0, fb, 0.0).sum(axis=1))
            if pressure:
                rho = np.full(n.size, target)
                u = (1.0 - known_sum / rho)[:, None] * nrm
            else:
                u = U[n]
                rho = known_sum / (1.0 - np.sum(u * nrm, axis=1))
            # 切向動量修正
            transverse = 0.5 * (np.where(tangential, fb, 0.0) @ c) - CS2 * rho[:, None] * u
            transverse = np.where(nrm == 0, transverse, 0.0)
            unknown = (fb[:, opp] + 2.0 * w * rho[:, None] * (u @ c.T) * INV_CS2
                       - transverse @ c.T)
            F[n] = np.where(cn > 0, unknown, fb)
            R[n] = rho
            if pressure:
                U[n] = u

        def device(kernels, positions):
            kernels.zou_he_straight(F, R, U, nodes[positions], normals[positions], vs,
                                    pressure, target)

        return NodeKernel(f"zou_he_{self.mode}", host, device)

    def _corner_kernel(self, F, R, U) -> NodeKernel:
        feq = self.equilibrium.populations
        vs = self.velocity_set
        nodes, neighbours = self.nodes, self.neighbours
        pressure = self.mode == "pressure"
        target = self.density

        def host(positions):
            n = nodes[positions]
            nb = neighbours[positions]
            if pressure:
                rho = np.full(n.size, target)
                u = U[nb]
            else:
                rho = R[nb]
                u = U[n]
            F[n] = feq(rho, u)
            R[n] = rho
            if pressure:
                U[n] = u

        def device(kernels, positions):
            kernels.zou_he_corner(F, R, U, nodes[positions], neighbours[positions], vs,
                                  pressure, target)

        return NodeKernel(f"zou_he_{self.mode}_corner", host, device)
