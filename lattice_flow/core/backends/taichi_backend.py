"""
Taichi 加速器卸載策略

每個策略的物理核心在此有一份 @ti.kernel 實作。NumPy 欄位以
ti.types.ndarray() 直接傳入，Taichi 負責與裝置間的搬移。
速度向量補齊為 3 維 (Q, 3)，使同一核心適用 D1Q3/D2Q9/D3Q19。
"""

from typing import Dict, Tuple

import numpy as np
import taichi as ti

from ...config.core import CS2, INV_CS2
from ...error_handling import ComputeExecutionError
from .compute_backends import (
    BackendInitializationError, ExecutionKind, ExecutionStrategy, NodeKernel, backend_logger,
)

# 全域變數追蹤初始化狀態
_taichi_initialized = False

_ARCHS = {
    "cpu": "cpu",
    "gpu": "gpu",
    "cuda": "cuda",
    "vulkan": "vulkan",
    "metal": "metal",
}


def initialize_taichi_once(arch: str = "cpu") -> None:
    """統一的Taichi初始化函數 - 避免重複初始化"""
    global _taichi_initialized

    if _taichi_initialized:
        backend_logger.debug("Taichi已初始化，跳過重複初始化", ExecutionKind.OFFLOAD.value)
        return
    if arch not in _ARCHS:
        raise BackendInitializationError(f"未知的 Taichi 架構: {arch}", ExecutionKind.OFFLOAD.value)

    ti.init(
        arch=getattr(ti, _ARCHS[arch]),
        default_fp=ti.f64,          # 與主機端 NumPy 結果一致
        fast_math=False,
        debug=False,
        offline_cache=False,
    )
    _taichi_initialized = True
    backend_logger.info(f"✓ Taichi 初始化完成 (arch={arch}, f64)", ExecutionKind.OFFLOAD.value)


@ti.func
def _feq(w, rho, cu, usq):
    return w * rho * (1.0 + INV_CS2 * cu + 0.5 * INV_CS2 * INV_CS2 * cu * cu - 0.5 * INV_CS2 * usq)


@ti.data_oriented
class TaichiKernels:
    """
    LBM 裝置端核心

    公開方法接受扁平化的 NumPy 欄位 (N, Q)/(N,)/(N, D) 與節點索引，
    補上速度表後啟動對應的 @ti.kernel。
    """

    def __init__(self):
        self._tables: Dict[str, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}

    def velocity_tables(self, vs):
        """回傳 (c3 (Q, 3) int32, w (Q,) f64, opposite (Q,) int32)"""
        if vs.name not in self._tables:
            c3 = np.zeros((vs.q, 3), dtype=np.int32)
            c3[:, :vs.dim] = vs.c
            self._tables[vs.name] = (c3, np.array(vs.w, dtype=np.float64),
                                     np.array(vs.opposite, dtype=np.int32))
        return self._tables[vs.name]

    @staticmethod
    def _scratch(nodes, vs) -> np.ndarray:
        return np.zeros((nodes.shape[0], vs.q), dtype=np.float64)

    # ===== 串流與巨觀量 =====

    def stream(self, f, snapshot, sources, nodes):
        self._stream(f, snapshot, sources, nodes)

    @ti.kernel
    def _stream(self, f: ti.types.ndarray(), snapshot: ti.types.ndarray(),
                sources: ti.types.ndarray(), nodes: ti.types.ndarray()):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            for q in range(f.shape[1]):
                f[n, q] = snapshot[sources[n, q], q]

    def macroscopic(self, f, rho, u, nodes, vs, mode: int):
        """mode 0: ρ 與 u；1: 只更新 ρ；2: ρ 且 u = 0"""
        c3, _, _ = self.velocity_tables(vs)
        self._macroscopic(f, rho, u, nodes, c3, mode)

    @ti.kernel
    def _macroscopic(self, f: ti.types.ndarray(), rho: ti.types.ndarray(), u: ti.types.ndarray(),
                     nodes: ti.types.ndarray(), c3: ti.types.ndarray(), mode: ti.i32):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            r = 0.0
            mx = 0.0
            my = 0.0
            mz = 0.0
            for q in range(f.shape[1]):
                fq = f[n, q]
                r += fq
                mx += fq * c3[q, 0]
                my += fq * c3[q, 1]
                mz += fq * c3[q, 2]
            rho[n] = r
            if mode == 0:
                u[n, 0] = mx / r
                if u.shape[1] > 1:
                    u[n, 1] = my / r
                if u.shape[1] > 2:
                    u[n, 2] = mz / r
            elif mode == 2:
                for d in range(u.shape[1]):
                    u[n, d] = 0.0

    # ===== 碰撞 =====

    def bgk_collide(self, f, rho, u, nodes, vs, omega: float):
        c3, w, _ = self.velocity_tables(vs)
        self._bgk_collide(f, rho, u, nodes, c3, w, omega)

    @ti.kernel
    def _bgk_collide(self, f: ti.types.ndarray(), rho: ti.types.ndarray(), u: ti.types.ndarray(),
                     nodes: ti.types.ndarray(), c3: ti.types.ndarray(), w: ti.types.ndarray(),
                     omega: ti.f64):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            r = 0.0
            ux = 0.0
            uy = 0.0
            uz = 0.0
            for q in range(f.shape[1]):
                fq = f[n, q]
                r += fq
                ux += fq * c3[q, 0]
                uy += fq * c3[q, 1]
                uz += fq * c3[q, 2]
            ux /= r
            uy /= r
            uz /= r
            usq = ux * ux + uy * uy + uz * uz
            for q in range(f.shape[1]):
                cu = c3[q, 0] * ux + c3[q, 1] * uy + c3[q, 2] * uz
                f[n, q] = f[n, q] - omega * (f[n, q] - _feq(w[q], r, cu, usq))
            rho[n] = r
            u[n, 0] = ux
            if u.shape[1] > 1:
                u[n, 1] = uy
            if u.shape[1] > 2:
                u[n, 2] = uz

    def trt_collide(self, f, rho, u, nodes, vs, omega_plus: float, omega_minus: float):
        c3, w, opp = self.velocity_tables(vs)
        self._trt_collide(f, rho, u, nodes, c3, w, opp, omega_plus, omega_minus,
                          self._scratch(nodes, vs))

    @ti.kernel
    def _trt_collide(self, f: ti.types.ndarray(), rho: ti.types.ndarray(), u: ti.types.ndarray(),
                     nodes: ti.types.ndarray(), c3: ti.types.ndarray(), w: ti.types.ndarray(),
                     opp: ti.types.ndarray(), omega_plus: ti.f64, omega_minus: ti.f64,
                     scratch: ti.types.ndarray()):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            r = 0.0
            ux = 0.0
            uy = 0.0
            uz = 0.0
            for q in range(f.shape[1]):
                fq = f[n, q]
                r += fq
                ux += fq * c3[q, 0]
                uy += fq * c3[q, 1]
                uz += fq * c3[q, 2]
            ux /= r
            uy /= r
            uz /= r
            usq = ux * ux + uy * uy + uz * uz
            for q in range(f.shape[1]):
                o = opp[q]
                cu = c3[q, 0] * ux + c3[q, 1] * uy + c3[q, 2] * uz
                cu_o = c3[o, 0] * ux + c3[o, 1] * uy + c3[o, 2] * uz
                eq = _feq(w[q], r, cu, usq)
                eq_o = _feq(w[o], r, cu_o, usq)
                f_plus = 0.5 * (f[n, q] + f[n, o])
                f_minus = 0.5 * (f[n, q] - f[n, o])
                scratch[k, q] = (f[n, q] - omega_plus * (f_plus - 0.5 * (eq + eq_o))
                                 - omega_minus * (f_minus - 0.5 * (eq - eq_o)))
            for q in range(f.shape[1]):
                f[n, q] = scratch[k, q]
            rho[n] = r
            u[n, 0] = ux
            if u.shape[1] > 1:
                u[n, 1] = uy
            if u.shape[1] > 2:
                u[n, 2] = uz

    # ===== 邊界 =====

    def bounce_back(self, f, u, nodes, vs):
        _, _, opp = self.velocity_tables(vs)
        self._bounce_back(f, u, nodes, opp)

    @ti.kernel
    def _bounce_back(self, f: ti.types.ndarray(), u: ti.types.ndarray(),
                     nodes: ti.types.ndarray(), opp: ti.types.ndarray()):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            for q in range(f.shape[1]):
                o = opp[q]
                if q < o:
                    tmp = f[n, q]
                    f[n, q] = f[n, o]
                    f[n, o] = tmp
            for d in range(u.shape[1]):
                u[n, d] = 0.0

    def psbb(self, f, nodes, blend, vs, omega: float):
        c3, w, opp = self.velocity_tables(vs)
        self._psbb(f, nodes, blend, c3, w, opp, omega, self._scratch(nodes, vs))

    @ti.kernel
    def _psbb(self, f: ti.types.ndarray(), nodes: ti.types.ndarray(), blend: ti.types.ndarray(),
              c3: ti.types.ndarray(), w: ti.types.ndarray(), opp: ti.types.ndarray(),
              omega: ti.f64, scratch: ti.types.ndarray()):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            b = blend[k]
            r = 0.0
            ux = 0.0
            uy = 0.0
            uz = 0.0
            for q in range(f.shape[1]):
                fq = f[n, q]
                r += fq
                ux += fq * c3[q, 0]
                uy += fq * c3[q, 1]
                uz += fq * c3[q, 2]
            ux /= r
            uy /= r
            uz /= r
            usq = ux * ux + uy * uy + uz * uz
            for q in range(f.shape[1]):
                cu = c3[q, 0] * ux + c3[q, 1] * uy + c3[q, 2] * uz
                fluid = f[n, q] - omega * (f[n, q] - _feq(w[q], r, cu, usq))
                scratch[k, q] = (1.0 - b) * fluid + b * f[n, opp[q]]
            for q in range(f.shape[1]):
                f[n, q] = scratch[k, q]

    def zou_he_straight(self, f, rho, u, nodes, normals, vs, pressure: bool, target: float):
        c3, w, opp = self.velocity_tables(vs)
        n3 = np.zeros((nodes.shape[0], 3), dtype=np.int32)
        n3[:, :vs.dim] = normals
        self._zou_he_straight(f, rho, u, nodes, n3, c3, w, opp, int(pressure), target)

    @ti.kernel
    def _zou_he_straight(self, f: ti.types.ndarray(), rho: ti.types.ndarray(), u: ti.types.ndarray(),
                         nodes: ti.types.ndarray(), normals: ti.types.ndarray(),
                         c3: ti.types.ndarray(), w: ti.types.ndarray(), opp: ti.types.ndarray(),
                         pressure: ti.i32, target: ti.f64):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            nx = normals[k, 0]
            ny = normals[k, 1]
            nz = normals[k, 2]
            known = 0.0
            tx = 0.0
            ty = 0.0
            tz = 0.0
            for q in range(f.shape[1]):
                cn = c3[q, 0] * nx + c3[q, 1] * ny + c3[q, 2] * nz
                if cn == 0:
                    known += f[n, q]
                    tx += f[n, q] * c3[q, 0]
                    ty += f[n, q] * c3[q, 1]
                    tz += f[n, q] * c3[q, 2]
                elif cn < 0:
                    known += 2.0 * f[n, q]
            r = 0.0
            ux = 0.0
            uy = 0.0
            uz = 0.0
            if pressure == 1:
                r = target
                un = 1.0 - known / r
                ux = un * nx
                uy = un * ny
                uz = un * nz
            else:
                ux = u[n, 0]
                if u.shape[1] > 1:
                    uy = u[n, 1]
                if u.shape[1] > 2:
                    uz = u[n, 2]
                r = known / (1.0 - (ux * nx + uy * ny + uz * nz))
            # 切向動量修正
            sx = 0.0
            sy = 0.0
            sz = 0.0
            if nx == 0:
                sx = 0.5 * tx - CS2 * r * ux
            if ny == 0:
                sy = 0.5 * ty - CS2 * r * uy
            if nz == 0:
                sz = 0.5 * tz - CS2 * r * uz
            for q in range(f.shape[1]):
                cn = c3[q, 0] * nx + c3[q, 1] * ny + c3[q, 2] * nz
                if cn > 0:
                    cu = c3[q, 0] * ux + c3[q, 1] * uy + c3[q, 2] * uz
                    f[n, q] = (f[n, opp[q]] + 2.0 * w[q] * r * cu * INV_CS2
                               - (c3[q, 0] * sx + c3[q, 1] * sy + c3[q, 2] * sz))
            rho[n] = r
            if pressure == 1:
                u[n, 0] = ux
                if u.shape[1] > 1:
                    u[n, 1] = uy
                if u.shape[1] > 2:
                    u[n, 2] = uz

    def zou_he_corner(self, f, rho, u, nodes, neighbours, vs, pressure: bool, target: float):
        c3, w, _ = self.velocity_tables(vs)
        self._zou_he_corner(f, rho, u, nodes, neighbours, c3, w, int(pressure), target)

    @ti.kernel
    def _zou_he_corner(self, f: ti.types.ndarray(), rho: ti.types.ndarray(), u: ti.types.ndarray(),
                       nodes: ti.types.ndarray(), neighbours: ti.types.ndarray(),
                       c3: ti.types.ndarray(), w: ti.types.ndarray(),
                       pressure: ti.i32, target: ti.f64):
        for k in range(nodes.shape[0]):
            n = nodes[k]
            src = n
            r = 0.0
            if pressure == 1:
                r = target
                src = neighbours[k]
            else:
                r = rho[neighbours[k]]
            ux = u[src, 0]
            uy = 0.0
            uz = 0.0
            if u.shape[1] > 1:
                uy = u[src, 1]
            if u.shape[1] > 2:
                uz = u[src, 2]
            usq = ux * ux + uy * uy + uz * uz
            for q in range(f.shape[1]):
                cu = c3[q, 0] * ux + c3[q, 1] * uy + c3[q, 2] * uz
                f[n, q] = _feq(w[q], r, cu, usq)
            rho[n] = r
            if pressure == 1:
                u[n, 0] = ux
                if u.shape[1] > 1:
                    u[n, 1] = uy
                if u.shape[1] > 2:
                    u[n, 2] = uz

    # ===== 初始化器 =====

    def scatter_velocity(self, u, nodes, values):
        self._scatter_velocity(u, nodes, np.ascontiguousarray(values, dtype=np.float64))

    @ti.kernel
    def _scatter_velocity(self, u: ti.types.ndarray(), nodes: ti.types.ndarray(),
                          values: ti.types.ndarray()):
        for k in range(nodes.shape[0]):
            for d in range(u.shape[1]):
                u[nodes[k], d] = values[k, d]


class OffloadExecution(ExecutionStrategy):
    """
    加速器卸載策略

    呼叫 NodeKernel.device 啟動 Taichi 核心；沒有裝置端實作的核心
    拋出 ComputeExecutionError。
    """

    kind = ExecutionKind.OFFLOAD

    def __init__(self, arch: str = "cpu"):
        super().__init__()
        initialize_taichi_once(arch)
        self.arch = arch
        self.kernels = TaichiKernels()

    def _run(self, nodes: np.ndarray, body: NodeKernel) -> None:
        if body.device is None:
            raise ComputeExecutionError(f"{body.name}: 沒有裝置端實作", {"kernel": body.name})
        body.device(self.kernels, nodes)
        ti.sync()

    def get_backend_info(self):
        return {'backend_type': self.backend_type, 'arch': self.arch}
