"""
碰撞策略

BGK (單鬆弛時間) 與 TRT (雙鬆弛時間)。碰撞只作用於以 attach_nodes
註冊的節點 (流體與 Zou-He 入口/出口)；局部密度與速度取自節點當下
(串流與邊界處理後) 的分佈函數，並同時寫回巨觀場。
"""

import logging
from typing import Optional

import numpy as np

from ..config.core import DEFAULT_DELTA_T, MIN_TAU_STABLE
from ..error_handling import ConfigurationError, NumericalInstabilityError
from .backends.compute_backends import NodeKernel
from .equilibrium import DefaultEquilibrium
from .policy import Policy, flat_fields

logger = logging.getLogger(__name__)


def local_moments(fb: np.ndarray, c: np.ndarray):
    """批次 (B, Q) 分佈的密度 (B,) 與速度 (B, D)"""
    rho = fb.sum(axis=1)
    u = (fb @ c) / rho[:, None]
    return rho, u


def _check_tau(name: str, tau: float, delta_t: float):
    if delta_t <= 0:
        raise ConfigurationError(f"Δt 必須為正: {delta_t}", {"phase": "setup"})
    if not np.isfinite(tau) or tau / delta_t <= MIN_TAU_STABLE:
        raise NumericalInstabilityError(
            f"{name}/Δt = {tau / delta_t:.4f} 必須 > {MIN_TAU_STABLE}", {"phase": "setup"})


class CollisionPolicy(Policy):
    """碰撞策略基類"""

    def __init__(self, equilibrium: DefaultEquilibrium, strategy):
        super().__init__(strategy)
        self.equilibrium = equilibrium
        self.velocity_set = equilibrium.velocity_set
        self.nodes = np.empty(0, dtype=np.intp)
        self.delta_t = DEFAULT_DELTA_T
        self._initialized = False

    def attach_nodes(self, nodes) -> None:
        self._check_mutable("attach_nodes")
        self.nodes = np.asarray(nodes, dtype=np.intp).reshape(-1)

    def _require_initialized(self):
        if not self._initialized:
            raise ConfigurationError(
                f"{type(self).__name__}: 尚未呼叫 initialize() 設定鬆弛參數",
                {"phase": "collide"})

    def validate(self) -> None:
        self._require_initialized()

    def collide(self, populations, density, velocity) -> None:
        self._require_initialized()
        F, R, U = flat_fields(populations, density, velocity)
        self.strategy.for_each(self.nodes, self._kernel(F, R, U))

    def _kernel(self, F, R, U) -> NodeKernel:
        raise NotImplementedError


class BGKCollision(CollisionPolicy):
    """
    BGK 碰撞：f ← f − ω (f − f_eq)，ω = Δt/τ
    """

    def __init__(self, equilibrium: DefaultEquilibrium, strategy):
        super().__init__(equilibrium, strategy)
        self.tau = None
        self.omega = None

    def initialize(self, tau: float, delta_t: float = DEFAULT_DELTA_T) -> None:
        self._check_mutable("initialize")
        _check_tau("τ", tau, delta_t)
        self.tau = float(tau)
        self.delta_t = float(delta_t)
        self.omega = self.delta_t / self.tau
        self._initialized = True
        logger.info(f"BGK 初始化: τ={self.tau}, ω={self.omega:.4f}")

    def _kernel(self, F, R, U) -> NodeKernel:
        c = self.velocity_set.c
        feq = self.equilibrium.populations
        omega = self.omega

        def host(batch):
            fb = F[batch]
            rho, u = local_moments(fb, c)
            F[batch] = fb - omega * (fb - feq(rho, u))
            R[batch] = rho
            U[batch] = u

        def device(kernels, nodes):
            kernels.bgk_collide(F, R, U, nodes, self.velocity_set, omega)

        return NodeKernel("bgk_collide", host, device)


class TRTCollision(CollisionPolicy):
    """
    TRT 碰撞

    分佈拆為對稱/反對稱部分 f± = (f_q ± f_opp)/2，分別以 ω⁺ 與 ω⁻
    鬆弛。魔術參數 Λ = (τ⁺/Δt − ½)(τ⁻/Δt − ½)。
    """

    def __init__(self, equilibrium: DefaultEquilibrium, strategy):
        super().__init__(equilibrium, strategy)
        self.tau_plus = None
        self.tau_minus = None
        self.magic_parameter = None

    def initialize(self, tau_plus: float, tau_minus: Optional[float] = None,
                   delta_t: float = DEFAULT_DELTA_T) -> None:
        self._check_mutable("initialize")
        tau_minus = tau_plus if tau_minus is None else tau_minus
        _check_tau("τ⁺", tau_plus, delta_t)
        if not tau_minus > 0:
            raise NumericalInstabilityError(f"τ⁻ 必須為正: {tau_minus}", {"phase": "setup"})
        self.tau_plus = float(tau_plus)
        self.tau_minus = float(tau_minus)
        self.delta_t = float(delta_t)
        self._initialized = True
        logger.info(f"TRT 初始化: τ⁺={self.tau_plus}, τ⁻={self.tau_minus}")

    def set_tau_plus(self, tau_plus: float) -> None:
        self._check_mutable("set_tau_plus")
        self._require_initialized()
        _check_tau("τ⁺", tau_plus, self.delta_t)
        self.tau_plus = float(tau_plus)

    def set_tau_minus(self, tau_minus: float) -> None:
        self._check_mutable("set_tau_minus")
        self._require_initialized()
        self.tau_minus = float(tau_minus)

    def validate(self) -> None:
        # τ⁻ 可先給暫定值，再由 enforce_magic_parameter 求解
        super().validate()
        _check_tau("τ⁻", self.tau_minus, self.delta_t)

    @property
    def omega_plus(self) -> float:
        return self.delta_t / self.tau_plus

    @property
    def omega_minus(self) -> float:
        return self.delta_t / self.tau_minus

    def compute_magic_parameter(self) -> float:
        self._require_initialized()
        self.magic_parameter = ((self.tau_plus / self.delta_t - 0.5) *
                                (self.tau_minus / self.delta_t - 0.5))
        return self.magic_parameter

    def enforce_magic_parameter(self, magic_parameter: float) -> None:
        """保留 τ⁺，求解 τ⁻ = Δt(½ + Λ/(τ⁺/Δt − ½))"""
        self._check_mutable("enforce_magic_parameter")
        self._require_initialized()
        if not magic_parameter > 0:
            raise ConfigurationError(f"魔術參數 Λ 必須為正: {magic_parameter}",
                                     {"phase": "setup"})
        self.tau_minus = self.delta_t * (
            0.5 + magic_parameter / (self.tau_plus / self.delta_t - 0.5))
        self.magic_parameter = float(magic_parameter)
        logger.info(f"TRT 強制 Λ={magic_parameter}: τ⁻={self.tau_minus:.6f}")

    def _kernel(self, F, R, U) -> NodeKernel:
        c = self.velocity_set.c
        opp = self.velocity_set.opposite
        feq = self.equilibrium.populations
        omega_p = self.omega_plus
        omega_m = self.omega_minus

        def host(batch):
            fb = F[batch]
            rho, u = local_moments(fb, c)
            eq = feq(rho, u)
            f_plus = 0.5 * (fb + fb[:, opp])
            f_minus = 0.5 * (fb - fb[:, opp])
            eq_plus = 0.5 * (eq + eq[:, opp])
            eq_minus = 0.5 * (eq - eq[:, opp])
            F[batch] = fb - omega_p * (f_plus - eq_plus) - omega_m * (f_minus - eq_minus)
            R[batch] = rho
            U[batch] = u

        def device(kernels, nodes):
            kernels.trt_collide(F, R, U, nodes, self.velocity_set, omega_p, omega_m)

        return NodeKernel("trt_collide", host, device)


COLLISIONS = {
    "bgk": BGKCollision,
    "trt": TRTCollision,
}
