"""
collisions.py 測試套件
測試 BGK/TRT 碰撞、魔術參數與封存生命週期
"""

import pytest
import numpy as np

from lattice_flow.core.backends.cpu_backend import (
    ParallelAlgorithmExecution, SequentialExecution, ThreadPoolExecution,
)
from lattice_flow.core.collisions import BGKCollision, TRTCollision
from lattice_flow.core.equilibrium import DefaultEquilibrium
from lattice_flow.core.velocity_sets import D2Q9
from lattice_flow.error_handling import ConfigurationError, NumericalInstabilityError

DIMS = (4, 5)


def make_fields(perturb: float = 0.0, seed: int = 1):
    """近平衡態欄位 (populations, density, velocity)"""
    rng = np.random.default_rng(seed)
    eq = DefaultEquilibrium(D2Q9)
    rho = 1.0 + 0.02 * rng.random(DIMS)
    u = 0.04 * (rng.random(DIMS + (2,)) - 0.5)
    f = eq.populations(rho.reshape(-1), u.reshape(-1, 2)).reshape(DIMS + (9,))
    f = f + perturb * rng.random(f.shape) * D2Q9.w
    return np.ascontiguousarray(f), np.ones(DIMS), np.zeros(DIMS + (2,))


ALL_NODES = np.arange(DIMS[0] * DIMS[1])


@pytest.fixture
def equilibrium():
    return DefaultEquilibrium(D2Q9)


def make_bgk(equilibrium, strategy=None, tau=0.8):
    bgk = BGKCollision(equilibrium, strategy or ParallelAlgorithmExecution())
    bgk.initialize(tau)
    bgk.attach_nodes(ALL_NODES)
    return bgk


class TestBGKCollision:
    """BGK碰撞測試類"""

    def test_equilibrium_is_fixed_point(self, equilibrium):
        """平衡態上的 BGK 步驟不改變分佈"""
        f, rho, u = make_fields()
        before = f.copy()
        make_bgk(equilibrium).collide(f, rho, u)
        assert np.allclose(f, before, rtol=0, atol=1e-15)

    def test_writes_local_moments(self, equilibrium):
        f, rho, u = make_fields(perturb=0.01)
        expected_rho = f.sum(axis=-1)
        expected_u = (f @ D2Q9.c) / expected_rho[..., None]
        make_bgk(equilibrium).collide(f, rho, u)
        assert np.allclose(rho, expected_rho)
        assert np.allclose(u, expected_u)

    def test_collision_conserves_mass_and_momentum(self, equilibrium):
        f, rho, u = make_fields(perturb=0.01)
        mass, momentum = f.sum(axis=-1), f @ D2Q9.c
        make_bgk(equilibrium).collide(f, rho, u)
        assert np.allclose(f.sum(axis=-1), mass)
        assert np.allclose(f @ D2Q9.c, momentum)

    def test_only_attached_nodes_change(self, equilibrium):
        f, rho, u = make_fields(perturb=0.01)
        before = f.copy()
        bgk = BGKCollision(equilibrium, SequentialExecution())
        bgk.initialize(0.7)
        bgk.attach_nodes([0, 7])
        bgk.collide(f, rho, u)
        flat, flat_before = f.reshape(-1, 9), before.reshape(-1, 9)
        untouched = np.setdiff1d(ALL_NODES, [0, 7])
        assert np.array_equal(flat[untouched], flat_before[untouched])
        assert not np.allclose(flat[[0, 7]], flat_before[[0, 7]])

    def test_omega(self, equilibrium):
        bgk = BGKCollision(equilibrium, SequentialExecution())
        bgk.initialize(2.0, delta_t=0.5)
        assert bgk.omega == pytest.approx(0.25)

    def test_unstable_tau_rejected(self, equilibrium):
        bgk = BGKCollision(equilibrium, SequentialExecution())
        with pytest.raises(NumericalInstabilityError):
            bgk.initialize(0.5)

    def test_uninitialized_collide_fails_fast(self, equilibrium):
        f, rho, u = make_fields()
        bgk = BGKCollision(equilibrium, SequentialExecution())
        bgk.attach_nodes(ALL_NODES)
        with pytest.raises(ConfigurationError):
            bgk.collide(f, rho, u)
        with pytest.raises(ConfigurationError):
            bgk.seal()

    def test_sealed_policy_is_immutable(self, equilibrium):
        bgk = make_bgk(equilibrium)
        bgk.seal()
        with pytest.raises(ConfigurationError):
            bgk.initialize(0.9)
        with pytest.raises(ConfigurationError):
            bgk.attach_nodes([0])


class TestTRTCollision:
    """TRT碰撞測試類"""

    def test_equal_taus_match_bgk(self, equilibrium):
        """τ⁺ = τ⁻ 時 TRT 等同 BGK"""
        f_bgk, rho, u = make_fields(perturb=0.02)
        f_trt = f_bgk.copy()
        make_bgk(equilibrium, tau=0.85).collide(f_bgk, rho, u)

        trt = TRTCollision(equilibrium, ParallelAlgorithmExecution())
        trt.initialize(0.85, 0.85)
        trt.attach_nodes(ALL_NODES)
        trt.collide(f_trt, rho.copy(), u.copy())
        assert np.allclose(f_trt, f_bgk, rtol=0, atol=1e-14)

    def test_tau_minus_defaults_to_tau_plus(self, equilibrium):
        trt = TRTCollision(equilibrium, SequentialExecution())
        trt.initialize(0.7)
        assert trt.tau_minus == trt.tau_plus == 0.7

    def test_magic_parameter(self, equilibrium):
        trt = TRTCollision(equilibrium, SequentialExecution())
        trt.initialize(0.9, 0.6)
        assert trt.compute_magic_parameter() == pytest.approx(0.4 * 0.1)

    def test_enforce_then_compute_round_trip(self, equilibrium):
        trt = TRTCollision(equilibrium, SequentialExecution())
        trt.initialize(0.9, 0.01)
        trt.compute_magic_parameter()
        trt.enforce_magic_parameter(0.25)
        assert trt.tau_plus == 0.9
        assert trt.tau_minus == pytest.approx(0.5 + 0.25 / 0.4)
        assert trt.compute_magic_parameter() == pytest.approx(0.25)

    def test_nonpositive_magic_parameter_rejected(self, equilibrium):
        trt = TRTCollision(equilibrium, SequentialExecution())
        trt.initialize(0.9)
        with pytest.raises(ConfigurationError):
            trt.enforce_magic_parameter(0.0)

    def test_unstable_tau_minus_rejected_at_seal(self, equilibrium):
        """暫定 τ⁻ 允許，但封存時仍須穩定"""
        trt = TRTCollision(equilibrium, SequentialExecution())
        trt.initialize(0.9, 0.01)
        with pytest.raises(NumericalInstabilityError):
            trt.seal()

    def test_reconfigure_before_seal(self, equilibrium):
        trt = TRTCollision(equilibrium, SequentialExecution())
        trt.initialize(0.9)
        trt.set_tau_minus(1.2)
        trt.set_tau_plus(0.8)
        assert (trt.tau_plus, trt.tau_minus) == (0.8, 1.2)
        trt.seal()
        with pytest.raises(ConfigurationError):
            trt.set_tau_minus(1.0)

    def test_uninitialized_magic_parameter(self, equilibrium):
        trt = TRTCollision(equilibrium, SequentialExecution())
        with pytest.raises(ConfigurationError):
            trt.compute_magic_parameter()


class TestCollisionStrategies:
    """各執行策略結果一致"""

    @pytest.mark.parametrize("collision_cls", [BGKCollision, TRTCollision])
    def test_strategies_agree(self, equilibrium, collision_cls):
        results = []
        strategies = [SequentialExecution(), ThreadPoolExecution(max_workers=3),
                      ParallelAlgorithmExecution()]
        for strategy in strategies:
            f, rho, u = make_fields(perturb=0.02)
            policy = collision_cls(equilibrium, strategy)
            if collision_cls is TRTCollision:
                policy.initialize(0.8, 1.1)
            else:
                policy.initialize(0.8)
            policy.attach_nodes(ALL_NODES)
            policy.collide(f, rho, u)
            results.append((f, rho, u))
            strategy.close()
        for f, rho, u in results[1:]:
            assert np.allclose(f, results[0][0], rtol=0, atol=1e-14)
            assert np.allclose(rho, results[0][1], rtol=0, atol=1e-14)
            assert np.allclose(u, results[0][2], rtol=0, atol=1e-14)
