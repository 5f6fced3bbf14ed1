"""
lattice.py 測試套件
測試網格主體：建構、串流、時間推進、錯誤階段與跨策略一致性
"""

import io

import pytest
import numpy as np

from lattice_flow.cavity import build_lid_driven_cavity
from lattice_flow.config.config_manager import SimulationConfig
from lattice_flow.core.geometry import ConstructionInfo, NodeType
from lattice_flow.core.lattice import Lattice, LatticeConfiguration
from lattice_flow.error_handling import (
    ComputeExecutionError, ConfigurationError, GeometryError, NumericalInstabilityError,
)


def small_cavity_config(**overrides):
    params = dict(dimensions=(12, 12), execution="sequential", collision="trt",
                  tau=0.8, magic_parameter=0.25, lid_velocity=0.05, steps=30)
    params.update(overrides)
    return SimulationConfig(**params)


def run_cavity(steps=300, **overrides):
    lattice = build_lid_driven_cavity(small_cavity_config(**overrides))
    try:
        lattice.perform_lbm(steps)
        return (lattice.populations.copy(), lattice.density.copy(), lattice.velocity.copy())
    finally:
        lattice.close()


@pytest.fixture(scope="module")
def sequential_reference():
    """順序執行的方腔參考解"""
    return run_cavity()


@pytest.fixture
def open_lattice():
    """5x5 全流體網格"""
    lattice = Lattice(LatticeConfiguration.create("D2Q9", execution="parallel"))
    lattice.set_node_types(np.zeros((5, 5), dtype=np.int8))
    yield lattice
    lattice.close()


class TestLatticeConstruction:
    """網格建構測試類"""

    def test_fields_and_node_lists(self):
        lattice = build_lid_driven_cavity(small_cavity_config())
        assert lattice.dimensions == (12, 12)
        assert lattice.populations.shape == (12, 12, 9)
        assert lattice.density.shape == (12, 12)
        assert lattice.velocity.shape == (12, 12, 2)
        assert lattice.inlet_nodes.size == 10
        assert lattice.fluid_nodes.size == 100
        assert lattice.boundary_nodes.size == 34
        assert lattice.wall_nodes.size == 34
        assert lattice.configuration.collision.nodes.size == 110
        assert np.array_equal(lattice.collision_nodes,
                              np.sort(np.concatenate([lattice.fluid_nodes, lattice.inlet_nodes])))
        assert lattice.populations.flags.c_contiguous

    def test_initial_state_is_equilibrium_at_rest(self):
        lattice = build_lid_driven_cavity(small_cavity_config())
        assert np.allclose(lattice.density, 1.0)
        assert np.allclose(lattice.populations.sum(axis=-1), 1.0)
        assert not lattice.velocity.any()

    def test_interior_inlet_rejected(self):
        lattice = Lattice(LatticeConfiguration.create("D2Q9"))
        info = ConstructionInfo().attach_domain_dimensions((6, 6))
        info.add_nodes_interval((2, 2), (2, 3), NodeType.INLET)
        with pytest.raises(GeometryError) as exc_info:
            lattice.build(info)
        assert exc_info.value.phase == "geometry"

    def test_dimension_mismatch(self):
        lattice = Lattice(LatticeConfiguration.create("D3Q19"))
        with pytest.raises(GeometryError):
            lattice.set_node_types(np.zeros((4, 4), dtype=np.int8))

    def test_invalid_node_type_value(self):
        lattice = Lattice(LatticeConfiguration.create("D2Q9"))
        with pytest.raises(GeometryError):
            lattice.set_node_types(np.full((4, 4), 7, dtype=np.int8))

    def test_unbuilt_lattice(self):
        lattice = Lattice(LatticeConfiguration.create("D2Q9"))
        with pytest.raises(ConfigurationError):
            lattice.perform_lbm(1)

    def test_unknown_collision(self):
        with pytest.raises(ConfigurationError):
            LatticeConfiguration.create("D2Q9", collision="mrt")

    def test_independent_lattices(self):
        """兩個網格的策略狀態互不影響"""
        first = build_lid_driven_cavity(small_cavity_config(tau=0.8))
        second = build_lid_driven_cavity(small_cavity_config(tau=1.2))
        assert first.configuration.collision.tau_plus == 0.8
        assert second.configuration.collision.tau_plus == 1.2
        first.perform_lbm(1)
        assert first.configuration.collision.sealed
        assert not second.configuration.collision.sealed


class TestObstacleWeight:
    """障礙物權重測試類"""

    def test_sphere_weights(self):
        lattice = build_lid_driven_cavity(small_cavity_config(
            obstacle_center=(6.0, 5.0), obstacle_radius=2.5))
        weights = lattice.obstacle_weight.reshape(-1)[lattice.obstacle_nodes]
        assert lattice.obstacle_nodes.size > 0
        assert np.all(weights > 0.0) and np.all(weights <= 1.0)
        assert lattice.obstacle_weight[6, 5] == 1.0
        assert weights.min() < 1.0
        assert np.all(lattice.obstacle_weight[lattice.node_types != NodeType.OBSTACLE] == 0.0)

    def test_weights_read_only_after_compute(self):
        lattice = build_lid_driven_cavity(small_cavity_config(
            obstacle_center=(6.0, 5.0), obstacle_radius=2.5))
        with pytest.raises(ValueError):
            lattice.obstacle_weight[6, 5] = 0.5

    def test_direct_obstacles_have_unit_weight(self):
        types = np.zeros((6, 6), dtype=np.int8)
        types[2:4, 2:4] = NodeType.OBSTACLE
        lattice = Lattice(LatticeConfiguration.create("D2Q9"))
        lattice.set_node_types(types)
        lattice.compute_obstacle_weight()
        assert np.all(lattice.obstacle_weight[2:4, 2:4] == 1.0)

    def test_obstacle_points(self):
        lattice = build_lid_driven_cavity(small_cavity_config(
            obstacle_center=(6.0, 5.0), obstacle_radius=1.0))
        points = lattice.obstacle_points()
        assert len(points) == lattice.obstacle_nodes.size
        assert (6, 5) in [p.coords for p in points]


class TestStreaming:
    """串流測試類"""

    def test_impulse_moves_one_cell(self, open_lattice):
        f = open_lattice.populations
        f[...] = 0.0
        f[2, 2, 1] = 1.0   # c = (1, 0)
        f[2, 2, 6] = 0.5   # c = (-1, 1)
        open_lattice.stream()
        assert f[3, 2, 1] == 1.0
        assert f[1, 3, 6] == 0.5
        assert f[2, 2, 1] == 0.0
        assert f.sum() == 1.5

    def test_out_of_domain_source_keeps_value(self, open_lattice):
        f = open_lattice.populations
        f[...] = 0.0
        f[0, 2, 1] = 0.7
        open_lattice.stream()
        # (0,2) 的方向1來源 (-1,2) 在網格外
        assert f[0, 2, 1] == 0.7
        assert f[1, 2, 1] == 0.7


class TestPerformLBM:
    """時間推進測試類"""

    def test_time_step_advances(self):
        lattice = build_lid_driven_cavity(small_cavity_config())
        lattice.perform_lbm(3)
        assert lattice.time_step == 3
        lattice.perform_lbm(2)
        assert lattice.time_step == 5

    def test_lid_drives_flow(self):
        lattice = build_lid_driven_cavity(small_cavity_config(execution="parallel"))
        lattice.perform_lbm(50)
        assert np.allclose(lattice.velocity[1:-1, -1, 0], 0.05)
        assert lattice.velocity[6, 10, 0] > 0.0
        assert np.all(lattice.velocity[lattice.node_types == NodeType.BOUNDARY] == 0.0)
        assert np.all(np.isfinite(lattice.populations))

    def test_policies_sealed_after_start(self):
        lattice = build_lid_driven_cavity(small_cavity_config())
        lattice.perform_lbm(1)
        with pytest.raises(ConfigurationError):
            lattice.configuration.collision.initialize(0.9)
        with pytest.raises(ConfigurationError):
            lattice.configuration.initializer.attach_nodes([], [])

    def test_uninitialized_collision_fails_fast(self):
        lattice = Lattice(LatticeConfiguration.create("D2Q9"))
        lattice.set_node_types(np.zeros((5, 5), dtype=np.int8))
        with pytest.raises(ConfigurationError) as exc_info:
            lattice.perform_lbm(1)
        assert exc_info.value.phase is not None

    def test_nan_detected_with_phase(self):
        lattice = build_lid_driven_cavity(small_cavity_config(execution="parallel"))
        lattice.populations[5, 5, :] = np.nan
        with np.errstate(invalid="ignore"):
            with pytest.raises(NumericalInstabilityError) as exc_info:
                lattice.perform_lbm(5)
        assert exc_info.value.context["phase"] == "stability"
        assert exc_info.value.context["step"] == 0

    def test_foreign_exception_wrapped_with_phase(self):
        lattice = build_lid_driven_cavity(small_cavity_config(execution="parallel"))

        def broken(time, point):
            raise RuntimeError("lid failure")

        lattice.configuration.initializer.attach_update_functions([broken, broken], None)
        with pytest.raises(ComputeExecutionError) as exc_info:
            lattice.perform_lbm(1)
        assert exc_info.value.context["phase"] == "initialize"
        assert exc_info.value.context["step"] == 0

    def test_outputs_written(self, tmp_path):
        lattice = build_lid_driven_cavity(small_cavity_config(execution="parallel"))
        lattice.perform_lbm(4, macroscopic_output_interval=2, checkpoint_interval=4,
                            output_dir=str(tmp_path))
        names = sorted(p.name for p in tmp_path.iterdir())
        assert names == ["checkpoint_000004.npz", "macroscopic_000002.txt",
                         "macroscopic_000004.txt"]
        assert [r["step"] for r in lattice.diagnostics.history] == [2, 4]


class TestStrategyEquivalence:
    """方腔在各策略下與順序參考解一致"""

    @pytest.mark.parametrize("execution", ["threads", "parallel"])
    def test_matches_sequential_reference(self, sequential_reference, execution):
        f, rho, u = run_cavity(execution=execution, max_workers=3)
        assert np.allclose(f, sequential_reference[0], rtol=1e-10, atol=1e-12)
        assert np.allclose(rho, sequential_reference[1], rtol=1e-10, atol=1e-12)
        assert np.allclose(u, sequential_reference[2], rtol=1e-10, atol=1e-12)

    def test_bgk_with_obstacle(self):
        runs = [run_cavity(steps=20, execution=execution, collision="bgk",
                           obstacle_center=(6.0, 5.0), obstacle_radius=2.0)
                for execution in ("sequential", "parallel")]
        for a, b in zip(runs[0], runs[1]):
            assert np.allclose(a, b, rtol=1e-10, atol=1e-12)


class TestLatticeStructure:
    """結構輸出測試類"""

    def test_summary_dump(self):
        lattice = build_lid_driven_cavity(small_cavity_config())
        out = io.StringIO()
        lattice.print_lattice_structure(out)
        text = out.getvalue()
        assert "Lattice dimensions: 12 x 12" in text
        assert "Velocity set: D2Q9" in text
        assert "INLET: 10" in text
        assert "OBSTACLE 0" not in text

    def test_verbose_dump(self):
        lattice = build_lid_driven_cavity(small_cavity_config(
            obstacle_center=(6.0, 5.0), obstacle_radius=1.0))
        out = io.StringIO()
        lattice.print_lattice_structure(out, verbose=True)
        text = out.getvalue()
        assert "OBSTACLE 6 5 w=1.000000" in text
        assert "INLET 1 11" in text
        assert "Inlet nodes (10)" in text


def build_channel(width=40, height=12, inlet_velocity=0.03, execution="parallel"):
    """速度入口 + 壓力出口通道，上下為反彈壁面"""
    configuration = LatticeConfiguration.create(
        "D2Q9", execution=execution, collision="bgk",
        outlet_mode="pressure", outlet_density=1.0)
    configuration.collision.initialize(0.8)

    info = ConstructionInfo().attach_domain_dimensions((width, height))
    info.add_perimeter_nodes(NodeType.BOUNDARY)
    info.add_nodes_interval((0, 1), (0, height - 2), NodeType.INLET)
    info.add_nodes_interval((width - 1, 1), (width - 1, height - 2), NodeType.OUTLET)

    lattice = Lattice(configuration).build(info)
    configuration.initializer.attach_update_functions(
        [lambda t, p: inlet_velocity, lambda t, p: 0.0], None)
    return lattice


class TestLongRun:
    """長時間推進測試類：Zou-He 驅動的流場必須穩定並收斂到物理解"""

    def test_cavity_primary_vortex(self):
        n = 20
        lattice = build_lid_driven_cavity(small_cavity_config(
            dimensions=(n, n), execution="parallel", lid_velocity=0.05))
        lattice.perform_lbm(4000)
        u = lattice.velocity
        assert np.all(np.isfinite(lattice.populations))
        assert np.all((lattice.density > 0.8) & (lattice.density < 1.2))

        mid = n // 2
        # 頂蓋下方順著頂蓋流動，下半部為回流
        assert u[mid, n - 2, 0] > 0.4 * 0.05
        assert u[mid, 1:mid, 0].min() < -0.05 * 0.05
        # 右側下沉、左側上升
        assert u[n - 4, mid, 1] < 0.0
        assert u[3, mid, 1] > 0.0

    def test_channel_poiseuille_profile(self):
        lattice = build_channel()
        lattice.perform_lbm(3000)
        u = lattice.velocity
        assert np.all(np.isfinite(lattice.populations))

        profile = u[30, 1:-1, 0]
        assert np.allclose(profile, profile[::-1], rtol=1e-6, atol=1e-9)
        assert np.argmax(profile) in (4, 5)
        assert 1.35 < profile.max() / profile.mean() < 1.6
        assert np.abs(u[30, 1:-1, 1]).max() < 1e-3

        flux = (lattice.density[30, 1:-1] * profile).sum()
        assert flux == pytest.approx((lattice.density[10, 1:-1] * u[10, 1:-1, 0]).sum(), rel=0.01)
        assert flux == pytest.approx((lattice.density[0, 1:-1] * 0.03).sum(), rel=0.03)
        # 壓力沿流向遞減，出口密度固定
        assert lattice.density[5, 6] > lattice.density[30, 6]
        assert np.allclose(lattice.density[-1, 1:-1], 1.0)

    def test_pressure_outlet_needs_no_functions(self):
        lattice = build_channel(width=10, height=6)
        initializer = lattice.configuration.initializer
        assert initializer.outlet_points == []
        assert len(initializer.inlet_points) == 4
        lattice.perform_lbm(5)
        assert np.all(np.isfinite(lattice.velocity))
