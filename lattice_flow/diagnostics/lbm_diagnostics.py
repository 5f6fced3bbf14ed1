# lbm_diagnostics.py
"""
LBM診斷輸出
巨觀量快照 (文字表格)、檢查點 (npz) 與守恆摘要
"""

import os
import logging
from collections import deque
from typing import Dict, Optional

import numpy as np

from ..config.core import CHECKPOINT_PREFIX, CS, DEFAULT_OUTPUT_DIR, SNAPSHOT_PREFIX
from ..error_handling import ConfigurationError

logger = logging.getLogger(__name__)


class LBMDiagnostics:
    """LBM專用診斷輸出"""

    def __init__(self, lattice, output_dir: Optional[str] = None, history_size: int = 1000):
        self.lattice = lattice
        self.output_dir = output_dir or DEFAULT_OUTPUT_DIR
        self.history = deque(maxlen=history_size)
        self.initial_mass = None

    def _target_dir(self, output_dir: Optional[str]) -> str:
        path = output_dir or self.output_dir
        os.makedirs(path, exist_ok=True)
        return path

    def summary(self) -> Dict:
        """總質量、最大速度與 Mach 數 (不含靜態壁面節點)"""
        lattice = self.lattice
        mask = lattice.non_wall_mask
        rho = lattice.density[mask]
        u = lattice.velocity[mask]
        speed = np.sqrt(np.sum(u * u, axis=-1)) if u.size else np.zeros(0)
        mass = float(np.sum(rho))
        if self.initial_mass is None:
            self.initial_mass = mass
        return {
            'step': lattice.time_step,
            'total_mass': mass,
            'mass_drift': mass - self.initial_mass,
            'max_velocity': float(speed.max()) if speed.size else 0.0,
            'max_mach': float(speed.max() / CS) if speed.size else 0.0,
            'min_density': float(rho.min()) if rho.size else float('nan'),
            'max_density': float(rho.max()) if rho.size else float('nan'),
        }

    def update_diagnostics(self) -> Dict:
        report = self.summary()
        self.history.append(report)
        logger.debug(f"📊 step={report['step']} mass={report['total_mass']:.6f} "
                     f"max|u|={report['max_velocity']:.4e}")
        return report

    def write_snapshot(self, step: int, output_dir: Optional[str] = None) -> str:
        """
        寫出巨觀量快照

        每行一個節點：座標..., rho, u_0 ... u_{D-1}
        """
        lattice = self.lattice
        dims = lattice.dimensions
        dim = len(dims)
        coords = np.indices(dims).reshape(dim, -1).T
        table = np.column_stack([
            coords,
            lattice.density.reshape(-1),
            lattice.velocity.reshape(-1, dim),
        ])
        axes = "xyz"[:dim] if dim <= 3 else " ".join(f"x{i}" for i in range(dim))
        header = " ".join(list(axes) + ["rho"] + [f"u_{i}" for i in range(dim)])
        path = os.path.join(self._target_dir(output_dir), f"{SNAPSHOT_PREFIX}_{step:06d}.txt")
        np.savetxt(path, table, fmt=["%d"] * dim + ["%.12e"] * (dim + 1), header=header)
        logger.debug(f"💾 快照已寫出: {path}")
        return path

    def write_checkpoint(self, step: int, output_dir: Optional[str] = None) -> str:
        lattice = self.lattice
        path = os.path.join(self._target_dir(output_dir), f"{CHECKPOINT_PREFIX}_{step:06d}.npz")
        np.savez(path,
                 populations=lattice.populations,
                 density=lattice.density,
                 velocity=lattice.velocity,
                 node_types=lattice.node_types,
                 step=np.array(step))
        logger.info(f"💾 檢查點已寫出: {path}")
        return path

    def load_checkpoint(self, path: str) -> int:
        """
        從檢查點還原網格狀態

        Returns:
            還原後的時間步

        Raises:
            ConfigurationError: 檢查點與目前網格不相容
        """
        with np.load(path) as data:
            if tuple(data["node_types"].shape) != tuple(self.lattice.dimensions):
                raise ConfigurationError(
                    f"檢查點網格 {data['node_types'].shape} 與目前網格 {self.lattice.dimensions} 不符",
                    {"phase": "checkpoint"})
            if not np.array_equal(data["node_types"], self.lattice.node_types):
                raise ConfigurationError("檢查點節點分類與目前網格不符", {"phase": "checkpoint"})
            step = int(data["step"])
            self.lattice.restore_state(data["populations"], data["density"], data["velocity"], step)
        logger.info(f"♻️ 已從 {path} 還原 (step={step})")
        return step
