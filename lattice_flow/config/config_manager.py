"""
config_manager.py

執行參數載入器：從 YAML 讀取使用者設定，安全地覆蓋 SimulationConfig
的允許欄位。

使用方式：

    from lattice_flow.config import load_config
    cfg = load_config("cavity.yaml")

可用環境變數：
- LATTICE_FLOW_CONFIG: 指定 YAML 路徑（預設: ./lattice_flow.yaml）
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml

from . import core
from ..error_handling import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.environ.get("LATTICE_FLOW_CONFIG", "lattice_flow.yaml")


@dataclass
class SimulationConfig:
    """頂蓋驅動方腔(lid-driven cavity)執行參數"""

    # domain
    dimensions: Tuple[int, ...] = (64, 64)
    velocity_set: str = "D2Q9"
    # execution
    execution: str = "parallel"
    max_workers: Optional[int] = core.DEFAULT_MAX_WORKERS
    taichi_arch: str = "cpu"
    # collision
    collision: str = "trt"
    tau: float = 0.8
    tau_minus: Optional[float] = None
    magic_parameter: Optional[float] = 0.25
    delta_t: float = core.DEFAULT_DELTA_T
    # lid
    lid_velocity: float = 0.1
    lid_ramp_time: float = 0.0
    initial_density: float = 1.0
    # obstacle (PSBB)
    obstacle_center: Optional[Tuple[float, ...]] = None
    obstacle_radius: float = 0.0
    psbb_tau: float = 0.8
    psbb_tau_range: Tuple[float, float] = field(default=core.PSBB_DEFAULT_TAU_RANGE)
    # simulation
    steps: int = 1000
    output_interval: int = 0
    checkpoint_interval: int = 0
    stability_interval: int = core.STABILITY_CHECK_INTERVAL
    output_dir: str = core.DEFAULT_OUTPUT_DIR

    def validate(self) -> None:
        """基本範圍檢查，不合法時拋出 ConfigurationError"""
        if len(self.dimensions) < 1 or any(int(n) < 3 for n in self.dimensions):
            raise ConfigurationError(f"每個軸至少需要3個格點: {self.dimensions}",
                                     {"phase": "config"})
        if self.steps < 0:
            raise ConfigurationError(f"步數不可為負: {self.steps}", {"phase": "config"})
        if self.tau / self.delta_t <= core.MIN_TAU_STABLE:
            raise ConfigurationError(f"τ/Δt 必須 > {core.MIN_TAU_STABLE}: τ={self.tau}",
                                     {"phase": "config"})
        if self.collision not in ("bgk", "trt"):
            raise ConfigurationError(f"未知的碰撞模型: {self.collision}", {"phase": "config"})
        if self.obstacle_center is not None and len(self.obstacle_center) != len(self.dimensions):
            raise ConfigurationError("障礙物中心維度與網格維度不符", {"phase": "config"})

    @property
    def has_obstacle(self) -> bool:
        return self.obstacle_center is not None and self.obstacle_radius > 0.0


# 禁止覆寫的格子常數（數值穩定性守則）
PROHIBITED = {
    "core.cs2",
    "core.inv_cs2",
    "core.min_tau_stable",
}

# YAML -> SimulationConfig 屬性映射
MAPPING: Dict[str, str] = {
    # domain
    "domain.dimensions": "dimensions",
    "domain.velocity_set": "velocity_set",
    # execution
    "execution.strategy": "execution",
    "execution.max_workers": "max_workers",
    "execution.taichi_arch": "taichi_arch",
    # collision
    "collision.model": "collision",
    "collision.tau": "tau",
    "collision.tau_minus": "tau_minus",
    "collision.magic_parameter": "magic_parameter",
    "collision.delta_t": "delta_t",
    # lid
    "lid.velocity": "lid_velocity",
    "lid.ramp_time": "lid_ramp_time",
    "lid.initial_density": "initial_density",
    # obstacle
    "obstacle.center": "obstacle_center",
    "obstacle.radius": "obstacle_radius",
    "obstacle.psbb_tau": "psbb_tau",
    "obstacle.psbb_tau_range": "psbb_tau_range",
    # simulation
    "simulation.steps": "steps",
    "simulation.output_interval": "output_interval",
    "simulation.checkpoint_interval": "checkpoint_interval",
    "simulation.stability_interval": "stability_interval",
    "simulation.output_dir": "output_dir",
}

# 序列欄位：YAML list -> tuple
_TUPLE_FIELDS = {"dimensions", "obstacle_center", "psbb_tau_range"}


def _flatten(d: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in d.items():
        key = f"{prefix}.{k}" if prefix else k
        if isinstance(v, dict):
            out.update(_flatten(v, key))
        else:
            out[key] = v
    return out


def _load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"YAML 頂層必須為映射: {path}", {"phase": "config"})
    return data


def _coerce(old: Any, new: Any, attr: str) -> Any:
    if new is None:
        return None
    if attr in _TUPLE_FIELDS:
        if attr == "dimensions":
            return tuple(int(v) for v in new)
        return tuple(float(v) for v in new)
    if isinstance(old, bool):
        return bool(new)
    if isinstance(old, int):
        return int(new)
    if isinstance(old, float):
        return float(new)
    return new


def apply_overrides(cfg: SimulationConfig, data: Dict[str, Any]) -> SimulationConfig:
    """套用YAML覆寫到 SimulationConfig；未知鍵值記錄後略過"""
    flat = _flatten(data)
    applied = []

    for ykey, value in flat.items():
        if ykey in PROHIBITED:
            logger.warning(f"⛔ 禁止覆寫格子常數: {ykey}")
            continue
        attr = MAPPING.get(ykey)
        if attr is None:
            logger.warning(f"略過未知設定: {ykey}")
            continue
        old = getattr(cfg, attr)
        try:
            new_val = _coerce(old, value, attr)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"設定 {ykey} 型別錯誤: {value!r} ({e})",
                                     {"phase": "config"}) from e
        setattr(cfg, attr, new_val)
        applied.append((ykey, attr, old, new_val))

    for ykey, attr, old, new in applied:
        logger.info(f"🧩 套用覆寫 {ykey} → {attr}: {old} → {new}")
    return cfg


def load_config(path: Optional[str] = None) -> SimulationConfig:
    """讀取YAML並回傳驗證後的 SimulationConfig；檔案不存在時使用預設值"""
    path = path or DEFAULT_CONFIG_PATH
    cfg = SimulationConfig()
    data = _load_yaml(path)
    if not data:
        logger.info(f"⚙️  使用預設設定（未找到: {path}）")
    else:
        apply_overrides(cfg, data)
    cfg.validate()
    return cfg
