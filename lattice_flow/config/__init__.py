# config/__init__.py - 統一配置系統入口
"""
lattice_flow 配置系統

- config.core: LBM核心參數與穩定範圍
- config.config_manager: YAML 執行參數載入 (SimulationConfig)
"""

from .core import (
    CS2, CS, INV_CS2, DEFAULT_DELTA_T,
    MIN_TAU_STABLE, PSBB_DEFAULT_TAU_RANGE, MACH_WARNING_THRESHOLD,
    OBSTACLE_SUBSAMPLES,
    DEFAULT_OUTPUT_DIR, SNAPSHOT_PREFIX, CHECKPOINT_PREFIX,
    STABILITY_CHECK_INTERVAL, DEFAULT_MAX_WORKERS,
    validate_core_parameters,
)
from .config_manager import (
    SimulationConfig, load_config, apply_overrides, DEFAULT_CONFIG_PATH,
)

__all__ = [
    'CS2', 'CS', 'INV_CS2', 'DEFAULT_DELTA_T',
    'MIN_TAU_STABLE', 'PSBB_DEFAULT_TAU_RANGE', 'MACH_WARNING_THRESHOLD',
    'OBSTACLE_SUBSAMPLES',
    'DEFAULT_OUTPUT_DIR', 'SNAPSHOT_PREFIX', 'CHECKPOINT_PREFIX',
    'STABILITY_CHECK_INTERVAL', 'DEFAULT_MAX_WORKERS',
    'validate_core_parameters',
    'SimulationConfig', 'load_config', 'apply_overrides', 'DEFAULT_CONFIG_PATH',
]
