# numerical_stability.py
"""
數值穩定性監控
每個時間步巨觀量計算後檢查 NaN/Inf、非正密度與 Mach 數
"""

import logging
from collections import deque
from typing import Dict, Optional

import numpy as np

from ..config.core import CS, MACH_WARNING_THRESHOLD
from ..error_handling import NumericalInstabilityError

logger = logging.getLogger(__name__)


class NumericalStabilityMonitor:
    """數值穩定性監控器"""

    def __init__(self, mach_threshold: float = MACH_WARNING_THRESHOLD, history_size: int = 100):
        self.mach_threshold = mach_threshold
        self.history = deque(maxlen=history_size)
        self.warning_count = 0

    def diagnose(self, density: np.ndarray, velocity: np.ndarray,
                 mask: Optional[np.ndarray] = None) -> Dict:
        """
        統計密度與速度場

        Args:
            density: (*dims)
            velocity: (*dims, D)
            mask: 參與統計的節點 (*dims)，預設全部
        """
        rho = density if mask is None else density[mask]
        u = velocity.reshape(-1, velocity.shape[-1]) if mask is None else velocity[mask]
        speed = np.sqrt(np.sum(u * u, axis=-1))
        finite_rho = np.isfinite(rho)
        finite_u = np.all(np.isfinite(u), axis=-1)
        nan_count = int(np.count_nonzero(~finite_rho) + np.count_nonzero(~finite_u))
        return {
            'nan_count': nan_count,
            'min_density': float(np.min(rho[finite_rho])) if finite_rho.any() else float('nan'),
            'max_density': float(np.max(rho[finite_rho])) if finite_rho.any() else float('nan'),
            'max_velocity': float(np.max(speed[finite_u])) if finite_u.any() else 0.0,
            'max_mach': float(np.max(speed[finite_u]) / CS) if finite_u.any() else 0.0,
        }

    def check(self, density: np.ndarray, velocity: np.ndarray,
              mask: Optional[np.ndarray] = None, step: Optional[int] = None) -> Dict:
        """
        檢查數值穩定性

        Raises:
            NumericalInstabilityError: 出現 NaN/Inf 或非正密度
        """
        report = self.diagnose(density, velocity, mask)
        report['step'] = step
        self.history.append(report)

        context = {"phase": "stability"}
        if step is not None:
            context["step"] = step
        if report['nan_count'] > 0:
            raise NumericalInstabilityError(
                f"偵測到 {report['nan_count']} 個 NaN/Inf 節點", context)
        if report['min_density'] <= 0.0:
            raise NumericalInstabilityError(
                f"非正密度: min ρ = {report['min_density']:.6e}", context)
        if report['max_mach'] > self.mach_threshold:
            self.warning_count += 1
            logger.warning(f"⚠️ Mach數 {report['max_mach']:.3f} 超過 {self.mach_threshold} (step={step})")
        return report
