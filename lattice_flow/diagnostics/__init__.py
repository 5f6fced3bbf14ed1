# diagnostics/__init__.py
"""診斷輸出與數值穩定性監控"""

from .numerical_stability import NumericalStabilityMonitor
from .lbm_diagnostics import LBMDiagnostics

__all__ = ['NumericalStabilityMonitor', 'LBMDiagnostics']
