"""
LBM執行策略系統
順序、執行緒池、資料平行與 Taichi 卸載四種策略
(Taichi 後端由工廠懶載入)
"""

from .compute_backends import (
    BackendInitializationError,
    ExecutionKind,
    ExecutionStrategy,
    ExecutionStrategyFactory,
    NodeKernel,
)
from .cpu_backend import SequentialExecution, ThreadPoolExecution, ParallelAlgorithmExecution

__all__ = [
    'BackendInitializationError',
    'ExecutionKind',
    'ExecutionStrategy',
    'ExecutionStrategyFactory',
    'NodeKernel',
    'SequentialExecution',
    'ThreadPoolExecution',
    'ParallelAlgorithmExecution',
]
