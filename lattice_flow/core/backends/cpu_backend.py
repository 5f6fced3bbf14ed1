"""
CPU執行策略 - 參考實現
順序執行、執行緒池分治與資料平行三種主機端策略
"""

import math
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np
import psutil

from .compute_backends import ExecutionKind, ExecutionStrategy, NodeKernel, backend_logger


class SequentialExecution(ExecutionStrategy):
    """
    順序執行策略

    依序對每個節點呼叫一次 host，作為其他策略的數值參考。
    """

    kind = ExecutionKind.SEQUENTIAL

    def _run(self, nodes: np.ndarray, body: NodeKernel) -> None:
        for i in range(nodes.size):
            body.host(nodes[i:i + 1])


class ThreadPoolExecution(ExecutionStrategy):
    """
    執行緒池策略 (fork-join)

    將節點序列切為連續區塊分派給工作執行緒，全部完成後才返回；
    工作執行緒的第一個異常會在呼叫端重新拋出。執行緒池在第一次
    使用時建立並跨階段重用，close() 時釋放。
    """

    kind = ExecutionKind.THREAD_POOL

    def __init__(self, max_workers: Optional[int] = None):
        super().__init__()
        if max_workers is None:
            max_workers = psutil.cpu_count(logical=False) or psutil.cpu_count() or 1
        if max_workers < 1:
            raise ValueError(f"max_workers 必須 >= 1: {max_workers}")
        self.max_workers = int(max_workers)
        self._pool: Optional[ThreadPoolExecutor] = None

    @property
    def pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers,
                                            thread_name_prefix="lattice_flow")
            backend_logger.info(f"🧵 執行緒池啟動 (workers={self.max_workers})", self.backend_type)
        return self._pool

    def _run(self, nodes: np.ndarray, body: NodeKernel) -> None:
        n_chunks = min(self.max_workers, nodes.size)
        if n_chunks == 1:
            body.host(nodes)
            return
        chunk = math.ceil(nodes.size / n_chunks)
        futures = [self.pool.submit(body.host, nodes[i:i + chunk])
                   for i in range(0, nodes.size, chunk)]
        errors = []
        for future in futures:
            exc = future.exception()
            if exc is not None:
                errors.append(exc)
        if errors:
            raise errors[0]

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
            backend_logger.info("執行緒池已關閉", self.backend_type)

    def get_backend_info(self):
        return {'backend_type': self.backend_type, 'max_workers': self.max_workers}


class ParallelAlgorithmExecution(ExecutionStrategy):
    """資料平行策略：對整個節點序列做一次向量化呼叫"""

    kind = ExecutionKind.PARALLEL_ALGORITHM

    def _run(self, nodes: np.ndarray, body: NodeKernel) -> None:
        body.host(nodes)
