"""
執行策略基類與工廠模式
提供統一的逐節點執行介面，同一份物理演算法可在不同策略下執行

核心特性：
- ExecutionKind 策略種類取代編譯期標籤分派
- NodeKernel 將主機端 NumPy 批次函數與 Taichi 裝置核心綁定
- 統一錯誤處理：策略內部異常包裝為 ComputeExecutionError
- 懶載入 Taichi 後端，載入失敗拋出 BackendInitializationError
"""

import time
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ...error_handling import (
    CFDError, ComputeExecutionError, ConfigurationError,
    ErrorCategory, ErrorSeverity,
)


# ===== 錯誤處理 =====

class BackendInitializationError(CFDError):
    """執行策略初始化錯誤"""
    def __init__(self, message: str, backend_type: Optional[str] = None,
                 context: Optional[Dict] = None):
        self.backend_type = backend_type or "unknown"
        super().__init__(message, ErrorCategory.EXECUTION, ErrorSeverity.FATAL, context)


# ===== 策略種類 =====

class ExecutionKind(Enum):
    """支援的執行策略"""
    SEQUENTIAL = "sequential"
    THREAD_POOL = "threads"
    PARALLEL_ALGORITHM = "parallel"
    OFFLOAD = "offload"


# ===== 統一日誌系統 =====

class BackendLogger:
    """統一後端日誌管理，訊息加上 [策略種類] 前綴"""

    def __init__(self):
        self.logger = logging.getLogger("lattice_flow.backends")

    def _format(self, message: str, backend_type: Optional[str]) -> str:
        prefix = f"[{backend_type}] " if backend_type else ""
        return f"{prefix}{message}"

    def debug(self, message: str, backend_type: Optional[str] = None):
        self.logger.debug(self._format(message, backend_type))

    def info(self, message: str, backend_type: Optional[str] = None):
        self.logger.info(self._format(message, backend_type))

    def warning(self, message: str, backend_type: Optional[str] = None):
        self.logger.warning(self._format(message, backend_type))

    def error(self, message: str, backend_type: Optional[str] = None):
        self.logger.error(self._format(message, backend_type))


# 全域日誌實例
backend_logger = BackendLogger()


# ===== 節點核心 =====

@dataclass(frozen=True)
class NodeKernel:
    """
    逐節點計算主體

    Attributes:
        name: 核心名稱 (用於日誌與錯誤訊息)
        host: host(batch) - 對一維節點索引陣列執行的 NumPy 批次函數
        device: device(kernels, nodes) - 啟動對應 Taichi 核心，可為 None
    """
    name: str
    host: Callable[[np.ndarray], None]
    device: Optional[Callable[[Any, np.ndarray], None]] = None


# ===== 執行策略基類 =====

class ExecutionStrategy(ABC):
    """
    執行策略基類

    唯一的執行原語為 for_each(nodes, body)：對節點序列中每個節點
    執行 body，返回時所有節點皆已完成。同一次 for_each 中不同節點
    只寫入互不重疊的記憶體位置。
    """

    kind: ExecutionKind = ExecutionKind.SEQUENTIAL

    def __init__(self):
        self.operation_count = 0
        self.execution_times: List[float] = []
        self.creation_time = time.time()

    @property
    def backend_type(self) -> str:
        return self.kind.value

    def for_each(self, nodes, body: NodeKernel) -> None:
        """
        對每個節點執行 body

        Args:
            nodes: 線性節點索引 (一維)
            body: NodeKernel

        Raises:
            ComputeExecutionError: body 拋出非 CFDError 的異常
        """
        nodes = np.asarray(nodes, dtype=np.intp).reshape(-1)
        if nodes.size == 0:
            return
        with self.safe_execution(body.name):
            self._run(nodes, body)

    @abstractmethod
    def _run(self, nodes: np.ndarray, body: NodeKernel) -> None:
        pass

    def close(self) -> None:
        """釋放策略資源"""
        pass

    @contextmanager
    def safe_execution(self, operation_name: str):
        """
        安全執行上下文管理器

        Raises:
            ComputeExecutionError: 執行錯誤 (CFDError 原樣傳遞)
        """
        start_time = time.perf_counter()
        try:
            yield
        except CFDError:
            raise
        except Exception as e:
            error_msg = f"{operation_name} 執行失敗: {e}"
            backend_logger.error(error_msg, self.backend_type)
            raise ComputeExecutionError(error_msg, {"kernel": operation_name}) from e
        finally:
            self.execution_times.append(time.perf_counter() - start_time)
            self.operation_count += 1
            # 限制歷史記錄長度
            if len(self.execution_times) > 1000:
                self.execution_times = self.execution_times[-500:]

    def get_backend_info(self) -> Dict[str, Any]:
        return {'backend_type': self.backend_type}

    def get_basic_metrics(self) -> Dict[str, Any]:
        """獲取基礎性能指標"""
        if not self.execution_times:
            return {'status': 'no_data'}
        return {
            'backend_type': self.backend_type,
            'total_operations': self.operation_count,
            'avg_execution_time': float(np.mean(self.execution_times)),
            'max_execution_time': float(np.max(self.execution_times)),
            'uptime_seconds': time.time() - self.creation_time,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


# ===== 策略工廠 =====

class ExecutionStrategyFactory:
    """
    執行策略工廠

    名稱: sequential, threads, parallel, offload
    """

    NAMES = tuple(kind.value for kind in ExecutionKind)

    @staticmethod
    def create(name: str, max_workers: Optional[int] = None,
               arch: str = "cpu") -> ExecutionStrategy:
        """
        根據名稱創建執行策略

        Raises:
            ConfigurationError: 未知的策略名稱
            BackendInitializationError: Taichi 後端無法載入
        """
        try:
            kind = ExecutionKind(name)
        except ValueError:
            raise ConfigurationError(
                f"未知的執行策略: {name} (可用: {', '.join(ExecutionStrategyFactory.NAMES)})",
                {"phase": "config"}) from None

        if kind == ExecutionKind.SEQUENTIAL:
            from .cpu_backend import SequentialExecution
            strategy = SequentialExecution()
        elif kind == ExecutionKind.THREAD_POOL:
            from .cpu_backend import ThreadPoolExecution
            strategy = ThreadPoolExecution(max_workers=max_workers)
        elif kind == ExecutionKind.PARALLEL_ALGORITHM:
            from .cpu_backend import ParallelAlgorithmExecution
            strategy = ParallelAlgorithmExecution()
        else:
            try:
                from .taichi_backend import OffloadExecution
            except ImportError as e:
                raise BackendInitializationError(
                    f"Taichi 後端不可用: {e}", kind.value, {"phase": "config"}) from e
            strategy = OffloadExecution(arch=arch)

        backend_logger.info("🏗️ 執行策略建立完成", strategy.backend_type)
        return strategy
