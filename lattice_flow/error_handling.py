# error_handling.py
"""
統一錯誤處理系統
為LBM引擎提供錯誤分類、階段上下文與錯誤記錄

本引擎為離線批次模擬：一旦偵測到不變量被破壞，整個執行即視為不可信，
因此所有錯誤皆為致命錯誤，不做恢復或重試。
"""

import time
import logging
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """錯誤嚴重程度"""
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


class ErrorCategory(Enum):
    """錯誤類別"""
    CONFIGURATION = "configuration"
    GEOMETRY = "geometry"
    NUMERICAL = "numerical"
    EXECUTION = "execution"


# 自定義異常類
class CFDError(Exception):
    """LBM引擎基礎異常類"""

    def __init__(self, message: str, category: ErrorCategory,
                 severity: ErrorSeverity, context: Optional[Dict] = None):
        super().__init__(message)
        self.category = category
        self.severity = severity
        self.context = dict(context or {})
        self.timestamp = time.time()

    @property
    def phase(self) -> Optional[str]:
        return self.context.get("phase")

    def __str__(self):
        message = super().__str__()
        where = []
        if "phase" in self.context:
            where.append(f"phase={self.context['phase']}")
        if "step" in self.context:
            where.append(f"step={self.context['step']}")
        return f"{message} [{', '.join(where)}]" if where else message


class ConfigurationError(CFDError):
    """前置條件違反：參數或節點清單在附加前被使用、或封存後被修改"""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, ErrorSeverity.ERROR, context)


class GeometryError(CFDError):
    """幾何不一致：節點分類衝突、座標重複或越界"""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(message, ErrorCategory.GEOMETRY, ErrorSeverity.ERROR, context)


class NumericalInstabilityError(CFDError):
    """數值不穩定：鬆弛時間超出穩定範圍，或場中出現NaN/Inf"""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(message, ErrorCategory.NUMERICAL, ErrorSeverity.CRITICAL, context)


class ComputeExecutionError(CFDError):
    """計算執行錯誤：階段內拋出的其他異常"""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(message, ErrorCategory.EXECUTION, ErrorSeverity.FATAL, context)


@dataclass
class ErrorRecord:
    """錯誤記錄"""
    timestamp: float
    error_type: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    context: Dict = field(default_factory=dict)
    stack_trace: str = ""


class ErrorLog:
    """錯誤記錄器 - 保留有限長度的錯誤歷史供診斷使用"""

    MAX_RECORDS = 100

    def __init__(self):
        self.records: List[ErrorRecord] = []

    def record(self, error: CFDError) -> ErrorRecord:
        record = ErrorRecord(
            timestamp=error.timestamp,
            error_type=type(error).__name__,
            message=str(error),
            category=error.category,
            severity=error.severity,
            context=dict(error.context),
            stack_trace=traceback.format_exc(),
        )
        self.records.append(record)

        # 限制錯誤歷史長度
        if len(self.records) > self.MAX_RECORDS:
            self.records = self.records[-self.MAX_RECORDS // 2:]

        log_level = {
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.FATAL: logging.CRITICAL,
        }[error.severity]
        logger.log(log_level, f"{error.category.value.upper()}: {error}")
        return record

    @property
    def last_error(self) -> Optional[ErrorRecord]:
        return self.records[-1] if self.records else None

    def summary(self) -> Dict:
        return {
            'total_errors': len(self.records),
            'last_error': self.last_error,
        }


# 全域錯誤記錄實例
error_log = ErrorLog()


@contextmanager
def phase_guard(phase: str, step: Optional[int] = None, log: Optional[ErrorLog] = None):
    """
    階段執行上下文管理器

    為階段內拋出的 CFDError 補上 phase/step 上下文後重新拋出；
    其他異常包裝為 ComputeExecutionError。所有錯誤皆為致命。

    Args:
        phase: 階段名稱 (initialize, stream, boundary, collide, macroscopic, ...)
        step: 目前時間步
        log: 錯誤記錄器，預設為全域 error_log

    Raises:
        CFDError: 帶有階段上下文的錯誤
    """
    log = log or error_log
    try:
        yield
    except CFDError as e:
        e.context.setdefault("phase", phase)
        if step is not None:
            e.context.setdefault("step", step)
        log.record(e)
        raise
    except Exception as e:
        context = {"phase": phase}
        if step is not None:
            context["step"] = step
        wrapped = ComputeExecutionError(f"{phase} 執行失敗: {e}", context)
        log.record(wrapped)
        raise wrapped from e


__all__ = [
    'ErrorSeverity',
    'ErrorCategory',
    'CFDError',
    'ConfigurationError',
    'GeometryError',
    'NumericalInstabilityError',
    'ComputeExecutionError',
    'ErrorRecord',
    'ErrorLog',
    'error_log',
    'phase_guard',
]
