"""
core.py - LBM核心參數 (格子單位)

引擎內所有數值常數的單一來源：格子聲速、鬆弛時間穩定範圍、
診斷輸出預設值。
"""

# ==============================================
# LBM理論參數
# ==============================================

CS2 = 1.0/3.0      # 格子聲速平方
CS = CS2 ** 0.5
INV_CS2 = 3.0

DEFAULT_DELTA_T = 1.0

# ==============================================
# 數值穩定性參數
# ==============================================

# BGK/TRT: ν = c_s²(τ - 0.5)，τ/Δt 必須嚴格大於 0.5
MIN_TAU_STABLE = 0.5

# PSBB 混合格式穩定範圍比完整bounce-back窄
PSBB_DEFAULT_TAU_RANGE = (0.51, 2.0)

# 超過此Mach數只發出警告
MACH_WARNING_THRESHOLD = 0.3

# 障礙物權重：每軸子取樣點數
OBSTACLE_SUBSAMPLES = 8

# ==============================================
# 診斷輸出
# ==============================================

DEFAULT_OUTPUT_DIR = "output"
SNAPSHOT_PREFIX = "macroscopic"
CHECKPOINT_PREFIX = "checkpoint"
STABILITY_CHECK_INTERVAL = 1

# 執行緒池：未指定時使用實體核心數
DEFAULT_MAX_WORKERS = None


def validate_core_parameters() -> bool:
    """核心參數自洽性檢查"""
    checks = [
        abs(CS2 * INV_CS2 - 1.0) < 1e-12,
        PSBB_DEFAULT_TAU_RANGE[0] > MIN_TAU_STABLE,
        PSBB_DEFAULT_TAU_RANGE[0] < PSBB_DEFAULT_TAU_RANGE[1],
        OBSTACLE_SUBSAMPLES >= 1,
    ]
    return all(checks)
