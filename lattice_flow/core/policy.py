"""策略基類：設定期可變，封存後唯讀"""

from ..error_handling import ConfigurationError


class Policy:
    """
    兩階段生命週期

    設定期間可呼叫 attach/initialize；Lattice.perform_lbm 在第一步前
    呼叫 seal()，之後任何修改都拋出 ConfigurationError。
    """

    def __init__(self, strategy):
        self.strategy = strategy
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        self.validate()
        self._sealed = True

    def validate(self) -> None:
        """封存前的前置條件檢查，子類覆寫"""

    def _check_mutable(self, operation: str) -> None:
        if self._sealed:
            raise ConfigurationError(
                f"{type(self).__name__}.{operation}: 策略已封存，模擬開始後不可修改",
                {"phase": "setup"})


def flat_fields(populations, density, velocity):
    """
    回傳 (N, Q), (N,), (N, D) 扁平視圖

    欄位必須為 C 連續陣列，否則 reshape 會產生副本而使寫入遺失。
    """
    for name, arr in (("populations", populations), ("density", density), ("velocity", velocity)):
        if not arr.flags.c_contiguous:
            raise ConfigurationError(f"{name} 欄位必須為 C 連續陣列", {"phase": "setup"})
    return (populations.reshape(-1, populations.shape[-1]),
            density.reshape(-1),
            velocity.reshape(-1, velocity.shape[-1]))
