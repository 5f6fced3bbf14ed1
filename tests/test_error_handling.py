"""
error_handling.py 測試套件
測試錯誤分類、階段上下文與錯誤記錄
"""

import pytest

from lattice_flow.error_handling import (
    CFDError, ComputeExecutionError, ConfigurationError, ErrorCategory, ErrorLog,
    ErrorSeverity, GeometryError, NumericalInstabilityError, phase_guard,
)


@pytest.fixture
def log():
    return ErrorLog()


class TestErrorTypes:
    """錯誤類別測試類"""

    @pytest.mark.parametrize("cls,category", [
        (ConfigurationError, ErrorCategory.CONFIGURATION),
        (GeometryError, ErrorCategory.GEOMETRY),
        (NumericalInstabilityError, ErrorCategory.NUMERICAL),
        (ComputeExecutionError, ErrorCategory.EXECUTION),
    ])
    def test_categories(self, cls, category):
        error = cls("boom")
        assert isinstance(error, CFDError)
        assert error.category == category
        assert error.phase is None
        assert str(error) == "boom"

    def test_message_includes_phase_and_step(self):
        error = NumericalInstabilityError("NaN", {"phase": "stability", "step": 12})
        assert error.severity == ErrorSeverity.CRITICAL
        assert str(error) == "NaN [phase=stability, step=12]"

    def test_context_is_copied(self):
        context = {"phase": "setup"}
        error = ConfigurationError("x", context)
        error.context["step"] = 1
        assert context == {"phase": "setup"}


class TestPhaseGuard:
    """階段上下文測試類"""

    def test_cfd_error_gets_phase(self, log):
        with pytest.raises(GeometryError) as exc_info:
            with phase_guard("boundary", 7, log=log):
                raise GeometryError("bad node")
        assert exc_info.value.context == {"phase": "boundary", "step": 7}
        assert log.last_error.error_type == "GeometryError"

    def test_existing_phase_kept(self, log):
        with pytest.raises(NumericalInstabilityError) as exc_info:
            with phase_guard("stability", 3, log=log):
                raise NumericalInstabilityError("NaN", {"phase": "collide"})
        assert exc_info.value.phase == "collide"
        assert exc_info.value.context["step"] == 3

    def test_foreign_error_wrapped(self, log):
        with pytest.raises(ComputeExecutionError) as exc_info:
            with phase_guard("stream", 0, log=log):
                raise KeyError("missing")
        assert exc_info.value.phase == "stream"
        assert exc_info.value.context["step"] == 0
        assert isinstance(exc_info.value.__cause__, KeyError)

    def test_no_error(self, log):
        with phase_guard("collide", log=log):
            pass
        assert log.last_error is None


class TestErrorLog:
    """錯誤記錄器測試類"""

    def test_history_bounded(self, log):
        for i in range(ErrorLog.MAX_RECORDS + 1):
            log.record(ConfigurationError(f"e{i}"))
        assert len(log.records) <= ErrorLog.MAX_RECORDS
        assert log.last_error.message == f"e{ErrorLog.MAX_RECORDS}"

    def test_summary(self, log):
        log.record(GeometryError("overlap", {"phase": "geometry"}))
        summary = log.summary()
        assert summary["total_errors"] == 1
        assert summary["last_error"].context == {"phase": "geometry"}
        assert summary["last_error"].category == ErrorCategory.GEOMETRY
