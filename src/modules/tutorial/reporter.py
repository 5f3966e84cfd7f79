"""
Error Reporter

Turns a FailureRecord into the screen's error indicator and, separately,
a diagnostic log entry carrying the technical detail.
"""

from typing import Optional

from src.core.config import settings
from src.core.logging import get_logger
from src.core.metrics import record_error_indicator_shown
from src.modules.tutorial.models import ErrorIndicator
from src.modules.tutorial.strings import ERROR_MESSAGE, get_string
from src.pipeline.models import FailureRecord

diagnostics = get_logger("snowy.diagnostics")


class ErrorReporter:
    """
    Failure handler for a screen's TaskScope.

    The user sees the same localized message whatever failed; the cause is
    only in the diagnostic log.
    """

    def __init__(self, indicator: ErrorIndicator, locale: Optional[str] = None):
        self.indicator = indicator
        self.locale = locale or settings.LOCALE

    @property
    def message(self) -> str:
        return get_string(ERROR_MESSAGE, self.locale)

    def report(self, failure: FailureRecord):
        self.indicator.show(self.message)
        record_error_indicator_shown(self.locale)
        self._log_diagnostic(failure)

    def _log_diagnostic(self, failure: FailureRecord):
        cause = failure.cause
        diagnostics.error(
            "pipeline_failure",
            run_id=failure.run_id,
            failed_stage=failure.stage,
            error=failure.message,
            error_type=type(cause).__name__,
            details=getattr(cause, "details", None),
            exc_info=(type(cause), cause, cause.__traceback__),
        )
