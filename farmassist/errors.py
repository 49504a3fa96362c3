"""
Error taxonomy for the disease-detection pipeline.

Provider errors are raised by adapters and consumed by the selector; the
pipeline engine catches everything else at stage boundaries and turns it into
a failed step record.
"""
from typing import Any, Dict, List, Optional


class ProviderError(Exception):
    """A provider backend could not produce an analysis."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Missing or rejected credentials. Never retried."""


class ProviderTransientError(ProviderError):
    """Overload, rate limit, 5xx or timeout from a backend."""


class ProviderParseError(ProviderError):
    """Backend replied but the reply is not a detection result.

    Adapters convert this into the fallback result; it does not leave them.
    """


class AllProvidersFailedError(Exception):
    def __init__(self, last_error: Optional[str], attempts: Optional[List[Dict[str, Any]]] = None):
        self.last_error = last_error
        self.attempts = attempts or []
        super().__init__(f"All providers failed. Last error: {last_error}")


class AnalysisValidationError(ValueError):
    """Required pipeline input or upstream stage output is missing."""


class PersistenceError(Exception):
    """The analysis store could not complete a read or write."""


class AnalysisNotFoundError(PersistenceError, LookupError):
    def __init__(self, analysis_id: str):
        super().__init__(f"Analysis not found: {analysis_id}")
        self.analysis_id = analysis_id


class StatusTransitionError(PersistenceError):
    def __init__(self, analysis_id: str, current: str, target: str):
        super().__init__(f"Analysis {analysis_id}: cannot move status from {current} to {target}")
        self.analysis_id = analysis_id
        self.current = current
        self.target = target


class InvalidTransitionError(Exception):
    """No edge for (stage, event) in the pipeline transition table."""

    def __init__(self, stage: Any, event: Any):
        super().__init__(f"No pipeline transition from {stage} on {event}")
        self.stage = stage
        self.event = event
