"""
exceptions.py
=============
Error types raised by the complaint modeling pipeline.

Fit errors carry the ModelSpecification that failed so the pipeline can
record them per candidate and keep going.
"""


class ComplaintModelError(Exception):
    """Base class for all pipeline errors"""


class DataValidationError(ComplaintModelError, ValueError):
    """Input file is missing columns or carries labels we cannot map"""


class ModelFitError(ComplaintModelError):
    """A single candidate specification could not be fit"""

    def __init__(self, message: str, spec=None):
        super().__init__(message)
        self.spec = spec

    @property
    def spec_name(self) -> str:
        return getattr(self.spec, 'name', '<unnamed>')


class InvalidSpecification(ModelFitError):
    """Specification or data is degenerate (unknown names, constant columns, all-zero response)"""


class ConvergenceFailure(ModelFitError):
    """Optimizer did not converge within its iteration budget"""

    def __init__(self, message: str, spec=None, methods=None, iterations=None):
        super().__init__(message, spec=spec)
        self.methods = list(methods or [])
        self.iterations = iterations


class SeparationDetected(ModelFitError):
    """Zero-inflation predictors perfectly separate zero and non-zero outcomes"""

    def __init__(self, message: str, spec=None, findings=None):
        super().__init__(message, spec=spec)
        self.findings = list(findings or [])
