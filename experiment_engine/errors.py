"""
Domain errors raised by the experimentation services.

The HTTP layer maps these onto status codes in main.py; services never raise
HTTPException themselves.
"""


class ExperimentEngineError(Exception):
    """Base class for all domain errors."""


class ValidationError(ExperimentEngineError):
    """Invalid input: missing control variant, missing identity, bad parameters."""


class InvalidTransitionError(ValidationError):
    """An experiment lifecycle transition that the state machine does not allow."""


class NotFoundError(ExperimentEngineError):
    """Unknown experiment, variant or assignment id."""


class ConflictError(ExperimentEngineError):
    """A uniqueness constraint lost to a concurrent writer."""


class TrackingError(ExperimentEngineError):
    """An event could not be written to the result log."""
