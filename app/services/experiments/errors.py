class ExperimentError(Exception):
    """Base class for errors raised by the experiment engine."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExperimentError):
    """Missing or malformed required input."""

    status_code = 400


class NotFoundError(ExperimentError):
    """Referenced experiment does not exist."""

    status_code = 404


class InvalidActionError(ExperimentError):
    """Unrecognized status-change action."""

    status_code = 400


class StateTransitionError(ExperimentError):
    """Action is recognized but not allowed from the experiment's current status."""

    status_code = 409


class PersistenceError(ExperimentError):
    """Underlying store read/write failure. Safe for the caller to retry."""

    status_code = 500
