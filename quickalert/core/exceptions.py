class QuickAlertError(Exception):
    """Base class for domain errors. `status_code` is the HTTP status the API maps it to."""

    status_code = 500
    error = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(QuickAlertError):
    """Bad geometry, severity, category or vote value."""

    status_code = 400
    error = "validation_error"


class Forbidden(QuickAlertError):
    """The trusted caller lacks the role an operation needs."""

    status_code = 403
    error = "forbidden"


class OutOfRange(QuickAlertError):
    """The voter is farther from the report than the verification radius."""

    status_code = 403
    error = "out_of_range"

    def __init__(self, distance_meters: float, radius_meters: float):
        super().__init__(
            f"You must be within {radius_meters:.0f}m of the report location to vote. "
            f"Your distance: {distance_meters:.0f}m"
        )
        self.distance_meters = distance_meters
        self.radius_meters = radius_meters


class NotFound(QuickAlertError):
    status_code = 404
    error = "not_found"


class NotVotable(QuickAlertError):
    """The report is in a terminal status."""

    status_code = 409
    error = "not_votable"


class InvalidTransition(QuickAlertError):
    """Illegal alert lifecycle move."""

    status_code = 409
    error = "invalid_transition"


class ConcurrencyConflict(QuickAlertError):
    """
    A write lost an optimistic version check.

    Retried internally by the vote ledger; only surfaces once retries run out.
    """

    status_code = 409
    error = "concurrency_conflict"
