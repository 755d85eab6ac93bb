"""Typed errors raised by the ride core.

Each error carries a stable ``code`` and the HTTP status the API layer maps it
to, so callers can tell "try another ride" (RideUnavailable) apart from "fix
your request" (ValidationError) and "nothing you can do now" (RouteUnavailable).
"""


class RideError(Exception):
    code = "ride_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(RideError):
    """Malformed or inconsistent input; never reaches the state machine."""
    code = "validation_error"
    status_code = 422


class RouteUnavailable(RideError):
    """The route provider could not estimate distance/duration."""
    code = "route_unavailable"
    status_code = 503


class RideNotFound(RideError):
    code = "ride_not_found"
    status_code = 404


class RideUnavailable(RideError):
    """Lost the accept race, or the ride was already taken or cancelled."""
    code = "ride_unavailable"
    status_code = 409


class VehicleMismatch(RideError):
    code = "vehicle_mismatch"
    status_code = 409


class Unauthorized(RideError):
    """Caller is not the ride's owner or assigned driver."""
    code = "unauthorized"
    status_code = 403


class InvalidTransition(RideError):
    code = "invalid_transition"
    status_code = 409


class AlreadyFinalized(RideError):
    """The ride is completed or cancelled."""
    code = "already_finalized"
    status_code = 409
