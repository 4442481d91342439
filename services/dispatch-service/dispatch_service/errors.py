"""
Typed failures raised by the dispatch core.

Every error carries a machine-readable ``kind``, a human message and optional
structured ``details`` so callers can decide between retrying and aborting.
"""


class DispatchError(Exception):
    kind = "DISPATCH_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# ---- validation ----

class InvalidCoordinates(DispatchError):
    kind = "INVALID_COORDINATES"
    status_code = 400


class InvalidState(DispatchError):
    kind = "INVALID_STATE"
    status_code = 400


# ---- concurrency ----

class AlreadyClaimed(DispatchError):
    kind = "ALREADY_CLAIMED"
    status_code = 409


class CapacityExceeded(DispatchError):
    kind = "CAPACITY_EXCEEDED"
    status_code = 409


# ---- transitions ----

class InvalidTransition(DispatchError):
    kind = "INVALID_TRANSITION"
    status_code = 409


class Forbidden(DispatchError):
    kind = "FORBIDDEN"
    status_code = 403


class NotFound(DispatchError):
    kind = "NOT_FOUND"
    status_code = 404


# ---- location ----

PERMISSION_DENIED = "PERMISSION_DENIED"
POSITION_UNAVAILABLE = "POSITION_UNAVAILABLE"
TIMEOUT = "TIMEOUT"
NETWORK_ERROR = "NETWORK_ERROR"
INVALID_COORDINATES = "INVALID_COORDINATES"
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

LOCATION_ERROR_KINDS = {
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    TIMEOUT,
    NETWORK_ERROR,
    INVALID_COORDINATES,
    SERVICE_UNAVAILABLE,
}

RETRIABLE_LOCATION_ERRORS = {TIMEOUT, NETWORK_ERROR, POSITION_UNAVAILABLE}


class LocationError(DispatchError):
    """Failure from the platform position source or the geocoder."""

    def __init__(self, kind: str, message: str, details: dict | None = None):
        if kind not in LOCATION_ERROR_KINDS:
            raise ValueError(f"Unknown location error kind: {kind}")
        self.kind = kind
        super().__init__(message, details)

    @property
    def status_code(self) -> int:
        if self.kind == INVALID_COORDINATES:
            return 400
        if self.kind == PERMISSION_DENIED:
            return 403
        if self.kind == TIMEOUT:
            return 504
        return 503

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE_LOCATION_ERRORS
