from typing import Any


class CRMError(Exception):
    """Base class for request-time failures raised by the service layer.

    Routers let these propagate; ``domain_exception_handler`` renders them in the
    standard error envelope with the class's HTTP status and error code.
    """

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class Forbidden(CRMError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Access denied", **kwargs: Any):
        super().__init__(message, **kwargs)


class NotFound(CRMError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, identifier: int | str | None = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found")


class Conflict(CRMError):
    status_code = 409
    code = "conflict"
