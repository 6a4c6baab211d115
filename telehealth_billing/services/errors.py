class ServiceError(RuntimeError):
    """Domain error carrying the status code it maps to at the service boundary."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class GatewayError(ServiceError):
    status_code = 502


class InternalError(ServiceError):
    status_code = 500
