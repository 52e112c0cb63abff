class FoodShareError(Exception):
    """Base class for failures raised by the bot's infrastructure layer."""


class NetworkTimeout(FoodShareError):
    """A call exceeded its configured deadline."""


class UpstreamServerError(FoodShareError):
    """The remote service is unhealthy (5xx or a broken connection)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class UpstreamClientError(FoodShareError):
    """The remote service rejected the request itself (4xx). Never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class StorageError(FoodShareError):
    """Row store or blob store failure."""


class ValidationError(FoodShareError):
    """Oversized or wrong-typed file. Terminal, never retried."""
