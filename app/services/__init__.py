from app.services.errors import (
    FoodShareError,
    NetworkTimeout,
    StorageError,
    UpstreamClientError,
    UpstreamServerError,
    ValidationError,
)
from app.services.result import Result

__all__ = [
    "FoodShareError",
    "NetworkTimeout",
    "Result",
    "StorageError",
    "UpstreamClientError",
    "UpstreamServerError",
    "ValidationError",
]
