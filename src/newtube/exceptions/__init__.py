from newtube.exceptions.handlers import (
    ConfigurationError,
    InvalidTransitionError,
    NewtubeException,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "NewtubeException",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConfigurationError",
]
