from __future__ import annotations

from typing import Any, Dict, Optional


class NewtubeException(Exception):
    """
    Base exception for the orchestrator.

    Carries message/code/status_code/details/user_message so API handlers can
    render it without knowing the concrete subclass.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "NEWTUBE_ERROR",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(NewtubeException):
    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
            user_message=f"Validation failed: {message}",
        )


class NotFoundError(NewtubeException):
    def __init__(self, resource: str, resource_id: Any, **kwargs: Any):
        details: Dict[str, Any] = {"resource": resource, "id": resource_id}
        details.update(kwargs)
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            code="NOT_FOUND",
            status_code=404,
            details=details,
        )


class InvalidTransitionError(NewtubeException):
    def __init__(self, job_id: str, current: Optional[str], target: str, **kwargs: Any):
        message = f"Job {job_id} cannot move from {current} to {target}"
        details: Dict[str, Any] = {"job_id": job_id, "current": current, "target": target}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            status_code=409,
            details=details,
            user_message=message,
        )


class ConfigurationError(NewtubeException):
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"config_key": config_key} if config_key else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
            user_message="System configuration error",
        )
