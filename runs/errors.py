"""Precondition errors raised synchronously by the run service."""

from __future__ import annotations

from typing import Any, Dict, Optional


class RunServiceError(Exception):
    status_code = 400
    default_code = "RUN_SERVICE_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(RunServiceError):
    status_code = 404
    default_code = "NOT_FOUND"


class ForbiddenError(RunServiceError):
    status_code = 403
    default_code = "FORBIDDEN"
