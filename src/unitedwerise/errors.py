"""Domain exceptions raised by the service layer.

The API maps each class to an HTTP status through ``status_code``; anything
else escaping a route becomes a 500.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class UnitedWeRiseError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(UnitedWeRiseError):
    status_code = 400


class PermissionDenied(UnitedWeRiseError):
    status_code = 403


class NotFoundError(UnitedWeRiseError):
    status_code = 404


class ConflictError(UnitedWeRiseError):
    status_code = 409
