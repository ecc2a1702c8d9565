"""
Custom Exceptions for the Study Tracker
=======================================

Every error raised by the service layer derives from StudyTrackerError and
carries the HTTP status it maps to. The API layer turns them into
`{"detail": ..., "code": ...}` responses; nothing is retried.

Usage:
    from exceptions import NotFoundError

    if doc is None:
        raise NotFoundError("Study node", node_id)
"""

from typing import Any, Dict, Optional


class StudyTrackerError(Exception):
    """Base exception for all Study Tracker errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# ============================================
# Client errors
# ============================================

class InvalidInputError(StudyTrackerError):
    """Request data failed a domain rule"""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INVALID_INPUT", details=details)


class InvalidIdError(InvalidInputError):
    """Identifier is not a valid document id"""

    def __init__(self, value: str):
        super().__init__("Invalid ID", details={"id": value})
        self.code = "INVALID_ID"


class AuthenticationError(StudyTrackerError):
    """Session missing, expired or credentials rejected"""

    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="AUTH_FAILED")


class AuthorizationError(StudyTrackerError):
    """Caller's role does not allow this action"""

    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, code="ACCESS_DENIED")


class NotFoundError(StudyTrackerError):
    """Referenced document does not exist"""

    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found"
        details = {"id": resource_id} if resource_id else None
        super().__init__(message, code="NOT_FOUND", details=details)


class ConflictError(StudyTrackerError):
    status_code = 409

    def __init__(self, message: str, code: str = "CONFLICT"):
        super().__init__(message, code=code)


class InvalidTransitionError(ConflictError):
    """Status change not permitted from the current state"""

    def __init__(self, current: str, action: str):
        super().__init__(f"Cannot {action} a {current} doubt", code="INVALID_TRANSITION")
        self.details = {"status": current, "action": action}


# ============================================
# Backend errors
# ============================================

class BackendUnavailableError(StudyTrackerError):
    status_code = 503

    def __init__(self, message: str = "Database not configured. Please set DATABASE_URL and DATABASE_NAME."):
        super().__init__(message, code="BACKEND_UNAVAILABLE")
