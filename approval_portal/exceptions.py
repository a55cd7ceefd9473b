"""
Workflow Error Taxonomy

Typed errors raised by the workflow engine and its collaborators. Each error
carries the HTTP status the API layer reports for it.
"""

from typing import Any, Dict, Optional


class PortalError(Exception):
    """Base class for all approval portal errors"""
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to an error body for API responses"""
        body = {"detail": self.message, "error": type(self).__name__}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PortalError):
    """Malformed input; never retried"""
    http_status = 400


class MissingReasonError(ValidationError):
    """A rejection was submitted without comments"""


class DuplicateInstanceError(PortalError):
    """A workflow instance already exists for the entity"""
    http_status = 409


class TemplateMismatchError(PortalError):
    """Template does not exist or belongs to another entity type"""
    http_status = 400


class TemplateIntegrityError(PortalError):
    """Template step definitions are inconsistent"""
    http_status = 500


class TerminalStateError(PortalError):
    """Instance is already Approved, Rejected or Cancelled"""
    http_status = 409


class StaleSequenceError(TerminalStateError):
    """Instance moved past the sequence number the caller acted on"""


class UnauthorizedActorError(PortalError):
    """Actor may not perform the action on the current step"""
    http_status = 403


class NoEligibleApproverError(PortalError):
    """Nobody can act on the step; progression is blocked"""
    http_status = 422


class EntityNotFoundError(PortalError):
    """The business entity (TRF, claim, ...) does not exist"""
    http_status = 404


class InstanceNotFoundError(PortalError):
    """No workflow instance exists for the entity or id"""
    http_status = 404


class TransientStorageError(PortalError):
    """Lock contention or a transient backend failure"""
    http_status = 503
