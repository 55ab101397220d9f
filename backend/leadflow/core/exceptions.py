"""
Leadflow Exceptions
Error taxonomy shared by the orchestration engine and the job worker.

The `retryable` flag is what the job worker uses to decide between
a backoff retry and an immediate failure.
"""
from typing import Any, Dict, Optional


class LeadflowError(Exception):
    """Base class for all orchestration errors"""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class LeadValidationError(LeadflowError):
    """Input failed validation. Rejected immediately, never retried."""


class NotFoundError(LeadflowError):
    """Referenced lead, campaign or conversation does not exist"""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class DependencyError(LeadflowError):
    """An external capability failed or timed out"""

    retryable = True

    def __init__(self, dependency: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{dependency}: {message}", details)
        self.dependency = dependency


class DecisionParseError(LeadflowError):
    """Structured decision output could not be parsed or validated"""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message, {"raw_output": (raw_output or "")[:500]})
        self.raw_output = raw_output


class DeliveryError(LeadflowError):
    """A handover destination or channel rejected a delivery attempt"""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.retryable = retryable


class ConversationConflictError(LeadflowError):
    """Concurrent mutation of the same lead could not be serialized"""

    retryable = True
