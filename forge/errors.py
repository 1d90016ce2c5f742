"""Error taxonomy shared by the orchestration core."""

from typing import Any, Optional


class ForgeError(Exception):
    """Base error carrying a machine-readable code."""

    code = "FORGE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for CLI output and persisted records."""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
        }


class ValidationError(ForgeError):
    """Malformed or missing input, scoped to a field when known."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(ForgeError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["entity"] = self.entity
        data["id"] = self.entity_id
        return data


class InvalidTransition(ForgeError):
    """State machine rejected an event."""

    code = "INVALID_TRANSITION"


class MalformedDocument(ForgeError):
    """Task document could not be parsed."""

    code = "MALFORMED_DOCUMENT"


class ExternalOperationFailure(ForgeError):
    """Version-control or agent-process call failed."""

    code = "EXTERNAL_FAILURE"

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.detail = message

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["operation"] = self.operation
        return data


def serialize_error(error: BaseException) -> dict[str, Any]:
    """Convert any exception into a plain dict.

    Args:
        error: Exception to serialize

    Returns:
        Dict with at least ``name`` and ``message`` keys
    """
    if isinstance(error, ForgeError):
        return error.to_dict()
    return {"name": type(error).__name__, "message": str(error)}
