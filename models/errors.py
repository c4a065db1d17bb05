"""
Error hierarchy for the notification engine.

Every error carries a short machine-readable `code` that the API returns
verbatim to the caller.
"""
from __future__ import annotations

from typing import Any


class NotificationError(Exception):
    """Base exception for all engine operations."""

    code: str = "notification_error"

    def __init__(self, code: str = "", message: str = "", **details: Any):
        self.code = code or self.code
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ConfigValidationError(NotificationError):
    """Input rejected before any mutation took place."""
    code = "invalid_config"


class NotFoundError(NotificationError):
    code = "not_found"


class VersionConflictError(NotificationError):
    """A config write was based on a stale version of the blob."""
    code = "version_conflict"

    def __init__(self, expected: int, actual: int):
        super().__init__(
            "version_conflict",
            f"config changed since it was read (expected v{expected}, found v{actual})",
            expected=expected, actual=actual,
        )


class TemplateRenderError(NotificationError):
    code = "unresolved_variables"

    def __init__(self, template_id: str, missing: list[str]):
        self.missing = missing
        super().__init__(
            "unresolved_variables",
            f"template '{template_id}' has unresolved variables: {', '.join(missing)}",
            template_id=template_id, missing=missing,
        )
