"""
Exception taxonomy for the persistence engine.

Configuration errors point at a declaration mistake and are never retried.
Validation errors are raised before any storage I/O. Storage failures are
whatever the storage backend raises and are propagated untouched.
"""
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from hierorm.validation import ValidationResult


class HierOrmError(Exception):
    """Base class for every error raised by the engine itself."""


class ConfigurationError(HierOrmError):
    """Unknown relation, missing table, unresolved inverse or unknown field type."""


class ValidationException(HierOrmError):
    """A record failed validation; nothing was written."""

    def __init__(self, result: "ValidationResult", message: Optional[str] = None) -> None:
        self.result = result
        super().__init__(message or result.message() or "Validation failed")


class DestroyedRecordError(HierOrmError):
    """A record instance was used after it was deleted or destroyed."""

    def __init__(self, class_name: str, old_id: int = 0) -> None:
        self.class_name = class_name
        self.old_id = old_id
        super().__init__(f"{class_name}({old_id}) has been destroyed and can no longer be used")
