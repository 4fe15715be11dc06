"""
Validation results and the validation collaborator protocol.
"""
from typing import Any, List, Optional, Protocol, Tuple, runtime_checkable

from pydantic import BaseModel, Field


class ValidationMessage(BaseModel):
    message: str
    field: Optional[str] = None
    code: str = "bad"


class ValidationResult(BaseModel):
    """Outcome of validating a record before it is written."""
    valid: bool = True
    messages: List[ValidationMessage] = Field(default_factory=list)

    def error(self, message: str, field: Optional[str] = None, code: str = "bad") -> "ValidationResult":
        """Record a failure and flip the result to invalid."""
        self.valid = False
        self.messages.append(ValidationMessage(message=message, field=field, code=code))
        return self

    def combine(self, other: "ValidationResult") -> "ValidationResult":
        if not other.valid:
            self.valid = False
        self.messages.extend(other.messages)
        return self

    def message(self) -> str:
        return "; ".join(m.message for m in self.messages)


@runtime_checkable
class Validator(Protocol):
    """External validation collaborator: returns (ok, message) for a record."""
    def validate(self, record: Any) -> Tuple[bool, str]: ...
