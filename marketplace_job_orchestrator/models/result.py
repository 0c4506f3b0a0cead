"""
Operation result returned by every mutating orchestrator command.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from ..core.exceptions import JobOrchestratorError


def _serialize(value: Any) -> Any:
    return value.to_dict() if hasattr(value, "to_dict") else value


@dataclass
class OperationResult:
    """Outcome of a command: success flag plus entity, or a typed failure."""

    ok: bool
    entity: Any = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, entity: Any = None, **details) -> "OperationResult":
        return cls(ok=True, entity=entity, details=details)

    @classmethod
    def failure(cls, error: JobOrchestratorError) -> "OperationResult":
        return cls(
            ok=False,
            error_kind=error.error_kind,
            message=error.message,
            details=dict(error.details)
        )

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.entity, (list, tuple)):
            entity = [_serialize(item) for item in self.entity]
        else:
            entity = _serialize(self.entity)
        return {
            "ok": self.ok,
            "entity": entity,
            "error_kind": self.error_kind,
            "message": self.message,
            "details": self.details
        }
