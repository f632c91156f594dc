"""Audit trail models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .clock import utcnow
from .enums import AuditAction


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    # Action
    action: AuditAction = AuditAction.CFDI_UPLOADED
    actor_id: Optional[str] = None

    # Context
    entity_ids: List[str] = field(default_factory=list)

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Outcome
    success: bool = True
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "actor_id": self.actor_id,
            "entity_ids": list(self.entity_ids),
            "message": self.message,
            "details": self.details,
            "success": self.success,
            "error_message": self.error_message,
        }
