"""
Audit logging for ingestion and reconciliation decisions.
"""

import json
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from ..config import get_settings
from ..models import AuditAction, AuditEntry

logger = structlog.get_logger()


class AuditLogger:
    """
    Session audit trail of invoice, transaction and batch changes.
    Entries stay in memory and are mirrored to structlog as they are recorded.
    """

    def __init__(self, session_id: str = "default"):
        self.session_id = session_id
        self.entries: List[AuditEntry] = []
        self.settings = get_settings()

    def log(self, entry: AuditEntry) -> None:
        """Add an audit entry."""
        self.entries.append(entry)

        log = logger.info if entry.success else logger.warning
        log(
            entry.message,
            action=entry.action.value,
            actor_id=entry.actor_id,
            entity_ids=entry.entity_ids,
            success=entry.success,
        )

    def record(
        self,
        action: AuditAction,
        message: str,
        actor_id: Optional[str],
        *entity_ids: str,
        success: bool = True,
        error_message: Optional[str] = None,
        **details,
    ) -> AuditEntry:
        """Build and log an entry in one call."""
        entry = AuditEntry(
            action=action,
            actor_id=actor_id,
            entity_ids=[e for e in entity_ids if e],
            message=message,
            details=details,
            success=success,
            error_message=error_message,
        )
        self.log(entry)
        return entry

    def find(
        self,
        action: Optional[AuditAction] = None,
        *,
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        failed: Optional[bool] = None,
    ) -> List[AuditEntry]:
        """Entries matching every given criterion, in recording order."""
        return [
            e for e in self.entries
            if (action is None or e.action == action)
            and (actor_id is None or e.actor_id == actor_id)
            and (entity_id is None or entity_id in e.entity_ids)
            and (failed is None or e.success != failed)
        ]

    def history(self, entity_id: str) -> List[AuditAction]:
        """Actions that touched one invoice, transaction or batch, oldest first."""
        return [e.action for e in self.find(entity_id=entity_id)]

    def leftover_artifacts(self) -> List[str]:
        """Paths a failed ingestion uploaded but could not delete."""
        return [
            path
            for e in self.find(AuditAction.ARTIFACTS_ROLLED_BACK)
            for path in e.details.get("leftover", [])
        ]

    def summary(self) -> Dict[str, Any]:
        """What happened in this session: activity per action and actor, plus open problems."""
        return {
            "session_id": self.session_id,
            "by_action": dict(Counter(e.action.value for e in self.entries)),
            "by_actor": dict(Counter(e.actor_id or "system" for e in self.entries)),
            "failed_ingestions": len(self.find(AuditAction.ARTIFACTS_ROLLED_BACK)),
            "leftover_artifacts": self.leftover_artifacts(),
            "consistency_violations": dict(Counter(
                e.details.get("kind", "unknown")
                for e in self.find(AuditAction.CONSISTENCY_VIOLATION)
            )),
        }

    def export(self, output_path: Optional[Path] = None) -> Path:
        """Append the session's entries to a JSON Lines file, one entry per line."""
        if output_path is None:
            output_path = self.settings.reports_dir / f"audit_{self.session_id}.jsonl"
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "a", encoding="utf-8") as f:
            for entry in self.entries:
                record = {"session_id": self.session_id, **entry.to_dict()}
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

        logger.info("Audit trail exported", path=str(output_path), entries=len(self.entries))
        return output_path
