"""
Audit trail for reconciliation decisions.
"""

import json
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from ..config import get_settings
from ..models import AuditAction, AuditEntry

logger = structlog.get_logger()


class AuditLogger:
    """
    In-memory audit trail for one settlement, mirrored to structlog.
    Can be exported to a JSON file for operator review.
    """

    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        self.entries: List[AuditEntry] = []

    def log(self, entry: AuditEntry) -> None:
        """Add an audit entry."""
        if entry.settlement_id is None:
            entry.settlement_id = self.settlement_id
        self.entries.append(entry)

        log = logger.info if entry.success else logger.warning
        log(
            entry.message,
            action=entry.action.value,
            settlement_id=entry.settlement_id,
            line_ids=entry.line_ids,
            transaction_ids=entry.transaction_ids,
            success=entry.success,
        )

    def record(
        self,
        action: AuditAction,
        message: str,
        line_ids: Optional[List[str]] = None,
        transaction_ids: Optional[List[str]] = None,
        success: bool = True,
        **details,
    ) -> AuditEntry:
        """Build and log an entry in one call."""
        entry = AuditEntry(
            action=action,
            settlement_id=self.settlement_id,
            line_ids=list(line_ids or []),
            transaction_ids=list(transaction_ids or []),
            message=message,
            details=details,
            success=success,
        )
        self.log(entry)
        return entry

    def log_many(self, entries: List[AuditEntry]) -> None:
        for entry in entries:
            self.log(entry)

    def get_entries(
        self,
        action_filter: Optional[AuditAction] = None,
        success_only: bool = False,
    ) -> List[AuditEntry]:
        """Get filtered audit entries."""
        entries = self.entries

        if action_filter:
            entries = [e for e in entries if e.action == action_filter]

        if success_only:
            entries = [e for e in entries if e.success]

        return entries

    def to_dict(self) -> dict:
        return {
            "settlement_id": self.settlement_id,
            "exported_at": datetime.utcnow().isoformat(),
            "total_entries": len(self.entries),
            "entries": [
                {
                    "id": e.id,
                    "timestamp": e.timestamp.isoformat(),
                    "action": e.action.value,
                    "line_ids": e.line_ids,
                    "transaction_ids": e.transaction_ids,
                    "message": e.message,
                    "details": e.details,
                    "success": e.success,
                }
                for e in self.entries
            ],
        }

    def export_to_file(self, output_path: Optional[Path] = None) -> Path:
        """Export audit log to JSON file."""
        if output_path is None:
            output_path = get_settings().reports_dir / f"audit_{self.settlement_id}.json"

        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False, default=str)

        logger.info("Audit log exported", path=str(output_path))
        return output_path

    def summary(self) -> dict:
        """Summary statistics of the audit log."""
        action_counts = Counter(e.action.value for e in self.entries)
        return {
            "total_entries": len(self.entries),
            "success_count": sum(1 for e in self.entries if e.success),
            "error_count": sum(1 for e in self.entries if not e.success),
            "action_counts": dict(action_counts),
        }
