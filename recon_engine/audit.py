"""
Audit logging for reconciliation decisions.
"""

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .config import get_settings
from .models import AuditAction, AuditEntry

logger = structlog.get_logger()


class AuditLogger:
    """
    Audit trail of one pipeline run.
    Keeps entries in memory, mirrors them to structlog and can export them to JSON.
    """

    def __init__(self, run_id: str, reports_dir: Optional[Path] = None):
        self.run_id = run_id
        self.entries: List[AuditEntry] = []
        self.reports_dir = reports_dir

    def log(self, entry: AuditEntry) -> None:
        """Add an audit entry."""
        self.entries.append(entry)

        log = logger.info if entry.success else logger.warning
        log(
            entry.message,
            run_id=self.run_id,
            action=entry.action.value,
            stage=entry.stage.value if entry.stage else None,
            transaction_ids=entry.transaction_ids,
            entry_ids=entry.entry_ids,
            success=entry.success,
        )

    def log_many(self, entries: List[AuditEntry]) -> None:
        for entry in entries:
            self.log(entry)

    def record(self, action: AuditAction, message: str, **kwargs: Any) -> AuditEntry:
        """Build and log an entry in one call."""
        entry = AuditEntry(action=action, message=message, **kwargs)
        self.log(entry)
        return entry

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

    def export_to_file(self, output_path: Optional[Path] = None) -> Path:
        """Export the audit log to a JSON file under the reports directory."""
        if output_path is None:
            reports_dir = self.reports_dir or get_settings().reports_dir
            output_path = Path(reports_dir) / f"audit_{self.run_id}.json"

        output_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "run_id": self.run_id,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "total_entries": len(self.entries),
            "entries": [
                {
                    "id": e.id,
                    "timestamp": e.timestamp.isoformat(),
                    "action": e.action.value,
                    "stage": e.stage.value if e.stage else None,
                    "transaction_ids": e.transaction_ids,
                    "entry_ids": e.entry_ids,
                    "message": e.message,
                    "details": e.details,
                    "success": e.success,
                    "error_message": e.error_message,
                }
                for e in self.entries
            ],
        }

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)

        logger.info("Audit log exported", path=str(output_path))
        return output_path

    def summary(self) -> Dict[str, Any]:
        """Summary statistics of the audit log."""
        action_counts = Counter(e.action.value for e in self.entries)
        success_count = sum(1 for e in self.entries if e.success)

        return {
            "total_entries": len(self.entries),
            "success_count": success_count,
            "error_count": len(self.entries) - success_count,
            "action_counts": dict(action_counts),
        }
