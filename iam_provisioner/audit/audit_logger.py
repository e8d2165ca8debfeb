"""
Audit Logging Module.

This module records every provisioning side effect (and every failed
attempt) so operators can reconstruct what happened to an account.
Generated secrets are never part of an audit record.
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import AuditRecord

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only logger for audit events.

    Persists audit records as JSON lines in one file per UTC day.
    """

    def __init__(self, audit_dir: str = "audit_logs"):
        """
        Initialize the audit logger.

        Args:
            audit_dir: Directory to store audit logs
        """
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log_event(self, record: AuditRecord) -> str:
        """
        Log an audit event.

        Args:
            record: The audit record to log

        Returns:
            The record ID
        """
        try:
            date_str = record.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d")
            log_file = self.audit_dir / f"audit_{date_str}.jsonl"

            data = record.model_dump(mode="json")
            with self._lock, open(log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(data) + "\n")

            logger.debug(f"Logged audit event {record.id} for {record.resource_name}")
            return record.id

        except Exception as e:
            logger.error(f"Failed to log audit event: {e}")
            raise

    def get_events(
        self,
        resource_name: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """
        Retrieve audit events with filtering, most recent first.

        Args:
            resource_name: Filter by resource name
            start_date: Filter by start date
            end_date: Filter by end date
            limit: Maximum number of records to return

        Returns:
            List of matching AuditRecords
        """
        results = []

        log_files = sorted(self.audit_dir.glob("audit_*.jsonl"), reverse=True)

        for log_file in log_files:
            if len(results) >= limit:
                break

            try:
                with open(log_file, encoding="utf-8") as f:
                    lines = f.readlines()
            except OSError as e:
                logger.error(f"Failed to read log file {log_file}: {e}")
                continue

            for line in reversed(lines):
                if len(results) >= limit:
                    break

                try:
                    record = AuditRecord(**json.loads(line))
                except (ValueError, TypeError) as e:
                    logger.warning(f"Failed to parse audit record: {e}")
                    continue

                if resource_name and record.resource_name != resource_name:
                    continue

                if start_date and record.timestamp < start_date:
                    continue

                if end_date and record.timestamp > end_date:
                    continue

                results.append(record)

        return results

    def get_audit_trail(self, resource_name: str, days: int = 90) -> List[AuditRecord]:
        """Audit records of one resource over the last ``days`` days."""
        start_date = datetime.now(timezone.utc) - timedelta(days=days)
        return self.get_events(resource_name=resource_name, start_date=start_date, limit=10000)

    def get_summary(self, start_date: datetime, end_date: datetime) -> Dict[str, Any]:
        """
        Summarize provisioning activity for a period.

        Args:
            start_date: Start of the reporting period
            end_date: End of the reporting period

        Returns:
            Dictionary with counts per action and failures
        """
        events = self.get_events(start_date=start_date, end_date=end_date, limit=10000)

        actions: Dict[str, int] = {}
        for event in events:
            actions[event.action] = actions.get(event.action, 0) + 1

        failed = [e for e in events if not e.success]

        return {
            "period": {"start": start_date.isoformat(), "end": end_date.isoformat()},
            "total_events": len(events),
            "successful_operations": len(events) - len(failed),
            "failed_operations": len(failed),
            "actions": actions,
            "failed_resources": sorted({e.resource_name for e in failed}),
        }
