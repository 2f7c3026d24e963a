import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from circulation import database

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, action: str, entity_type: str, entity_id: Optional[int],
               performed_by: Optional[int], detail: Optional[Dict[str, Any]] = None) -> None:
        ...


class SafeAuditSink:
    """Wraps any sink so a failing ``record`` is logged instead of raised."""

    def __init__(self, sink: AuditSink):
        self.sink = sink

    def record(self, action: str, entity_type: str, entity_id: Optional[int],
               performed_by: Optional[int], detail: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.sink.record(action, entity_type, entity_id, performed_by, detail)
        except Exception as e:
            logger.warning(f"Audit sink dropped {action} {entity_type}:{entity_id}: {e}")


class SqliteAuditLog:
    """Append-only audit trail in the ``audit_logs`` table.

    Writes use their own connection after the business transaction has
    committed; a failed write is logged and dropped.
    """

    def __init__(self, db_file: Optional[str] = None):
        self.db_file = db_file

    def record(self, action: str, entity_type: str, entity_id: Optional[int],
               performed_by: Optional[int], detail: Optional[Dict[str, Any]] = None) -> None:
        try:
            conn = database.get_db_connection(self.db_file)
            try:
                conn.execute(
                    """
                    INSERT INTO audit_logs (action, entity_type, entity_id, performed_by, details)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (action, entity_type, entity_id, performed_by,
                     json.dumps(detail, default=str) if detail else None),
                )
            finally:
                conn.close()
        except Exception as e:
            logger.warning(f"Audit log write failed for {action} {entity_type}:{entity_id}: {e}")

    def recent(self, limit: int = 100, action: Optional[str] = None,
               performed_by: Optional[int] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM audit_logs WHERE 1=1"
        params: List[Any] = []
        if action:
            sql += " AND action = ?"
            params.append(action)
        if performed_by is not None:
            sql += " AND performed_by = ?"
            params.append(performed_by)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["details"] = json.loads(entry["details"]) if entry["details"] else None
            entries.append(entry)
        return entries
