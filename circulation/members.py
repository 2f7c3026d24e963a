import logging
import sqlite3
from typing import List, Optional

from circulation import database
from circulation.config import CirculationConfig
from circulation.errors import DuplicateMember, MemberNotFound
from circulation.models import Batch, Member, MemberStatus, Role
from circulation.services.audit import AuditSink
from circulation.validators import NumberValidator, TextValidator, require_enum

logger = logging.getLogger(__name__)


class MemberRegistry:
    """Member records. Members are never deleted, only moved between statuses."""

    def __init__(self, db_file: str, config: CirculationConfig, audit: AuditSink):
        self.db_file = db_file
        self.config = config
        self.audit = audit

    def register_member(self, full_name: str, email: str, *, phone: Optional[str] = None,
                        role=Role.MEMBER, batch=None, time_slot: Optional[str] = None,
                        performed_by: Optional[int] = None) -> Member:
        full_name = TextValidator.require_text(full_name, "full_name")
        email = TextValidator.require_email(email)
        role = require_enum(Role, role, "role")
        batch = require_enum(Batch, batch, "batch") if batch else None

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            member_id = self.insert_member(conn, full_name, email, phone, role, batch, time_slot)

        self.audit.record("USER_CREATED", "USER", member_id, performed_by,
                          {"email": email, "role": role.value})
        return self.get_member(member_id)

    @staticmethod
    def insert_member(conn: sqlite3.Connection, full_name: str, email: str, phone: Optional[str],
                      role: Role, batch: Optional[Batch], time_slot: Optional[str]) -> int:
        """Insert on the caller's transaction; raises ``DuplicateMember`` on a taken email."""
        try:
            cursor = conn.execute(
                """
                INSERT INTO members (full_name, email, phone, role, status, batch, time_slot)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (full_name, email, phone, role.value, MemberStatus.ACTIVE.value,
                 batch.value if batch else None, time_slot),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateMember(f"A member with email {email} already exists") from e
        return cursor.lastrowid

    @staticmethod
    def update_batch(conn: sqlite3.Connection, member_id: int, batch: Optional[Batch],
                     time_slot: Optional[str]) -> None:
        cursor = conn.execute(
            "UPDATE members SET batch = ?, time_slot = ? WHERE id = ?",
            (batch.value if batch else None, time_slot, member_id),
        )
        if cursor.rowcount == 0:
            raise MemberNotFound(f"Member {member_id} not found")

    def get_member(self, member_id: int) -> Member:
        conn = database.get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise MemberNotFound(f"Member {member_id} not found")
        return Member.from_row(row)

    def list_members(self, status=None) -> List[Member]:
        sql = "SELECT * FROM members"
        params: tuple = ()
        if status:
            sql += " WHERE status = ?"
            params = (require_enum(MemberStatus, status, "status").value,)
        sql += " ORDER BY full_name"
        conn = database.get_db_connection(self.db_file)
        try:
            return [Member.from_row(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def set_status(self, member_id: int, status, performed_by: Optional[int] = None) -> Member:
        NumberValidator.require_id(member_id, "member_id")
        status = require_enum(MemberStatus, status, "status")
        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            cursor = conn.execute("UPDATE members SET status = ? WHERE id = ?", (status.value, member_id))
            if cursor.rowcount == 0:
                raise MemberNotFound(f"Member {member_id} not found")

        self.audit.record("USER_STATUS_CHANGED", "USER", member_id, performed_by, {"status": status.value})
        return self.get_member(member_id)

    def change_batch(self, member_id: int, batch, time_slot: Optional[str] = None,
                     performed_by: Optional[int] = None) -> Member:
        NumberValidator.require_id(member_id, "member_id")
        batch = require_enum(Batch, batch, "batch")
        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            self.update_batch(conn, member_id, batch, time_slot)

        self.audit.record("BATCH_CHANGED", "USER", member_id, performed_by or member_id,
                          {"new_batch": batch.value, "new_time_slot": time_slot})
        return self.get_member(member_id)
