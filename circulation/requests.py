"""Member requests that an administrator approves or rejects.

Approving a request applies its effect (batch change, new membership, penalty
waiver) in the same transaction that records the decision.
"""
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from circulation import database
from circulation.config import CirculationConfig
from circulation.errors import (
    MemberNotFound,
    PenaltyNotPayable,
    RequestNotFound,
    RequestStateError,
)
from circulation.members import MemberRegistry
from circulation.models import (
    Batch,
    BatchChangeDetails,
    LoanStatus,
    MembershipDetails,
    PenaltySettlement,
    PenaltyWaiverDetails,
    Request,
    RequestStatus,
    RequestType,
    Role,
    decode_details,
    encode_details,
)
from circulation.services.audit import AuditSink
from circulation.validators import NumberValidator, TextValidator, require_enum

logger = logging.getLogger(__name__)


class RequestWorkflow:

    def __init__(self, db_file: str, config: CirculationConfig, audit: AuditSink):
        self.db_file = db_file
        self.config = config
        self.audit = audit

    def create_request(self, member_id: Optional[int], request_type, subject: str, description: str,
                       details: Optional[Dict[str, Any]] = None) -> Request:
        """File a request. Only membership applications may come without a member."""
        request_type = require_enum(RequestType, request_type, "request type")
        if request_type is RequestType.MEMBERSHIP_REGISTRATION:
            if member_id is not None:
                NumberValidator.require_id(member_id, "member_id")
        else:
            NumberValidator.require_id(member_id, "member_id")
        subject = TextValidator.sanitize_text(TextValidator.require_text(subject, "subject"))
        description = TextValidator.sanitize_text(TextValidator.require_text(description, "description"))
        parsed = decode_details(request_type, details)

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            if member_id is not None and conn.execute(
                    "SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
                raise MemberNotFound(f"Member {member_id} not found")
            cursor = conn.execute(
                """
                INSERT INTO requests (member_id, type, subject, description, details, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (member_id, request_type.value, subject, description, encode_details(parsed),
                 RequestStatus.PENDING.value),
            )
            request = self._fetch(conn, cursor.lastrowid)

        logger.info(f"Request {request.id} ({request_type.value}) filed by member {member_id}")
        self.audit.record("REQUEST_CREATED", "REQUEST", request.id, member_id,
                          {"type": request_type.value})
        return request

    def list_requests(self, status=None, member_id: Optional[int] = None) -> List[Request]:
        sql = "SELECT * FROM requests WHERE 1=1"
        params: list = []
        if status:
            sql += " AND status = ?"
            params.append(require_enum(RequestStatus, status, "status").value)
        if member_id is not None:
            sql += " AND member_id = ?"
            params.append(member_id)
        sql += " ORDER BY id DESC"
        conn = database.get_db_connection(self.db_file)
        try:
            return [Request.from_row(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def get_request(self, request_id: int) -> Request:
        conn = database.get_db_connection(self.db_file)
        try:
            return self._fetch(conn, request_id)
        finally:
            conn.close()

    def approve_request(self, request_id: int, admin_id: int, response: Optional[str] = None) -> Request:
        NumberValidator.require_id(request_id, "request_id")
        NumberValidator.require_id(admin_id, "admin_id")

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            request = self._pending(conn, request_id)
            member_id = self._apply(conn, request)
            self._decide(conn, request_id, RequestStatus.APPROVED, admin_id,
                         TextValidator.sanitize_text(response) or None, member_id)
            request = self._fetch(conn, request_id)

        logger.info(f"Request {request_id} ({request.type.value}) approved by admin {admin_id}")
        self.audit.record("REQUEST_APPROVED", "REQUEST", request_id, admin_id,
                          {"type": request.type.value, "user_id": request.member_id})
        return request

    def reject_request(self, request_id: int, admin_id: int, reason: Optional[str] = None) -> Request:
        NumberValidator.require_id(request_id, "request_id")
        NumberValidator.require_id(admin_id, "admin_id")

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            request = self._pending(conn, request_id)
            self._decide(conn, request_id, RequestStatus.REJECTED, admin_id,
                         TextValidator.sanitize_text(reason) or None, request.member_id)
            request = self._fetch(conn, request_id)

        logger.info(f"Request {request_id} rejected by admin {admin_id}")
        self.audit.record("REQUEST_REJECTED", "REQUEST", request_id, admin_id,
                          {"type": request.type.value, "reason": reason})
        return request

    # ------------------------- Helpers ------------------------- #
    def _pending(self, conn: sqlite3.Connection, request_id: int) -> Request:
        request = self._fetch(conn, request_id)
        if request.status is not RequestStatus.PENDING:
            raise RequestStateError(f"Request {request_id} is already {request.status.value}")
        return request

    @staticmethod
    def _decide(conn: sqlite3.Connection, request_id: int, status: RequestStatus, admin_id: int,
                response: Optional[str], member_id: Optional[int]) -> None:
        cursor = conn.execute(
            """
            UPDATE requests SET status = ?, admin_id = ?, admin_response = ?, member_id = ?
            WHERE id = ? AND status = ?
            """,
            (status.value, admin_id, response, member_id, request_id, RequestStatus.PENDING.value),
        )
        if cursor.rowcount == 0:
            raise RequestStateError(f"Request {request_id} was decided concurrently")

    @staticmethod
    def _apply(conn: sqlite3.Connection, request: Request) -> Optional[int]:
        """Apply an approved request's effect; returns the member the request belongs to."""
        details = request.details

        if isinstance(details, MembershipDetails):
            return MemberRegistry.insert_member(
                conn, details.full_name, details.email, details.phone, Role.MEMBER, details.batch, None,
            )

        if isinstance(details, BatchChangeDetails):
            row = conn.execute(
                "SELECT batch, time_slot FROM members WHERE id = ?", (request.member_id,)
            ).fetchone()
            if row is None:
                raise MemberNotFound(f"Member {request.member_id} not found")
            batch = details.new_batch or (Batch(row["batch"]) if row["batch"] else None)
            time_slot = details.new_time_slot or row["time_slot"]
            MemberRegistry.update_batch(conn, request.member_id, batch, time_slot)
            return request.member_id

        if isinstance(details, PenaltyWaiverDetails):
            cursor = conn.execute(
                """
                UPDATE loans SET penalty_settlement = ?
                WHERE id = ? AND member_id = ? AND status = ?
                  AND penalty_amount > 0 AND penalty_settlement IS NULL
                """,
                (PenaltySettlement.WAIVED.value, details.loan_id, request.member_id,
                 LoanStatus.RETURNED.value),
            )
            if cursor.rowcount == 0:
                raise PenaltyNotPayable(
                    f"Loan {details.loan_id} has no outstanding penalty on a returned loan to waive"
                )
            return request.member_id

        return request.member_id

    @staticmethod
    def _fetch(conn: sqlite3.Connection, request_id: int) -> Request:
        row = conn.execute("SELECT * FROM requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise RequestNotFound(f"Request {request_id} not found")
        return Request.from_row(row)
