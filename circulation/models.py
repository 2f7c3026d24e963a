from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from circulation.clock import to_date, to_datetime
from circulation.errors import ValidationError


class Role(Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class MemberStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class Batch(Enum):
    MORNING = "MORNING"
    EVENING = "EVENING"


class TitleStatus(Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class LoanStatus(Enum):
    ISSUED = "ISSUED"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"


OPEN_LOAN_STATUSES = (LoanStatus.ISSUED.value, LoanStatus.OVERDUE.value)


class PenaltySettlement(Enum):
    PAID = "PAID"
    WAIVED = "WAIVED"


class SubscriptionStatus(Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class PaymentType(Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    PENALTY = "PENALTY"


class PaymentMethod(Enum):
    CASH = "CASH"
    GATEWAY = "GATEWAY"


class PaymentStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class RequestType(Enum):
    BOOK_REQUEST = "BOOK_REQUEST"
    SUBSCRIPTION_EXTENSION = "SUBSCRIPTION_EXTENSION"
    PENALTY_WAIVER = "PENALTY_WAIVER"
    MEMBERSHIP_REGISTRATION = "MEMBERSHIP_REGISTRATION"
    BATCH_CHANGE = "BATCH_CHANGE"
    OTHER = "OTHER"


class RequestStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


def _iso(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, (date, datetime)) else value


def _opt_datetime(value) -> Optional[datetime]:
    return to_datetime(value) if value is not None else None


@dataclass
class Member:
    id: int
    full_name: str
    email: str
    phone: Optional[str] = None
    role: Role = Role.MEMBER
    status: MemberStatus = MemberStatus.ACTIVE
    batch: Optional[Batch] = None
    time_slot: Optional[str] = None
    created_at: Optional[str] = None

    @staticmethod
    def from_row(row) -> "Member":
        return Member(
            id=row["id"],
            full_name=row["full_name"],
            email=row["email"],
            phone=row["phone"],
            role=Role(row["role"]),
            status=MemberStatus(row["status"]),
            batch=Batch(row["batch"]) if row["batch"] else None,
            time_slot=row["time_slot"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role.value,
            "status": self.status.value,
            "batch": self.batch.value if self.batch else None,
            "time_slot": self.time_slot,
            "created_at": self.created_at,
        }


@dataclass
class Title:
    """A catalog entry and its copy counts."""
    id: int
    title: str
    author: str
    total_copies: int
    available_copies: int
    isbn: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    description: Optional[str] = None
    status: TitleStatus = TitleStatus.ACTIVE

    @staticmethod
    def from_row(row) -> "Title":
        return Title(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            isbn=row["isbn"],
            genre=row["genre"],
            publisher=row["publisher"],
            publication_year=row["publication_year"],
            description=row["description"],
            status=TitleStatus(row["status"]),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Loan:
    id: int
    member_id: int
    title_id: int
    issue_date: datetime
    due_date: datetime
    status: LoanStatus
    penalty_amount: float = 0.0
    return_date: Optional[datetime] = None
    penalty_settlement: Optional[PenaltySettlement] = None

    @property
    def is_open(self) -> bool:
        return self.status is not LoanStatus.RETURNED

    @staticmethod
    def from_row(row) -> "Loan":
        return Loan(
            id=row["id"],
            member_id=row["member_id"],
            title_id=row["title_id"],
            issue_date=to_datetime(row["issue_date"]),
            due_date=to_datetime(row["due_date"]),
            status=LoanStatus(row["status"]),
            penalty_amount=float(row["penalty_amount"]),
            return_date=_opt_datetime(row["return_date"]),
            penalty_settlement=(
                PenaltySettlement(row["penalty_settlement"]) if row["penalty_settlement"] else None
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "title_id": self.title_id,
            "issue_date": _iso(self.issue_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "penalty_amount": self.penalty_amount,
            "status": self.status.value,
            "penalty_settlement": self.penalty_settlement.value if self.penalty_settlement else None,
        }


@dataclass
class Subscription:
    id: int
    member_id: int
    start_date: date
    end_date: date
    amount: float
    status: SubscriptionStatus
    stacked_from: Optional[int] = None
    created_at: Optional[str] = None

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    @staticmethod
    def from_row(row) -> "Subscription":
        return Subscription(
            id=row["id"],
            member_id=row["member_id"],
            start_date=to_date(row["start_date"]),
            end_date=to_date(row["end_date"]),
            amount=float(row["amount"]),
            status=SubscriptionStatus(row["status"]),
            stacked_from=row["stacked_from"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "amount": self.amount,
            "status": self.status.value,
            "stacked_from": self.stacked_from,
            "created_at": self.created_at,
        }


@dataclass
class Payment:
    id: int
    member_id: int
    amount: float
    type: PaymentType
    method: PaymentMethod
    status: PaymentStatus
    order_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    signature: Optional[str] = None
    loan_id: Optional[int] = None
    processed_by: Optional[int] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None

    @staticmethod
    def from_row(row) -> "Payment":
        return Payment(
            id=row["id"],
            member_id=row["member_id"],
            amount=float(row["amount"]),
            type=PaymentType(row["type"]),
            method=PaymentMethod(row["method"]),
            status=PaymentStatus(row["status"]),
            order_id=row["order_id"],
            provider_payment_id=row["provider_payment_id"],
            signature=row["signature"],
            loan_id=row["loan_id"],
            processed_by=row["processed_by"],
            notes=row["notes"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["method"] = self.method.value
        data["status"] = self.status.value
        # never echo gateway signatures back to clients
        data.pop("signature", None)
        return data


# ------------------------- Request details ------------------------- #
@dataclass(frozen=True)
class BatchChangeDetails:
    new_batch: Optional[Batch] = None
    new_time_slot: Optional[str] = None


@dataclass(frozen=True)
class MembershipDetails:
    full_name: str
    email: str
    phone: Optional[str] = None
    batch: Optional[Batch] = None


@dataclass(frozen=True)
class PenaltyWaiverDetails:
    loan_id: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class GenericDetails:
    data: Dict[str, Any] = field(default_factory=dict)


RequestDetails = Union[BatchChangeDetails, MembershipDetails, PenaltyWaiverDetails, GenericDetails]


def _parse_batch(value) -> Optional[Batch]:
    if value in (None, ""):
        return None
    try:
        return Batch(str(value).upper())
    except ValueError as e:
        raise ValidationError(f"Invalid batch {value!r}; expected MORNING or EVENING") from e


def decode_details(request_type: RequestType, raw: Optional[Dict[str, Any]]) -> RequestDetails:
    """Turn a request payload into the variant that matches its type."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValidationError("Request details must be an object")

    if request_type is RequestType.BATCH_CHANGE:
        details = BatchChangeDetails(
            new_batch=_parse_batch(raw.get("new_batch")),
            new_time_slot=(raw.get("new_time_slot") or None),
        )
        if details.new_batch is None and details.new_time_slot is None:
            raise ValidationError("Batch change needs new_batch and/or new_time_slot")
        return details

    if request_type is RequestType.MEMBERSHIP_REGISTRATION:
        full_name = (raw.get("full_name") or "").strip()
        email = (raw.get("email") or "").strip().lower()
        if not full_name or "@" not in email:
            raise ValidationError("Membership application needs full_name and a valid email")
        return MembershipDetails(
            full_name=full_name,
            email=email,
            phone=(raw.get("phone") or None),
            batch=_parse_batch(raw.get("batch")),
        )

    if request_type is RequestType.PENALTY_WAIVER:
        loan_id = raw.get("loan_id")
        if isinstance(loan_id, bool) or not isinstance(loan_id, int) or loan_id <= 0:
            raise ValidationError("Penalty waiver needs a positive integer loan_id")
        return PenaltyWaiverDetails(loan_id=loan_id, reason=raw.get("reason"))

    return GenericDetails(data=dict(raw))


def encode_details(details: RequestDetails) -> str:
    if isinstance(details, GenericDetails):
        payload = details.data
    else:
        payload = {
            k: (v.value if isinstance(v, Enum) else v) for k, v in asdict(details).items()
        }
    return json.dumps(payload, ensure_ascii=False)


@dataclass
class Request:
    id: int
    type: RequestType
    subject: str
    description: str
    details: RequestDetails
    status: RequestStatus
    member_id: Optional[int] = None
    admin_response: Optional[str] = None
    admin_id: Optional[int] = None
    created_at: Optional[str] = None

    @staticmethod
    def from_row(row) -> "Request":
        request_type = RequestType(row["type"])
        raw = json.loads(row["details"]) if row["details"] else {}
        return Request(
            id=row["id"],
            type=request_type,
            subject=row["subject"],
            description=row["description"],
            details=decode_details(request_type, raw),
            status=RequestStatus(row["status"]),
            member_id=row["member_id"],
            admin_response=row["admin_response"],
            admin_id=row["admin_id"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "type": self.type.value,
            "subject": self.subject,
            "description": self.description,
            "details": json.loads(encode_details(self.details)),
            "status": self.status.value,
            "admin_response": self.admin_response,
            "admin_id": self.admin_id,
            "created_at": self.created_at,
        }
