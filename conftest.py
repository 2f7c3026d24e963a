import os
from datetime import datetime

import pytest

from circulation.config import CirculationConfig
from circulation.library import Library
from circulation.services.payment_gateway import compute_signature

GATEWAY_SECRET = "test-secret"


class FakeGateway:
    """In-memory gateway: sequential order ids and real HMAC signatures."""

    def __init__(self, secret: str = GATEWAY_SECRET):
        self.secret = secret
        self.orders = []

    def create_order(self, amount: float, reference: str) -> str:
        order_id = f"order_{len(self.orders) + 1}"
        self.orders.append((order_id, amount, reference))
        return order_id

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return compute_signature(self.secret, order_id, payment_id) == signature

    def sign(self, order_id: str, payment_id: str) -> str:
        return compute_signature(self.secret, order_id, payment_id)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file for each test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file, gateway):
    lib = Library(db_file=db_file, config=CirculationConfig(penalty_per_day=10.0), gateway=gateway)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def now():
    return datetime(2024, 3, 1, 9, 0)


@pytest.fixture
def member(lib):
    return lib.members.register_member("Asha Rao", "asha@example.com")


@pytest.fixture
def admin(lib):
    return lib.members.register_member("Desk Admin", "admin@example.com", role="ADMIN")


@pytest.fixture
def subscribed_member(lib, member, admin, now):
    lib.payments.confirm_cash_payment(member.id, 300, "SUBSCRIPTION", admin.id, now)
    return member
