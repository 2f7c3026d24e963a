import base64
import hashlib
import hmac
import json
from unittest.mock import MagicMock

import httpx
import pytest

from circulation.errors import GatewayError
from circulation.library import Library
from circulation.services.audit import SafeAuditSink, SqliteAuditLog
from circulation.services.notifications import Broadcaster
from circulation.services.payment_gateway import RazorpayGateway, compute_signature


def _gateway(handler, secret="shh"):
    return RazorpayGateway("rzp_key", secret, base_url="https://api.test/v1",
                           transport=httpx.MockTransport(handler))


def test_compute_signature_matches_hmac_sha256():
    expected = hmac.new(b"shh", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert compute_signature("shh", "order_1", "pay_1") == expected


def test_create_order_posts_amount_in_paise():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "status": "created"})

    gateway = _gateway(handler)
    try:
        order_id = gateway.create_order(299.5, "SUBSCRIPTION_1_1700000000000")
    finally:
        gateway.close()

    assert order_id == "order_abc"
    assert seen["url"] == "https://api.test/v1/orders"
    assert seen["body"]["amount"] == 29950
    assert seen["body"]["currency"] == "INR"
    assert seen["body"]["receipt"] == "SUBSCRIPTION_1_1700000000000"
    assert seen["auth"] == "Basic " + base64.b64encode(b"rzp_key:shh").decode()


def test_create_order_rejected_by_gateway():
    gateway = _gateway(lambda request: httpx.Response(400, json={"error": {"description": "bad amount"}}))

    with pytest.raises(GatewayError, match="HTTP 400"):
        gateway.create_order(10, "ref")


def test_create_order_network_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError, match="unreachable"):
        _gateway(handler).create_order(10, "ref")


def test_create_order_without_id():
    with pytest.raises(GatewayError):
        _gateway(lambda request: httpx.Response(200, json={})).create_order(10, "ref")


def test_verify_signature():
    gateway = _gateway(lambda request: httpx.Response(200))

    assert gateway.verify_signature("order_1", "pay_1", compute_signature("shh", "order_1", "pay_1"))
    assert not gateway.verify_signature("order_1", "pay_2", compute_signature("shh", "order_1", "pay_1"))


def test_verify_signature_without_secret_rejects():
    gateway = _gateway(lambda request: httpx.Response(200), secret="")

    assert not gateway.verify_signature("order_1", "pay_1", compute_signature("", "order_1", "pay_1"))


def test_broadcaster_delivers_and_unsubscribes():
    broadcaster = Broadcaster()
    received = []
    unsubscribe = broadcaster.subscribe(lambda topic, payload: received.append((topic, payload)))

    broadcaster.publish("topic", {"a": 1})
    unsubscribe()
    broadcaster.publish("topic", {"a": 2})

    assert received == [("topic", {"a": 1})]


def test_broadcaster_skips_failing_listener():
    broadcaster = Broadcaster()
    received = []
    broadcaster.subscribe(MagicMock(side_effect=RuntimeError("boom")))
    broadcaster.subscribe(lambda topic, payload: received.append(payload))

    broadcaster.publish("topic", {"a": 1})

    assert received == [{"a": 1}]


def test_safe_audit_sink_swallows_errors():
    sink = MagicMock()
    sink.record.side_effect = RuntimeError("audit store down")

    SafeAuditSink(sink).record("BOOK_ISSUED", "ISSUED_BOOKS", 1, 2, {"book_id": 3})

    sink.record.assert_called_once_with("BOOK_ISSUED", "ISSUED_BOOKS", 1, 2, {"book_id": 3})


def test_audit_log_records_and_filters(lib):
    log = SqliteAuditLog(lib.db_file)
    log.record("BOOK_ISSUED", "ISSUED_BOOKS", 1, 7, {"book_id": 3})
    log.record("BOOK_RETURNED", "ISSUED_BOOKS", 1, 8)

    assert [e["action"] for e in log.recent()] == ["BOOK_RETURNED", "BOOK_ISSUED"]
    [issued] = log.recent(action="BOOK_ISSUED")
    assert issued["details"] == {"book_id": 3}
    assert [e["performed_by"] for e in log.recent(performed_by=8)] == [8]


def test_audit_log_write_failure_is_swallowed(tmp_path):
    # no audit_logs table in this file
    SqliteAuditLog(str(tmp_path / "empty.db")).record("BOOK_ISSUED", "ISSUED_BOOKS", 1, 1)


def test_issue_survives_broken_audit_sink(db_file, gateway, now):
    sink = MagicMock()
    sink.record.side_effect = RuntimeError("audit store down")
    lib = Library(db_file=db_file, audit=sink, gateway=gateway)
    member = lib.members.register_member("Asha Rao", "asha@example.com")
    admin = lib.members.register_member("Desk Admin", "admin@example.com", role="ADMIN")
    lib.payments.confirm_cash_payment(member.id, 300, "SUBSCRIPTION", admin.id, now)
    title = lib.catalog.add_title("Dune", "Frank Herbert", 1)

    loan = lib.loans.issue_loan(member.id, title.id, now)

    assert loan.id is not None
    assert sink.record.called
