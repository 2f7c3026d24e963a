import pytest

from circulation.errors import DuplicateMember, MemberNotFound, ValidationError
from circulation.models import Batch, MemberStatus, Role


def test_register_member_defaults(lib):
    member = lib.members.register_member("Asha Rao", "asha@example.com")

    assert member.role is Role.MEMBER
    assert member.status is MemberStatus.ACTIVE
    assert member.batch is None
    assert lib.members.get_member(member.id) == member


def test_register_rejects_duplicate_email(lib, member):
    with pytest.raises(DuplicateMember):
        lib.members.register_member("Someone Else", "asha@example.com")


def test_register_rejects_bad_email(lib):
    with pytest.raises(ValidationError):
        lib.members.register_member("Asha Rao", "not-an-email")


def test_get_unknown_member(lib):
    with pytest.raises(MemberNotFound):
        lib.members.get_member(404)


def test_list_members_by_status(lib, member, admin):
    lib.members.set_status(admin.id, "INACTIVE")

    assert [m.id for m in lib.members.list_members()] == [member.id, admin.id]
    assert [m.id for m in lib.members.list_members("ACTIVE")] == [member.id]
    assert [m.id for m in lib.members.list_members(MemberStatus.INACTIVE)] == [admin.id]


def test_set_status_unknown_member(lib):
    with pytest.raises(MemberNotFound):
        lib.members.set_status(99, "SUSPENDED")


def test_change_batch(lib, member):
    updated = lib.members.change_batch(member.id, "EVENING", "18:00-20:00")

    assert updated.batch is Batch.EVENING
    assert updated.time_slot == "18:00-20:00"


def test_change_batch_rejects_unknown_batch(lib, member):
    with pytest.raises(ValidationError):
        lib.members.change_batch(member.id, "NIGHT")
