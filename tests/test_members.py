"""Tests for the membership registry and the member-management service."""

import pytest

from switchboard.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from switchboard.service.permissions import MemberAction
from switchboard.service.roles import Capability
from switchboard.storage.memory import MemoryStore
from switchboard.storage.models import MemberRole

CHAT = "chat-1"
OWNER_ID, ADMIN_ID, MEMBER_ID, OTHER_ID = 1, 2, 3, 4


@pytest.fixture
def seeded(registry):
    registry.add(CHAT, OWNER_ID, MemberRole.OWNER)
    registry.add(CHAT, ADMIN_ID, MemberRole.ADMIN)
    registry.add(CHAT, MEMBER_ID, MemberRole.MEMBER)
    return registry


class TestRegistry:
    def test_list_is_ordered_by_join_time(self, registry, clock):
        for user_id in (5, 3, 9):
            registry.add(CHAT, user_id, "member")
            clock.advance(seconds=1)
        assert [m.user_id for m in registry.list(CHAT)] == [5, 3, 9]

    def test_duplicate_add_conflicts(self, seeded):
        with pytest.raises(ConflictError) as exc:
            seeded.add(CHAT, MEMBER_ID, MemberRole.ADMIN)
        assert exc.value.reason == "member_exists"
        assert exc.value.message == "member already exists"
        assert seeded.get(CHAT, MEMBER_ID).role == MemberRole.MEMBER

    def test_second_owner_is_rejected(self, seeded):
        with pytest.raises(ConflictError) as exc:
            seeded.add(CHAT, OTHER_ID, MemberRole.OWNER)
        assert exc.value.reason == "owner_exists"

    def test_promoting_to_owner_is_rejected_while_owner_exists(self, seeded):
        with pytest.raises(ConflictError) as exc:
            seeded.update_role(CHAT, ADMIN_ID, MemberRole.OWNER)
        assert exc.value.reason == "owner_exists"

    def test_owner_cannot_be_demoted(self, seeded):
        with pytest.raises(ConflictError) as exc:
            seeded.update_role(CHAT, OWNER_ID, MemberRole.ADMIN)
        assert exc.value.reason == "owner_required_for_chat"

    def test_update_and_remove_missing_member(self, seeded):
        with pytest.raises(NotFoundError):
            seeded.update_role(CHAT, OTHER_ID, MemberRole.ADMIN)
        with pytest.raises(NotFoundError):
            seeded.remove(CHAT, OTHER_ID)

    def test_invalid_role_is_rejected_before_writing(self, registry):
        with pytest.raises(ValidationError):
            registry.add(CHAT, OTHER_ID, "superuser")
        assert registry.get(CHAT, OTHER_ID) is None

    def test_chats_are_isolated(self, seeded):
        seeded.add("chat-2", OWNER_ID, MemberRole.OWNER)
        assert [m.user_id for m in seeded.list("chat-2")] == [OWNER_ID]
        assert len(seeded.list(CHAT)) == 3


class TestCreateChat:
    async def test_creator_becomes_owner(self, members, registry):
        owner = await members.create_chat(CHAT, OWNER_ID)
        assert owner.role == MemberRole.OWNER
        assert registry.get(CHAT, OWNER_ID) == owner

    async def test_existing_chat_conflicts(self, members):
        await members.create_chat(CHAT, OWNER_ID)
        with pytest.raises(ConflictError) as exc:
            await members.create_chat(CHAT, OTHER_ID)
        assert exc.value.reason == "chat_exists"


class TestMemberService:
    async def test_admin_promotes_member_to_admin(self, members, seeded):
        updated = await members.update_member_role(CHAT, ADMIN_ID, MEMBER_ID, "admin")
        assert updated.role == MemberRole.ADMIN
        assert seeded.get(CHAT, MEMBER_ID).role == MemberRole.ADMIN

    async def test_admin_cannot_demote_owner(self, members, seeded):
        with pytest.raises(ForbiddenError) as exc:
            await members.update_member_role(CHAT, ADMIN_ID, OWNER_ID, "member")
        assert exc.value.reason == "owner_required"
        assert exc.value.message == "only owners manage admins/owners"
        assert seeded.get(CHAT, OWNER_ID).role == MemberRole.OWNER

    async def test_owner_demotes_admin(self, members, seeded):
        updated = await members.update_member_role(CHAT, OWNER_ID, ADMIN_ID, MemberRole.MEMBER)
        assert updated.role == MemberRole.MEMBER

    async def test_same_role_update_is_a_noop(self, members, seeded):
        before = seeded.get(CHAT, MEMBER_ID)
        after = await members.update_member_role(CHAT, OWNER_ID, MEMBER_ID, "member")
        assert after == before

    async def test_self_update_is_invalid_state(self, members, seeded):
        with pytest.raises(InvalidStateError):
            await members.update_member_role(CHAT, ADMIN_ID, ADMIN_ID, "member")

    async def test_non_member_requester_is_forbidden(self, members, seeded):
        with pytest.raises(ForbiddenError) as exc:
            await members.list_members(CHAT, OTHER_ID)
        assert exc.value.reason == "not_a_member"

    async def test_unknown_target_is_not_found(self, members, seeded):
        with pytest.raises(NotFoundError):
            await members.remove_member(CHAT, OWNER_ID, OTHER_ID)

    async def test_admin_removes_member(self, members, seeded):
        await members.remove_member(CHAT, ADMIN_ID, MEMBER_ID)
        listed = await members.list_members(CHAT, OWNER_ID)
        assert [m.user_id for m in listed] == [OWNER_ID, ADMIN_ID]

    async def test_owner_cannot_be_removed(self, members, seeded):
        with pytest.raises(ForbiddenError) as exc:
            await members.remove_member(CHAT, ADMIN_ID, OWNER_ID)
        assert exc.value.reason == "cannot_remove_owner"

    async def test_chat_capability_check(self, members, seeded):
        admin = await members.authorize_chat_action(CHAT, ADMIN_ID, Capability.UPDATE_CHAT)
        assert admin.user_id == ADMIN_ID
        with pytest.raises(ForbiddenError) as exc:
            await members.authorize_chat_action(CHAT, ADMIN_ID, Capability.DELETE_CHAT)
        assert exc.value.reason == "cannot_delete_chat"

    def test_authorize_returns_decision_tuple(self, members, seeded):
        admin = seeded.get(CHAT, ADMIN_ID)
        owner = seeded.get(CHAT, OWNER_ID)
        assert members.authorize(admin, owner, MemberAction.REMOVE) == (False, "cannot_remove_owner")
        assert members.authorize(owner, admin, MemberAction.REMOVE) == (True, None)


class TestListMembersFilters:
    async def test_role_filter(self, members, seeded):
        admins = await members.list_members(CHAT, MEMBER_ID, role="admin")
        assert [m.user_id for m in admins] == [ADMIN_ID]
        owners = await members.list_members(CHAT, MEMBER_ID, role=MemberRole.OWNER)
        assert [m.user_id for m in owners] == [OWNER_ID]

    async def test_limit_and_offset(self, members, registry, clock):
        for user_id in (10, 11, 12, 13):
            registry.add(CHAT, user_id, MemberRole.MEMBER)
            clock.advance(seconds=1)
        page = await members.list_members(CHAT, 10, limit=2, offset=1)
        assert [m.user_id for m in page] == [11, 12]
        assert await members.list_members(CHAT, 10, offset=10) == []

    async def test_invalid_filters_are_rejected(self, members, seeded):
        with pytest.raises(ValidationError) as exc:
            await members.list_members(CHAT, OWNER_ID, role="moderator")
        assert exc.value.reason == "invalid_role"
        with pytest.raises(ValidationError) as exc:
            await members.list_members(CHAT, OWNER_ID, limit=-1)
        assert exc.value.reason == "invalid_limit"


class TestLeaveChat:
    async def test_member_leaves(self, members, seeded):
        await members.leave_chat(CHAT, MEMBER_ID)
        assert seeded.get(CHAT, MEMBER_ID) is None

    async def test_admin_leaves(self, members, seeded):
        await members.leave_chat(CHAT, ADMIN_ID)
        assert [m.user_id for m in seeded.list(CHAT)] == [OWNER_ID, MEMBER_ID]

    async def test_owner_cannot_leave(self, members, seeded):
        with pytest.raises(ConflictError) as exc:
            await members.leave_chat(CHAT, OWNER_ID)
        assert exc.value.reason == "owner_required_for_chat"
        assert seeded.get(CHAT, OWNER_ID).role == MemberRole.OWNER

    async def test_non_member_cannot_leave(self, members, seeded):
        with pytest.raises(ForbiddenError) as exc:
            await members.leave_chat(CHAT, OTHER_ID)
        assert exc.value.reason == "not_a_member"


class RecordingStore(MemoryStore):
    """Memory store that records chat locks and member reads in call order."""

    def __init__(self):
        self.calls = []
        super().__init__()

    def lock_chat(self, chat_id):
        self.calls.append(("lock", chat_id))

    def list_members(self, chat_id):
        self.calls.append(("list", chat_id))
        return super().list_members(chat_id)

    def get_member(self, chat_id, user_id):
        self.calls.append(("get", chat_id))
        return super().get_member(chat_id, user_id)


class TestChatLocking:
    @pytest.fixture
    def store(self):
        return RecordingStore()

    async def test_create_chat_locks_before_reading(self, members, store):
        await members.create_chat(CHAT, OWNER_ID)
        assert store.calls[0] == ("lock", CHAT)

    def test_owner_writes_take_the_chat_lock(self, registry, store):
        registry.add(CHAT, OWNER_ID, MemberRole.OWNER)
        assert store.calls[0] == ("lock", CHAT)

        store.calls.clear()
        registry.add(CHAT, MEMBER_ID, MemberRole.MEMBER)
        with pytest.raises(ConflictError):
            registry.update_role(CHAT, MEMBER_ID, MemberRole.OWNER)
        assert store.calls.count(("lock", CHAT)) == 1
        assert store.calls[store.calls.index(("lock", CHAT)) + 1] == ("get", CHAT)


class TestConcurrency:
    def test_admin_update_racing_a_promotion(self, members, seeded, run_concurrently):
        results = run_concurrently(
            lambda: members.update_member_role(CHAT, OWNER_ID, MEMBER_ID, "admin"),
            lambda: members.update_member_role(CHAT, ADMIN_ID, MEMBER_ID, "member"),
        )
        # Whichever commits first, the admin never acts on a fellow admin
        errors = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(e, ForbiddenError) and e.reason == "owner_required" for e in errors)
        assert seeded.get(CHAT, MEMBER_ID).role == MemberRole.ADMIN

    def test_concurrent_role_updates_by_owner(self, members, seeded, run_concurrently):
        results = run_concurrently(
            lambda: members.update_member_role(CHAT, OWNER_ID, ADMIN_ID, "member"),
            lambda: members.update_member_role(CHAT, OWNER_ID, ADMIN_ID, "admin"),
        )
        assert not any(isinstance(r, Exception) for r in results)
        final = seeded.get(CHAT, ADMIN_ID)
        assert final in results
        assert [m.user_id for m in seeded.list(CHAT)] == [OWNER_ID, ADMIN_ID, MEMBER_ID]

    def test_concurrent_chat_creation_yields_one_owner(self, members, registry, run_concurrently):
        results = run_concurrently(
            lambda: members.create_chat(CHAT, OWNER_ID),
            lambda: members.create_chat(CHAT, OTHER_ID),
        )
        failures = [r for r in results if isinstance(r, ConflictError)]
        assert len(failures) == 1
        assert failures[0].reason == "chat_exists"
        owners = [m for m in registry.list(CHAT) if m.role == MemberRole.OWNER]
        assert len(owners) == 1
