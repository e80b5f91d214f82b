import threading

import pytest

from tokengate.storage.errors import DuplicateCode, DuplicateUsername, InviteCodeConsumed
from tokengate.storage.memory import MemoryStore
from tokengate.storage.models import Role


@pytest.fixture
def store():
    return MemoryStore()


def test_user_ids_are_sequential(store):
    first = store.create_user("alice", "hash-a")
    second = store.create_user("bob", "hash-b", Role.MODERATOR)

    assert (first.id, second.id) == (1, 2)
    assert second.role is Role.MODERATOR
    assert store.get_user(2) is second
    assert store.find_user_by_username("missing") is None


def test_duplicate_username_rejected(store):
    store.create_user("alice", "hash-a")
    with pytest.raises(DuplicateUsername):
        store.create_user("alice", "hash-b")
    assert len(store.list_users()) == 1


def test_role_strings_are_coerced(store):
    user = store.create_user("carol", "hash", "admin")
    assert user.role is Role.ADMIN


def test_duplicate_invite_code_rejected(store):
    store.create_invite_code("code-1", 1)
    with pytest.raises(DuplicateCode):
        store.create_invite_code("code-1", 2)


def test_mark_used_transitions_once(store):
    store.create_invite_code("code-1", 1)

    assert store.mark_invite_code_used("code-1", 5) is True
    assert store.mark_invite_code_used("code-1", 6) is False
    assert store.mark_invite_code_used("missing", 6) is False
    assert store.find_invite_code("code-1").used_by == 5


def test_concurrent_mark_used_has_one_winner(store):
    store.create_invite_code("code-1", 1)
    results = []
    barrier = threading.Barrier(8)

    def worker(user_id):
        barrier.wait()
        results.append(store.mark_invite_code_used("code-1", user_id))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1


def test_register_with_invite_rolls_back_on_consumed_code(store):
    store.create_invite_code("code-1", 1)
    store.mark_invite_code_used("code-1", 99)

    with pytest.raises(InviteCodeConsumed):
        store.register_with_invite("dave", "hash", "code-1")
    assert store.find_user_by_username("dave") is None


def test_register_with_invite_duplicate_keeps_code(store):
    store.create_user("dave", "hash")
    store.create_invite_code("code-1", 1)

    with pytest.raises(DuplicateUsername):
        store.register_with_invite("dave", "hash", "code-1")
    assert store.find_invite_code("code-1").is_used is False


def test_list_invite_codes_newest_first(store):
    older = store.create_invite_code("code-old", 1)
    newer = store.create_invite_code("code-new", 1)
    older.created_at = newer.created_at.replace(year=newer.created_at.year - 1)

    assert [c.code for c in store.list_invite_codes()] == ["code-new", "code-old"]
