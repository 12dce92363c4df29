import threading
import uuid

from app.core.conversation_store import InMemoryConversationStore, resolve_conversation_id


def test_get_unknown_user():
    store = InMemoryConversationStore()
    assert store.get("u1") == ("", False)


def test_save_is_idempotent():
    store = InMemoryConversationStore()
    store.save("u1", "conv-1")
    store.save("u1", "conv-1")
    store.save("u1", "conv-1")

    assert store.get("u1") == ("conv-1", True)
    assert store.get("u1") == ("conv-1", True)


def test_generate_and_delete():
    store = InMemoryConversationStore()
    conversation_id = store.generate("u1")

    uuid.UUID(conversation_id)
    assert store.get("u1") == (conversation_id, True)

    store.delete("u1")
    assert store.get("u1") == ("", False)
    # Löschen eines unbekannten Nutzers ist kein Fehler
    store.delete("nobody")


def test_resolve_prefers_requested_id_and_overwrites():
    store = InMemoryConversationStore()
    store.save("u1", "old")

    assert resolve_conversation_id(store, "u1", "new") == "new"
    assert store.get("u1") == ("new", True)


def test_resolve_falls_back_to_stored_id():
    store = InMemoryConversationStore()
    store.save("u1", "conv-9")

    assert resolve_conversation_id(store, "u1", "") == "conv-9"
    assert resolve_conversation_id(store, "u1") == "conv-9"


def test_resolve_without_any_id_returns_empty_and_stores_nothing():
    store = InMemoryConversationStore()

    assert resolve_conversation_id(store, "u1", "") == ""
    assert store.get("u1") == ("", False)


def test_users_are_independent_under_concurrency():
    store = InMemoryConversationStore()

    def worker(index):
        for _ in range(200):
            store.save(f"user-{index}", f"conv-{index}")
            assert store.get(f"user-{index}") == (f"conv-{index}", True)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for i in range(8):
        assert store.get(f"user-{i}") == (f"conv-{i}", True)
