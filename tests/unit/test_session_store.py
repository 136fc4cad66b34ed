"""Unit tests for session stores.

Both stores must honour the same contract: unknown ids raise
SessionNotFoundError, every other failure raises StoreError, and loaded
sessions are independent copies of durable state.
"""

import json
import os

import pytest
from hypothesis import given, settings, strategies as st

from chatstream.conversation.session import ChatSession, GenerationConfig, Message, ModelDescriptor
from chatstream.conversation.store import FileSessionStore, InMemorySessionStore
from chatstream.exceptions import SessionNotFoundError, StoreError

from conftest import word_counter


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore()
    return FileSessionStore(storage_dir=str(tmp_path / "chats"))


@pytest.fixture
def session(model, generation, make_message):
    return ChatSession.create(
        "user-1", make_message("system", 10), model, generation, session_id="chat-1"
    )


class TestSessionStoreContract:
    """Behaviour shared by every store implementation."""

    @pytest.mark.asyncio
    async def test_find_unknown_session_raises_not_found(self, store):
        with pytest.raises(SessionNotFoundError) as exc_info:
            await store.find_by_id("missing")

        assert exc_info.value.session_id == "missing"
        assert str(exc_info.value).startswith("Session not found: missing")

    @pytest.mark.asyncio
    async def test_create_then_find(self, store, session):
        await store.create(session)

        loaded = await store.find_by_id("chat-1")

        assert loaded == session
        assert loaded is not session

    @pytest.mark.asyncio
    async def test_create_duplicate_raises_store_error(self, store, session):
        await store.create(session)

        with pytest.raises(StoreError) as exc_info:
            await store.create(session)

        assert exc_info.value.operation == "create"
        assert exc_info.value.session_id == "chat-1"

    @pytest.mark.asyncio
    async def test_save_replaces_stored_state(self, store, session, make_message):
        await store.create(session)
        loaded = await store.find_by_id("chat-1")
        loaded.append_message(make_message("user", 30))
        loaded.append_message(make_message("assistant", 30))

        await store.save(loaded)
        reloaded = await store.find_by_id("chat-1")

        assert [m.role.value for m in reloaded.messages] == ["system", "user", "assistant"]
        assert reloaded == loaded

    @pytest.mark.asyncio
    async def test_mutating_loaded_session_does_not_touch_store(self, store, session, make_message):
        await store.create(session)

        loaded = await store.find_by_id("chat-1")
        loaded.append_message(make_message("user", 30))

        fresh = await store.find_by_id("chat-1")
        assert len(fresh.messages) == 1

    @pytest.mark.asyncio
    async def test_mutating_created_session_does_not_touch_store(self, store, session, make_message):
        await store.create(session)

        session.append_message(make_message("user", 30))

        fresh = await store.find_by_id("chat-1")
        assert len(fresh.messages) == 1

    @pytest.mark.asyncio
    async def test_erased_messages_are_persisted(self, store, session, make_message):
        await store.create(session)
        first = make_message("user", 40)
        session.append_message(first)
        session.append_message(make_message("assistant", 40))

        await store.save(session)
        loaded = await store.find_by_id("chat-1")

        assert loaded.erased_messages == [first]


class TestInMemorySessionStore:
    """Tests specific to the in-memory store."""

    @pytest.mark.asyncio
    async def test_get_session_ids(self, model, generation, make_message):
        store = InMemorySessionStore()
        for session_id in ("a", "b"):
            await store.create(ChatSession.create(
                "user-1", make_message("system", 1), model, generation, session_id=session_id
            ))

        assert sorted(store.get_session_ids()) == ["a", "b"]


class TestFileSessionStore:
    """Tests specific to the JSON file store."""

    @pytest.fixture
    def storage_dir(self, tmp_path):
        return tmp_path / "chats"

    @pytest.fixture
    def file_store(self, storage_dir):
        return FileSessionStore(storage_dir=str(storage_dir))

    def test_storage_directory_is_created(self, storage_dir, file_store):
        assert storage_dir.is_dir()

    @pytest.mark.asyncio
    async def test_session_written_as_json(self, storage_dir, file_store, session):
        await file_store.create(session)

        data = json.loads((storage_dir / "chat-1.json").read_text(encoding="utf-8"))

        assert data["id"] == "chat-1"
        assert data["model"] == {"name": "gpt-4o-mini", "max_tokens": 100}
        assert data["messages"][0]["role"] == "system"
        assert data["messages"][0]["token_cost"] == 10
        assert file_store.get_session_ids() == ["chat-1"]

    @pytest.mark.asyncio
    async def test_malformed_json_raises_store_error(self, storage_dir, file_store):
        (storage_dir / "broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StoreError) as exc_info:
            await file_store.find_by_id("broken")

        assert exc_info.value.operation == "lookup"
        assert not isinstance(exc_info.value, SessionNotFoundError)

    @pytest.mark.asyncio
    async def test_incomplete_record_raises_store_error(self, storage_dir, file_store):
        (storage_dir / "partial.json").write_text(json.dumps({"id": "partial"}), encoding="utf-8")

        with pytest.raises(StoreError) as exc_info:
            await file_store.find_by_id("partial")

        assert exc_info.value.operation == "lookup"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("session_id", ["../escape", "a/b", "..", "a\\b"])
    async def test_path_like_ids_rejected(self, file_store, session_id):
        with pytest.raises(StoreError):
            await file_store.find_by_id(session_id)

    @pytest.mark.asyncio
    async def test_second_store_on_same_directory_sees_sessions(self, storage_dir, file_store, session):
        await file_store.create(session)

        other = FileSessionStore(storage_dir=str(storage_dir))
        loaded = await other.find_by_id("chat-1")

        assert loaded == session

    @pytest.mark.asyncio
    async def test_failed_save_keeps_previous_state(self, storage_dir, file_store, session, model):
        await file_store.create(session)
        loaded = await file_store.find_by_id("chat-1")
        # A lone surrogate cannot be encoded as UTF-8
        loaded.append_message(Message.new("user", "bad \ud800 text", model, token_counter=word_counter))

        with pytest.raises(StoreError) as exc_info:
            await file_store.save(loaded)

        assert exc_info.value.operation == "save"
        reloaded = await file_store.find_by_id("chat-1")
        assert reloaded == session
        assert sorted(p.name for p in storage_dir.iterdir() if p.name != ".lock") == ["chat-1.json"]

    @pytest.mark.asyncio
    async def test_failed_replace_keeps_previous_state(
        self, monkeypatch, storage_dir, file_store, session, make_message
    ):
        await file_store.create(session)
        loaded = await file_store.find_by_id("chat-1")
        loaded.append_message(make_message("user", 30))

        def disk_full(src, dst):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(os, "replace", disk_full)

        with pytest.raises(StoreError) as exc_info:
            await file_store.save(loaded)

        assert exc_info.value.operation == "save"
        monkeypatch.undo()
        assert await file_store.find_by_id("chat-1") == session
        assert not list(storage_dir.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_failed_create_can_be_retried(self, storage_dir, file_store, model, generation):
        bad_system = Message.new("system", "bad \ud800", model, token_counter=word_counter)
        bad = ChatSession.create("user-1", bad_system, model, generation, session_id="chat-1")

        with pytest.raises(StoreError) as exc_info:
            await file_store.create(bad)

        assert exc_info.value.operation == "create"
        with pytest.raises(SessionNotFoundError):
            await file_store.find_by_id("chat-1")

        good_system = Message.new("system", "Be brief", model, token_counter=word_counter)
        good = ChatSession.create("user-1", good_system, model, generation, session_id="chat-1")
        await file_store.create(good)

        assert await file_store.find_by_id("chat-1") == good

    @given(content=st.text(min_size=1, max_size=200).filter(lambda s: s.strip()))
    @settings(max_examples=50, deadline=None)
    def test_property_message_content_survives_disk(self, tmp_path_factory, content):
        """Any non-empty unicode content is written and read back unchanged."""
        model = ModelDescriptor(name="gpt-4o-mini", max_tokens=100000)
        file_store = FileSessionStore(storage_dir=str(tmp_path_factory.mktemp("chats")))
        system = Message.new("system", content, model, token_counter=word_counter)
        session = ChatSession.create(
            "user-1", system, model, GenerationConfig(max_tokens=10), session_id="chat-1"
        )

        file_store._write_session(session, "create")
        loaded = file_store._load_session("chat-1")

        assert loaded.messages[0].content == content
        assert loaded == session
