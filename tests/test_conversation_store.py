"""
Tests for services.chat.conversation_store.

Covers:
  - session create / select (known, unknown) / delete and the selection pointer
  - lazy message loading with cache
  - turn primitives, state transitions, and change notifications
  - optimistic user and assistant writes with rollback on insert failure
  - storage failures of the remote database
  - remote-adapter authentication requirements
  - round trip through a fresh store for both adapters
"""

import shutil
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from dal.local_adapter import LocalAdapter
from dal.remote_adapter import RemoteAdapter
from models.chat_models import DEFAULT_TITLE, Role, TurnState
from models.errors import NotAuthenticated, PersistenceError, TurnInProgress
from services.auth.principal import PrincipalProvider
from services.chat.conversation_store import ConversationStore
from utils.database_init import AsyncDatabaseInitializer


async def _run_turn(store, user_text, *deltas):
    session_id = store.selected_session_id
    store.begin_turn(session_id)
    await store.append_user_message(user_text)
    store.start_assistant_message(session_id)
    for delta in deltas:
        store.append_delta(delta)
    return await store.seal_assistant_message()


class TestSessions:

    @pytest.mark.asyncio
    async def test_create_selects_and_prepends(self, local_store):
        await local_store.initialize()
        first = await local_store.create_session("First")
        second = await local_store.create_session()
        assert [s.id for s in local_store.sessions] == [second.id, first.id]
        assert local_store.selected_session_id == second.id
        assert second.title == DEFAULT_TITLE

    @pytest.mark.asyncio
    async def test_select_unknown_id_creates_it(self, local_store):
        await local_store.initialize()
        session = await local_store.select_session("unknown-id")
        assert session.id == "unknown-id"
        assert session.title == DEFAULT_TITLE
        assert local_store.selected_session_id == "unknown-id"
        assert [s.id for s in local_store.sessions] == ["unknown-id"]

    @pytest.mark.asyncio
    async def test_select_known_switches_pointer(self, local_store):
        a = await local_store.create_session("A")
        await local_store.create_session("B")
        await local_store.select_session(a.id)
        assert local_store.selected_session is a
        assert len(local_store.sessions) == 2

    @pytest.mark.asyncio
    async def test_delete_selected_reselects_remaining(self, local_store):
        a = await local_store.create_session("A")
        b = await local_store.create_session("B")
        c = await local_store.create_session("C")
        assert local_store.selected_session_id == c.id

        await local_store.delete_session(c.id)
        assert local_store.selected_session_id == b.id
        assert [s.id for s in local_store.sessions] == [b.id, a.id]
        assert local_store.get_session(c.id) is None

    @pytest.mark.asyncio
    async def test_delete_last_clears_selection(self, local_store):
        only = await local_store.create_session()
        await local_store.delete_session(only.id)
        assert local_store.selected_session_id is None
        assert local_store.sessions == ()

    @pytest.mark.asyncio
    async def test_delete_unselected_keeps_selection(self, local_store):
        a = await local_store.create_session("A")
        b = await local_store.create_session("B")
        await local_store.delete_session(a.id)
        assert local_store.selected_session_id == b.id

    @pytest.mark.asyncio
    async def test_delete_during_turn_is_rejected(self, local_store):
        session = await local_store.create_session()
        local_store.begin_turn(session.id)
        with pytest.raises(TurnInProgress):
            await local_store.delete_session(session.id)

    @pytest.mark.asyncio
    async def test_switch_model(self, local_store, events):
        local_store.switch_model("gpt-4o-mini")
        local_store.switch_model("   ")
        assert local_store.model == "gpt-4o-mini"
        assert [e.kind for e in events] == ["model.changed"]


class TestTurnPrimitives:

    @pytest.mark.asyncio
    async def test_streamed_turn_seals_accumulated_text(self, local_store, events):
        await local_store.create_session()
        reply = await _run_turn(local_store, "hi", "He", "llo")

        assert reply.content == "Hello"
        assert reply.sealed
        assert not local_store.is_streaming
        session = local_store.selected_session
        assert [(m.role, m.content) for m in session.messages] == [(Role.USER, "hi"), (Role.ASSISTANT, "Hello")]

        states = [e.state for e in events if e.kind == "turn.state"]
        assert states == [
            TurnState.AWAITING_RESPONSE,
            TurnState.STREAMING,
            TurnState.SEALED,
            TurnState.IDLE,
        ]

    @pytest.mark.asyncio
    async def test_live_view_sees_growing_prefix(self, local_store):
        await local_store.create_session()
        seen = []
        local_store.subscribe(lambda e: seen.append(e.message.content) if e.kind == "message.delta" else None)
        await _run_turn(local_store, "hi", "a", "b", "c")
        assert seen == ["a", "ab", "abc"]

    @pytest.mark.asyncio
    async def test_second_turn_rejected_while_streaming(self, local_store):
        session = await local_store.create_session()
        local_store.begin_turn(session.id)
        with pytest.raises(TurnInProgress):
            local_store.begin_turn(session.id)

    @pytest.mark.asyncio
    async def test_empty_user_text_is_noop(self, local_store):
        await local_store.create_session()
        assert await local_store.append_user_message("   ") is None
        assert local_store.selected_session.messages == []

    @pytest.mark.asyncio
    async def test_fail_turn_without_content_uses_failure_text(self, local_store, events):
        session = await local_store.create_session()
        local_store.begin_turn(session.id)
        await local_store.append_user_message("hi")
        local_store.start_assistant_message(session.id)
        message = await local_store.fail_turn("failed", "Unauthorized")

        assert message.content == "failed"
        assert message.sealed
        assert local_store.turn_state(session.id) == TurnState.IDLE
        states = [e.state for e in events if e.kind == "turn.state"]
        assert states[-2:] == [TurnState.ERRORED, TurnState.IDLE]

    @pytest.mark.asyncio
    async def test_fail_turn_keeps_partial_content(self, local_store):
        session = await local_store.create_session()
        local_store.begin_turn(session.id)
        await local_store.append_user_message("hi")
        local_store.start_assistant_message(session.id)
        local_store.append_delta("par")
        message = await local_store.fail_turn("failed")
        assert message.content == "par"

    @pytest.mark.asyncio
    async def test_first_reply_names_session(self, local_store):
        session = await local_store.create_session()
        await _run_turn(local_store, "hi", "# Greetings\n", "More text")
        assert session.title == "Greetings"

        await _run_turn(local_store, "again", "Different")
        assert session.title == "Greetings"

    @pytest.mark.asyncio
    async def test_history_excludes_unsealed_tail(self, local_store):
        session = await local_store.create_session()
        local_store.begin_turn(session.id)
        await local_store.append_user_message("hi")
        local_store.start_assistant_message(session.id)
        local_store.append_delta("partial")
        assert local_store.history(session.id) == [{"role": "user", "content": "hi"}]


class TestOptimisticWrites:

    @pytest.mark.asyncio
    async def test_user_message_rolled_back_on_insert_failure(self, local_store, events):
        session = await local_store.create_session()
        updated_at = session.updated_at
        with patch.object(local_store.adapter, "save_message", AsyncMock(side_effect=PersistenceError("down"))):
            with pytest.raises(PersistenceError):
                await local_store.append_user_message("hi")

        assert session.messages == []
        assert session.updated_at == updated_at
        kinds = [e.kind for e in events]
        assert kinds[-2:] == ["message.appended", "message.removed"]

    @pytest.mark.asyncio
    async def test_message_visible_before_write_completes(self, local_store):
        session = await local_store.create_session()
        observed = []

        async def slow_save(principal, session_id, message, updated_at):
            observed.append([m.content for m in session.messages])
            return message.id

        with patch.object(local_store.adapter, "save_message", side_effect=slow_save):
            await local_store.append_user_message("hi")
        assert observed == [["hi"]]

    @pytest.mark.asyncio
    async def test_assistant_message_rolled_back_on_insert_failure(self, local_store, events):
        session = await local_store.create_session()
        local_store.begin_turn(session.id)
        await local_store.append_user_message("hi")
        local_store.start_assistant_message(session.id)
        local_store.append_delta("Hello")
        before_seal = session.updated_at

        with patch.object(local_store.adapter, "save_message", AsyncMock(side_effect=PersistenceError("down"))):
            with pytest.raises(PersistenceError):
                await local_store.seal_assistant_message()

        assert [(m.role, m.content) for m in session.messages] == [(Role.USER, "hi")]
        assert session.updated_at == before_seal
        assert events[-1].kind == "message.removed"
        assert not local_store.is_streaming
        assert local_store.turn_state(session.id) == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_failed_reply_kept_when_it_cannot_be_stored(self, local_store):
        session = await local_store.create_session()
        local_store.begin_turn(session.id)
        await local_store.append_user_message("hi")
        local_store.start_assistant_message(session.id)

        with patch.object(local_store.adapter, "save_message", AsyncMock(side_effect=PersistenceError("down"))):
            message = await local_store.fail_turn("failed", "Unauthorized")

        assert message.sealed
        assert [m.content for m in session.messages] == ["hi", "failed"]
        assert local_store.turn_state(session.id) == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_failed_session_create_is_not_written_later(self, tmp_path):
        store = ConversationStore(LocalAdapter(tmp_path), PrincipalProvider())
        await store.initialize()
        with patch.object(store.adapter.slots, "write_many", AsyncMock(side_effect=OSError("disk full"))):
            with pytest.raises(PersistenceError):
                await store.create_session("Ghost")
        assert store.sessions == ()
        await store.create_session("Real")

        fresh = ConversationStore(LocalAdapter(tmp_path), PrincipalProvider())
        await fresh.initialize()
        assert [s.title for s in fresh.sessions] == ["Real"]


class TestRemoteStorageFailures:

    @pytest.mark.asyncio
    async def test_unreachable_database_rolls_back_user_message(self, remote_store, db_initializer):
        session = await remote_store.create_session()
        shutil.rmtree(db_initializer.db_dir)

        with pytest.raises(PersistenceError):
            await remote_store.append_user_message("hi")
        assert session.messages == []

    @pytest.mark.asyncio
    async def test_timestamp_failure_keeps_messages(self, remote_store, remote_adapter, principal):
        session = await remote_store.create_session()
        touch = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))
        with patch.object(remote_adapter, "_touch_session", touch):
            reply = await _run_turn(remote_store, "hi", "Hello")

        assert touch.await_count == 2
        assert reply.sealed
        assert [m.content for m in session.messages] == ["hi", "Hello"]
        stored = await remote_adapter.fetch_messages(principal, session.id)
        assert [m.content for m in stored] == ["hi", "Hello"]


class TestLazyLoading:

    @pytest.mark.asyncio
    async def test_select_fetches_once(self, remote_adapter, principal):
        seed = ConversationStore(remote_adapter, PrincipalProvider(principal))
        session = await seed.create_session("Seeded")
        await _run_turn(seed, "hi", "Hello")
        await seed.create_session("Other")

        store = ConversationStore(remote_adapter, PrincipalProvider(principal))
        await store.initialize()
        target = store.get_session(session.id)
        assert not target.messages_loaded

        with patch.object(remote_adapter, "fetch_messages", wraps=remote_adapter.fetch_messages) as fetch:
            await store.select_session(session.id)
            await store.select_session(session.id)
        assert fetch.await_count == 1
        assert [m.content for m in target.messages] == ["hi", "Hello"]


class TestRemoteAuthentication:

    @pytest.mark.asyncio
    async def test_create_requires_principal(self, remote_adapter):
        store = ConversationStore(remote_adapter, PrincipalProvider())
        await store.initialize()
        assert store.sessions == ()
        with pytest.raises(NotAuthenticated):
            await store.create_session()
        with pytest.raises(NotAuthenticated):
            await store.select_session("unknown-id")
        assert store.sessions == ()

    @pytest.mark.asyncio
    async def test_remote_ids_match_storage(self, remote_store, remote_adapter, principal):
        session = await remote_store.create_session()
        reply = await _run_turn(remote_store, "hi", "Hello")
        stored = await remote_adapter.fetch_messages(principal, session.id)
        assert [m.id for m in session.messages] == [m.id for m in stored]
        assert reply.id == stored[-1].id

    @pytest.mark.asyncio
    async def test_local_store_never_needs_principal(self, local_store):
        session = await local_store.create_session()
        assert session.owner_id is None


class TestRoundTrip:

    @pytest.mark.asyncio
    async def test_local_round_trip(self, tmp_path):
        store = ConversationStore(LocalAdapter(tmp_path), PrincipalProvider())
        await store.initialize()
        kept = await store.create_session("Keep")
        await _run_turn(store, "hi", "He", "llo")
        await store.create_session("Later")
        await store.select_session(kept.id)

        fresh = ConversationStore(LocalAdapter(tmp_path), PrincipalProvider())
        await fresh.initialize()
        assert fresh.selected_session_id == kept.id
        assert [(m.role, m.content) for m in fresh.selected_session.messages] == [
            (Role.USER, "hi"),
            (Role.ASSISTANT, "Hello"),
        ]

    @pytest.mark.asyncio
    async def test_remote_round_trip(self, tmp_path, principal):
        store = ConversationStore(RemoteAdapter(AsyncDatabaseInitializer(tmp_path)), PrincipalProvider(principal))
        await store.initialize()
        kept = await store.create_session()
        await _run_turn(store, "hi", "He", "llo")
        await store.create_session("Later")
        await store.select_session(kept.id)

        fresh = ConversationStore(RemoteAdapter(AsyncDatabaseInitializer(tmp_path)), PrincipalProvider(principal))
        await fresh.initialize()
        assert fresh.selected_session_id == kept.id
        assert [(m.role, m.content) for m in fresh.selected_session.messages] == [
            (Role.USER, "hi"),
            (Role.ASSISTANT, "Hello"),
        ]

    @pytest.mark.asyncio
    async def test_initialize_selects_first_when_no_pointer(self, tmp_path):
        adapter = LocalAdapter(tmp_path)
        store = ConversationStore(adapter, PrincipalProvider())
        await store.create_session("A")
        b = await store.create_session("B")
        await adapter.save_selection(None, None)

        fresh = ConversationStore(LocalAdapter(tmp_path), PrincipalProvider())
        await fresh.initialize()
        assert fresh.selected_session_id == b.id
