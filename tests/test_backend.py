"""Tests for the backend contract pieces that do not need a live project."""

from __future__ import annotations

import asyncio

import pytest

from conftest import ALICE, make_token
from hackbuddy.backend import Binding, ChangeEvent, SupabaseBackend, _apply_match
from hackbuddy.errors import BackendError, UNIQUE_VIOLATION


class RecordingQuery:
    def __init__(self):
        self.calls = []

    def eq(self, column, value):
        self.calls.append(("eq", column, value))
        return self

    def is_(self, column, value):
        self.calls.append(("is", column, value))
        return self


class TestBinding:
    def test_server_filter_uses_first_column(self):
        binding = Binding(table="personal_messages", match={"receiver_id": "u1", "sender_id": "u2"})
        assert binding.server_filter() == "receiver_id=eq.u1"

    def test_null_filter(self):
        assert Binding(table="messages", match={"team_id": None}).server_filter() == "team_id=is.null"

    def test_no_filter(self):
        assert Binding(table="messages").server_filter() is None

    def test_matches_every_column(self):
        binding = Binding(table="personal_messages", match={"receiver_id": "u1", "sender_id": "u2"})
        assert binding.matches({"receiver_id": "u1", "sender_id": "u2", "content": "x"})
        assert not binding.matches({"receiver_id": "u1", "sender_id": "u3"})

    def test_null_match(self):
        binding = Binding(table="messages", match={"team_id": None})
        assert binding.matches({"team_id": None})
        assert binding.matches({})
        assert not binding.matches({"team_id": "t1"})


class TestChangeEvent:
    def test_from_realtime_payload(self):
        payload = {"data": {"type": "INSERT", "table": "messages", "record": {"id": "m1"}}}
        event = ChangeEvent.from_payload("messages", payload)
        assert event.event_type == "INSERT"
        assert event.record == {"id": "m1"}

    def test_legacy_shape(self):
        event = ChangeEvent.from_payload("team_join_requests", {"eventType": "update", "new": {"id": "r1"}})
        assert event.event_type == "UPDATE"
        assert event.table == "team_join_requests"
        assert event.record["id"] == "r1"


class TestQueryHelpers:
    def test_apply_match(self):
        query = _apply_match(RecordingQuery(), {"team_id": None, "sender_id": "u1"})
        assert query.calls == [("is", "team_id", "null"), ("eq", "sender_id", "u1")]


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_slow_call_becomes_backend_error(self, backend):
        backend.timeout = 0.01

        with pytest.raises(BackendError) as exc_info:
            await backend._bounded(asyncio.sleep(1))

        assert exc_info.value.code == "timeout"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_fast_call_passes_through(self, backend):
        async def answer():
            return 42

        assert await backend._bounded(answer()) == 42


def test_unique_violation_flag():
    assert BackendError("dup", code=UNIQUE_VIOLATION).is_unique_violation
    assert not BackendError("other", code="42501").is_unique_violation


# ============ Supabase client lifecycle ============

class RecordingPostgrest:
    def __init__(self):
        self.token = None
        self.closed = False

    def auth(self, token):
        self.token = token

    async def aclose(self):
        self.closed = True


class RecordingRealtime:
    def __init__(self, delay=0.0):
        self.delay = delay
        self.token = None
        self.closed = False

    async def set_auth(self, token):
        await asyncio.sleep(self.delay)
        self.token = token

    async def close(self):
        self.closed = True


class RecordingClient:
    def __init__(self, realtime_delay=0.0):
        self.postgrest = RecordingPostgrest()
        self.realtime = RecordingRealtime(realtime_delay)


class TestSupabaseBackend:
    @pytest.mark.asyncio
    async def test_aclose_releases_pool_and_socket(self):
        client = RecordingClient()
        backend = SupabaseBackend(client, anon_key="anon")

        await backend.aclose()

        assert client.postgrest.closed
        assert client.realtime.closed

    @pytest.mark.asyncio
    async def test_session_token_reaches_both_channels(self):
        client = RecordingClient()
        backend = SupabaseBackend(client, anon_key="anon")
        token = make_token(ALICE)

        await backend.set_session(token)
        assert client.postgrest.token == token
        assert client.realtime.token == token

        await backend.set_session(None)
        assert client.postgrest.token == "anon"

    @pytest.mark.asyncio
    async def test_slow_realtime_auth_times_out(self):
        client = RecordingClient(realtime_delay=1)
        backend = SupabaseBackend(client, anon_key="anon", timeout=0.01)

        with pytest.raises(BackendError) as exc_info:
            await backend.set_session(make_token(ALICE))

        assert exc_info.value.code == "timeout"
        assert await backend.get_session() is None
