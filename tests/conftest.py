"""
Shared test fixtures.

Provides an in-memory Backend with Supabase-like behaviour (embedded
profile joins, unique constraints, realtime bindings), token factories
and helpers for signing users in.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
import pytest

from hackbuddy import config
from hackbuddy.backend import Backend, Binding, ChangeEvent, Subscription
from hackbuddy.errors import BackendError, UNIQUE_VIOLATION
from hackbuddy.notifications import Notifier
from hackbuddy.session import SessionStore

EPOCH = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"
LEADER = "user-leader"


def make_token(user_id: str, email: Optional[str] = None, full_name: Optional[str] = None,
               verified: bool = True, expires_in: int = 3600, audience: str = "authenticated") -> str:
    metadata = {"email_verified": verified}
    if full_name:
        metadata["full_name"] = full_name
    payload = {
        "sub": user_id,
        "email": email if email is not None else f"{user_id}@example.com",
        "aud": audience,
        "role": "authenticated",
        "user_metadata": metadata,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.ALGORITHM)


def at(seconds: int) -> str:
    return (EPOCH + timedelta(seconds=seconds)).isoformat()


# ============ Fake Backend ============

class FakeSubscription(Subscription):
    def __init__(self, backend: "FakeBackend", channel: str, bindings: List[Binding], handler):
        self.backend = backend
        self.channel = channel
        self.bindings = bindings
        self.handler = handler
        self.closed = False

    async def close(self):
        self.closed = True
        if self in self.backend.subscriptions:
            self.backend.subscriptions.remove(self)


class FakeBackend(Backend):
    # alias -> (target table, foreign key column)
    EMBEDS = {
        "messages": {"profiles": ("profiles", "sender_id")},
        "personal_messages": {
            "sender_profile": ("profiles", "sender_id"),
            "receiver_profile": ("profiles", "receiver_id"),
        },
        "team_members": {"profiles": ("profiles", "user_id"), "teams": ("teams", "team_id")},
        "team_join_requests": {"profiles": ("profiles", "user_id")},
        "teams": {"profiles": ("profiles", "leader_id"), "hackathons": ("hackathons", "hackathon_id")},
    }
    UNIQUE = {
        "profiles": [("id",)],
        "team_members": [("team_id", "user_id")],
        "hackathon_registrations": [("hackathon_id", "user_id")],
    }
    STAMPS = {
        "messages": "created_at",
        "personal_messages": "created_at",
        "team_join_requests": "created_at",
        "team_members": "joined_at",
    }

    def __init__(self):
        super().__init__(timeout=1)
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.subscriptions: List[FakeSubscription] = []
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, BackendError] = {}
        self.holds: Dict[tuple, asyncio.Event] = {}
        self.closed = False
        self._clock = itertools.count(1000)

    # ---- test helpers ----

    def seed(self, table: str, **row) -> Dict[str, Any]:
        row.setdefault("id", str(uuid.uuid4()))
        stamp = self.STAMPS.get(table)
        if stamp:
            row.setdefault(stamp, at(next(self._clock)))
        self.tables[table].append(row)
        return row

    def fail_next(self, op: str, table: str, error: Optional[BackendError] = None):
        self.failures[(op, table)] = error or BackendError("backend unavailable")

    def hold(self, op: str, table: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.holds[(op, table)] = gate
        return gate

    def count(self, op: str, table: str) -> int:
        return sum(1 for call in self.calls if call == (op, table))

    def rows(self, table: str, **match) -> List[Dict[str, Any]]:
        return [row for row in self.tables[table] if self._matches(row, match)]

    async def emit(self, table: str, event_type: str, record: Dict[str, Any]):
        for subscription in list(self.subscriptions):
            for binding in subscription.bindings:
                if binding.table != table or binding.event not in (event_type, "*"):
                    continue
                if binding.matches(record):
                    await subscription.handler(ChangeEvent(event_type=event_type, table=table, record=record))
                    break

    # ---- internals ----

    async def _enter(self, op: str, table: str):
        self.calls.append((op, table))
        gate = self.holds.get((op, table))
        if gate is not None:
            await gate.wait()
        error = self.failures.pop((op, table), None)
        if error is not None:
            raise error

    @staticmethod
    def _matches(row, match) -> bool:
        return all(row.get(column) == value for column, value in (match or {}).items())

    def _project(self, table: str, row: Dict[str, Any], columns: str) -> Dict[str, Any]:
        result = copy.deepcopy(row)
        for alias, (target, foreign_key) in self.EMBEDS.get(table, {}).items():
            if f"{alias}(" in columns or f"{alias}:" in columns:
                found = next((r for r in self.tables[target] if r.get("id") == row.get(foreign_key)), None)
                result[alias] = copy.deepcopy(found)
        return result

    def _violates_unique(self, table: str, row: Dict[str, Any]) -> bool:
        for columns in self.UNIQUE.get(table, []):
            if any(all(existing.get(c) == row.get(c) for c in columns) for existing in self.tables[table]):
                return True
        if table == "team_join_requests" and row.get("status") == "pending":
            return any(
                r["team_id"] == row["team_id"] and r["user_id"] == row["user_id"] and r["status"] == "pending"
                for r in self.tables[table]
            )
        return False

    # ---- Backend contract ----

    async def fetch(self, table, columns="*", match=None, within=None, order=None, desc=False, limit=None):
        await self._enter("fetch", table)
        rows = [row for row in self.tables[table] if self._matches(row, match)]
        for column, values in (within or {}).items():
            rows = [row for row in rows if row.get(column) in values]
        if order:
            rows = sorted(rows, key=lambda row: (row.get(order) is None, row.get(order) or ""), reverse=desc)
        if limit is not None:
            rows = rows[:limit]
        return [self._project(table, row, columns) for row in rows]

    async def insert(self, table, row):
        await self._enter("insert", table)
        row = dict(row)
        row.setdefault("id", str(uuid.uuid4()))
        stamp = self.STAMPS.get(table)
        if stamp:
            row.setdefault(stamp, at(next(self._clock)))
        if self._violates_unique(table, row):
            raise BackendError("duplicate key value violates unique constraint", code=UNIQUE_VIOLATION)
        self.tables[table].append(row)
        return copy.deepcopy(row)

    async def update(self, table, values, match):
        await self._enter("update", table)
        updated = []
        for row in self.tables[table]:
            if self._matches(row, match):
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table, match):
        await self._enter("delete", table)
        self.tables[table] = [row for row in self.tables[table] if not self._matches(row, match)]

    async def subscribe(self, channel, bindings, handler):
        await self._enter("subscribe", channel)
        subscription = FakeSubscription(self, channel, bindings, handler)
        self.subscriptions.append(subscription)
        return subscription

    async def _apply_auth(self, session):
        await self._enter("auth", "session")

    async def aclose(self):
        self.closed = True


# ============ Fixtures ============

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def notifier():
    return Notifier()


async def sign_in(backend: FakeBackend, user_id: str, **claims) -> SessionStore:
    """Sign ``user_id`` in on the backend and return a bound session store."""
    await backend.set_session(make_token(user_id, **claims))
    store = SessionStore()
    await store.bind(backend)
    return store


def seed_profile(backend: FakeBackend, user_id: str, full_name: str = "", **fields):
    return backend.seed("profiles", id=user_id, full_name=full_name or user_id.split("-")[-1].title(), **fields)
