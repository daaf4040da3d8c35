"""
Backend collaborator contract and its Supabase implementation.

Everything durable lives in Supabase: tables, auth and row-level
security. The rest of the package only talks to the abstract
``Backend`` so a test double can stand in for the hosted project.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from postgrest.exceptions import APIError
from pydantic import BaseModel
from supabase import AsyncClient, acreate_client

from hackbuddy import config
from hackbuddy.auth import session_from_token
from hackbuddy.errors import BackendError, HackBuddyError
from hackbuddy.models import Session

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Match = Dict[str, Optional[Any]]
AuthListener = Callable[[str, Optional[Session]], None]


class Binding(BaseModel):
    """One realtime filter: a table, an event type and column equalities."""
    table: str
    event: str = "INSERT"  # INSERT, UPDATE, DELETE or *
    match: Dict[str, Optional[str]] = {}

    def matches(self, record: Row) -> bool:
        return all(record.get(column) == value for column, value in self.match.items())

    def server_filter(self) -> Optional[str]:
        # realtime filters accept a single column
        for column, value in self.match.items():
            if value is None:
                return f"{column}=is.null"
            return f"{column}=eq.{value}"
        return None


class ChangeEvent(BaseModel):
    event_type: str
    table: str
    record: Row = {}

    @classmethod
    def from_payload(cls, table: str, payload: Dict[str, Any]) -> "ChangeEvent":
        data = payload.get("data", payload)
        return cls(
            event_type=(data.get("type") or data.get("eventType") or "").upper(),
            table=data.get("table") or table,
            record=data.get("record") or data.get("new") or {},
        )


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class Subscription(ABC):
    @abstractmethod
    async def close(self) -> None:
        ...


class Backend(ABC):
    """Predicate-filtered storage, realtime feeds and auth session access."""

    def __init__(self, timeout: float = config.BACKEND_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._session: Optional[Session] = None
        self._auth_listeners: List[AuthListener] = []

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as e:
            raise BackendError("Request timed out", code="timeout") from e

    # ============ STORAGE ============

    @abstractmethod
    async def fetch(
        self,
        table: str,
        columns: str = "*",
        match: Optional[Match] = None,
        within: Optional[Dict[str, Sequence[Any]]] = None,
        order: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        ...

    async def fetch_one(self, table: str, columns: str = "*", match: Optional[Match] = None) -> Optional[Row]:
        """First matching row, or None when nothing matches."""
        rows = await self.fetch(table, columns=columns, match=match, limit=1)
        return rows[0] if rows else None

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        ...

    @abstractmethod
    async def update(self, table: str, values: Row, match: Match) -> List[Row]:
        ...

    @abstractmethod
    async def delete(self, table: str, match: Match) -> None:
        ...

    @abstractmethod
    async def subscribe(self, channel: str, bindings: List[Binding], handler: ChangeHandler) -> Subscription:
        ...

    # ============ AUTH ============

    async def get_session(self) -> Optional[Session]:
        return self._session

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        self._auth_listeners.append(listener)

        def unregister():
            if listener in self._auth_listeners:
                self._auth_listeners.remove(listener)

        return unregister

    async def set_session(self, token: Optional[str]) -> Optional[Session]:
        """Sign in, refresh or (with None) sign out, then notify listeners."""
        previous = self._session
        session = session_from_token(token)
        await self._apply_auth(session)
        self._session = session
        if session is None:
            event = "SIGNED_OUT"
        elif previous is not None and previous.identity.id == session.identity.id:
            event = "TOKEN_REFRESHED"
        else:
            event = "SIGNED_IN"
        for listener in list(self._auth_listeners):
            listener(event, session)
        return session

    async def _apply_auth(self, session: Optional[Session]) -> None:
        pass

    async def aclose(self) -> None:
        """Release connections held by this client."""


class SupabaseSubscription(Subscription):
    def __init__(self, backend: "SupabaseBackend", channel):
        self._backend = backend
        self._channel = channel
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._backend._bounded(self._backend.client.remove_channel(self._channel))


def _apply_match(query, match: Optional[Match]):
    for column, value in (match or {}).items():
        if value is None:
            query = query.is_(column, "null")
        else:
            query = query.eq(column, value)
    return query


class SupabaseBackend(Backend):
    def __init__(self, client: AsyncClient, anon_key: str = config.SUPABASE_KEY,
                 timeout: float = config.BACKEND_TIMEOUT_SECONDS):
        super().__init__(timeout=timeout)
        self.client = client
        self._anon_key = anon_key
        self._tasks: set = set()

    @classmethod
    async def connect(cls, url: str = config.SUPABASE_URL, key: str = config.SUPABASE_KEY,
                      token: Optional[str] = None) -> "SupabaseBackend":
        """Create a client; with a token, queries run under that user's row-level security."""
        client = await acreate_client(url, key)
        backend = cls(client, anon_key=key)
        if token:
            try:
                await backend.set_session(token)
            except HackBuddyError:
                await backend.aclose()
                raise
        return backend

    async def _apply_auth(self, session: Optional[Session]) -> None:
        token = session.access_token if session else self._anon_key
        self.client.postgrest.auth(token)
        await self._bounded(self.client.realtime.set_auth(token))

    async def aclose(self) -> None:
        """Close the PostgREST connection pool and the realtime socket."""
        await self.client.postgrest.aclose()
        await self.client.realtime.close()
        logger.debug("Closed Supabase client")

    async def _execute(self, builder) -> Any:
        try:
            response = await self._bounded(builder.execute())
        except APIError as e:
            raise BackendError(e.message or str(e), code=e.code) from e
        except httpx.HTTPError as e:
            raise BackendError(str(e) or "Network error", code="network") from e
        return response.data

    async def fetch(self, table, columns="*", match=None, within=None, order=None, desc=False, limit=None):
        query = _apply_match(self.client.table(table).select(columns), match)
        for column, values in (within or {}).items():
            query = query.in_(column, list(values))
        if order:
            query = query.order(order, desc=desc)
        if limit is not None:
            query = query.limit(limit)
        return await self._execute(query) or []

    async def insert(self, table, row):
        data = await self._execute(self.client.table(table).insert(row))
        if not data:
            raise BackendError(f"Insert into {table} returned no row")
        return data[0]

    async def update(self, table, values, match):
        return await self._execute(_apply_match(self.client.table(table).update(values), match)) or []

    async def delete(self, table, match):
        await self._execute(_apply_match(self.client.table(table).delete(), match))

    async def subscribe(self, channel, bindings, handler):
        realtime_channel = self.client.channel(channel)
        for binding in bindings:
            realtime_channel.on_postgres_changes(
                binding.event,
                callback=self._dispatcher(binding, handler),
                table=binding.table,
                schema="public",
                filter=binding.server_filter(),
            )
        try:
            await self._bounded(realtime_channel.subscribe())
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(f"Failed to subscribe to {channel}: {e}", code="realtime") from e
        logger.debug("Subscribed to %s", channel)
        return SupabaseSubscription(self, realtime_channel)

    def _dispatcher(self, binding: Binding, handler: ChangeHandler):
        loop = asyncio.get_running_loop()

        def callback(payload):
            event = ChangeEvent.from_payload(binding.table, payload)
            # columns past the first are checked here
            if not binding.matches(event.record):
                return
            task = loop.create_task(handler(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return callback
