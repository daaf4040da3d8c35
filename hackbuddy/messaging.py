"""
Messaging synchronizer.

A ``ConversationFeed`` keeps one conversation (a team room, the general
room or a direct conversation) as an ordered, duplicate-free list. The
list is seeded by a bulk history fetch and then fed from two sources:
realtime insert events and the sender's own successful inserts. Both go
through ``MessageLog.add``, which keys on message id, so whichever copy
arrives second is dropped no matter where it came from.
"""

import asyncio
import bisect
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Type, Union

from pydantic import BaseModel

from hackbuddy import config
from hackbuddy.backend import Backend, Binding, ChangeEvent, Subscription
from hackbuddy.errors import HackBuddyError, MalformedRowError
from hackbuddy.models import Identity, Message, PersonalMessage, Session, parse_row
from hackbuddy.notifications import Notifier
from hackbuddy.profiles import ensure_profile
from hackbuddy.session import SessionStore

logger = logging.getLogger(__name__)

AnyMessage = Union[Message, PersonalMessage]
FeedListener = Callable[[str, Any], None]

MESSAGE_COLUMNS = "*, profiles(full_name, avatar_url)"
PERSONAL_MESSAGE_COLUMNS = (
    "*, "
    "sender_profile:profiles!personal_messages_sender_id_fkey(id, full_name, avatar_url), "
    "receiver_profile:profiles!personal_messages_receiver_id_fkey(id, full_name, avatar_url)"
)

GENERAL_ROOM_TITLE = "General Chat"


def _created_at(message: AnyMessage):
    return message.created_at


class MessageLog:
    """Messages ordered by created_at, at most one entry per id."""

    def __init__(self):
        self._items: List[AnyMessage] = []
        self._ids = set()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[AnyMessage]:
        return iter(self._items)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    @property
    def items(self) -> List[AnyMessage]:
        return list(self._items)

    def clear(self):
        self._items = []
        self._ids = set()

    def replace(self, messages: Iterable[AnyMessage], limit: Optional[int] = None):
        """Reset to ``messages``; the first copy of an id wins, newest ``limit`` kept."""
        unique: Dict[str, AnyMessage] = {}
        for message in messages:
            unique.setdefault(message.id, message)
        ordered = sorted(unique.values(), key=_created_at)
        if limit is not None:
            ordered = ordered[-limit:] if limit > 0 else []
        self._items = ordered
        self._ids = {message.id for message in ordered}

    def add(self, message: AnyMessage) -> bool:
        if message.id in self._ids:
            return False
        # equal timestamps keep arrival order
        index = bisect.bisect_right(self._items, message.created_at, key=_created_at)
        self._items.insert(index, message)
        self._ids.add(message.id)
        return True


# ============ SCOPES ============


class ConversationScope(ABC):
    table: str
    columns: str
    model: Type[BaseModel]
    requires_identity = False

    @abstractmethod
    def channel_name(self, identity: Optional[Identity]) -> str:
        ...

    @abstractmethod
    async def fetch_history(self, backend: Backend, identity: Optional[Identity], limit: int) -> List[dict]:
        ...

    @abstractmethod
    def bindings(self, identity: Optional[Identity]) -> List[Binding]:
        ...

    @abstractmethod
    def row_for(self, identity: Identity, content: str) -> dict:
        ...


class RoomScope(ConversationScope):
    """A team's room, or the general room when ``team_id`` is None."""
    table = "messages"
    columns = MESSAGE_COLUMNS
    model = Message

    def __init__(self, team_id: Optional[str] = None):
        self.team_id = team_id

    def __eq__(self, other):
        return isinstance(other, RoomScope) and other.team_id == self.team_id

    def __repr__(self):
        return f"RoomScope({self.team_id or 'general'})"

    def channel_name(self, identity):
        return f"messages:{self.team_id or 'general'}"

    async def fetch_history(self, backend, identity, limit):
        return await backend.fetch(
            self.table,
            columns=self.columns,
            match={"team_id": self.team_id},
            order="created_at",
            desc=True,
            limit=limit,
        )

    def bindings(self, identity):
        return [Binding(table=self.table, event="INSERT", match={"team_id": self.team_id})]

    def row_for(self, identity, content):
        return {"sender_id": identity.id, "team_id": self.team_id, "content": content}


class DirectScope(ConversationScope):
    """Personal messages between the signed-in user and ``other_user_id``."""
    table = "personal_messages"
    columns = PERSONAL_MESSAGE_COLUMNS
    model = PersonalMessage
    requires_identity = True

    def __init__(self, other_user_id: str):
        self.other_user_id = other_user_id

    def __eq__(self, other):
        return isinstance(other, DirectScope) and other.other_user_id == self.other_user_id

    def __repr__(self):
        return f"DirectScope({self.other_user_id})"

    def channel_name(self, identity):
        return f"personal_messages:{identity.id}:{self.other_user_id}"

    async def fetch_history(self, backend, identity, limit):
        sent = await backend.fetch(
            self.table,
            columns=self.columns,
            match={"sender_id": identity.id, "receiver_id": self.other_user_id},
            order="created_at",
            desc=True,
            limit=limit,
        )
        received = await backend.fetch(
            self.table,
            columns=self.columns,
            match={"sender_id": self.other_user_id, "receiver_id": identity.id},
            order="created_at",
            desc=True,
            limit=limit,
        )
        return sent + received

    def bindings(self, identity):
        return [
            Binding(table=self.table, event="INSERT",
                    match={"receiver_id": identity.id, "sender_id": self.other_user_id}),
            # our own sends from another device
            Binding(table=self.table, event="INSERT",
                    match={"sender_id": identity.id, "receiver_id": self.other_user_id}),
        ]

    def row_for(self, identity, content):
        return {"sender_id": identity.id, "receiver_id": self.other_user_id, "content": content}


# ============ FEED ============


class ConversationFeed:
    def __init__(
        self,
        backend: Backend,
        session: SessionStore,
        notifier: Notifier,
        scope: ConversationScope,
        history_limit: int = config.MESSAGE_HISTORY_LIMIT,
    ):
        self.backend = backend
        self.session = session
        self.notifier = notifier
        self.scope = scope
        self.history_limit = history_limit

        self.messages = MessageLog()
        self.loading = True
        self.sending = False
        self.draft = ""

        self._active = False
        self._generation = 0
        self._subscription: Optional[Subscription] = None
        self._subscribed_as: Optional[str] = None
        self._listeners: List[FeedListener] = []
        self._tasks: set = set()
        self._unsubscribe_session = session.subscribe(self._on_session)

    @property
    def identity(self) -> Optional[Identity]:
        return self.session.identity

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    @property
    def can_send(self) -> bool:
        return not self.loading and not self.sending and self.identity is not None

    def on_change(self, listener: FeedListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, payload: Any):
        for listener in list(self._listeners):
            listener(kind, payload)

    def _add(self, message: AnyMessage) -> bool:
        added = self.messages.add(message)
        if added:
            self._emit("message", message)
        return added

    # ============ LIFECYCLE ============

    async def open(self):
        self._active = True
        await self._start()

    async def close(self):
        self._active = False
        await self._stop()

    async def switch(self, scope: ConversationScope):
        """Move to another conversation without leaking the old subscription."""
        await self._stop()
        self.scope = scope
        self.messages.clear()
        self._active = True
        await self._start()

    async def dispose(self):
        await self.close()
        self._unsubscribe_session()
        self._listeners.clear()

    async def _start(self):
        self._generation += 1
        identity = self.identity
        if self.scope.requires_identity and identity is None:
            # nothing to show or subscribe to until someone signs in
            await self.load()
            return
        self._subscribed_as = identity.id if identity else None
        generation = self._generation
        await self.load()
        if generation == self._generation:
            await self._subscribe()

    async def _stop(self):
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        self._subscribed_as = None
        if subscription is None:
            return
        try:
            await subscription.close()
        except HackBuddyError as e:
            logger.error("Error closing subscription for %r: %s", self.scope, e)

    async def _restart(self):
        await self._stop()
        if self._active:
            await self._start()

    def _on_session(self, session: Optional[Session]):
        if not self._active or not self.scope.requires_identity:
            return
        identity_id = session.identity.id if session else None
        if identity_id == self._subscribed_as:
            return
        task = asyncio.get_running_loop().create_task(self._restart())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _subscribe(self):
        generation = self._generation
        identity = self.identity

        async def handler(event: ChangeEvent):
            await self.handle_change(event, generation)

        try:
            subscription = await self.backend.subscribe(
                self.scope.channel_name(identity), self.scope.bindings(identity), handler
            )
        except HackBuddyError as e:
            logger.error("Error subscribing to %r: %s", self.scope, e)
            self.notifier.error("Failed to subscribe to new messages", e)
            return
        if generation != self._generation:
            await subscription.close()
            return
        self._subscription = subscription

    # ============ OPERATIONS ============

    async def load(self) -> bool:
        if self.scope.requires_identity and self.identity is None:
            self.messages.clear()
            self.loading = False
            self._emit("snapshot", self.messages.items)
            return True
        generation = self._generation
        self.loading = True
        try:
            rows = await self.scope.fetch_history(self.backend, self.identity, self.history_limit)
            messages = [parse_row(self.scope.model, row) for row in rows]
        except HackBuddyError as e:
            logger.error("Error fetching messages for %r: %s", self.scope, e)
            self.notifier.error("Failed to load messages", e)
            return False
        finally:
            if generation == self._generation:
                self.loading = False
        if generation != self._generation:
            return False
        self.messages.replace(messages, limit=self.history_limit)
        self._emit("snapshot", self.messages.items)
        return True

    async def handle_change(self, event: ChangeEvent, generation: Optional[int] = None):
        """Pull the joined row for a realtime insert and add it once."""
        if not self._active or (generation is not None and generation != self._generation):
            return
        message_id = event.record.get("id")
        if not message_id or message_id in self.messages:
            return
        try:
            row = await self.backend.fetch_one(self.scope.table, columns=self.scope.columns,
                                               match={"id": message_id})
            if row is None:
                return
            message = parse_row(self.scope.model, row)
        except HackBuddyError as e:
            logger.error("Error fetching new message %s: %s", message_id, e)
            return
        if generation is not None and generation != self._generation:
            return
        self._add(message)

    async def send(self, content: Optional[str] = None) -> Optional[AnyMessage]:
        """
        Send ``content`` (or the current draft). Returns the stored message, or
        None when the send was refused or failed.
        """
        text = (self.draft if content is None else content).strip()
        identity = self.identity
        if identity is None or not text or self.sending:
            return None

        self.sending = True
        generation = self._generation
        try:
            await ensure_profile(self.backend, identity)
            inserted = await self.backend.insert(self.scope.table, self.scope.row_for(identity, text))
            if not inserted.get("id"):
                raise MalformedRowError(self.scope.model.__name__, ["id"])
            message = await self._stored(inserted)
        except HackBuddyError as e:
            logger.error("Error sending message to %r: %s", self.scope, e)
            self.notifier.error(e.message or "Failed to send message", e)
            return None
        finally:
            self.sending = False

        if generation == self._generation:
            self._add(message)
        self.draft = ""
        return message

    async def _stored(self, inserted: Dict[str, Any]) -> AnyMessage:
        """Joined row for a fresh insert, or the bare inserted row when that read fails."""
        try:
            row = await self.backend.fetch_one(self.scope.table, columns=self.scope.columns,
                                               match={"id": inserted["id"]})
            if row is not None:
                return parse_row(self.scope.model, row)
        except HackBuddyError as e:
            # the row is stored; never report the send as failed from here
            logger.warning("Error fetching sent message %s: %s", inserted["id"], e)
        return parse_row(self.scope.model, inserted)


async def room_title(backend: Backend, team_id: Optional[str]) -> str:
    if team_id is None:
        return GENERAL_ROOM_TITLE
    try:
        row = await backend.fetch_one("teams", columns="name", match={"id": team_id})
    except HackBuddyError as e:
        logger.error("Error fetching team name for %s: %s", team_id, e)
        return "Team Chat"
    return row["name"] if row else "Team Chat"
