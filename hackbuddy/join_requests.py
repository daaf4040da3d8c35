"""
Team join-request workflow.

A request starts ``pending`` and is resolved exactly once, to ``accepted``
or ``rejected``. Accepting re-validates everything against fresh rows
(capacity, ownership of the request, existing membership) and undoes the
status change if the membership insert fails, so a request is never
left accepted for someone who is not on the roster.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from hackbuddy.backend import Backend, Binding, ChangeEvent, Subscription
from hackbuddy.errors import (
    AuthenticationError,
    BackendError,
    ConflictError,
    HackBuddyError,
    NotFoundError,
    PermissionDenied,
)
from hackbuddy.models import Identity, JoinRequest, JoinRequestStatus, Session, Team, TeamMember, parse_row
from hackbuddy.notifications import Notifier
from hackbuddy.profiles import ensure_profile
from hackbuddy.session import SessionStore

logger = logging.getLogger(__name__)

TEAM_COLUMNS = "*, profiles(full_name, email, avatar_url), hackathons(title)"
MEMBER_COLUMNS = "*, profiles(full_name, email, avatar_url)"
REQUEST_COLUMNS = "*, profiles(full_name, email, avatar_url, bio, skills)"

WorkflowListener = Callable[[Dict[str, Any]], None]


class JoinRequestWorkflow:
    def __init__(self, backend: Backend, session: SessionStore, notifier: Notifier, team_id: str):
        self.backend = backend
        self.session = session
        self.notifier = notifier
        self.team_id = team_id

        self.team: Optional[Team] = None
        self.members: List[TeamMember] = []
        self.requests: List[JoinRequest] = []
        self.is_member = False
        self.has_pending_request = False
        self.loading = True
        self.submitting = False

        self._generation = 0
        self._subscription: Optional[Subscription] = None
        self._listeners: List[WorkflowListener] = []
        self._tasks: set = set()
        self._unsubscribe_session = session.subscribe(self._on_session)

    @property
    def identity(self) -> Optional[Identity]:
        return self.session.identity

    @property
    def is_leader(self) -> bool:
        identity = self.identity
        return bool(identity and self.team and self.team.leader_id == identity.id)

    @property
    def roster(self) -> List[str]:
        """Leader first, then accepted members, each user once."""
        if self.team is None:
            return []
        user_ids = [self.team.leader_id]
        for member in self.members:
            if member.user_id not in user_ids:
                user_ids.append(member.user_id)
        return user_ids

    @property
    def roster_size(self) -> int:
        return len(self.roster)

    @property
    def pending_requests(self) -> List[JoinRequest]:
        return [r for r in self.requests if r.status == JoinRequestStatus.PENDING]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "team": self.team.model_dump(mode="json") if self.team else None,
            "members": [m.model_dump(mode="json") for m in self.members],
            "requests": [r.model_dump(mode="json") for r in self.requests],
            "roster_size": self.roster_size,
            "pending_count": len(self.pending_requests),
            "is_leader": self.is_leader,
            "is_member": self.is_member,
            "has_pending_request": self.has_pending_request,
        }

    def on_change(self, listener: WorkflowListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self):
        state = self.snapshot()
        for listener in list(self._listeners):
            listener(state)

    # ============ LOADING ============

    async def load(self) -> bool:
        self.loading = True
        try:
            row = await self.backend.fetch_one("teams", columns=TEAM_COLUMNS, match={"id": self.team_id})
            if row is None:
                raise NotFoundError("Team not found")
            self.team = parse_row(Team, row)
            self.members = await self._fetch_members()
        except HackBuddyError as e:
            logger.error("Error loading team %s: %s", self.team_id, e)
            self.notifier.error("Failed to load team details", e)
            return False
        finally:
            self.loading = False
        await self.refresh_requests()
        await self.refresh_status()
        return True

    async def _fetch_members(self) -> List[TeamMember]:
        rows = await self.backend.fetch(
            "team_members", columns=MEMBER_COLUMNS, match={"team_id": self.team_id}, order="joined_at"
        )
        return [parse_row(TeamMember, row) for row in rows]

    async def refresh_requests(self):
        """Re-read the request list; row-level security decides what is visible."""
        try:
            rows = await self.backend.fetch(
                "team_join_requests",
                columns=REQUEST_COLUMNS,
                match={"team_id": self.team_id},
                order="created_at",
                desc=True,
            )
            self.requests = [parse_row(JoinRequest, row) for row in rows]
        except HackBuddyError as e:
            logger.error("Error fetching join requests for %s: %s", self.team_id, e)
            return
        self._emit()

    async def refresh_status(self):
        """Whether the caller is on the roster or waiting on a request."""
        identity = self.identity
        if identity is None:
            self.is_member = False
            self.has_pending_request = False
            self._emit()
            return
        try:
            member = await self.backend.fetch_one(
                "team_members", columns="id", match={"team_id": self.team_id, "user_id": identity.id}
            )
            pending = await self.backend.fetch_one(
                "team_join_requests",
                columns="id, status",
                match={"team_id": self.team_id, "user_id": identity.id, "status": JoinRequestStatus.PENDING.value},
            )
        except HackBuddyError as e:
            logger.error("Error checking membership for %s: %s", identity.id, e)
            self.is_member = False
            self.has_pending_request = False
            return
        self.is_member = bool(member) or self.is_leader
        self.has_pending_request = bool(pending)
        self._emit()

    def _on_session(self, session: Optional[Session]):
        if self.team is None:
            return
        task = asyncio.get_running_loop().create_task(self.refresh_status())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ============ SUBMIT ============

    async def submit(self, message: Optional[str] = None) -> Optional[JoinRequest]:
        identity = self.identity
        if self.submitting:
            return None
        if identity is None:
            self.notifier.error("Please login to request to join a team",
                                AuthenticationError("Not authenticated"))
            return None
        if self.is_member:
            self.notifier.error("You are already a member of this team", ConflictError())
            return None
        if self.has_pending_request:
            self.notifier.error("You already have a pending request for this team", ConflictError())
            return None

        self.submitting = True
        try:
            await ensure_profile(self.backend, identity)
            row = await self.backend.insert("team_join_requests", {
                "team_id": self.team_id,
                "user_id": identity.id,
                "message": (message or "").strip() or None,
                "status": JoinRequestStatus.PENDING.value,
            })
            request = parse_row(JoinRequest, row)
        except BackendError as e:
            if e.is_unique_violation:
                self.has_pending_request = True
                self.notifier.error("You already have a pending request for this team", ConflictError())
            else:
                logger.error("Error submitting join request: %s", e)
                self.notifier.error(e.message or "Failed to submit join request", e)
            return None
        except HackBuddyError as e:
            logger.error("Error submitting join request: %s", e)
            self.notifier.error(e.message or "Failed to submit join request", e)
            return None
        finally:
            self.submitting = False

        self.has_pending_request = True
        self.notifier.success("Join request submitted!")
        await self.refresh_requests()
        return request

    # ============ REVIEW ============

    def _require_leader(self, identity: Optional[Identity]):
        if identity is None:
            raise AuthenticationError("Not authenticated")
        if self.team is None:
            raise NotFoundError("Team not found")
        if self.team.leader_id != identity.id:
            raise PermissionDenied("Only the team leader can review join requests")

    async def _resolvable(self, request_id: str) -> Dict[str, Any]:
        row = await self.backend.fetch_one(
            "team_join_requests", columns="id, team_id, user_id, status", match={"id": request_id}
        )
        if row is None:
            raise NotFoundError("Join request not found")
        if row.get("team_id") != self.team_id:
            raise ConflictError("Request does not belong to this team!")
        if row.get("status") != JoinRequestStatus.PENDING.value:
            raise ConflictError("Request has already been resolved")
        return row

    async def _set_status(self, request_id: str, status: JoinRequestStatus, expect: JoinRequestStatus):
        updated = await self.backend.update(
            "team_join_requests",
            {"status": status.value},
            match={"id": request_id, "team_id": self.team_id, "status": expect.value},
        )
        if not updated:
            raise ConflictError("Request has already been resolved")

    async def _refresh_after_review(self):
        try:
            self.members = await self._fetch_members()
        except HackBuddyError as e:
            logger.error("Error fetching members for %s: %s", self.team_id, e)
        await self.refresh_requests()
        await self.refresh_status()

    async def accept(self, request_id: str) -> bool:
        try:
            await self._accept(request_id)
        except HackBuddyError as e:
            logger.error("Error accepting request %s: %s", request_id, e)
            self.notifier.error(e.message or "Failed to accept request", e)
            return False
        return True

    async def _accept(self, request_id: str):
        self._require_leader(self.identity)

        self.members = await self._fetch_members()
        if self.roster_size >= self.team.max_members:
            raise ConflictError("Team is full!")

        row = await self._resolvable(request_id)
        user_id = row["user_id"]

        existing = await self.backend.fetch_one(
            "team_members", columns="id", match={"team_id": self.team_id, "user_id": user_id}
        )
        if existing or user_id == self.team.leader_id:
            await self._set_status(request_id, JoinRequestStatus.ACCEPTED, expect=JoinRequestStatus.PENDING)
            self.notifier.warning("User is already a member of this team!")
            await self._refresh_after_review()
            return

        await self._set_status(request_id, JoinRequestStatus.ACCEPTED, expect=JoinRequestStatus.PENDING)
        try:
            await self.backend.insert("team_members", {"team_id": self.team_id, "user_id": user_id})
        except HackBuddyError:
            try:
                await self._set_status(request_id, JoinRequestStatus.PENDING, expect=JoinRequestStatus.ACCEPTED)
            except HackBuddyError as revert_error:
                logger.error("Could not revert request %s to pending: %s", request_id, revert_error)
            raise

        self.notifier.success("User added to team!")
        await self._refresh_after_review()

    async def reject(self, request_id: str) -> bool:
        try:
            self._require_leader(self.identity)
            await self._resolvable(request_id)
            await self._set_status(request_id, JoinRequestStatus.REJECTED, expect=JoinRequestStatus.PENDING)
        except HackBuddyError as e:
            logger.error("Error rejecting request %s: %s", request_id, e)
            self.notifier.error(e.message or "Failed to reject request", e)
            return False
        self.notifier.success("Request rejected")
        await self.refresh_requests()
        return True

    # ============ LIVE UPDATES ============

    async def watch(self) -> bool:
        await self.close()
        generation = self._generation

        async def handler(event: ChangeEvent):
            await self.handle_change(event, generation)

        try:
            subscription = await self.backend.subscribe(
                f"team_join_requests:{self.team_id}",
                [Binding(table="team_join_requests", event="*", match={"team_id": self.team_id})],
                handler,
            )
        except HackBuddyError as e:
            logger.error("Error subscribing to join requests for %s: %s", self.team_id, e)
            self.notifier.error("Failed to subscribe to join requests", e)
            return False
        if generation != self._generation:
            await subscription.close()
            return False
        self._subscription = subscription
        return True

    async def handle_change(self, event: ChangeEvent, generation: Optional[int] = None):
        if generation is not None and generation != self._generation:
            return
        await self.refresh_requests()
        await self.refresh_status()
        if event.event_type == "INSERT" and self.is_leader:
            self.notifier.info("New join request received!", "Someone wants to join your team")

    async def close(self):
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except HackBuddyError as e:
            logger.error("Error closing join request subscription for %s: %s", self.team_id, e)

    async def dispose(self):
        await self.close()
        self._unsubscribe_session()
        self._listeners.clear()
