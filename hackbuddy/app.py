import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from hackbuddy import config, hackathons, profiles, teams
from hackbuddy.backend import Backend, SupabaseBackend
from hackbuddy.errors import HackBuddyError, ValidationError
from hackbuddy.join_requests import JoinRequestWorkflow
from hackbuddy.messaging import ConversationFeed, ConversationScope, DirectScope, RoomScope
from hackbuddy.models import (
    HackathonInput, Identity, JoinRequestCreate, Notice, ProfileUpdate, TeamCreate
)
from hackbuddy.notifications import Notifier
from hackbuddy.session import SessionStore

logger = logging.getLogger(__name__)

GENERAL_ROOM = "general"


async def connect_backend(token: str) -> Backend:
    return await SupabaseBackend.connect(token=token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    yield


# Initialize FastAPI
app = FastAPI(title="Hack-Buddy API", lifespan=lifespan)
app.state.backend_factory = connect_backend

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class MessageCreate(BaseModel):
    content: str


# ============ HELPER FUNCTIONS ============

@app.exception_handler(HackBuddyError)
async def hackbuddy_error_handler(request: Request, exc: HackBuddyError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def get_backend(request: Request, token: Optional[str] = None) -> AsyncIterator[Backend]:
    """Backend client acting as the token's user, closed after the request"""
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    backend = await request.app.state.backend_factory(token)
    try:
        yield backend
    finally:
        await backend.aclose()


async def get_identity(backend: Backend = Depends(get_backend)) -> Identity:
    session = await backend.get_session()
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return session.identity


async def bound_session(backend: Backend) -> SessionStore:
    session = SessionStore()
    await session.bind(backend)
    return session


def raise_for_notice(notifier: Notifier, default: str = "Request failed"):
    notice = notifier.last_error
    if notice is None:
        raise HTTPException(status_code=400, detail=default)
    raise HTTPException(status_code=notice.status_code or 500, detail=notice.message)


def room_scope(room: str) -> RoomScope:
    return RoomScope(None if room == GENERAL_ROOM else room)


async def load_workflow(backend: Backend, team_id: str) -> JoinRequestWorkflow:
    workflow = JoinRequestWorkflow(backend, await bound_session(backend), Notifier(), team_id)
    if not await workflow.load():
        raise_for_notice(workflow.notifier, "Failed to load team details")
    return workflow


def dump(items) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


# ============ ENDPOINTS ============

@app.get("/")
def read_root():
    return {"message": "Hack-Buddy API - Welcome!"}


# ============ PROFILES ============

@app.get("/api/profiles/me")
async def get_my_profile(backend: Backend = Depends(get_backend), identity: Identity = Depends(get_identity)):
    """
    Current user's profile, created blank on first visit.
    Requires a verified email.
    """
    await profiles.require_verified(backend, identity)
    profile = await profiles.load_profile(backend, identity)
    return profile.model_dump(mode="json")


@app.put("/api/profiles/me")
async def update_my_profile(update: ProfileUpdate, backend: Backend = Depends(get_backend),
                            identity: Identity = Depends(get_identity)):
    profile = await profiles.update_profile(backend, identity, update)
    return profile.model_dump(mode="json")


@app.get("/api/profiles/{user_id}")
async def get_profile(user_id: str, backend: Backend = Depends(get_backend)):
    profile = await profiles.get_profile(backend, user_id)
    return profile.model_dump(mode="json")


@app.get("/api/teammates")
async def find_teammates(search: str = "", skills: str = "", backend: Backend = Depends(get_backend),
                         identity: Identity = Depends(get_identity)):
    """
    Profiles looking for a team. ``skills`` is comma-separated and ranks
    the best matches first.
    """
    await profiles.require_verified(backend, identity)
    wanted = [s.strip() for s in skills.split(",") if s.strip()]
    found = await profiles.find_teammates(backend, search=search, skills=wanted)
    return {"profiles": dump(found), "skills": profiles.all_skills(found)}


# ============ TEAMS ============

@app.get("/api/teams")
async def list_teams(backend: Backend = Depends(get_backend)):
    return dump(await teams.list_open_teams(backend))


@app.post("/api/teams", status_code=201)
async def create_team(team_data: TeamCreate, backend: Backend = Depends(get_backend),
                      identity: Identity = Depends(get_identity)):
    team = await teams.create_team(backend, identity, team_data)
    return team.model_dump(mode="json")


@app.get("/api/teams/mine")
async def list_my_teams(backend: Backend = Depends(get_backend), identity: Identity = Depends(get_identity)):
    """Teams the user leads or belongs to (the chat room picker)."""
    return dump(await teams.list_user_teams(backend, identity))


@app.get("/api/teams/{team_id}")
async def get_team(team_id: str, backend: Backend = Depends(get_backend)):
    """Team details with roster, join requests and the caller's status"""
    workflow = await load_workflow(backend, team_id)
    return workflow.snapshot()


@app.delete("/api/teams/{team_id}")
async def delete_team(team_id: str, backend: Backend = Depends(get_backend),
                      identity: Identity = Depends(get_identity)):
    await teams.delete_team(backend, identity, team_id)
    return {"message": "Team deleted successfully"}


# ============ JOIN REQUESTS ============

@app.get("/api/teams/{team_id}/requests")
async def list_join_requests(team_id: str, backend: Backend = Depends(get_backend)):
    workflow = await load_workflow(backend, team_id)
    return {
        "requests": dump(workflow.requests),
        "pending": dump(workflow.pending_requests),
    }


@app.post("/api/teams/{team_id}/requests", status_code=201)
async def submit_join_request(team_id: str, body: JoinRequestCreate, backend: Backend = Depends(get_backend)):
    workflow = await load_workflow(backend, team_id)
    request = await workflow.submit(body.message)
    if request is None:
        raise_for_notice(workflow.notifier, "Failed to submit join request")
    return request.model_dump(mode="json")


@app.post("/api/teams/{team_id}/requests/{request_id}/accept")
async def accept_join_request(team_id: str, request_id: str, backend: Backend = Depends(get_backend)):
    workflow = await load_workflow(backend, team_id)
    if not await workflow.accept(request_id):
        raise_for_notice(workflow.notifier, "Failed to accept request")
    return workflow.snapshot()


@app.post("/api/teams/{team_id}/requests/{request_id}/reject")
async def reject_join_request(team_id: str, request_id: str, backend: Backend = Depends(get_backend)):
    workflow = await load_workflow(backend, team_id)
    if not await workflow.reject(request_id):
        raise_for_notice(workflow.notifier, "Failed to reject request")
    return workflow.snapshot()


# ============ HACKATHONS ============

@app.get("/api/hackathons")
async def list_hackathons(backend: Backend = Depends(get_backend)):
    found = await hackathons.list_hackathons(backend)
    names = await hackathons.creator_names(backend, found)
    return {"hackathons": dump(found), "creators": names}


@app.post("/api/hackathons", status_code=201)
async def create_hackathon(data: HackathonInput, backend: Backend = Depends(get_backend),
                           identity: Identity = Depends(get_identity)):
    hackathon = await hackathons.create_hackathon(backend, identity, data)
    return hackathon.model_dump(mode="json")


@app.patch("/api/hackathons/{hackathon_id}")
async def update_hackathon(hackathon_id: str, data: HackathonInput, backend: Backend = Depends(get_backend),
                           identity: Identity = Depends(get_identity)):
    hackathon = await hackathons.update_hackathon(backend, identity, hackathon_id, data)
    return hackathon.model_dump(mode="json")


@app.post("/api/hackathons/{hackathon_id}/register", status_code=201)
async def register_for_hackathon(hackathon_id: str, backend: Backend = Depends(get_backend),
                                 identity: Identity = Depends(get_identity)):
    await hackathons.register(backend, identity, hackathon_id)
    return {"message": "Successfully registered for the hackathon!"}


# ============ MESSAGES ============

async def _history(backend: Backend, scope: ConversationScope):
    feed = ConversationFeed(backend, await bound_session(backend), Notifier(), scope)
    if not await feed.load():
        raise_for_notice(feed.notifier, "Failed to load messages")
    return dump(feed.messages)


async def _post(backend: Backend, scope: ConversationScope, content: str):
    feed = ConversationFeed(backend, await bound_session(backend), Notifier(), scope)
    message = await feed.send(content)
    if message is None:
        raise_for_notice(feed.notifier, "Message content is required")
    return message.model_dump(mode="json")


@app.get("/api/rooms/{room}/messages")
async def room_history(room: str, backend: Backend = Depends(get_backend)):
    """Last messages of a team room, or of the general room when room is 'general'"""
    return await _history(backend, room_scope(room))


@app.post("/api/rooms/{room}/messages", status_code=201)
async def post_room_message(room: str, body: MessageCreate, backend: Backend = Depends(get_backend)):
    return await _post(backend, room_scope(room), body.content)


@app.get("/api/direct/{user_id}/messages")
async def direct_history(user_id: str, backend: Backend = Depends(get_backend)):
    return await _history(backend, DirectScope(user_id))


@app.post("/api/direct/{user_id}/messages", status_code=201)
async def post_direct_message(user_id: str, body: MessageCreate, backend: Backend = Depends(get_backend)):
    return await _post(backend, DirectScope(user_id), body.content)


# ============ WEBSOCKETS ============

async def _open_socket(websocket: WebSocket, token: Optional[str]) -> Optional[Backend]:
    if not token:
        await websocket.close(code=1008, reason="Not authenticated")
        return None
    try:
        backend = await websocket.app.state.backend_factory(token)
    except HackBuddyError as e:
        logger.warning("Rejected websocket connection: %s", e)
        await websocket.close(code=1008, reason=e.message)
        return None
    await websocket.accept()
    return backend


async def _pump(websocket: WebSocket, outbox: asyncio.Queue):
    while True:
        frame = await outbox.get()
        await websocket.send_json(frame)


def _notice_frame(notice: Notice) -> Dict[str, Any]:
    return {"type": "notice", "notice": notice.model_dump(mode="json")}


async def _reauthenticate(backend: Backend, notifier: Notifier, token: Any):
    try:
        await backend.set_session(str(token) if token else None)
    except HackBuddyError as e:
        logger.error("Error refreshing websocket session: %s", e)
        notifier.error(e.message or "Failed to refresh session", e)


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _log_frame_failure(task: asyncio.Task):
    if not task.cancelled() and task.exception() is not None:
        logger.error("Websocket frame handler failed", exc_info=task.exception())


async def _serve(websocket: WebSocket, backend: Backend, notifier: Notifier, outbox: asyncio.Queue, on_frame):
    """Relay frames until the client disconnects."""
    pump = asyncio.create_task(_pump(websocket, outbox))
    tasks: set = set()
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except (ValueError, KeyError, TypeError):
                # undecodable text or a binary frame
                frame = None
            if not isinstance(frame, dict):
                notifier.error("Invalid message frame", ValidationError("Frames must be JSON objects"))
                continue
            if frame.get("type") == "auth":
                await _reauthenticate(backend, notifier, frame.get("token"))
                continue
            # handled concurrently so a second frame can arrive mid-operation
            task = asyncio.create_task(on_frame(frame))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            task.add_done_callback(_log_frame_failure)
    except WebSocketDisconnect:
        logger.debug("Websocket disconnected")
    finally:
        for task in tasks:
            task.cancel()
        pump.cancel()


async def _run_feed(websocket: WebSocket, scope: ConversationScope, token: Optional[str]):
    backend = await _open_socket(websocket, token)
    if backend is None:
        return
    try:
        session = await bound_session(backend)
        notifier = Notifier()
        feed = ConversationFeed(backend, session, notifier, scope)
        outbox: asyncio.Queue = asyncio.Queue()

        def relay(kind: str, payload):
            if kind == "snapshot":
                outbox.put_nowait({"type": "snapshot", "messages": dump(payload)})
            else:
                outbox.put_nowait({"type": "message", "message": payload.model_dump(mode="json")})

        feed.on_change(relay)
        notifier.subscribe(lambda notice: outbox.put_nowait(_notice_frame(notice)))

        async def on_frame(frame: Dict[str, Any]):
            kind = frame.get("type")
            if kind == "send":
                await feed.send(_text(frame.get("content")) or "")
            elif kind == "switch" and isinstance(feed.scope, RoomScope):
                await feed.switch(room_scope(_text(frame.get("room")) or GENERAL_ROOM))

        try:
            await feed.open()
            await _serve(websocket, backend, notifier, outbox, on_frame)
        finally:
            await feed.dispose()
            session.unbind()
    finally:
        await backend.aclose()


@app.websocket("/ws/rooms/{room}")
async def room_socket(websocket: WebSocket, room: str, token: Optional[str] = None):
    await _run_feed(websocket, room_scope(room), token)


@app.websocket("/ws/direct/{user_id}")
async def direct_socket(websocket: WebSocket, user_id: str, token: Optional[str] = None):
    await _run_feed(websocket, DirectScope(user_id), token)


@app.websocket("/ws/teams/{team_id}/requests")
async def join_request_socket(websocket: WebSocket, team_id: str, token: Optional[str] = None):
    backend = await _open_socket(websocket, token)
    if backend is None:
        return
    try:
        session = await bound_session(backend)
        notifier = Notifier()
        workflow = JoinRequestWorkflow(backend, session, notifier, team_id)
        outbox: asyncio.Queue = asyncio.Queue()
        workflow.on_change(lambda state: outbox.put_nowait({"type": "requests", "state": state}))
        notifier.subscribe(lambda notice: outbox.put_nowait(_notice_frame(notice)))

        async def on_frame(frame: Dict[str, Any]):
            kind = frame.get("type")
            if kind == "submit":
                await workflow.submit(_text(frame.get("message")))
            elif kind == "accept":
                await workflow.accept(_text(frame.get("request_id")) or "")
            elif kind == "reject":
                await workflow.reject(_text(frame.get("request_id")) or "")

        try:
            if await workflow.load():
                await workflow.watch()
            await _serve(websocket, backend, notifier, outbox, on_frame)
        finally:
            await workflow.dispose()
            session.unbind()
    finally:
        await backend.aclose()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
