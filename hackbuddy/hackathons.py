import logging
from typing import Dict, Iterable, List

from hackbuddy.backend import Backend
from hackbuddy.errors import BackendError, ConflictError, NotFoundError, PermissionDenied
from hackbuddy.models import Hackathon, HackathonInput, Identity, parse_row

logger = logging.getLogger(__name__)

DEFAULT_CREATOR_NAME = "Hack-Buddy member"


async def list_hackathons(backend: Backend) -> List[Hackathon]:
    rows = await backend.fetch("hackathons", order="start_date")
    return [parse_row(Hackathon, row) for row in rows]


async def create_hackathon(backend: Backend, identity: Identity, data: HackathonInput) -> Hackathon:
    row = await backend.insert("hackathons", {**data.to_row(), "created_by": identity.id})
    return parse_row(Hackathon, row)


async def update_hackathon(backend: Backend, identity: Identity, hackathon_id: str,
                           data: HackathonInput) -> Hackathon:
    """Only the creator may edit; rows without a creator are open to edits."""
    row = await backend.fetch_one("hackathons", match={"id": hackathon_id})
    if row is None:
        raise NotFoundError("Hackathon not found")
    if row.get("created_by") and row["created_by"] != identity.id:
        raise PermissionDenied("You can only update hackathons you created")
    updated = await backend.update("hackathons", data.to_row(), match={"id": hackathon_id})
    if not updated:
        raise NotFoundError("Hackathon not found")
    return parse_row(Hackathon, updated[0])


async def register(backend: Backend, identity: Identity, hackathon_id: str) -> None:
    try:
        await backend.insert("hackathon_registrations", {
            "hackathon_id": hackathon_id,
            "user_id": identity.id,
        })
    except BackendError as e:
        if e.is_unique_violation:
            raise ConflictError("You're already registered for this hackathon") from e
        raise
    logger.info("User %s registered for hackathon %s", identity.id, hackathon_id)


async def creator_names(backend: Backend, hackathons: Iterable[Hackathon]) -> Dict[str, str]:
    """Display names of hackathon creators, keyed by user id."""
    creator_ids = sorted({h.created_by for h in hackathons if h.created_by})
    if not creator_ids:
        return {}
    rows = await backend.fetch("profiles", columns="id, full_name", within={"id": creator_ids})
    return {row["id"]: row.get("full_name") or DEFAULT_CREATOR_NAME for row in rows}
