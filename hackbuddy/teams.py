import logging
from typing import List

from hackbuddy.backend import Backend
from hackbuddy.errors import NotFoundError, PermissionDenied
from hackbuddy.models import Identity, Team, TeamCreate, parse_row, split_csv
from hackbuddy.profiles import ensure_profile

logger = logging.getLogger(__name__)

LISTING_COLUMNS = "*, profiles(full_name, email)"
SUMMARY_COLUMNS = "id, name, description, leader_id, max_members"


async def list_open_teams(backend: Backend) -> List[Team]:
    """Teams still looking for members."""
    rows = await backend.fetch("teams", columns=LISTING_COLUMNS, match={"looking_for_members": True})
    return [parse_row(Team, row) for row in rows]


async def get_team(backend: Backend, team_id: str) -> Team:
    row = await backend.fetch_one("teams", columns=LISTING_COLUMNS, match={"id": team_id})
    if row is None:
        raise NotFoundError("Team not found")
    return parse_row(Team, row)


async def create_team(backend: Backend, identity: Identity, team_data: TeamCreate) -> Team:
    """
    Create a team led by the caller.
    The leader counts towards max_members but gets no team_members row.
    """
    await ensure_profile(backend, identity)
    row = await backend.insert("teams", {
        "name": team_data.name.strip(),
        "description": team_data.description,
        "required_skills": split_csv(team_data.required_skills),
        "max_members": team_data.max_members,
        "leader_id": identity.id,
        "hackathon_id": team_data.hackathon_id,
        "looking_for_members": True,
    })
    logger.info("Team %s created by %s", row.get("id"), identity.id)
    return parse_row(Team, row)


async def delete_team(backend: Backend, identity: Identity, team_id: str) -> None:
    team = await get_team(backend, team_id)
    if team.leader_id != identity.id:
        raise PermissionDenied("Only the team creator can delete this team")
    await backend.delete("teams", match={"id": team_id})
    logger.info("Team %s deleted by %s", team_id, identity.id)


async def list_user_teams(backend: Backend, identity: Identity) -> List[Team]:
    """Teams the caller belongs to or leads, each once."""
    memberships = await backend.fetch(
        "team_members", columns=f"team_id, teams({SUMMARY_COLUMNS})", match={"user_id": identity.id}
    )
    led = await backend.fetch("teams", columns=SUMMARY_COLUMNS, match={"leader_id": identity.id})

    teams: List[Team] = []
    seen = set()
    for row in [m.get("teams") for m in memberships] + led:
        if not row or row["id"] in seen:
            continue
        seen.add(row["id"])
        teams.append(parse_row(Team, row))
    return teams
