import logging
from typing import Iterable, List, Optional

from hackbuddy.backend import Backend
from hackbuddy.errors import BackendError, NotFoundError, PermissionDenied
from hackbuddy.models import Identity, Profile, ProfileUpdate, parse_row
from hackbuddy.session import display_name

logger = logging.getLogger(__name__)


async def ensure_profile(backend: Backend, identity: Identity) -> None:
    """
    Make sure the caller has a profile row before any write that references it.
    Safe to call repeatedly and from concurrent writers.
    """
    existing = await backend.fetch_one("profiles", columns="id", match={"id": identity.id})
    if existing:
        return
    try:
        await backend.insert("profiles", {
            "id": identity.id,
            "full_name": display_name(identity),
            "email": identity.email,
        })
        logger.info("Created profile for %s", identity.id)
    except BackendError as e:
        # another writer created it between the check and the insert
        if e.is_unique_violation:
            return
        raise


async def load_profile(backend: Backend, identity: Identity) -> Profile:
    """Profile for the edit form, created blank on first visit."""
    row = await backend.fetch_one("profiles", match={"id": identity.id})
    if row is None:
        try:
            row = await backend.insert("profiles", {
                "id": identity.id,
                "email": identity.email,
                "full_name": "",
                "bio": "",
                "skills": [],
                "github_url": "",
                "linkedin_url": "",
                "looking_for_team": False,
            })
        except BackendError as e:
            if not e.is_unique_violation:
                raise
            row = await backend.fetch_one("profiles", match={"id": identity.id})
    return parse_row(Profile, row)


async def require_verified(backend: Backend, identity: Identity) -> None:
    """Unverified accounts are hidden from teammate search and refused."""
    if identity.email_confirmed:
        return
    await backend.update("profiles", {"looking_for_team": False}, match={"id": identity.id})
    raise PermissionDenied("Please verify your email before accessing your profile")


async def update_profile(backend: Backend, identity: Identity, update: ProfileUpdate) -> Profile:
    if not identity.email_confirmed:
        raise PermissionDenied("Please verify your email before updating your profile")
    rows = await backend.update("profiles", update.to_row(), match={"id": identity.id})
    if not rows:
        raise NotFoundError("Profile not found")
    return parse_row(Profile, rows[0])


async def get_profile(backend: Backend, user_id: str) -> Profile:
    row = await backend.fetch_one("profiles", match={"id": user_id})
    if row is None:
        raise NotFoundError("Profile not found")
    return parse_row(Profile, row)


def all_skills(profiles: Iterable[Profile]) -> List[str]:
    return sorted({skill for profile in profiles for skill in profile.skills})


async def find_teammates(backend: Backend, search: str = "",
                         skills: Optional[Iterable[str]] = None) -> List[Profile]:
    """
    Profiles open to joining a team whose name or a skill contains ``search``.
    With ``skills`` given, best skill matches come first.
    """
    rows = await backend.fetch("profiles", match={"looking_for_team": True})
    profiles = [parse_row(Profile, row) for row in rows]

    term = search.strip().lower()
    if term:
        profiles = [
            profile for profile in profiles
            if term in (profile.full_name or "").lower()
            or any(term in skill.lower() for skill in profile.skills)
        ]

    wanted = set(skills or [])
    if wanted:
        profiles.sort(key=lambda profile: -len(wanted.intersection(profile.skills)))
    return profiles
