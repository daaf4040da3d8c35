from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from typing import Any, Dict, List, Optional, Type, TypeVar, Union
from datetime import datetime
from enum import Enum

from hackbuddy.errors import MalformedRowError

ModelT = TypeVar("ModelT", bound=BaseModel)


def split_csv(value: Union[str, List[str], None]) -> List[str]:
    """Split a comma-separated form value into trimmed, non-empty items."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [item.strip() for item in value if item and item.strip()]


def parse_row(model: Type[ModelT], row: Dict[str, Any]) -> ModelT:
    """Build a typed record from a backend row, failing fast on missing fields."""
    try:
        return model.model_validate(row)
    except PydanticValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise MalformedRowError(model.__name__, fields) from e


# ============ PROFILE MODELS ============


class ProfileSnapshot(BaseModel):
    """Profile columns embedded into another row at read time."""
    id: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = None
    skills: Optional[List[str]] = None


class Profile(BaseModel):
    id: str
    full_name: Optional[str] = None
    bio: Optional[str] = None
    skills: List[str] = []
    tech_stack: List[str] = []
    college: Optional[str] = None
    year: Optional[str] = None
    github_url: Optional[str] = None
    linkedin_url: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    looking_for_team: bool = False

    @field_validator("skills", "tech_stack", mode="before")
    @classmethod
    def _null_list(cls, value):
        return value or []


class ProfileUpdate(BaseModel):
    """Profile edit form; list fields arrive comma-separated."""
    full_name: str = ""
    bio: str = ""
    skills: Union[str, List[str]] = ""
    tech_stack: Union[str, List[str]] = ""
    college: str = ""
    year: str = ""
    github_url: str = ""
    linkedin_url: str = ""
    looking_for_team: bool = False

    def to_row(self) -> Dict[str, Any]:
        return {
            "full_name": self.full_name,
            "bio": self.bio,
            "skills": split_csv(self.skills),
            "tech_stack": split_csv(self.tech_stack),
            "college": self.college or None,
            "year": self.year or None,
            "github_url": self.github_url,
            "linkedin_url": self.linkedin_url,
            "looking_for_team": self.looking_for_team,
        }


# ============ MESSAGE MODELS ============


class Message(BaseModel):
    id: str
    sender_id: str
    team_id: Optional[str] = None  # None is the general room
    content: str
    created_at: datetime
    profiles: Optional[ProfileSnapshot] = None


class PersonalMessage(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    sender_profile: Optional[ProfileSnapshot] = None
    receiver_profile: Optional[ProfileSnapshot] = None


# ============ TEAM MODELS ============


class JoinRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class HackathonSnapshot(BaseModel):
    title: Optional[str] = None


class Team(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    leader_id: str
    max_members: int
    required_skills: List[str] = []
    looking_for_members: bool = True
    hackathon_id: Optional[str] = None
    profiles: Optional[ProfileSnapshot] = None
    hackathons: Optional[HackathonSnapshot] = None

    @field_validator("required_skills", mode="before")
    @classmethod
    def _null_list(cls, value):
        return value or []


class TeamCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    required_skills: Union[str, List[str]] = ""
    max_members: int = Field(default=4, ge=1)
    hackathon_id: Optional[str] = None


class TeamMember(BaseModel):
    id: str
    team_id: str
    user_id: str
    joined_at: Optional[datetime] = None
    profiles: Optional[ProfileSnapshot] = None


class JoinRequest(BaseModel):
    id: str
    team_id: str
    user_id: str
    status: JoinRequestStatus
    message: Optional[str] = None
    created_at: datetime
    profiles: Optional[ProfileSnapshot] = None


class JoinRequestCreate(BaseModel):
    message: Optional[str] = None


# ============ HACKATHON MODELS ============


class Hackathon(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    location: Optional[str] = None
    is_virtual: bool = False
    prize_pool: Optional[str] = None
    website_url: Optional[str] = None
    registration_deadline: Optional[datetime] = None
    created_by: Optional[str] = None


class HackathonInput(BaseModel):
    title: str
    description: str = ""
    start_date: datetime
    end_date: datetime
    location: str = ""
    is_virtual: bool = False
    prize_pool: str = ""
    website_url: str = ""
    registration_deadline: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "title": self.title.strip(),
            "description": self.description.strip(),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            # virtual events have no venue
            "location": None if self.is_virtual else (self.location.strip() or None),
            "is_virtual": self.is_virtual,
            "prize_pool": self.prize_pool.strip() or None,
            "website_url": self.website_url.strip() or None,
            "registration_deadline": (
                self.registration_deadline.isoformat() if self.registration_deadline else None
            ),
        }


# ============ SESSION MODELS ============


class Identity(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    email_confirmed: bool = False

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Identity":
        metadata = claims.get("user_metadata") or {}
        return cls(
            id=claims["sub"],
            email=claims.get("email") or None,
            full_name=metadata.get("full_name") or None,
            email_confirmed=bool(metadata.get("email_verified")),
        )


class Session(BaseModel):
    access_token: str
    identity: Identity
    expires_at: Optional[datetime] = None


class Notice(BaseModel):
    level: str  # info, success, warning, error
    message: str
    description: Optional[str] = None
    status_code: Optional[int] = None
