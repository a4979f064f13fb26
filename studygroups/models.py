from datetime import datetime, timezone
from typing import Optional, FrozenSet
from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN_USER = "Unknown User"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Portal timestamps without an offset are UTC"""
    if value is None:
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_id(value):
    if value is None or isinstance(value, str):
        return value
    return str(value)


class MessageAuthor(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., alias="_id")
    display_name: str = Field(default=UNKNOWN_USER, alias="name")

    @field_validator('id', mode='before')
    @classmethod
    def validate_id(cls, v):
        return _coerce_id(v)

    @field_validator('display_name', mode='before')
    @classmethod
    def validate_display_name(cls, v):
        if v is None or not str(v).strip():
            return UNKNOWN_USER
        return str(v)


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    content: str
    # Populated author object, or a bare user id when the portal skips population
    author: MessageAuthor = Field(..., alias="userId")
    created_at: datetime = Field(..., alias="createdAt")

    # Client-only: optimistic entry awaiting server confirmation
    pending: bool = Field(default=False, exclude=True)

    @field_validator('id', mode='before')
    @classmethod
    def validate_id(cls, v):
        return _coerce_id(v)

    @field_validator('author', mode='before')
    @classmethod
    def validate_author(cls, v):
        if isinstance(v, str):
            return {"_id": v}
        return v

    @field_validator('created_at')
    @classmethod
    def validate_created_at(cls, v):
        return _as_utc(v)

    @classmethod
    def optimistic(cls, local_id: str, content: str, author: MessageAuthor) -> "Message":
        """Build the local copy shown while a send is in flight"""
        return cls(
            id=local_id,
            content=content,
            author=author,
            created_at=datetime.now(timezone.utc),
            pending=True,
        )


class LastMessage(BaseModel):
    content: str = ""
    sender: str = UNKNOWN_USER
    timestamp: Optional[datetime] = None

    @field_validator('timestamp')
    @classmethod
    def validate_timestamp(cls, v):
        return _as_utc(v)


class Group(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., alias="_id")
    name: str
    description: str = ""
    # May be partial or omitted by the portal; never used to decide membership
    member_ids: FrozenSet[str] = Field(default_factory=frozenset, alias="members")
    is_member: bool = Field(default=False, alias="isMember")

    member_count: Optional[int] = Field(default=None, alias="memberCount")
    max_members: Optional[int] = Field(default=None, alias="maxMembers")
    recent_message_count: int = Field(default=0, alias="recentMessageCount")
    last_message: Optional[LastMessage] = Field(default=None, alias="lastMessage")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @field_validator('id', mode='before')
    @classmethod
    def validate_id(cls, v):
        return _coerce_id(v)

    @field_validator('description', mode='before')
    @classmethod
    def validate_description(cls, v):
        return v or ""

    @field_validator('member_ids', mode='before')
    @classmethod
    def validate_member_ids(cls, v):
        if v is None:
            return frozenset()
        ids = set()
        for member in v:
            # Populated members come back as {_id, name, email}
            if isinstance(member, dict):
                member = member.get("_id") or member.get("id")
            if member:
                ids.add(str(member))
        return frozenset(ids)

    @field_validator('created_at')
    @classmethod
    def validate_created_at(cls, v):
        return _as_utc(v)

    @property
    def members_total(self) -> int:
        if self.member_count is not None:
            return self.member_count
        return len(self.member_ids)

    @property
    def is_full(self) -> bool:
        return self.max_members is not None and self.members_total >= self.max_members
