import datetime as dt
from datetime import datetime
from enum import StrEnum, auto

from sqlmodel import TEXT, Column, DateTime, Field, SQLModel

# NOTE: Forward annotations do not work with SQLModel


class RequestStatus(StrEnum):
    pending = auto()
    processing = auto()
    completed = auto()
    failed = auto()

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RequestStatus.completed, RequestStatus.failed})

# target state -> states it may be entered from
TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.pending: frozenset(),
    RequestStatus.processing: frozenset({RequestStatus.pending}),
    RequestStatus.completed: frozenset({RequestStatus.processing}),
    RequestStatus.failed: frozenset({RequestStatus.pending, RequestStatus.processing}),
}


class UserRole(StrEnum):
    user = auto()
    admin = auto()


class Creator(SQLModel, table=True):
    __tablename__ = "creators"

    id: int | None = Field(default=None, primary_key=True)
    name: str


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    email: str | None = Field(default=None)
    role: UserRole = Field(default=UserRole.user)
    creator_id: int | None = Field(default=None, foreign_key="creators.id")  # set for creator accounts

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin


class TTSRequest(SQLModel, table=True):
    """One submitted text-to-speech message and its lifecycle state."""

    __tablename__ = "tts_requests"

    id: int | None = Field(default=None, primary_key=True)
    requester_id: int = Field(foreign_key="users.id", index=True)
    creator_id: int = Field(foreign_key="creators.id", index=True)

    message: str = Field(sa_column=Column(TEXT, nullable=False))
    voice: str

    status: RequestStatus = Field(default=RequestStatus.pending, index=True)
    audio_url: str | None = Field(default=None)  # set iff status == completed
    error: str | None = Field(default=None, sa_column=Column(TEXT, nullable=True))

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
