from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text
from datetime import datetime, timezone
import uuid


STATUS_ACTIVE = "active"
STATUS_PENDING_END = "pending_end"  # reserved by the schema, never written
STATUS_COMPLETED = "completed"
STATUS_ABANDONED = "abandoned"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Player(SQLModel, table=True):
    __tablename__ = "players"

    id: str = Field(default_factory=new_id, primary_key=True)
    email: Optional[str] = Field(default=None, max_length=255, unique=True)  # NULL for guests
    display_name: str = Field(max_length=50)
    is_guest: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class GameBox(SQLModel, table=True):
    __tablename__ = "game_boxes"

    box_id: str = Field(primary_key=True, max_length=20)  # NE-YYYY-NNNNN
    registered_at: datetime = Field(default_factory=utc_now)
    owner_player_id: Optional[str] = Field(default=None, foreign_key="players.id")
    registration_email: Optional[str] = Field(default=None, max_length=255)


class GameSession(SQLModel, table=True):
    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint("universe_level BETWEEN 1 AND 13", name="ck_sessions_level"),
        CheckConstraint(
            "status IN ('active', 'pending_end', 'completed', 'abandoned')",
            name="ck_sessions_status",
        ),
        # at most one active session per box
        Index(
            "idx_active_session_per_box",
            "box_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    box_id: str = Field(foreign_key="game_boxes.box_id", max_length=20)
    universe_level: int
    status: str = Field(default=STATUS_ACTIVE, max_length=20)
    host_player_id: Optional[str] = Field(default=None, foreign_key="players.id")
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None


class SessionPlayer(SQLModel, table=True):
    __tablename__ = "session_players"
    __table_args__ = (
        UniqueConstraint("session_id", "player_id", name="uq_session_players_session_player"),
        CheckConstraint(
            "color IS NULL OR color IN ('gray', 'pink', 'purple', 'green')",
            name="ck_session_players_color",
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    session_id: str = Field(foreign_key="sessions.id", ondelete="CASCADE")
    player_id: str = Field(foreign_key="players.id")
    color: Optional[str] = Field(default=None, max_length=20)
    starting_nn: int = 0
    final_nn: Optional[int] = None
    joined_at: datetime = Field(default_factory=utc_now)
    voted_end: bool = False


class ProgressJournal(SQLModel, table=True):
    __tablename__ = "progress_journal"
    __table_args__ = (
        UniqueConstraint("player_id", "universe_level", name="uq_progress_journal_player_level"),
        CheckConstraint("universe_level BETWEEN 1 AND 13", name="ck_progress_journal_level"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    player_id: str = Field(foreign_key="players.id")
    universe_level: int
    best_nn: int
    achieved_at: datetime = Field(default_factory=utc_now)
    session_id: Optional[str] = Field(default=None, foreign_key="sessions.id")


class MagicToken(SQLModel, table=True):
    __tablename__ = "magic_tokens"

    id: str = Field(default_factory=new_id, primary_key=True)
    email: str = Field(max_length=255)
    token: str = Field(max_length=64, unique=True)
    player_id: Optional[str] = Field(default=None, foreign_key="players.id")  # guest being upgraded
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
