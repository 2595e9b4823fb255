from sqlmodel import Session, select
from sqlalchemy import update as sa_update, desc
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple
import secrets

from . import models, levels

engine = None


def as_dict(obj) -> Optional[dict]:
    """Column values of a row. Reads through attributes so expired rows reload."""
    if obj is None:
        return None
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns}


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; treat them as UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# --- players -----------------------------------------------------------------

def get_player(session: Session, player_id: Optional[str]) -> Optional[models.Player]:
    if not player_id:
        return None
    return session.get(models.Player, player_id)


def get_player_by_email(session: Session, email: str) -> Optional[models.Player]:
    return session.exec(select(models.Player).where(models.Player.email == email)).first()


def create_guest_player(session: Session, display_name: str) -> models.Player:
    p = models.Player(display_name=display_name, is_guest=True)
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def create_registered_player(session: Session, email: str, display_name: str) -> models.Player:
    p = models.Player(email=email, display_name=display_name, is_guest=False)
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def attach_email(session: Session, player: models.Player, email: str) -> models.Player:
    """Upgrade a guest to a registered player. A player with an email is never a guest."""
    player.email = email
    player.is_guest = False
    player.updated_at = datetime.now(timezone.utc)
    session.add(player)
    session.commit()
    session.refresh(player)
    return player


# --- boxes -------------------------------------------------------------------

def get_box(session: Session, box_id: str) -> Optional[models.GameBox]:
    return session.get(models.GameBox, box_id)


def ensure_box(session: Session, box_id: str) -> Tuple[models.GameBox, bool]:
    """Return (box, created). Registers the box on first sight."""
    box = session.get(models.GameBox, box_id)
    if box:
        return box, False
    box = models.GameBox(box_id=box_id)
    session.add(box)
    try:
        session.commit()
    except IntegrityError:
        # registered by a concurrent request
        session.rollback()
        return session.get(models.GameBox, box_id), False
    session.refresh(box)
    return box, True


def register_box(session: Session, box_id: str, email: Optional[str]) -> Optional[models.GameBox]:
    """Create a box row; None if the box is already registered."""
    if session.get(models.GameBox, box_id):
        return None
    box = models.GameBox(box_id=box_id, registration_email=email)
    session.add(box)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return None
    session.refresh(box)
    return box


# --- sessions ----------------------------------------------------------------

def get_session_by_id(session: Session, sid: str) -> Optional[models.GameSession]:
    if not sid:
        return None
    return session.get(models.GameSession, sid)


def get_active_session_for_box(session: Session, box_id: str) -> Optional[models.GameSession]:
    return session.exec(
        select(models.GameSession)
        .where(models.GameSession.box_id == box_id)
        .where(models.GameSession.status == models.STATUS_ACTIVE)
    ).first()


def find_active_session_at_level(session: Session, box_id: str, level: int) -> Optional[models.GameSession]:
    return session.exec(
        select(models.GameSession)
        .where(models.GameSession.box_id == box_id)
        .where(models.GameSession.universe_level == level)
        .where(models.GameSession.status == models.STATUS_ACTIVE)
    ).first()


def create_session_with_host(
    session: Session,
    box_id: str,
    level: int,
    host_player_id: str,
    color: Optional[str],
) -> Optional[models.GameSession]:
    """Insert an active session and its host membership in one commit.

    Returns None when the box already has an active session (unique index).
    """
    gs = models.GameSession(box_id=box_id, universe_level=level, host_player_id=host_player_id)
    session.add(gs)
    try:
        session.flush()
        session.add(models.SessionPlayer(session_id=gs.id, player_id=host_player_id, color=color))
        session.commit()
    except IntegrityError:
        session.rollback()
        return None
    session.refresh(gs)
    return gs


def create_chained_session(
    session: Session,
    box_id: str,
    level: int,
    host_player_id: Optional[str],
    carried: Sequence[Tuple[str, Optional[str]]],
) -> Optional[models.GameSession]:
    """Open the next-level session for a box with (player_id, color) members carried over.

    Scores start unset. Returns None when another active session already holds the box.
    """
    gs = models.GameSession(box_id=box_id, universe_level=level, host_player_id=host_player_id)
    session.add(gs)
    try:
        session.flush()
        for player_id, color in carried:
            session.add(models.SessionPlayer(session_id=gs.id, player_id=player_id, color=color))
        session.commit()
    except IntegrityError:
        session.rollback()
        return None
    session.refresh(gs)
    return gs


def set_session_level(session: Session, gs: models.GameSession, level: int) -> bool:
    """Move an active session to a new level. False once the session has left active."""
    result = session.execute(
        sa_update(models.GameSession)
        .where(models.GameSession.id == gs.id)
        .where(models.GameSession.status == models.STATUS_ACTIVE)
        .values(universe_level=level)
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    session.commit()
    session.refresh(gs)
    return True


def set_session_host(session: Session, gs: models.GameSession, player_id: str) -> models.GameSession:
    gs.host_player_id = player_id
    session.add(gs)
    session.commit()
    session.refresh(gs)
    return gs


def complete_session(session: Session, sid: str, record_progress: bool = True) -> bool:
    """Move an active session to completed.

    The update only applies while the row is still active, so exactly one caller
    gets True. With record_progress the members' final scores are folded into the
    progress journal in the same commit.
    """
    now = datetime.now(timezone.utc)
    result = session.execute(
        sa_update(models.GameSession)
        .where(models.GameSession.id == sid)
        .where(models.GameSession.status == models.STATUS_ACTIVE)
        .values(status=models.STATUS_COMPLETED, ended_at=now)
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    if record_progress:
        gs = session.get(models.GameSession, sid)
        for sp in list_session_players(session, sid):
            if sp.final_nn is not None:
                upsert_progress(session, sp.player_id, gs.universe_level, sp.final_nn, sid)
    session.commit()
    return True


# --- membership --------------------------------------------------------------

def list_session_players(session: Session, sid: str) -> List[models.SessionPlayer]:
    return list(session.exec(
        select(models.SessionPlayer)
        .where(models.SessionPlayer.session_id == sid)
        .order_by(models.SessionPlayer.joined_at)
    ).all())


def list_session_members(session: Session, sid: str) -> List[Tuple[models.SessionPlayer, models.Player]]:
    """Memberships joined with their player rows, in join order."""
    rows = session.exec(
        select(models.SessionPlayer, models.Player)
        .join(models.Player, models.Player.id == models.SessionPlayer.player_id)
        .where(models.SessionPlayer.session_id == sid)
        .order_by(models.SessionPlayer.joined_at)
    ).all()
    return [(sp, p) for sp, p in rows]


def get_session_player(session: Session, sid: str, player_id: Optional[str]) -> Optional[models.SessionPlayer]:
    if not player_id:
        return None
    return session.exec(
        select(models.SessionPlayer)
        .where(models.SessionPlayer.session_id == sid)
        .where(models.SessionPlayer.player_id == player_id)
    ).first()


def add_session_player(
    session: Session, sid: str, player_id: str, color: Optional[str], starting_nn: int = 0
) -> Optional[models.SessionPlayer]:
    """Insert a membership; None if the player is already seated (unique constraint)."""
    sp = models.SessionPlayer(session_id=sid, player_id=player_id, color=color, starting_nn=starting_nn)
    session.add(sp)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return None
    session.refresh(sp)
    return sp


def remove_session_player(session: Session, sid: str, player_id: str) -> Optional[models.SessionPlayer]:
    """Delete a membership and return the removed row (detached), or None if absent."""
    sp = get_session_player(session, sid, player_id)
    if sp is None:
        return None
    removed = models.SessionPlayer(**as_dict(sp))
    session.delete(sp)
    session.commit()
    return removed


def taken_colors(session: Session, sid: str, exclude_player_ids: Iterable[Optional[str]] = ()) -> List[str]:
    excluded = set(exclude_player_ids)
    return [
        sp.color
        for sp in list_session_players(session, sid)
        if sp.color is not None and sp.player_id not in excluded
    ]


def record_score(
    session: Session,
    sp: models.SessionPlayer,
    final_nn: int,
    color: Optional[str] = None,
    starting_nn: Optional[int] = None,
) -> models.SessionPlayer:
    sp.final_nn = final_nn
    if color:
        sp.color = color
    if starting_nn is not None:
        sp.starting_nn = starting_nn
    session.add(sp)
    session.commit()
    session.refresh(sp)
    return sp


def mark_voted_end(session: Session, sp: models.SessionPlayer) -> models.SessionPlayer:
    sp.voted_end = True
    session.add(sp)
    session.commit()
    session.refresh(sp)
    return sp


# --- progress journal --------------------------------------------------------

def journal_levels(session: Session, player_id: str) -> List[int]:
    return list(session.exec(
        select(models.ProgressJournal.universe_level)
        .where(models.ProgressJournal.player_id == player_id)
    ).all())


def get_journal_entry(session: Session, player_id: str, level: int) -> Optional[models.ProgressJournal]:
    return session.exec(
        select(models.ProgressJournal)
        .where(models.ProgressJournal.player_id == player_id)
        .where(models.ProgressJournal.universe_level == level)
    ).first()


def list_journal(session: Session, player_id: str) -> List[models.ProgressJournal]:
    return list(session.exec(
        select(models.ProgressJournal)
        .where(models.ProgressJournal.player_id == player_id)
        .order_by(models.ProgressJournal.universe_level)
    ).all())


def upsert_progress(session: Session, player_id: str, level: int, score: int, sid: Optional[str]) -> models.ProgressJournal:
    """Keep the better of the stored and the new score. Does not commit."""
    entry = get_journal_entry(session, player_id, level)
    if entry is None:
        entry = models.ProgressJournal(player_id=player_id, universe_level=level, best_nn=score, session_id=sid)
        session.add(entry)
        return entry
    if score > entry.best_nn:
        entry.best_nn = score
        entry.achieved_at = datetime.now(timezone.utc)
        entry.session_id = sid
        session.add(entry)
    return entry


def max_unlocked_level(session: Session, player_id: str) -> int:
    player = session.get(models.Player, player_id)
    if player is None:
        return levels.MIN_LEVEL
    if player.is_guest:
        return levels.max_unlocked_level(True, [])
    return levels.max_unlocked_level(False, journal_levels(session, player_id))


def recent_memberships(session: Session, player_id: str, limit: int = 10) -> List[Tuple[models.SessionPlayer, models.GameSession]]:
    rows = session.exec(
        select(models.SessionPlayer, models.GameSession)
        .join(models.GameSession, models.GameSession.id == models.SessionPlayer.session_id)
        .where(models.SessionPlayer.player_id == player_id)
        .order_by(desc(models.SessionPlayer.joined_at))
        .limit(limit)
    ).all()
    return [(sp, gs) for sp, gs in rows]


# --- magic tokens ------------------------------------------------------------

def create_magic_token(session: Session, email: str, player_id: Optional[str], ttl_minutes: int) -> models.MagicToken:
    mt = models.MagicToken(
        email=email,
        token=secrets.token_hex(32),
        player_id=player_id,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes),
    )
    session.add(mt)
    session.commit()
    session.refresh(mt)
    return mt


def get_unused_magic_token(session: Session, token: str) -> Optional[models.MagicToken]:
    return session.exec(
        select(models.MagicToken)
        .where(models.MagicToken.token == token)
        .where(models.MagicToken.used_at == None)  # noqa: E711
    ).first()


def consume_magic_token(session: Session, token_id: str) -> bool:
    """Mark a token used. False if another request used it first."""
    result = session.execute(
        sa_update(models.MagicToken)
        .where(models.MagicToken.id == token_id)
        .where(models.MagicToken.used_at == None)  # noqa: E711
        .values(used_at=datetime.now(timezone.utc))
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    session.commit()
    return True


def delete_magic_token(session: Session, token: str) -> None:
    mt = session.exec(select(models.MagicToken).where(models.MagicToken.token == token)).first()
    if mt is not None:
        session.delete(mt)
        session.commit()
