"""
Session lifecycle for a game box.

A session is one play-through of one universe level. It starts ``active``,
players join it (possibly replacing their own guest identity after signing in),
and it ends ``completed`` either when every member submitted a final score
(the level is recorded in the progress journal and the next level opens with
the same table) or when every member voted to end it (nothing is recorded).

While a session is active its level always equals the lowest max unlocked
level among its members; see ``levels.max_unlocked_level``.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from . import crud, levels, models
from .errors import Conflict, NotActive, NotFound, UpstreamFailure, ValidationError
from .logging_utils import get_logger

logger = get_logger("neutronium.lifecycle")

MAX_NAME_LENGTH = 50


@dataclass(frozen=True)
class RetryPolicy:
    """How hard submit_score tries to open (or find) the next-level session."""
    attempts: int = 3
    delay_seconds: float = 0.05


NEXT_SESSION_RETRY = RetryPolicy()


@dataclass
class LevelChange:
    previous_level: int
    new_level: int


@dataclass
class PlayerLevel:
    player_id: str
    max_level: int


@dataclass
class RecalcResult:
    session: models.GameSession
    change: Optional[LevelChange] = None
    player_levels: List[PlayerLevel] = field(default_factory=list)

    @property
    def level_changed(self) -> bool:
        return self.change is not None


@dataclass
class CreateResult:
    session: models.GameSession
    player: models.Player


@dataclass
class JoinResult:
    session: models.GameSession
    player: models.Player
    membership: models.SessionPlayer
    rejoined: bool
    change: Optional[LevelChange] = None
    replaced_player_id: Optional[str] = None

    @property
    def level_changed(self) -> bool:
        return self.change is not None


@dataclass
class SubmitResult:
    membership: models.SessionPlayer
    submitted_count: int
    total_players: int
    session_completed: bool = False
    next_session: Optional[models.GameSession] = None
    campaign_complete: bool = False

    @property
    def all_submitted(self) -> bool:
        return self.total_players > 0 and self.submitted_count == self.total_players


@dataclass
class VoteResult:
    voted_count: int
    total_players: int
    session_completed: bool


@dataclass
class SessionDetail:
    session: models.GameSession
    box: Optional[models.GameBox]
    host: Optional[models.Player]
    members: List[Tuple[models.SessionPlayer, models.Player]]
    next_session: Optional[models.GameSession] = None
    reference_scores: Optional[Dict[str, Optional[int]]] = None

    @property
    def stats(self) -> Dict[str, object]:
        total = len(self.members)
        voted = sum(1 for sp, _ in self.members if sp.voted_end)
        submitted = sum(1 for sp, _ in self.members if sp.final_nn is not None)
        return {
            "totalPlayers": total,
            "playersVotedEnd": voted,
            "playersSubmittedScore": submitted,
            "allVotedEnd": total > 0 and voted == total,
            "allSubmittedScore": total > 0 and submitted == total,
        }


@dataclass
class BoxStatus:
    box_id: str
    box: Optional[models.GameBox]
    active_session: Optional[models.GameSession] = None
    player_count: int = 0
    taken_colors: List[str] = field(default_factory=list)


@contextmanager
def _store_errors(operation: str, **context):
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("store_error", extra={"event": operation, **context})
        raise UpstreamFailure(f"{operation} failed: database error") from exc


# --- validation helpers ------------------------------------------------------

def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("playerName is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"playerName too long (max {MAX_NAME_LENGTH} characters)")
    return cleaned


def _check_color(color: Optional[str], field_name: str = "playerColor") -> None:
    if not levels.is_valid_color(color):
        raise ValidationError(f"{field_name} must be one of: {', '.join(levels.COLORS)}")


def normalize_box_id(box_id: Optional[str]) -> str:
    cleaned = (box_id or "").strip().upper()
    if not levels.is_valid_box_id(cleaned):
        raise ValidationError("boxId must look like NE-YYYY-NNNNN")
    return cleaned


def _load_active(session: Session, sid: str) -> models.GameSession:
    gs = crud.get_session_by_id(session, sid)
    if not gs:
        raise NotFound("Session not found")
    if gs.status != models.STATUS_ACTIVE:
        raise NotActive("Session is not active")
    return gs


def _resolve_player(session: Session, name: str, requested_player_id: Optional[str]) -> models.Player:
    # an id that designates an existing row wins; anything else becomes a new guest
    player = crud.get_player(session, requested_player_id)
    if player:
        return player
    player = crud.create_guest_player(session, name)
    logger.info("guest_created", extra={"player_id": player.id})
    return player


# --- level rule --------------------------------------------------------------

def _apply_level_rule(session: Session, gs: models.GameSession) -> RecalcResult:
    members = crud.list_session_players(session, gs.id)
    player_levels = [PlayerLevel(sp.player_id, crud.max_unlocked_level(session, sp.player_id)) for sp in members]
    target = levels.session_level(pl.max_level for pl in player_levels)
    previous = gs.universe_level
    if target is None or target == previous:
        return RecalcResult(session=gs, player_levels=player_levels)
    if not crud.set_session_level(session, gs, target):
        # completed by a concurrent request since it was loaded
        raise NotActive("Session is not active")
    logger.info(
        "session_level_changed",
        extra={"session_id": gs.id, "previous_level": previous, "new_level": target},
    )
    return RecalcResult(session=gs, change=LevelChange(previous, target), player_levels=player_levels)


def recalculate_level(session: Session, sid: str) -> RecalcResult:
    """Re-apply the level rule to an active session. Idempotent."""
    with _store_errors("session_recalculate", session_id=sid):
        gs = _load_active(session, sid)
        return _apply_level_rule(session, gs)


# --- create / join -----------------------------------------------------------

def create_session(
    session: Session,
    box_id: str,
    level: int,
    player_name: str,
    player_color: Optional[str] = None,
    requested_player_id: Optional[str] = None,
) -> CreateResult:
    box_id = normalize_box_id(box_id)
    if not levels.is_valid_level(level):
        raise ValidationError(f"universeLevel must be between {levels.MIN_LEVEL} and {levels.MAX_LEVEL}")
    name = _clean_name(player_name)
    _check_color(player_color)

    with _store_errors("session_create", box_id=box_id):
        _, created = crud.ensure_box(session, box_id)
        if created:
            logger.info("box_registered", extra={"box_id": box_id})
        if crud.get_active_session_for_box(session, box_id):
            raise Conflict("Box already has an active session")
        player = _resolve_player(session, name, requested_player_id)
        gs = crud.create_session_with_host(session, box_id, level, player.id, player_color)
        if gs is None:
            raise Conflict("Box already has an active session")

    logger.info(
        "session_created",
        extra={"session_id": gs.id, "box_id": box_id, "universe_level": level, "player_id": player.id},
    )
    return CreateResult(session=gs, player=player)


def join_session(
    session: Session,
    sid: str,
    player_name: str,
    player_color: Optional[str] = None,
    requested_player_id: Optional[str] = None,
    replace_player_id: Optional[str] = None,
) -> JoinResult:
    """Seat a player at an active session and re-derive the session level.

    ``replace_player_id`` names a membership (normally the caller's guest identity)
    that the resolved player takes over: the old row is dropped, and a new row
    inherits its color unless another one is requested. Joining twice is a rejoin:
    no row is added but the level is still recalculated.
    """
    name = _clean_name(player_name)
    _check_color(player_color)

    with _store_errors("session_join", session_id=sid):
        gs = _load_active(session, sid)
        known = crud.get_player(session, requested_player_id)
        membership = crud.get_session_player(session, gs.id, known.id) if known else None
        replacing = bool(replace_player_id) and (known is None or replace_player_id != known.id)

        if membership is None and player_color:
            exclude = [known.id if known else None, replace_player_id if replacing else None]
            if player_color in crud.taken_colors(session, gs.id, exclude):
                raise Conflict(f"Color {player_color} is already taken")

        player = known or _resolve_player(session, name, None)
        replaced = None
        if replacing:
            replaced = crud.remove_session_player(session, gs.id, replace_player_id)
            if replaced is not None:
                logger.info(
                    "player_replaced",
                    extra={"session_id": gs.id, "player_id": player.id, "replaced_player_id": replace_player_id},
                )
                if gs.host_player_id == replace_player_id:
                    crud.set_session_host(session, gs, player.id)

        rejoined = membership is not None
        if membership is None:
            color = player_color
            starting_nn = 0
            if replaced is not None:
                color = color or replaced.color
                starting_nn = replaced.starting_nn
            membership = crud.add_session_player(session, gs.id, player.id, color, starting_nn)
            if membership is None:
                # seated by a concurrent request
                membership = crud.get_session_player(session, gs.id, player.id)
                rejoined = True
            else:
                logger.info("player_joined", extra={"session_id": gs.id, "player_id": player.id})

        recalc = _apply_level_rule(session, gs)

    return JoinResult(
        session=recalc.session,
        player=player,
        membership=membership,
        rejoined=rejoined,
        change=recalc.change,
        replaced_player_id=replace_player_id if replaced is not None else None,
    )


# --- scores and completion ---------------------------------------------------

def _check_score(value, field_name: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(f"{field_name} must be a non-negative integer")


def submit_score(
    session: Session,
    sid: str,
    player_id: str,
    final_nn: int,
    color: Optional[str] = None,
    starting_nn: Optional[int] = None,
    retry: RetryPolicy = NEXT_SESSION_RETRY,
) -> SubmitResult:
    """Record a member's final score; the last submission completes the level.

    Completing a level writes every member's score to the progress journal and,
    below the last level, opens the next level for the same box with the same
    members and colors.
    """
    if final_nn is None:
        raise ValidationError("finalNn is required")
    _check_score(final_nn, "finalNn")
    if starting_nn is not None:
        _check_score(starting_nn, "startingNn")
    _check_color(color, "color")

    with _store_errors("submit_score", session_id=sid, player_id=player_id):
        gs = _load_active(session, sid)
        membership = crud.get_session_player(session, gs.id, player_id)
        if membership is None:
            raise NotFound("Player not in session")
        if color and color != membership.color and color in crud.taken_colors(session, gs.id, [player_id]):
            raise Conflict(f"Color {color} is already taken")

        membership = crud.record_score(session, membership, final_nn, color, starting_nn)
        logger.info("score_submitted", extra={"session_id": gs.id, "player_id": player_id})

        members = crud.list_session_players(session, gs.id)
        submitted = sum(1 for m in members if m.final_nn is not None)
        total = len(members)
        if submitted < total:
            return SubmitResult(membership=membership, submitted_count=submitted, total_players=total)

        return _complete_level(session, gs, members, membership, submitted, total, retry)


def _complete_level(
    session: Session,
    gs: models.GameSession,
    members: List[models.SessionPlayer],
    membership: models.SessionPlayer,
    submitted: int,
    total: int,
    retry: RetryPolicy,
) -> SubmitResult:
    sid, box_id, level, host = gs.id, gs.box_id, gs.universe_level, gs.host_player_id
    carried = [(m.player_id, m.color) for m in members]
    upcoming = levels.next_level(level)

    if not crud.complete_session(session, sid, record_progress=True):
        # another submission completed the level first; it also opened the next one
        nxt = crud.find_active_session_at_level(session, box_id, upcoming) if upcoming else None
        return SubmitResult(membership, submitted, total, True, nxt, upcoming is None)

    logger.info("session_completed", extra={"session_id": sid, "box_id": box_id, "universe_level": level, "event": "all_submitted"})
    if upcoming is None:
        logger.info("campaign_complete", extra={"session_id": sid, "box_id": box_id})
        return SubmitResult(membership, submitted, total, True, None, True)

    nxt = _open_next_session(session, box_id, upcoming, host, carried, retry)
    return SubmitResult(membership, submitted, total, True, nxt, False)


def _open_next_session(
    session: Session,
    box_id: str,
    level: int,
    host: Optional[str],
    carried: List[Tuple[str, Optional[str]]],
    retry: RetryPolicy,
) -> Optional[models.GameSession]:
    def attempt() -> Optional[models.GameSession]:
        nxt = crud.create_chained_session(session, box_id, level, host, carried)
        if nxt is not None:
            logger.info("next_session_created", extra={"session_id": nxt.id, "box_id": box_id, "universe_level": level})
            return nxt
        # the insert collided; a concurrent completion may have opened it
        existing = crud.get_active_session_for_box(session, box_id)
        if existing is not None:
            logger.info("next_session_conflict_resolved", extra={"session_id": existing.id, "box_id": box_id})
        return existing

    def give_up(state: RetryCallState) -> None:
        logger.warning(
            "next_session_unavailable",
            extra={"box_id": box_id, "universe_level": level, "attempt": state.attempt_number},
        )
        return None

    retrying = Retrying(
        stop=stop_after_attempt(retry.attempts),
        wait=wait_fixed(retry.delay_seconds),
        retry=retry_if_result(lambda nxt: nxt is None),
        retry_error_callback=give_up,
    )
    return retrying(attempt)


def vote_end(session: Session, sid: str, player_id: str) -> VoteResult:
    """Record an end vote. A unanimous vote closes the session without recording scores."""
    with _store_errors("vote_end", session_id=sid, player_id=player_id):
        gs = _load_active(session, sid)
        membership = crud.get_session_player(session, gs.id, player_id)
        if membership is None:
            raise NotFound("Player not in session")
        crud.mark_voted_end(session, membership)

        members = crud.list_session_players(session, gs.id)
        voted = sum(1 for m in members if m.voted_end)
        total = len(members)
        logger.info("end_vote_recorded", extra={"session_id": sid, "player_id": player_id})
        if voted < total:
            return VoteResult(voted_count=voted, total_players=total, session_completed=False)

        if crud.complete_session(session, sid, record_progress=False):
            logger.info("session_completed", extra={"session_id": sid, "event": "end_vote"})
        return VoteResult(voted_count=voted, total_players=total, session_completed=True)


# --- reads -------------------------------------------------------------------

def get_session_detail(session: Session, sid: str, viewer_player_id: Optional[str] = None) -> SessionDetail:
    with _store_errors("session_get", session_id=sid):
        gs = crud.get_session_by_id(session, sid)
        if not gs:
            raise NotFound("Session not found")
        detail = SessionDetail(
            session=gs,
            box=crud.get_box(session, gs.box_id),
            host=crud.get_player(session, gs.host_player_id),
            members=crud.list_session_members(session, gs.id),
        )
        if gs.status == models.STATUS_COMPLETED:
            upcoming = levels.next_level(gs.universe_level)
            if upcoming:
                detail.next_session = crud.find_active_session_at_level(session, gs.box_id, upcoming)
        if viewer_player_id:
            prev = None
            if gs.universe_level > levels.MIN_LEVEL:
                prev = crud.get_journal_entry(session, viewer_player_id, gs.universe_level - 1)
            cur = crud.get_journal_entry(session, viewer_player_id, gs.universe_level)
            detail.reference_scores = {
                "previousLevelBest": prev.best_nn if prev else None,
                "currentLevelBest": cur.best_nn if cur else None,
            }
        return detail


# --- box registry ------------------------------------------------------------

def get_box_status(session: Session, box_id: str) -> BoxStatus:
    box_id = normalize_box_id(box_id)
    with _store_errors("box_get", box_id=box_id):
        status = BoxStatus(box_id=box_id, box=crud.get_box(session, box_id))
        gs = crud.get_active_session_for_box(session, box_id)
        if gs:
            members = crud.list_session_players(session, gs.id)
            status.active_session = gs
            status.player_count = len(members)
            status.taken_colors = [m.color for m in members if m.color is not None]
        return status


def register_box(session: Session, box_id: str, email: Optional[str] = None) -> models.GameBox:
    box_id = normalize_box_id(box_id)
    if email is not None:
        email = email.strip().lower() or None
        if email and "@" not in email:
            raise ValidationError("Valid email is required")
    with _store_errors("box_register", box_id=box_id):
        box = crud.register_box(session, box_id, email)
    if box is None:
        raise Conflict("Box already registered")
    logger.info("box_registered", extra={"box_id": box_id})
    return box
