"""
Read-only rollups over the progress journal: global and per-level rankings
and the per-player profile.
"""

from collections import Counter
from typing import Any, Dict, List

from sqlalchemy import func, select as sa_select, desc
from sqlmodel import Session

from . import crud, levels, models
from .errors import NotFound, ValidationError

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def _check_page(limit: int, offset: int) -> None:
    if limit < 1 or limit > MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")
    if offset < 0:
        raise ValidationError("offset must not be negative")


def _player_totals(session: Session) -> List[Dict[str, Any]]:
    """Every player with journal entries, best total first."""
    stmt = (
        sa_select(
            models.ProgressJournal.player_id,
            models.Player.display_name,
            models.Player.is_guest,
            func.sum(models.ProgressJournal.best_nn).label('total'),
            func.count(models.ProgressJournal.id).label('levels'),
        )
        .join(models.Player, models.Player.id == models.ProgressJournal.player_id)
        .group_by(models.ProgressJournal.player_id, models.Player.display_name, models.Player.is_guest)
    )
    totals = [
        {
            'playerId': pid,
            'name': name,
            'isGuest': bool(is_guest),
            'totalBestNn': int(total or 0),
            'levelsCompleted': int(count or 0),
        }
        for pid, name, is_guest, total, count in session.execute(stmt).all()
    ]
    totals.sort(key=lambda r: (-r['totalBestNn'], r['name'] or '', r['playerId']))
    return totals


def global_rankings(session: Session, limit: int = DEFAULT_LIMIT, offset: int = 0) -> Dict[str, Any]:
    """Players ranked by the sum of their best score on every level."""
    _check_page(limit, offset)
    totals = _player_totals(session)
    page = totals[offset:offset + limit]
    return {
        'rankings': [{'rank': offset + i + 1, **row} for i, row in enumerate(page)],
        'total': len(totals),
        'limit': limit,
        'offset': offset,
    }


def level_rankings(session: Session, level: int, limit: int = DEFAULT_LIMIT, offset: int = 0) -> Dict[str, Any]:
    if not levels.is_valid_level(level):
        raise ValidationError(f"Level must be between {levels.MIN_LEVEL} and {levels.MAX_LEVEL}")
    _check_page(limit, offset)

    total = session.execute(
        sa_select(func.count(models.ProgressJournal.id))
        .where(models.ProgressJournal.universe_level == level)
    ).scalar() or 0
    rows = session.execute(
        sa_select(models.ProgressJournal, models.Player)
        .join(models.Player, models.Player.id == models.ProgressJournal.player_id)
        .where(models.ProgressJournal.universe_level == level)
        .order_by(desc(models.ProgressJournal.best_nn), models.ProgressJournal.achieved_at)
        .offset(offset)
        .limit(limit)
    ).all()
    rankings = [
        {
            'rank': offset + i + 1,
            'playerId': entry.player_id,
            'name': player.display_name,
            'isGuest': player.is_guest,
            'bestNn': entry.best_nn,
            'achievedAt': entry.achieved_at,
        }
        for i, (entry, player) in enumerate(rows)
    ]
    return {'rankings': rankings, 'total': int(total), 'level': level, 'limit': limit, 'offset': offset}


def player_profile(session: Session, player_id: str) -> Dict[str, Any]:
    player = crud.get_player(session, player_id)
    if player is None:
        raise NotFound("Player not found")

    progress = crud.list_journal(session, player_id)
    total_best = sum(p.best_nn for p in progress)
    highest = max((p.universe_level for p in progress), default=0)

    global_rank = None
    if total_best > 0:
        for idx, row in enumerate(_player_totals(session), start=1):
            if row['playerId'] == player_id:
                global_rank = idx
                break

    games_played = session.execute(
        sa_select(func.count(models.SessionPlayer.id))
        .where(models.SessionPlayer.player_id == player_id)
    ).scalar() or 0
    recent = crud.recent_memberships(session, player_id, limit=10)

    # most used color among recent sessions
    colors = Counter(sp.color for sp, _ in recent if sp.color)
    favorite = colors.most_common(1)[0][0] if colors else None

    return {
        'player': {
            'id': player.id,
            'name': player.display_name,
            'isGuest': player.is_guest,
            'createdAt': player.created_at,
        },
        'stats': {
            'totalBestNn': total_best,
            'highestLevel': highest,
            'levelsCompleted': len(progress),
            'gamesPlayed': int(games_played),
            'globalRank': global_rank,
            'favoriteColor': favorite,
            'maxUnlockedLevel': crud.max_unlocked_level(session, player_id),
        },
        'progress': [
            {'level': p.universe_level, 'bestNn': p.best_nn, 'achievedAt': p.achieved_at}
            for p in progress
        ],
        'recentSessions': [
            {
                'sessionId': sp.session_id,
                'boxId': gs.box_id,
                'universeLevel': gs.universe_level,
                'status': gs.status,
                'startingNn': sp.starting_nn,
                'finalNn': sp.final_nn,
                'color': sp.color,
                'startedAt': gs.started_at,
                'endedAt': gs.ended_at,
            }
            for sp, gs in recent
        ],
    }
