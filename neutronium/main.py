from fastapi import FastAPI, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import RedirectResponse, JSONResponse
from sqlmodel import SQLModel, Session
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from urllib.parse import quote

from . import auth, config, crud, leaderboard, levels, lifecycle, models
from .deps import get_session, get_current_player
from .errors import NeutroniumError, ValidationError

import time
from starlette.middleware.base import BaseHTTPMiddleware
from .logging_utils import setup_logging, get_logger, request_id_ctx
import logging
import uuid


setup_logging(logging.INFO)
logger = get_logger("neutronium")
app = FastAPI(title="Neutronium Leaderboard")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # JSON API only; nothing here should be framed or sniffed
        response.headers.setdefault('Content-Security-Policy', "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        if config.COOKIE_SECURE:
            response.headers.setdefault('Strict-Transport-Security', 'max-age=31536000; includeSubDomains')
        return response


app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.APP_URL, *config.ALLOWED_ORIGINS],
    # any localhost port during development
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Accept-Language",
        "Content-Language",
        "Content-Type",
        "X-Requested-With",
        "X-Request-ID",
    ],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": errors})
    return JSONResponse(
        status_code=400,
        content={
            "detail": errors,
            "message": "Input validation failed"
        }
    )


@app.exception_handler(NeutroniumError)
async def neutronium_exception_handler(request: Request, exc: NeutroniumError):
    if exc.status_code >= 500:
        logger.error("request_failed", extra={"method": request.method, "path": request.url.path, "error": exc.message})
    else:
        logger.info(
            "request_rejected",
            extra={"method": request.method, "path": request.url.path, "status": exc.status_code, "error": exc.message},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
def on_startup():
    from .init_db import make_engine
    from .migrations import run_migrations

    engine = make_engine(config.DATABASE_URL)

    # Create tables first
    SQLModel.metadata.create_all(engine)

    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})

    crud.engine = engine
    logger.info("startup_complete")


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


# --- request bodies ----------------------------------------------------------

class ApiBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _color_or_none(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    if not levels.is_valid_color(v):
        raise ValueError(f"color must be one of: {', '.join(levels.COLORS)}")
    return v


class CreateSessionRequest(ApiBody):
    box_id: str = Field(..., alias="boxId", min_length=1, max_length=20)
    universe_level: int = Field(..., alias="universeLevel", ge=levels.MIN_LEVEL, le=levels.MAX_LEVEL)
    player_name: str = Field(..., alias="playerName", min_length=1, max_length=lifecycle.MAX_NAME_LENGTH)
    player_color: Optional[str] = Field(None, alias="playerColor")
    player_id: Optional[str] = Field(None, alias="playerId", max_length=64)

    @field_validator('player_name')
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('playerName cannot be empty')
        return v

    @field_validator('player_color')
    @classmethod
    def check_color(cls, v):
        return _color_or_none(v)


class JoinSessionRequest(ApiBody):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    player_name: str = Field(..., alias="playerName", min_length=1, max_length=lifecycle.MAX_NAME_LENGTH)
    player_color: Optional[str] = Field(None, alias="playerColor")
    player_id: Optional[str] = Field(None, alias="playerId", max_length=64)
    replace_player_id: Optional[str] = Field(None, alias="replacePlayerId", max_length=64)

    @field_validator('player_name')
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('playerName cannot be empty')
        return v

    @field_validator('player_color')
    @classmethod
    def check_color(cls, v):
        return _color_or_none(v)


class SubmitScoreRequest(ApiBody):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    player_id: str = Field(..., alias="playerId", min_length=1, max_length=64)
    final_nn: int = Field(..., alias="finalNn", ge=0)
    color: Optional[str] = None
    starting_nn: Optional[int] = Field(None, alias="startingNn", ge=0)

    @field_validator('color')
    @classmethod
    def check_color(cls, v):
        return _color_or_none(v)


class EndSessionRequest(ApiBody):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    player_id: str = Field(..., alias="playerId", min_length=1, max_length=64)


class RecalculateLevelRequest(ApiBody):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    # the rule covers every member, so the caller's id only goes to the log
    player_id: Optional[str] = Field(None, alias="playerId", max_length=64)


class RegisterBoxRequest(ApiBody):
    email: Optional[str] = Field(None, max_length=255)


class MagicLinkRequest(ApiBody):
    email: str = Field(..., min_length=3, max_length=255)
    player_id: Optional[str] = Field(None, alias="playerId", max_length=64)
    return_url: Optional[str] = Field(None, alias="returnUrl", max_length=2048)


# --- serialisation -----------------------------------------------------------

def _player_dict(p: Optional[models.Player]) -> Optional[dict]:
    if p is None:
        return None
    return {
        "id": p.id,
        "display_name": p.display_name,
        "email": p.email,
        "is_guest": p.is_guest,
        "created_at": p.created_at,
    }


def _member_dict(sp: models.SessionPlayer, p: models.Player) -> dict:
    return {
        **crud.as_dict(sp),
        "player": {"id": p.id, "display_name": p.display_name, "is_guest": p.is_guest},
    }


def _level_change(change: Optional[lifecycle.LevelChange]) -> dict:
    if change is None:
        return {"levelChanged": False}
    return {"levelChanged": True, "previousLevel": change.previous_level, "newLevel": change.new_level}


def _next_session_dict(gs: Optional[models.GameSession]) -> Optional[dict]:
    if gs is None:
        return None
    return {"id": gs.id, "universeLevel": gs.universe_level}


# --- sessions ----------------------------------------------------------------

@app.post("/api/session/create", status_code=201)
def create_session(
    body: CreateSessionRequest,
    session: Session = Depends(get_session),
    current: Optional[models.Player] = Depends(get_current_player),
):
    requested = body.player_id or (current.id if current else None)
    result = lifecycle.create_session(
        session,
        body.box_id,
        body.universe_level,
        body.player_name,
        player_color=body.player_color,
        requested_player_id=requested,
    )
    return {"session": crud.as_dict(result.session), "player": _player_dict(result.player)}


@app.post("/api/session/join")
def join_session(
    body: JoinSessionRequest,
    session: Session = Depends(get_session),
    current: Optional[models.Player] = Depends(get_current_player),
):
    requested = body.player_id or (current.id if current else None)
    result = lifecycle.join_session(
        session,
        body.session_id,
        body.player_name,
        player_color=body.player_color,
        requested_player_id=requested,
        replace_player_id=body.replace_player_id,
    )
    payload = {
        "session": crud.as_dict(result.session),
        "player": _player_dict(result.player),
        "sessionPlayer": crud.as_dict(result.membership),
        "rejoined": result.rejoined,
    }
    if result.replaced_player_id:
        payload["replacedPlayerId"] = result.replaced_player_id
    payload.update(_level_change(result.change))
    return payload


@app.get("/api/session/{session_id}")
def get_session_detail(
    session_id: str,
    player_id: Optional[str] = Query(None, alias="playerId"),
    session: Session = Depends(get_session),
):
    detail = lifecycle.get_session_detail(session, session_id, viewer_player_id=player_id)
    body = crud.as_dict(detail.session)
    body["game_boxes"] = crud.as_dict(detail.box)
    body["host"] = (
        {"id": detail.host.id, "display_name": detail.host.display_name} if detail.host else None
    )
    body["players"] = [_member_dict(sp, p) for sp, p in detail.members]
    payload = {
        "session": body,
        "stats": detail.stats,
        "nextSession": _next_session_dict(detail.next_session),
    }
    if detail.reference_scores is not None:
        payload["referenceScores"] = detail.reference_scores
    return payload


@app.post("/api/session/submit-score")
def submit_score(body: SubmitScoreRequest, session: Session = Depends(get_session)):
    result = lifecycle.submit_score(
        session,
        body.session_id,
        body.player_id,
        body.final_nn,
        color=body.color,
        starting_nn=body.starting_nn,
    )
    return {
        "sessionPlayer": crud.as_dict(result.membership),
        "allSubmitted": result.all_submitted,
        "submittedCount": result.submitted_count,
        "totalPlayers": result.total_players,
        "sessionCompleted": result.session_completed,
        "nextSession": _next_session_dict(result.next_session),
        "campaignComplete": result.campaign_complete,
    }


@app.post("/api/session/end")
def end_session(body: EndSessionRequest, session: Session = Depends(get_session)):
    result = lifecycle.vote_end(session, body.session_id, body.player_id)
    return {
        "sessionCompleted": result.session_completed,
        "votedCount": result.voted_count,
        "totalPlayers": result.total_players,
    }


@app.post("/api/session/recalculate-level")
def recalculate_level(body: RecalculateLevelRequest, session: Session = Depends(get_session)):
    logger.info("recalculate_requested", extra={"session_id": body.session_id, "player_id": body.player_id})
    result = lifecycle.recalculate_level(session, body.session_id)
    payload = {
        "session": crud.as_dict(result.session),
        "playerLevels": [{"playerId": pl.player_id, "maxLevel": pl.max_level} for pl in result.player_levels],
    }
    payload.update(_level_change(result.change))
    return payload


# --- boxes -------------------------------------------------------------------

@app.get("/api/box/{box_id}")
def get_box(box_id: str, session: Session = Depends(get_session)):
    status = lifecycle.get_box_status(session, box_id)
    active = None
    if status.active_session is not None:
        gs = status.active_session
        active = {
            "id": gs.id,
            "universe_level": gs.universe_level,
            "status": gs.status,
            "host_player_id": gs.host_player_id,
            "started_at": gs.started_at,
            "playerCount": status.player_count,
            "takenColors": status.taken_colors,
        }
    return {
        "boxId": status.box_id,
        "registered": status.box is not None,
        "box": crud.as_dict(status.box),
        "activeSession": active,
    }


@app.post("/api/box/{box_id}", status_code=201)
def register_box(box_id: str, body: Optional[RegisterBoxRequest] = None, session: Session = Depends(get_session)):
    box = lifecycle.register_box(session, box_id, email=body.email if body else None)
    return {"box": crud.as_dict(box)}


# --- auth --------------------------------------------------------------------

@app.post("/api/auth/magic-link")
def request_magic_link(body: MagicLinkRequest, session: Session = Depends(get_session)):
    result = auth.request_magic_link(session, body.email, player_id=body.player_id, return_url=body.return_url)
    if result.dev_link:
        return {"message": result.message, "devLink": result.dev_link}
    return {"message": result.message, "existingAccount": result.existing_account}


@app.get("/api/auth/verify")
def verify_magic_link(token: str = "", return_url: Optional[str] = None, session: Session = Depends(get_session)):
    try:
        player = auth.verify_magic_link(session, token)
    except ValidationError as exc:
        logger.info("magic_link_rejected", extra={"error": exc.message})
        return RedirectResponse(url=f"{config.APP_URL}/?auth_error={quote(exc.message)}", status_code=302)
    except NeutroniumError as exc:
        logger.error("magic_link_verify_failed", extra={"error": exc.message})
        return RedirectResponse(
            url=f"{config.APP_URL}/?auth_error={quote('Something went wrong. Please try again.')}",
            status_code=302,
        )

    target = auth.validated_return_url(return_url) or f"{config.APP_URL}/?auth_success=1"
    response = RedirectResponse(url=target, status_code=302)
    auth.set_auth_cookie(response, auth.sign_player_token(session, player.id))
    logger.info("player_signed_in", extra={"player_id": player.id})
    return response


@app.get("/api/auth/me")
def auth_me(current: Optional[models.Player] = Depends(get_current_player)):
    return {"player": _player_dict(current), "authenticated": current is not None}


@app.post("/api/auth/logout")
def auth_logout(response: Response):
    auth.clear_auth_cookie(response)
    return {"authenticated": False}


# --- leaderboard -------------------------------------------------------------

@app.get("/api/leaderboard/global")
def global_leaderboard(
    limit: int = leaderboard.DEFAULT_LIMIT,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    return leaderboard.global_rankings(session, limit=limit, offset=offset)


@app.get("/api/leaderboard/level/{level}")
def level_leaderboard(
    level: int,
    limit: int = leaderboard.DEFAULT_LIMIT,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    return leaderboard.level_rankings(session, level, limit=limit, offset=offset)


@app.get("/api/player/{player_id}")
def player_profile(player_id: str, session: Session = Depends(get_session)):
    return leaderboard.player_profile(session, player_id)
