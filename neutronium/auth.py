"""
Player identity.

Signed-in players carry a token ``<player_id>.<expires>.<hmac>`` in the
``auth_token`` cookie. Signing in is passwordless: a one-time magic link is
mailed out, and following it either upgrades the guest that asked for it or
signs into (or creates) the account that owns the email.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode, urlsplit

from fastapi import Request, Response
from sqlmodel import Session

from . import config, crud, mailer, models
from .errors import UpstreamFailure, ValidationError
from .logging_utils import get_logger

logger = get_logger("neutronium.auth")

MAX_EMAIL_LENGTH = 255


def _signature(value: str) -> str:
    return hmac.new(config.SESSION_SECRET.encode(), value.encode(), hashlib.sha256).hexdigest()


def sign_player_token(session: Session, player_id: Optional[str], now: Optional[float] = None) -> Optional[str]:
    """Sign a player id into a cookie token. None if the player does not exist."""
    if not player_id or session.get(models.Player, player_id) is None:
        return None
    expires = int((now if now is not None else time.time()) + config.AUTH_TOKEN_DAYS * 86400)
    val = f"{player_id}.{expires}"
    return f"{val}.{_signature(val)}"


def verify_player_token(session: Session, token: Optional[str], now: Optional[float] = None) -> Optional[str]:
    if not token:
        return None
    try:
        pid, exp_s, sig = token.rsplit('.', 2)
    except ValueError:
        return None
    if not hmac.compare_digest(_signature(f"{pid}.{exp_s}"), sig):
        return None
    try:
        expires = int(exp_s)
    except ValueError:
        return None
    if expires < (now if now is not None else time.time()):
        return None
    if session.get(models.Player, pid) is None:
        return None
    return pid


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        config.AUTH_COOKIE_NAME,
        token,
        max_age=config.AUTH_TOKEN_DAYS * 86400,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite='strict',
        path='/',
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(config.AUTH_COOKIE_NAME, path='/', httponly=True, samesite='strict')


def current_player(session: Session, request: Request) -> Optional[models.Player]:
    pid = verify_player_token(session, request.cookies.get(config.AUTH_COOKIE_NAME))
    if not pid:
        return None
    return session.get(models.Player, pid)


# --- magic links -------------------------------------------------------------

@dataclass
class MagicLinkResult:
    message: str
    existing_account: bool
    dev_link: Optional[str] = None


def normalize_email(email: Optional[str]) -> str:
    cleaned = (email or "").strip().lower()
    if "@" not in cleaned or len(cleaned) > MAX_EMAIL_LENGTH:
        raise ValidationError("Valid email is required")
    return cleaned


def validated_return_url(return_url: Optional[str]) -> Optional[str]:
    """Only same-origin return URLs survive the round trip through the email."""
    if not return_url:
        return None
    target = urlsplit(return_url)
    app = urlsplit(config.APP_URL)
    if target.scheme in ("http", "https") and (target.scheme, target.netloc) == (app.scheme, app.netloc):
        return return_url
    return None


def build_magic_link(token: str, return_url: Optional[str] = None) -> str:
    params = {"token": token}
    if return_url:
        params["return_url"] = return_url
    return f"{config.APP_URL}/api/auth/verify?{urlencode(params)}"


def request_magic_link(
    session: Session,
    email: str,
    player_id: Optional[str] = None,
    return_url: Optional[str] = None,
) -> MagicLinkResult:
    email = normalize_email(email)
    return_url = validated_return_url(return_url)
    existing = crud.get_player_by_email(session, email)
    requester = crud.get_player(session, player_id)
    link_to = requester.id if requester else (existing.id if existing else None)

    mt = crud.create_magic_token(session, email, link_to, config.MAGIC_LINK_TTL_MINUTES)
    link = build_magic_link(mt.token, return_url)
    try:
        mailer.send_magic_link_email(email, link)
    except UpstreamFailure as exc:
        if config.is_dev_mode():
            # keep the token and hand the link back directly
            logger.warning("magic_link_dev_fallback", extra={"email": email, "error": str(exc)})
            return MagicLinkResult(
                message="Dev mode: email sending failed, use devLink to sign in",
                existing_account=existing is not None,
                dev_link=link,
            )
        crud.delete_magic_token(session, mt.token)
        raise

    logger.info("magic_link_sent", extra={"email": email, "player_id": link_to})
    if existing:
        message = "Check your email! A sign-in link has been sent."
    else:
        message = "Check your email! A sign-in link has been sent to create your account."
    return MagicLinkResult(message=message, existing_account=existing is not None)


def verify_magic_link(session: Session, token: Optional[str]) -> models.Player:
    """Consume a magic token and return the player it signs in.

    Raises ValidationError with a user-facing message for unknown, used or
    expired tokens.
    """
    if not token:
        raise ValidationError("Invalid link")
    mt = crud.get_unused_magic_token(session, token)
    if mt is None:
        raise ValidationError("Link is invalid or has already been used")
    if crud.as_utc(mt.expires_at) < datetime.now(timezone.utc):
        raise ValidationError("Link has expired. Please request a new one.")
    email, linked_id = mt.email, mt.player_id
    if not crud.consume_magic_token(session, mt.id):
        raise ValidationError("Link is invalid or has already been used")

    owner = crud.get_player_by_email(session, email)
    linked = crud.get_player(session, linked_id)
    player = None
    if linked is not None:
        if linked.email == email:
            player = linked
        elif linked.email is None and owner is None:
            player = crud.attach_email(session, linked, email)
            logger.info("guest_upgraded", extra={"player_id": player.id})
    if player is None and owner is not None:
        player = owner
    if player is None:
        display_name = email.split("@")[0][:50] or "player"
        player = crud.create_registered_player(session, email, display_name)
        logger.info("player_registered", extra={"player_id": player.id})
    return player
