from typing import Optional

from fastapi import Depends, Request
from sqlmodel import Session

from . import auth, crud, models


def get_session():
    # one store session per request
    with Session(crud.engine) as session:
        yield session


def get_current_player(request: Request, session: Session = Depends(get_session)) -> Optional[models.Player]:
    return auth.current_player(session, request)
