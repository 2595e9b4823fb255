import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine, Session, select

from neutronium.main import app
from neutronium import auth, config, crud, mailer, models
from neutronium.errors import UpstreamFailure, ValidationError


def setup_db(tmp_path):
    db = tmp_path / 'auth.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(email, link):
        sent.append((email, link))
        return {"id": "email_1"}

    monkeypatch.setattr(mailer, 'send_magic_link_email', fake_send)
    return sent


def token_from(link):
    return parse_qs(urlsplit(link).query)["token"][0]


def test_player_token_sign_and_verify(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        assert auth.sign_player_token(s, 'missing') is None
        assert auth.sign_player_token(s, None) is None

        p = crud.create_guest_player(s, 'Ava')
        tok = auth.sign_player_token(s, p.id)
        assert tok.startswith(p.id + '.')
        assert auth.verify_player_token(s, tok) == p.id

        assert auth.verify_player_token(s, None) is None
        assert auth.verify_player_token(s, 'garbage') is None
        bad = tok[:-1] + ('0' if tok[-1] != '0' else '1')
        assert auth.verify_player_token(s, bad) is None

        # a week later the token has expired
        later = time.time() + (config.AUTH_TOKEN_DAYS + 1) * 86400
        assert auth.verify_player_token(s, tok, now=later) is None

        # signed with another secret
        old = auth.sign_player_token(s, p.id)
        original = config.SESSION_SECRET
        config.SESSION_SECRET = 'rotated'
        try:
            assert auth.verify_player_token(s, old) is None
        finally:
            config.SESSION_SECRET = original


def test_return_url_must_stay_on_app_origin(monkeypatch):
    monkeypatch.setattr(config, 'APP_URL', 'https://play.neutronium.example')
    assert auth.validated_return_url('https://play.neutronium.example/box/NE-2026-00001') is not None
    assert auth.validated_return_url('https://evil.example/phish') is None
    assert auth.validated_return_url('javascript:alert(1)') is None
    assert auth.validated_return_url('//evil.example') is None
    assert auth.validated_return_url(None) is None


def test_magic_link_upgrades_requesting_guest(tmp_path, outbox):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        guest = crud.create_guest_player(s, 'Ben')
        res = auth.request_magic_link(s, ' Ben@Example.com ', player_id=guest.id)
        assert res.existing_account is False
        assert res.dev_link is None
        assert outbox[0][0] == 'ben@example.com'
        token = token_from(outbox[0][1])
        assert len(token) == 64

        player = auth.verify_magic_link(s, token)
        assert player.id == guest.id
        assert player.email == 'ben@example.com'
        assert player.is_guest is False

        with pytest.raises(ValidationError) as exc:
            auth.verify_magic_link(s, token)
        assert exc.value.message == "Link is invalid or has already been used"


def test_magic_link_signs_into_existing_owner(tmp_path, outbox):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        owner = crud.create_registered_player(s, 'ava@example.com', 'Ava')
        guest = crud.create_guest_player(s, 'Ava on a phone')

        res = auth.request_magic_link(s, 'ava@example.com', player_id=guest.id)
        assert res.existing_account is True

        player = auth.verify_magic_link(s, token_from(outbox[0][1]))
        assert player.id == owner.id
        # the guest stays a guest; the email already belongs to someone
        assert crud.get_player(s, guest.id).is_guest is True


def test_magic_link_creates_new_account(tmp_path, outbox):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        auth.request_magic_link(s, 'new.player@example.com')
        player = auth.verify_magic_link(s, token_from(outbox[0][1]))
        assert player.email == 'new.player@example.com'
        assert player.display_name == 'new.player'
        assert player.is_guest is False


def test_expired_and_unknown_links_are_rejected(tmp_path, outbox):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        auth.request_magic_link(s, 'late@example.com')
        token = token_from(outbox[0][1])
        mt = s.exec(select(models.MagicToken).where(models.MagicToken.token == token)).one()
        mt.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        s.add(mt)
        s.commit()

        with pytest.raises(ValidationError) as exc:
            auth.verify_magic_link(s, token)
        assert "expired" in exc.value.message
        assert crud.get_player_by_email(s, 'late@example.com') is None

        with pytest.raises(ValidationError):
            auth.verify_magic_link(s, 'f' * 64)
        with pytest.raises(ValidationError):
            auth.verify_magic_link(s, '')


def test_magic_link_rejects_bad_email(tmp_path, outbox):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        with pytest.raises(ValidationError):
            auth.request_magic_link(s, 'not-an-email')
        assert outbox == []


def test_send_failure_in_dev_mode_returns_link(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)

    def failing(email, link):
        raise UpstreamFailure("Failed to send email: RESEND_API_KEY is not configured")

    monkeypatch.setattr(mailer, 'send_magic_link_email', failing)
    monkeypatch.setattr(config, 'APP_URL', 'http://localhost:8788')
    with Session(engine) as s:
        res = auth.request_magic_link(s, 'dev@example.com', return_url='http://localhost:8788/play')
        assert res.dev_link.startswith('http://localhost:8788/api/auth/verify?token=')
        assert 'return_url=' in res.dev_link
        # the token stays usable
        player = auth.verify_magic_link(s, token_from(res.dev_link))
        assert player.email == 'dev@example.com'


def test_send_failure_in_production_discards_token(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)

    def failing(email, link):
        raise UpstreamFailure("Failed to send email: rejected")

    monkeypatch.setattr(mailer, 'send_magic_link_email', failing)
    monkeypatch.setattr(config, 'APP_URL', 'https://play.neutronium.example')
    with Session(engine) as s:
        with pytest.raises(UpstreamFailure):
            auth.request_magic_link(s, 'prod@example.com')
        assert s.exec(select(models.MagicToken)).all() == []


def test_auth_routes_round_trip(tmp_path, outbox, monkeypatch):
    setup_db(tmp_path)
    monkeypatch.setattr(config, 'APP_URL', 'http://localhost:8788')
    client = TestClient(app)

    me = client.get('/api/auth/me')
    assert me.json() == {"player": None, "authenticated": False}

    r = client.post('/api/auth/magic-link', json={"email": "ava@example.com"})
    assert r.status_code == 200
    assert r.json()["existingAccount"] is False
    assert "devLink" not in r.json()
    token = token_from(outbox[0][1])

    v = client.get('/api/auth/verify', params={"token": token}, follow_redirects=False)
    assert v.status_code == 302
    assert v.headers["location"] == 'http://localhost:8788/?auth_success=1'
    assert config.AUTH_COOKIE_NAME in v.cookies

    me = client.get('/api/auth/me').json()
    assert me["authenticated"] is True
    assert me["player"]["email"] == "ava@example.com"

    reused = client.get('/api/auth/verify', params={"token": token}, follow_redirects=False)
    assert reused.status_code == 302
    assert 'auth_error=' in reused.headers["location"]

    out = client.post('/api/auth/logout')
    assert out.json() == {"authenticated": False}
    assert 'auth_token=' in out.headers["set-cookie"]
    client.cookies.clear()
    assert client.get('/api/auth/me').json()["authenticated"] is False


def test_verify_route_honours_same_origin_return_url(tmp_path, outbox, monkeypatch):
    setup_db(tmp_path)
    monkeypatch.setattr(config, 'APP_URL', 'http://localhost:8788')
    client = TestClient(app)

    client.post('/api/auth/magic-link', json={
        "email": "ret@example.com", "returnUrl": "http://localhost:8788/box/NE-2026-00001",
    })
    link = outbox[0][1]
    query = parse_qs(urlsplit(link).query)
    assert query["return_url"] == ["http://localhost:8788/box/NE-2026-00001"]

    v = client.get('/api/auth/verify', params=query, follow_redirects=False)
    assert v.headers["location"] == "http://localhost:8788/box/NE-2026-00001"

    bad = client.post('/api/auth/magic-link', json={"email": "x@example.com", "returnUrl": "https://evil.example"})
    assert bad.status_code == 200
    assert "return_url" not in outbox[1][1]


def test_magic_link_route_validation(tmp_path, outbox):
    setup_db(tmp_path)
    client = TestClient(app)
    assert client.post('/api/auth/magic-link', json={}).status_code == 400
    assert client.post('/api/auth/magic-link', json={"email": "nope"}).status_code == 400
    assert outbox == []
