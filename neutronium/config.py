"""
Runtime configuration read from the environment.
Other modules read these as ``config.NAME`` at call time so tests can monkeypatch them.
"""

import os


def _database_url() -> str:
    # Heroku-style postgres:// URLs are not accepted by SQLAlchemy 2.x
    raw = os.getenv("DATABASE_URL", "sqlite:///./neutronium.db")
    if raw.startswith("postgres://"):
        return raw.replace("postgres://", "postgresql://", 1)
    return raw


DATABASE_URL = _database_url()

# secret for signing player tokens; override with SESSION_SECRET env var in production
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")
AUTH_COOKIE_NAME = "auth_token"
AUTH_TOKEN_DAYS = int(os.getenv("AUTH_TOKEN_DAYS", "7"))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "0") in ("1", "true", "True")

MAGIC_LINK_TTL_MINUTES = int(os.getenv("MAGIC_LINK_TTL_MINUTES", "15"))
APP_URL = os.getenv("APP_URL", "http://localhost:8788").rstrip("/")

RESEND_API_URL = "https://api.resend.com/emails"
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
FROM_EMAIL = os.getenv("FROM_EMAIL", "Neutronium <noreply@resend.dev>")

ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()]


def is_dev_mode() -> bool:
    return "localhost" in APP_URL or "127.0.0.1" in APP_URL
