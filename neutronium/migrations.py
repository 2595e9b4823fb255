"""
Database migration system for the Neutronium leaderboard.
Tables and the uniqueness constraints come from the models; migrations add the
lookup indexes the queries rely on.
"""

from sqlmodel import SQLModel, Field, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    __tablename__ = "schema_migrations"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    (
        "001_lookup_indexes",
        """
        -- sessions a player took part in (profile page)
        CREATE INDEX IF NOT EXISTS idx_session_players_player ON session_players(player_id);

        -- level leaderboards
        CREATE INDEX IF NOT EXISTS idx_progress_journal_level_score ON progress_journal(universe_level, best_nn DESC);

        -- next-session lookups per box
        CREATE INDEX IF NOT EXISTS idx_sessions_box_level_status ON sessions(box_id, universe_level, status)
        """,
    ),
    (
        "002_partial_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_magic_tokens_token ON magic_tokens(token) WHERE used_at IS NULL;
        CREATE INDEX IF NOT EXISTS idx_players_email ON players(email) WHERE email IS NOT NULL
        """,
    ),
]


def ensure_migration_table(engine):
    """Ensure the migration tracking table exists"""
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)

    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.info(f"Migration {migration_name} already applied, skipping")
        return False

    logger.info(f"Applying migration: {migration_name}")

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                # drop comment lines, keep the SQL
                lines = [ln for ln in statement.splitlines() if not ln.strip().startswith('--')]
                statement = "\n".join(lines).strip()
                if statement:
                    session.execute(text(statement))

            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()

            logger.info(f"Migration {migration_name} applied successfully")

        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {migration_name}: {e}")
            raise
    return True


def run_migrations(engine=None):
    """Run all pending migrations"""
    if engine is None:
        from .init_db import make_engine
        engine = make_engine()

    for name, sql in MIGRATIONS:
        apply_migration(engine, name, sql)

    logger.info("All migrations completed")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_migrations()
