"""
Migration Runner - Runs Alembic migrations at application startup.

Alembic's command API is synchronous, so the asyncpg URL is swapped for
psycopg2 and the runner is called from a worker thread.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from broker.config import settings

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def sync_database_url(url: str | None = None) -> str:
    """Convert the async driver URL into one the alembic command API can use."""
    return (url or settings.database_url).replace("+asyncpg", "+psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def build_alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_database_url().replace("%", "%%"))
    return alembic_cfg


def run_migrations() -> None:
    """
    Apply pending Alembic migrations.

    Does nothing when alembic.ini is absent or the schema is already at head.

    Raises:
        RuntimeError: A migration failed
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    try:
        alembic_cfg = build_alembic_config()
        engine = create_engine(sync_database_url())
        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info("database_schema_current", revision=current)
                return

            logger.info("database_migration_started", from_revision=current, to_revision=head)
            command.upgrade(alembic_cfg, "head")
            logger.info("database_migration_completed", revision=_get_current_revision(engine))
        finally:
            engine.dispose()

    except Exception as exc:
        logger.error("database_migration_failed", error=str(exc))
        raise RuntimeError(f"Database migration failed: {exc}") from exc
