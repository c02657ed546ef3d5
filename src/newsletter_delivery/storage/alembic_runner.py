"""Programmatic Alembic entry points for the delivery store."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

PROJECT_ROOT = Path(__file__).resolve().parents[3]
# Wheels carry the scripts inside the package, see pyproject.toml force-include.
PACKAGED_SCRIPTS = Path(__file__).resolve().parent / "migrations"


def script_location() -> Path:
    """Alembic script directory for a wheel install or a source checkout."""

    if (PACKAGED_SCRIPTS / "env.py").is_file():
        return PACKAGED_SCRIPTS
    return PROJECT_ROOT / "alembic"


def _alembic_config(db_url: str) -> Config:
    # No ini file: everything env.py reads is set here.
    config = Config()
    config.set_main_option("script_location", str(script_location()))
    # ConfigParser interpolation treats "%" as a format marker.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    return config


def upgrade_head(db_url: str) -> None:
    """Apply migrations up to head for any SQLAlchemy URL."""

    command.upgrade(_alembic_config(db_url), "head")


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, or None for an unmigrated store."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
