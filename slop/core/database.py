"""SQLite engine backing the conversation store."""

import logging
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from slop.core.config import settings

logger = logging.getLogger(__name__)


def make_engine(db_path: Path) -> Engine:
    return create_engine(
        f"sqlite:///{db_path}",
        echo=settings.debug,
        connect_args={"check_same_thread": False},
    )


engine = make_engine(settings.db_path)


def init_db(bind: Engine | None = None) -> None:
    import slop.models.conversation  # noqa: F401 - ensure models are registered
    bind = bind or engine
    SQLModel.metadata.create_all(bind)
    logger.debug(f"Database ready at {bind.url}")
