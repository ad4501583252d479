from __future__ import annotations

import logging
from typing import Optional

from src.copilot.config import settings
from src.copilot.infra.db import inmemory as inmemory_repos
from src.copilot.infra.db.models import Base
from src.copilot.infra.db.session import create_engine_for_url, create_sqlalchemy_session_factory
from src.copilot.infra.db.sql_sessions import SqlGenerationTransactionRepository, SqlSessionRepository
from src.copilot.services.generation.pipeline import generation_pipeline
from src.copilot.services.sessions.store import session_store

logger = logging.getLogger(__name__)


def init_sql_repositories(database_url: Optional[str] = None, *, force: bool = False) -> bool:
    """Switch the session and generation repositories to SQL-backed ones.

    A no-op (returning False) unless USE_SQL_REPOS is enabled (or ``force``)
    and a database URL is available; the in-memory repositories stay active
    in that case.
    """

    if not (settings.use_sql_repos or force):
        return False

    db_url = database_url or settings.database_url
    if not db_url:
        logger.warning("USE_SQL_REPOS is enabled but DATABASE_URL is not set; keeping in-memory repositories")
        return False

    engine = create_engine_for_url(db_url)

    # Convenient for early setups; real deployments should run migrations.
    Base.metadata.create_all(engine)

    session_factory = create_sqlalchemy_session_factory(engine)
    sessions = SqlSessionRepository(session_factory)
    transactions = SqlGenerationTransactionRepository(session_factory)

    # Rebind the module singletons so later imports see the SQL repositories,
    # and point the already-built services at them.
    inmemory_repos.session_repository = sessions  # type: ignore[assignment]
    inmemory_repos.generation_transaction_repository = transactions  # type: ignore[assignment]
    session_store.use_repository(sessions)
    generation_pipeline.use_repository(transactions)
    logger.info("Using SQL repositories at %s", engine.url.render_as_string(hide_password=True))
    return True
