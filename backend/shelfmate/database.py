from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from shelfmate.core.config import settings
import logging
import time

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 200.0

logger.info("SHELFMATE DATABASE_URL = %s", settings.get_masked_database_url())

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # Sync endpoints run on a thread pool; SQLite connections must be shareable across threads
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    echo=False,
    connect_args=connect_args,
)


def log_slow_queries(target: Engine, threshold_ms: float = SLOW_QUERY_THRESHOLD_MS) -> None:
    """Warn about statements slower than threshold_ms (first line of SQL only)."""

    @event.listens_for(target, "before_cursor_execute")
    def _start_timer(conn, cursor, statement, parameters, context, executemany):
        context._shelfmate_query_started = time.perf_counter()

    @event.listens_for(target, "after_cursor_execute")
    def _report_if_slow(conn, cursor, statement, parameters, context, executemany):
        started = getattr(context, "_shelfmate_query_started", None)
        if started is None:
            return
        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms >= threshold_ms:
            logger.warning("SLOW_QUERY: %.2fms - %s", elapsed_ms, statement.split("\n")[0].strip()[:100])


if settings.DEBUG:
    log_slow_queries(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """
    Ensure all tables exist.

    create_all() only creates missing tables; it never alters existing ones.
    All models are imported first so Base.metadata knows every table.
    """
    from shelfmate import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
