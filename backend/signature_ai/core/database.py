from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

from signature_ai.core.config import Settings, settings
from signature_ai.core.logging import get_logger

logger = get_logger(__name__)


def build_engine(config: Settings) -> Engine:
    """
    Engine for the attendance database. Connections are checked before use
    and recycled periodically, so a restarted or idle-dropped PostgreSQL
    connection does not surface as a failed request.
    """
    return create_engine(
        config.DATABASE_URL,
        pool_pre_ping=True,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_recycle=config.DB_POOL_RECYCLE_SECONDS,
        echo=config.DB_ECHO
    )


engine = build_engine(settings)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind: Engine = engine) -> None:
    """
    The embeddings table needs the pgvector extension; enable it before any
    Vector column is touched.
    """
    try:
        with bind.begin() as connection:
            connection.execute(text("CREATE EXTENSION IF NOT EXISTS vector;"))

    except SQLAlchemyError as e:
        logger.error(f"Failed to enable pgvector on {bind.url.render_as_string(hide_password=True)}: {e}")
        raise

    logger.info("pgvector extension available")


def get_db():
    """Request-scoped session, closed once the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
