from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from skyddad.config import settings


def _connect_args() -> dict:
    if settings.is_sqlite:
        # SQLite specific; timeout is the busy wait for the write lock
        return {"check_same_thread": False, "timeout": 15}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(),
    pool_pre_ping=not settings.is_sqlite,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    """Dependency for FastAPI endpoints to get a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
