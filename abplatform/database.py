"""Database setup and session management.

SQLAlchemy + SQLite by default (point DATABASE_URL at Postgres for real use).
"""
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from abplatform.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {}
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


@contextmanager
def session_scope():
    """Session for one unit of work. Rolls back if the block raises."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """Initialize database tables (create_all)."""
    # models have to be imported so they register on Base.metadata
    from abplatform import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
