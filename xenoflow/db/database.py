from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from xenoflow import config


class Base(DeclarativeBase):
    pass


def create_session_factory(url: str) -> tuple[Engine, sessionmaker]:
    """Engine plus session factory for a SQLite URL, shareable across threads."""
    bound = create_engine(url, connect_args={"check_same_thread": False})
    return bound, sessionmaker(bind=bound)


engine, SessionLocal = create_session_factory(config.DATABASE_URL)


def init_db(bind: Engine | None = None):
    from xenoflow.db import tables  # noqa: F401 - registers table models
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
