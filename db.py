from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from config import settings


def make_engine(database_url: str) -> Engine:
    """
    Build an engine for the given URL.
    SQLite connections are shared with worker threads, so the
    same-thread check is disabled for them.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}

    return create_engine(
        database_url,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
    )


# Create SQLAlchemy engine
engine = make_engine(settings.DATABASE_URL)


# Session factory
SessionLocal = make_session_factory(engine)


# Base class for all ORM models
Base = declarative_base()


def get_db(purpose):
    """
    Build a dependency that provides a database session opened with the
    database user of the given key purpose, and ensures it is closed after use.
    """
    def get_purpose_db(request: Request):
        db = request.app.state.session_factories[purpose]()
        try:
            yield db
        finally:
            db.close()

    return get_purpose_db


def init_db(bind: Engine = engine) -> None:
    # Imported for its side effect of registering the tables on Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind)
