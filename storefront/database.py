from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# Base class for declarative ORM models.
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for a connection string."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sessions are used from FastAPI's threadpool and the notification worker.
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    # Create a configured "Session" class for database interactions.
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    """FastAPI dependency to get a DB session for a single request."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        # Ensure the session is always closed after the request is finished.
        db.close()
