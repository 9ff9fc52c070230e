"""Database access.

Builds the engine and the session helper used by the repositories.
"""

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session


# make_engine: Creates the engine for a database URL. SQLite connections are
# shared across worker threads, and in-memory databases need a single pool slot.
def make_engine(database_url: str):
    kwargs = {"echo": False}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


# init_db: Creates every table defined in models if missing.
def init_db(engine):
    import models  # noqa: F401  registers the tables on SQLModel.metadata
    SQLModel.metadata.create_all(engine)


class DBSession:
    """Context manager around a Session.

    Rolls back when the block raised and always closes the session.
    Objects stay readable after commit so they can be handed to callers.
    """
    def __init__(self, engine):
        self.engine = engine

    def __enter__(self):
        self.session = Session(self.engine, expire_on_commit=False)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc:
            self.session.rollback()
        self.session.close()
