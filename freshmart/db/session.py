from contextlib import contextmanager
from typing import Iterator
from sqlmodel import SQLModel, create_engine, Session
from freshmart.core.config import settings

def engine_options(database_url: str) -> dict:
    # check_same_thread is needed for SQLite, remove for PostgreSQL
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}

engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

def get_session():
    with Session(engine) as session:
        yield session

@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for work outside a request (startup, seeding)."""
    with Session(engine) as session:
        yield session

def create_db_and_tables():
    # Import models so they are registered with SQLModel metadata
    import freshmart.models  # noqa: F401
    SQLModel.metadata.create_all(engine)
