from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy.engine import Engine

def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)

def init_db(engine: Engine):
    SQLModel.metadata.create_all(engine)

def get_session(engine: Engine):
    # prevent attribute expiration so simple reads after commit are safe
    return Session(engine, expire_on_commit=False)
