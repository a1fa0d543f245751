from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

def make_engine(database_url: str):
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty database
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)

def init_db(engine):
    SQLModel.metadata.create_all(engine)

def get_session(engine):
    # 👇 prevent attribute expiration so simple reads after commit are safe
    return Session(engine, expire_on_commit=False)
