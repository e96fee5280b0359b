from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, create_engine, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

metadata = MetaData()

audits = Table(
    "audits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("feature_key", String(255), nullable=False, index=True),
    Column("actor", String(255), nullable=False),
    Column("action", String(32), nullable=False),
    Column("before_state", Text),
    Column("after_state", Text),
    Column("created_at", DateTime, server_default=func.now()),
)


def make_engine(url: str, **kwargs) -> Engine:
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True, **kwargs)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, future=True, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10, future=True, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine):
    metadata.create_all(engine)
