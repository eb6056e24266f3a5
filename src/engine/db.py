# src/engine/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from engine.models import Base

IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def make_engine(database_url: str):
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    if database_url in IN_MEMORY_URLS:
        # one shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def make_session_factory(database_url: str) -> sessionmaker:
    engine = make_engine(database_url)
    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)
