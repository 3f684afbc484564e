from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def build_engine(db_url: str):
    if db_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url:
            # one shared connection, otherwise every checkout sees an empty database
            options["poolclass"] = StaticPool
        return create_engine(db_url, future=True, **options)
    return create_engine(db_url, pool_pre_ping=True, future=True)


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
