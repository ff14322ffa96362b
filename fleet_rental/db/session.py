import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


FLEET_DB_URL = _require_env("FLEET_DB_URL")


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite") and ":memory:" in url:
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine_fleet = create_engine(
    FLEET_DB_URL,
    future=True,
    **_engine_options(FLEET_DB_URL),
)

SessionLocalFleet = sessionmaker(
    bind=engine_fleet,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
