from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from consensus.core.config import get_settings


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Request handlers, the grace-period task and the timer sweep share the pool.
        connect_args = {"check_same_thread": False, "timeout": 15}
    return create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
