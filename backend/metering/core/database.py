from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    connect_args: dict = {}
    try:
        url = make_url(database_url)
        if (url.drivername or "").startswith("postgresql"):
            connect_args = {"sslmode": "prefer"}
    except Exception:
        connect_args = {}
    return connect_args


def create_db_engine(database_url: str) -> Engine:
    return create_engine(database_url, connect_args=_connect_args(database_url), pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
