import os
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from drama_gateway.utils.config_loader import config_loader

project_root = Path(__file__).resolve().parents[2]

Base = declarative_base()


def _resolve_database_url(url: str) -> str:
    # Resolve relative SQLite paths against the project root and make sure the directory exists
    if url.startswith("sqlite:///"):
        path_part = url.replace("sqlite:///", "", 1)
        if not path_part or path_part == ":memory:":
            return url
        path = Path(path_part)
        if not path.is_absolute():
            path = (project_root / path_part).resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path}"
    return url


def create_db_engine(url: str):
    url = _resolve_database_url(url)
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(url, connect_args=connect_args)


DATABASE_URL = os.environ.get("DATABASE_URL") or config_loader.get("database.url")

engine = create_db_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory=None):
    """Session for one unit of work; rolled back if the block raises."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
