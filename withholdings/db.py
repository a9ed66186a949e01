import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./withholdings.db")

Base = declarative_base()


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(DATABASE_URL, connect_args=_connect_args(DATABASE_URL), future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def make_session_factory(url: str) -> sessionmaker:
    """Build an isolated engine + sessionmaker with all tables created."""
    from withholdings import db_models  # noqa: F401

    isolated = create_engine(url, connect_args=_connect_args(url), future=True)
    Base.metadata.create_all(bind=isolated)
    return sessionmaker(autocommit=False, autoflush=False, bind=isolated, future=True)


def get_db():
    from sqlalchemy.orm import Session

    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    from withholdings import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)
