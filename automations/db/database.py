from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from automations import config


class Base(DeclarativeBase):
    pass


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine)


def init_db(bind=None):
    from automations.db import tables  # noqa: F401 - registers table models
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
