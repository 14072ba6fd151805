from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from fanout.config import settings


def make_engine(db_url: str):
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    return create_engine(db_url, connect_args=connect_args)


engine = make_engine(settings.ledger_db_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind=None) -> None:
    # registers the table on Base.metadata
    from fanout import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
