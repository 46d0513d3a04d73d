"""Database engine and session factory for machine records."""
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.environ.get("METAL_VSPHERE_DATABASE_URL", "sqlite:///./metal_vsphere.db")


def make_engine(url: str = DATABASE_URL):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine()
SessionLocal = sessionmaker(autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind=None) -> None:
    # models must be imported so their tables are registered on Base
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
