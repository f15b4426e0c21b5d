"""
Engine and session factory for the key-value store.

DATABASE_URL defaults to a SQLite file under data/; any SQLAlchemy URL works
since the store only needs one table.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from config import DATABASE_URL
from db.models import Base

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None) -> None:
    """Create the blobs table if it doesn't exist."""
    Base.metadata.create_all(bind=bind or engine)
