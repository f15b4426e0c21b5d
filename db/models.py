"""
SQLAlchemy ORM model backing the key-value persistence store.

The store holds one JSON blob per key (schedule tables, reliability table,
download timestamps); see db/store.py for the keys in use.
"""

from sqlalchemy import Column, LargeBinary, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class StoredBlob(Base):
    __tablename__ = "blobs"

    key = Column(String, primary_key=True)
    value = Column(LargeBinary, nullable=False)
    updated_at = Column(String)  # ISO 8601 timestamp
