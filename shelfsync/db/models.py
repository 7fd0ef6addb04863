"""
SQLAlchemy database models for the Shelf Sync Service.
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CachedShelf(Base):
    """Last fetched copy of a reading-status shelf."""
    __tablename__ = 'cached_shelf'

    id = Column(Integer, primary_key=True)
    key = Column(String(100), unique=True, index=True, nullable=False)
    payload = Column(JSON, nullable=False)  # Shelf.to_dict()
    position = Column(Integer, default=0)
    last_synced_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Preference(Base):
    """Small key/value settings (sort orders, selected list, shelf keys)."""
    __tablename__ = 'preference'

    id = Column(Integer, primary_key=True)
    key = Column(String(255), unique=True, index=True, nullable=False)
    value = Column(Text, nullable=True)  # JSON encoded
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class VisualAdjustment(Base):
    """Per-book reader display settings, keyed by edition or work ID."""
    __tablename__ = 'visual_adjustment'

    id = Column(Integer, primary_key=True)
    book_id = Column(String(100), unique=True, index=True, nullable=False)
    settings = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
