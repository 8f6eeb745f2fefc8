"""
SQLAlchemy models for entity persistence.

Tables:
- entity_records: JSON snapshots of imported entities, keyed by type and id
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class EntityRecordModel(Base):
    """Entity record table."""

    __tablename__ = "entity_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(100), nullable=False, index=True)
    entity_id = Column(String(100), nullable=False)

    # Full entity snapshot
    data = Column(JSON, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_entity_records_type_id"),
        Index("ix_entity_records_type_created", "entity_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EntityRecord {self.entity_type}/{self.entity_id}>"
