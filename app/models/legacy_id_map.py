from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, UniqueConstraint

from app.db.base import Base


class LegacyIdMap(Base):
    """legacy data.json id -> new row id, per entity type."""

    __tablename__ = "legacy_id_map"
    __table_args__ = (UniqueConstraint("entity_type", "legacy_id", name="uq_legacy_id_map_entity"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    entity_type = Column(String, nullable=False)  # company / user / transaction / generation / access_request
    legacy_id = Column(String, nullable=False)
    new_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
