from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from .db import Base


def _utcnow():
    return datetime.now(timezone.utc)


class MachineRecord(Base):
    __tablename__ = "machine_records"
    name = Column(String, primary_key=True, index=True)
    bootstrap_id = Column(String, nullable=True)
    location = Column(JSON(none_as_null=True), nullable=True)  # MachineLocation as JSON
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
