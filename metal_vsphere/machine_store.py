"""Persistence of MachineSpec records.

The driver itself only mutates MachineSpec.location; callers that want the
record to survive between runs save it here after every lifecycle call.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from . import db, logging_config, models
from .schemas import MachineLocation, MachineSpec

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_DRIVER)


class MachineStore:
    """SQLAlchemy-backed store keyed by machine name."""

    def __init__(self, session_factory: Optional[Callable] = None):
        self.session_factory = session_factory or db.SessionLocal

    @staticmethod
    def _to_spec(record: models.MachineRecord) -> MachineSpec:
        location = MachineLocation.model_validate(record.location) if record.location else None
        return MachineSpec(name=record.name, id=record.bootstrap_id, location=location)

    def save(self, spec: MachineSpec) -> None:
        location = spec.location.model_dump(mode="json") if spec.location else None
        session = self.session_factory()
        try:
            record = session.get(models.MachineRecord, spec.name)
            if record is None:
                record = models.MachineRecord(name=spec.name)
                session.add(record)
            record.bootstrap_id = spec.id
            record.location = location
            session.commit()
            logger.debug("Saved machine record %s (server_id=%s)",
                         spec.name, spec.location.server_id if spec.location else None)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load(self, name: str) -> Optional[MachineSpec]:
        session = self.session_factory()
        try:
            record = session.get(models.MachineRecord, name)
            return self._to_spec(record) if record else None
        finally:
            session.close()

    def delete(self, name: str) -> bool:
        """Delete a record. Returns False if there was none."""
        session = self.session_factory()
        try:
            record = session.get(models.MachineRecord, name)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            logger.debug("Deleted machine record %s", name)
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def all(self) -> List[MachineSpec]:
        session = self.session_factory()
        try:
            records = session.query(models.MachineRecord).order_by(models.MachineRecord.name).all()
            return [self._to_spec(record) for record in records]
        finally:
            session.close()
