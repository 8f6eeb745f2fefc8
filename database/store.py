"""Database-backed mutation executor."""

import copy
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from database.models import EntityRecordModel
from database.session import session_scope
from ledger.executor import EntityExistsError, EntityNotFoundError, resolve_entity_id

logger = logging.getLogger(__name__)


class DatabaseMutationExecutor:
    """
    Production mutation executor using SQLAlchemy.

    Implements the MutationExecutor protocol over the entity_records table.
    Every call runs in its own session_scope(), so a failed mutation is
    rolled back without affecting earlier ones.
    """

    @staticmethod
    def _find(session: Session, entity_type: str, entity_id: str) -> Optional[EntityRecordModel]:
        return session.execute(
            select(EntityRecordModel).where(
                EntityRecordModel.entity_type == entity_type,
                EntityRecordModel.entity_id == entity_id,
            )
        ).scalar_one_or_none()

    def create(
        self, entity_type: str, data: dict[str, Any], entity_id: Optional[str] = None
    ) -> str:
        """
        Insert an entity record.

        Args:
            entity_type: Logical resource name.
            data: Full entity snapshot.
            entity_id: Id to use; falls back to data["id"], then a new UUID.

        Returns:
            The entity id.

        Raises:
            EntityExistsError: If the id is already taken.
        """
        key = resolve_entity_id(data, entity_id)
        with session_scope() as session:
            if self._find(session, entity_type, key) is not None:
                raise EntityExistsError(f"{entity_type} {key} already exists", entity_type, key)
            session.add(
                EntityRecordModel(entity_type=entity_type, entity_id=key, data=copy.deepcopy(data))
            )

        logger.debug(f"Created {entity_type} {key}")
        return key

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None:
        """
        Replace an entity's snapshot.

        Raises:
            EntityNotFoundError: If the entity does not exist.
        """
        with session_scope() as session:
            record = self._find(session, entity_type, entity_id)
            if record is None:
                raise EntityNotFoundError(
                    f"{entity_type} {entity_id} not found", entity_type, entity_id
                )
            record.data = copy.deepcopy(data)

        logger.debug(f"Updated {entity_type} {entity_id}")

    def delete(self, entity_type: str, entity_id: str) -> None:
        """
        Delete an entity record.

        Raises:
            EntityNotFoundError: If the entity does not exist.
        """
        with session_scope() as session:
            record = self._find(session, entity_type, entity_id)
            if record is None:
                raise EntityNotFoundError(
                    f"{entity_type} {entity_id} not found", entity_type, entity_id
                )
            session.delete(record)

        logger.debug(f"Deleted {entity_type} {entity_id}")

    def get(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        """Get an entity's snapshot, or None."""
        with session_scope() as session:
            record = self._find(session, entity_type, entity_id)
            return copy.deepcopy(record.data) if record is not None else None

    def list_entities(
        self, entity_type: str, limit: int = 100, offset: int = 0
    ) -> dict[str, dict[str, Any]]:
        """List entities of a type keyed by id, oldest first."""
        with session_scope() as session:
            records = session.execute(
                select(EntityRecordModel)
                .where(EntityRecordModel.entity_type == entity_type)
                .order_by(EntityRecordModel.created_at, EntityRecordModel.id)
                .limit(limit)
                .offset(offset)
            ).scalars()
            return {record.entity_id: copy.deepcopy(record.data) for record in records}
