"""Mutation executor interface and the in-memory implementation."""

import copy
import logging
import threading
from typing import Any, Optional, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)


class MutationError(Exception):
    """Raised when an executor cannot apply a mutation."""

    def __init__(self, message: str, entity_type: str, entity_id: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
        }


class EntityNotFoundError(MutationError):
    """The target entity does not exist."""


class EntityExistsError(MutationError):
    """An entity with the same id already exists."""


class MutationExecutor(Protocol):
    """Protocol for the data-access layer that applies mutations."""

    def create(
        self, entity_type: str, data: dict[str, Any], entity_id: Optional[str] = None
    ) -> str:
        """Create an entity and return its id."""
        ...

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None:
        """Replace an entity's data."""
        ...

    def delete(self, entity_type: str, entity_id: str) -> None:
        """Delete an entity."""
        ...


def resolve_entity_id(data: dict[str, Any], entity_id: Optional[str]) -> str:
    """Pick the id for a new entity: explicit id, then data["id"], then a fresh one."""
    if entity_id:
        return str(entity_id)
    if data.get("id") is not None:
        return str(data["id"])
    return str(uuid4())


class InMemoryMutationExecutor:
    """Simple in-memory executor for development/testing."""

    def __init__(self) -> None:
        self._entities: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def create(
        self, entity_type: str, data: dict[str, Any], entity_id: Optional[str] = None
    ) -> str:
        """Create an entity and return its id."""
        key = resolve_entity_id(data, entity_id)
        with self._lock:
            bucket = self._entities.setdefault(entity_type, {})
            if key in bucket:
                raise EntityExistsError(
                    f"{entity_type} {key} already exists", entity_type, key
                )
            bucket[key] = copy.deepcopy(data)
        logger.debug(f"Created {entity_type} {key}")
        return key

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None:
        """Replace an entity's data."""
        with self._lock:
            bucket = self._entities.get(entity_type, {})
            if entity_id not in bucket:
                raise EntityNotFoundError(
                    f"{entity_type} {entity_id} not found", entity_type, entity_id
                )
            bucket[entity_id] = copy.deepcopy(data)
        logger.debug(f"Updated {entity_type} {entity_id}")

    def delete(self, entity_type: str, entity_id: str) -> None:
        """Delete an entity."""
        with self._lock:
            bucket = self._entities.get(entity_type, {})
            if entity_id not in bucket:
                raise EntityNotFoundError(
                    f"{entity_type} {entity_id} not found", entity_type, entity_id
                )
            del bucket[entity_id]
        logger.debug(f"Deleted {entity_type} {entity_id}")

    def get(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        """Get a copy of an entity's data."""
        with self._lock:
            data = self._entities.get(entity_type, {}).get(entity_id)
            return copy.deepcopy(data) if data is not None else None

    def list_entities(self, entity_type: str) -> dict[str, dict[str, Any]]:
        """List all entities of a type keyed by id."""
        with self._lock:
            return copy.deepcopy(self._entities.get(entity_type, {}))

    def seed(self, entity_type: str, entities: dict[str, dict[str, Any]]) -> None:
        """Load entities without going through create()."""
        with self._lock:
            self._entities.setdefault(entity_type, {}).update(copy.deepcopy(entities))
