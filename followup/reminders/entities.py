"""Entity provider: the surrounding project system, seen from the reminders service.

It is consulted once, at creation time, to check the entity id and to read the
client contact fields that get frozen onto the reminder.
"""
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class EntitySnapshot:
    entity_id: str
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None


class EntityProvider:
    def get_entity(self, entity_id: str) -> Optional[EntitySnapshot]:
        """Return the entity, or None when the id is unknown."""
        raise NotImplementedError


class NullEntityProvider(EntityProvider):
    """Accepts every entity id and knows no contact details."""

    def get_entity(self, entity_id: str) -> Optional[EntitySnapshot]:
        return EntitySnapshot(entity_id=entity_id)


class StaticEntityProvider(EntityProvider):
    """In-memory provider keyed by entity id."""

    def __init__(self, entities: Optional[Dict[str, EntitySnapshot]] = None):
        self._entities: Dict[str, EntitySnapshot] = dict(entities or {})

    def get_entity(self, entity_id: str) -> Optional[EntitySnapshot]:
        return self._entities.get(entity_id)
