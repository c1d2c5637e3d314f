"""Entity lookups used by date-based and entity-scoped schedule triggers."""

from __future__ import annotations

import copy
from datetime import date
from typing import Any, Iterable, Mapping, Protocol

from .utils.clock import as_date
from .utils.templating import MISSING, get_nested


class EntitySource(Protocol):
    """Read access to business entities (leases, payments, requests ...)."""

    async def find_by_date_range(
        self, entity_type: str, field: str, start: date, end: date
    ) -> list[dict[str, Any]]:
        """Return entities whose ``field`` date lies within ``[start, end]``."""

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]:
        """Return every entity of ``entity_type``."""


class InMemoryEntitySource:
    """Entity source over snapshots held in memory, keyed by their ``id``."""

    def __init__(self, entities: Mapping[str, Iterable[Mapping[str, Any]]] | None = None) -> None:
        self._entities: dict[str, dict[str, dict[str, Any]]] = {}
        for entity_type, items in (entities or {}).items():
            for item in items:
                self.put(entity_type, item)

    def put(self, entity_type: str, entity: Mapping[str, Any]) -> None:
        if "id" not in entity:
            raise ValueError("entities need an 'id'")
        self._entities.setdefault(entity_type, {})[str(entity["id"])] = copy.deepcopy(
            dict(entity)
        )

    def remove(self, entity_type: str, entity_id: str) -> None:
        self._entities.get(entity_type, {}).pop(entity_id, None)

    async def find_by_date_range(
        self, entity_type: str, field: str, start: date, end: date
    ) -> list[dict[str, Any]]:
        found = []
        for entity in self._entities.get(entity_type, {}).values():
            value = get_nested(entity, field)
            if value is MISSING:
                continue
            when = as_date(value)
            if when is not None and start <= when <= end:
                found.append(copy.deepcopy(entity))
        return found

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(e) for e in self._entities.get(entity_type, {}).values()]
