from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set
from uuid import uuid4

import httpx

from src.copilot.config import settings
from src.copilot.domain.models.generation import EntityType



class EntityHostError(Exception):
    """Raised when the entity host rejects a create or delete."""


class EntityHost(Protocol):
    """Protocol for the content-management backend that owns course entities."""

    def create_entity(
        self, entity_type: EntityType, parent_id: Optional[str], fields: Mapping[str, Any]
    ) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def delete_entity(self, entity_id: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class StoredEntity:
    id: str
    entity_type: EntityType
    parent_id: Optional[str]
    fields: Dict[str, Any]


class InMemoryEntityHost:
    """Process-local entity host for development and tests."""

    def __init__(self) -> None:
        self._entities: Dict[str, StoredEntity] = {}
        self._lock = Lock()

    def create_entity(self, entity_type: EntityType, parent_id: Optional[str], fields: Mapping[str, Any]) -> str:
        with self._lock:
            if parent_id is not None and parent_id not in self._entities:
                raise EntityHostError(f"Parent entity {parent_id} does not exist")
            entity_id = f"{entity_type.value}-{uuid4().hex[:12]}"
            self._entities[entity_id] = StoredEntity(entity_id, entity_type, parent_id, dict(fields))
            return entity_id

    def delete_entity(self, entity_id: str) -> None:
        with self._lock:
            if self._entities.pop(entity_id, None) is None:
                raise EntityHostError(f"Entity {entity_id} does not exist")

    def get(self, entity_id: str) -> Optional[StoredEntity]:
        with self._lock:
            return self._entities.get(entity_id)

    def count(self) -> int:
        with self._lock:
            return len(self._entities)

    def children_of(self, parent_id: str) -> List[StoredEntity]:
        with self._lock:
            children = [e for e in self._entities.values() if e.parent_id == parent_id]
        return sorted(children, key=lambda e: e.fields.get("order_index", 0))

    def reachable_from(self, root_id: str) -> Set[str]:
        """Ids of the root and every entity linked beneath it."""

        with self._lock:
            if root_id not in self._entities:
                return set()
            reachable = {root_id}
            frontier = [root_id]
            while frontier:
                current = frontier.pop()
                for entity in self._entities.values():
                    if entity.parent_id == current and entity.id not in reachable:
                        reachable.add(entity.id)
                        frontier.append(entity.id)
            return reachable


@dataclass
class RestEntityHostConfig:
    base_url: str
    token: Optional[str]
    timeout_seconds: float

    @classmethod
    def from_settings(cls) -> "RestEntityHostConfig":
        if not settings.entity_host_url:
            raise RuntimeError("ENTITY_HOST_URL must be set to use the REST entity host")
        return cls(
            base_url=settings.entity_host_url.rstrip("/"),
            token=settings.entity_host_token,
            timeout_seconds=settings.entity_host_timeout_seconds,
        )


class RestEntityHost:
    """Entity host speaking JSON over HTTP to a content-management backend.

    Expects ``POST {base}/entities`` returning ``{"id": ...}`` and
    ``DELETE {base}/entities/{id}``. Any transport error or non-2xx status is
    reported as EntityHostError so the pipeline can roll back.
    """

    def __init__(self, config: RestEntityHostConfig, client: Optional[httpx.Client] = None) -> None:
        self._config = config
        headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
        self._client = client or httpx.Client(
            base_url=config.base_url, timeout=config.timeout_seconds, headers=headers
        )

    def create_entity(self, entity_type: EntityType, parent_id: Optional[str], fields: Mapping[str, Any]) -> str:
        payload = {"type": entity_type.value, "parent_id": parent_id, "fields": dict(fields)}
        try:
            response = self._client.post("/entities", json=payload)
        except httpx.HTTPError as exc:
            raise EntityHostError(f"Creating {entity_type.value} failed: {exc}") from exc
        if response.status_code not in (200, 201):
            raise EntityHostError(
                f"Creating {entity_type.value} failed with status {response.status_code}: {response.text}"
            )
        try:
            entity_id = response.json()["id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise EntityHostError(f"Entity host returned an unexpected body: {response.text}") from exc
        return str(entity_id)

    def delete_entity(self, entity_id: str) -> None:
        try:
            response = self._client.delete(f"/entities/{entity_id}")
        except httpx.HTTPError as exc:
            raise EntityHostError(f"Deleting {entity_id} failed: {exc}") from exc
        # A missing entity is already in the state rollback wants.
        if response.status_code not in (200, 202, 204, 404):
            raise EntityHostError(f"Deleting {entity_id} failed with status {response.status_code}")


def get_entity_host_from_env() -> EntityHost:
    """Select an entity host based on ENTITY_HOST_BACKEND.

    - ENTITY_HOST_BACKEND=rest → RestEntityHost (requires ENTITY_HOST_URL)
    - Anything else (or unset) → InMemoryEntityHost
    """

    backend_name = settings.entity_host_backend.lower()
    if backend_name == "rest":
        return RestEntityHost(RestEntityHostConfig.from_settings())
    return InMemoryEntityHost()
