"""FastAPI dependency injection and payload helpers for secondbrain."""

from typing import Any

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder

from db.repository import ChangeEvent, EntityRepository

# Module-level store handle - set by app startup
_repository: EntityRepository | None = None


def set_repository(repository: EntityRepository | None) -> None:
    """Set the repository used by the store dependency."""
    global _repository  # noqa: PLW0603
    _repository = repository


def get_repository() -> EntityRepository:
    """FastAPI dependency returning the open store."""
    if _repository is None:
        raise HTTPException(status_code=503, detail="Store is not open")
    return _repository


async def enrich_change_event(
    repository: EntityRepository, event: ChangeEvent
) -> dict[str, Any]:
    """Build a websocket event with the full entity, not just its id."""
    if event.action == "ready":
        return {"type": "store_ready", "payload": {}}

    payload: dict[str, Any] = {"table": event.table, "id": event.entity_id}
    if event.action in ("created", "updated") and event.table and event.entity_id:
        entity = await repository.get_by_id(event.table, event.entity_id)
        if entity is not None:
            payload["entity"] = entity
    return {"type": f"entity_{event.action}", "payload": jsonable_encoder(payload)}
