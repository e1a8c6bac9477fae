"""REST route handlers for the secondbrain API.

Routes are a thin HTTP wrapper over EntityRepository. Repository and
backend exceptions are mapped to status codes by the handlers registered
in api.app.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.websockets import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from api.deps import get_repository
from api.models import (
    TABLE_MODELS,
    HealthResponse,
    ImportEventsRequest,
    ImportEventsResponse,
)
from api.ws import manager
from db.codec import parse_datetime
from db.repository import EntityRepository, InvalidFieldError
from db.schema import TABLES, FieldType
from secondbrain.calendar_import import convert_google_event, import_calendar_events

router = APIRouter()


def _models_for(table: str) -> tuple[type[BaseModel], type[BaseModel]]:
    models = TABLE_MODELS.get(table)
    if models is None:
        raise HTTPException(status_code=404, detail=f"Unknown table '{table}'")
    return models


def _parse_body(
    model: type[BaseModel], body: dict[str, Any], *, partial: bool = False
) -> dict[str, Any]:
    """Validate a request body against a table model; 422 on failure.

    Partial bodies (updates) keep only the fields the client sent.
    """
    try:
        parsed = model.model_validate(body)
    except ValidationError as e:
        raise HTTPException(
            status_code=422, detail=e.errors(include_url=False, include_context=False)
        ) from e
    return parsed.model_dump(by_alias=True, exclude_unset=partial)


def _coerce_filter_value(table: str, key: str, value: str) -> Any:
    """Convert a query-string filter value to the column's declared type."""
    field = TABLES[table].get_field(key)
    if field is None:
        raise InvalidFieldError(f"Unknown field '{key}' for {table}")
    try:
        if field.type is FieldType.BOOLEAN:
            return value.lower() in ("1", "true", "yes")
        if field.type is FieldType.INTEGER:
            return int(value)
        if field.type is FieldType.REAL:
            return float(value)
        if field.type is FieldType.DATETIME:
            return parse_datetime(value)
    except ValueError as e:
        raise InvalidFieldError(f"Invalid filter value for {table}.{key}: {value!r}") from e
    return value


# ── Health ─────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
def health(repo: EntityRepository = Depends(get_repository)) -> dict[str, Any]:
    return {
        "ready": repo.is_ready,
        "backend": repo.backend.kind,
        "schema_state": repo.schema_state,
    }


# ── Entity endpoints ───────────────────────────────────────


@router.get("/tables/{table}")
async def list_entities(
    table: str,
    key: str | None = None,
    value: str | None = None,
    repo: EntityRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List a table, optionally filtered by a single ``key == value``."""
    _models_for(table)
    if key is None:
        return await repo.get_all(table)
    if value is None:
        raise HTTPException(status_code=422, detail="'value' is required with 'key'")
    return await repo.get_by_filter(table, key, _coerce_filter_value(table, key, value))


@router.post("/tables/{table}", status_code=201)
async def create_entity(
    table: str,
    body: dict[str, Any] = Body(...),
    repo: EntityRepository = Depends(get_repository),
) -> dict[str, Any]:
    create_model, _ = _models_for(table)
    return await repo.create(table, _parse_body(create_model, body))


@router.get("/tables/{table}/{entity_id}")
async def get_entity(
    table: str,
    entity_id: str,
    repo: EntityRepository = Depends(get_repository),
) -> dict[str, Any]:
    _models_for(table)
    entity = await repo.get_by_id(table, entity_id)
    if entity is None:
        raise HTTPException(
            status_code=404, detail=f"Object with id {entity_id} not found in {table}"
        )
    return entity


@router.patch("/tables/{table}/{entity_id}")
async def update_entity(
    table: str,
    entity_id: str,
    body: dict[str, Any] = Body(...),
    repo: EntityRepository = Depends(get_repository),
) -> dict[str, Any]:
    _, update_model = _models_for(table)
    return await repo.update(table, entity_id, _parse_body(update_model, body, partial=True))


@router.delete("/tables/{table}/{entity_id}")
async def delete_entity(
    table: str,
    entity_id: str,
    repo: EntityRepository = Depends(get_repository),
) -> dict[str, str]:
    _models_for(table)
    await repo.delete(table, entity_id)
    return {"status": "deleted", "id": entity_id}


@router.get("/tasks/{task_id}/subtasks")
async def list_subtasks(
    task_id: str,
    repo: EntityRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    return await repo.get_subtasks_of(task_id)


@router.post("/calendar/import", response_model=ImportEventsResponse)
async def import_events(
    body: ImportEventsRequest,
    repo: EntityRepository = Depends(get_repository),
) -> dict[str, int]:
    """Import Google Calendar events, skipping ones already stored."""
    try:
        converted = [convert_google_event(e) for e in body.events]
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    result = await import_calendar_events(repo, body.user_id, converted)
    return {"created": result.created, "skipped": result.skipped}


# ── WebSocket endpoint ─────────────────────────────────────


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for live entity change updates."""
    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
