"""Pydantic request/response models for the secondbrain API.

Request bodies are validated per table before they reach the repository.
``_id`` is accepted on create through an alias since pydantic reserves
leading-underscore attribute names.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from db.schema import CALENDAR_EVENT, SUBTASK, TASK, USER

Priority = Literal["high", "medium", "low"]
CheckInFrequency = Literal["daily", "weekly", "none"]
Provider = Literal["email", "google"]
EventCategory = Literal["work", "personal", "health", "education", "social", "other"]


class EntityBody(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CreateBody(EntityBody):
    id: str | None = Field(default=None, alias="_id")


# ── Request models ──────────────────────────────────────


class CreateUserRequest(CreateBody):
    userId: str
    email: str
    name: str
    provider: Provider
    timeZone: str | None = None
    notificationsEnabled: bool | None = None


class UpdateUserRequest(EntityBody):
    email: str | None = None
    name: str | None = None
    provider: Provider | None = None
    timeZone: str | None = None
    notificationsEnabled: bool | None = None


class CreateTaskRequest(CreateBody):
    userId: str
    title: str
    description: str | None = None
    dueDate: datetime
    priority: Priority
    completed: bool = False
    checkInFrequency: CheckInFrequency = "none"


class UpdateTaskRequest(EntityBody):
    title: str | None = None
    description: str | None = None
    dueDate: datetime | None = None
    priority: Priority | None = None
    completed: bool | None = None
    checkInFrequency: CheckInFrequency | None = None


class CreateSubTaskRequest(CreateBody):
    taskId: str
    title: str
    completed: bool = False
    priority: Priority | None = None
    timeEstimate: int | None = None
    orderIndex: int


class UpdateSubTaskRequest(EntityBody):
    title: str | None = None
    completed: bool | None = None
    priority: Priority | None = None
    timeEstimate: int | None = None
    orderIndex: int | None = None


class CreateCalendarEventRequest(CreateBody):
    userId: str
    title: str
    description: str | None = None
    start: datetime
    end: datetime
    allDay: bool | None = None
    location: str | None = None
    category: EventCategory = "other"
    color: str
    googleEventId: str | None = None


class UpdateCalendarEventRequest(EntityBody):
    title: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    allDay: bool | None = None
    location: str | None = None
    category: EventCategory | None = None
    color: str | None = None
    googleEventId: str | None = None


class ImportEventsRequest(BaseModel):
    user_id: str
    events: list[dict[str, Any]]


TABLE_MODELS: dict[str, tuple[type[CreateBody], type[EntityBody]]] = {
    USER: (CreateUserRequest, UpdateUserRequest),
    TASK: (CreateTaskRequest, UpdateTaskRequest),
    SUBTASK: (CreateSubTaskRequest, UpdateSubTaskRequest),
    CALENDAR_EVENT: (CreateCalendarEventRequest, UpdateCalendarEventRequest),
}


# ── Response models ─────────────────────────────────────


class HealthResponse(BaseModel):
    ready: bool
    backend: str
    schema_state: str


class ImportEventsResponse(BaseModel):
    created: int
    skipped: int


class WebSocketEvent(BaseModel):
    type: str
    payload: dict
