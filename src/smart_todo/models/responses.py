import uuid
from datetime import datetime

from pydantic import ConfigDict, Field

from smart_todo.models import CamelModel


class TaskOut(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    text: str
    completed: bool
    image_url: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class TaskListResponse(CamelModel):
    tasks: list[TaskOut] = Field(default_factory=list)
    total: int = Field(ge=0, description="All tasks owned by the caller")
    active: int = Field(ge=0, description="Tasks not yet completed")
    completed: int = Field(ge=0, description="Completed tasks")


class ParseTasksResponse(CamelModel):
    tasks_count: int = Field(ge=1, description="Number of tasks created")
    tasks: list[str] = Field(description="Extracted task texts, in model order")


class ClearCompletedResponse(CamelModel):
    deleted_count: int = Field(ge=0)
