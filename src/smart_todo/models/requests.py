from typing import Literal

from pydantic import ConfigDict, Field

from smart_todo.models import CamelModel


TaskFilter = Literal["all", "active", "completed"]


class ParseTasksRequest(CamelModel):
    text: str | None = Field(
        default=None,
        max_length=10_000,
        description="Free-form text to split into tasks",
    )
    image_url: str | None = Field(
        default=None,
        max_length=2048,
        description="Public URL of an image to extract tasks from",
    )


class TaskCreate(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    text: str = Field(..., min_length=1, max_length=1000)
    image_url: str | None = Field(default=None, max_length=2048)


class TaskUpdate(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    text: str | None = Field(default=None, min_length=1, max_length=1000)
    completed: bool | None = None
