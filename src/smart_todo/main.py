import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from sqlalchemy.ext.asyncio import AsyncSession

from smart_todo.auth import CurrentUserId, bearer_scheme, get_current_user_id
from smart_todo.config import get_settings
from smart_todo.database import create_engine, create_session_factory, get_session, init_db
from smart_todo.errors import TodoError, Unauthorized
from smart_todo.middleware import MetricsMiddleware
from smart_todo.models.requests import ParseTasksRequest, TaskCreate, TaskFilter, TaskUpdate
from smart_todo.models.responses import (
    ClearCompletedResponse,
    ParseTasksResponse,
    TaskListResponse,
    TaskOut,
)
from smart_todo.services.extraction import TaskExtractor, extract_and_store_tasks
from smart_todo.services.llm import LLMClient, create_llm
from smart_todo.services.tasks import TaskRepository
from smart_todo.telemetry import instrument_engine, instrument_fastapi, setup_telemetry


settings = get_settings()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

setup_telemetry(
    service_name=settings.service_name,
    otlp_endpoint=settings.otlp_endpoint,
    environment=settings.scout_environment,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    engine = create_engine(settings)
    instrument_engine(engine)
    await init_db(engine, attempts=settings.db_connect_attempts)
    app.state.session_factory = create_session_factory(engine)
    logger.info("Database initialized")

    llm = create_llm(
        provider=settings.llm_provider,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        api_key=settings.llm_api_key(),
        timeout=settings.llm_timeout,
        base_url=settings.llm_base_url if settings.llm_provider == "openai_like" else "",
    )
    client = LLMClient(
        provider=settings.llm_provider,
        model=settings.llm_model,
        llm=llm,
        base_url=settings.llm_base_url if settings.llm_provider == "openai_like" else "",
    )
    app.state.extractor = TaskExtractor(client, prompt_version=settings.extract_prompt_version)
    yield
    await engine.dispose()
    logger.info("Database connections closed")


app = FastAPI(title="Smart Todo", lifespan=lifespan)
app.add_middleware(MetricsMiddleware)
instrument_fastapi(app)


def get_extractor(request: Request) -> TaskExtractor:
    return request.app.state.extractor


def get_repository(session: Annotated[AsyncSession, Depends(get_session)]) -> TaskRepository:
    return TaskRepository(session)


ExtractorDep = Annotated[TaskExtractor, Depends(get_extractor)]
RepositoryDep = Annotated[TaskRepository, Depends(get_repository)]


def _record_error_on_span(exc: Exception) -> None:
    span = trace.get_current_span()
    if span.is_recording():
        span.record_exception(exc)
        span.set_attribute("error.type", type(exc).__name__)
        span.set_status(StatusCode.ERROR, str(exc))


def _error_body(message: str, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message, **extra}
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        body["trace_id"] = format(span_context.trace_id, "032x")
    return body


@app.exception_handler(TodoError)
async def todo_error_handler(request: Request, exc: TodoError) -> JSONResponse:
    _record_error_on_span(exc)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "%s %s failed [%s]: %s",
        request.method,
        request.url.path,
        exc.code,
        exc.message,
        extra={"error.code": exc.code},
    )
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message))


async def _caller_id(request: Request) -> str | None:
    credentials = await bearer_scheme(request)
    return get_current_user_id(credentials, get_settings())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Body parsing runs before dependencies, so an anonymous caller with an
    # unparseable body lands here before CurrentUserId can reject it.
    if request.url.path.startswith("/api/") and await _caller_id(request) is None:
        return await todo_error_handler(request, Unauthorized())
    _record_error_on_span(exc)
    logger.warning("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(
        status_code=422,
        content=_error_body("Invalid request", detail=jsonable_encoder(exc.errors())),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    _record_error_on_span(exc)
    logger.error(
        "Unhandled error on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
        extra={"error.code": TodoError.code},
    )
    return JSONResponse(status_code=500, content=_error_body(TodoError.default_message))


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy", "service": settings.service_name}


@app.post("/api/parse-tasks")
async def parse_tasks(
    user_id: CurrentUserId,
    request: ParseTasksRequest,
    extractor: ExtractorDep,
    repository: RepositoryDep,
) -> ParseTasksResponse:
    try:
        result = await extract_and_store_tasks(
            extractor, repository, user_id, text=request.text, image_url=request.image_url
        )
    except TodoError:
        raise
    except Exception as exc:
        logger.exception("Task parsing failed")
        raise TodoError("Failed to parse tasks") from exc
    return ParseTasksResponse(tasks_count=result.created_count, tasks=result.tasks)


@app.get("/api/tasks")
async def list_tasks(
    user_id: CurrentUserId,
    repository: RepositoryDep,
    task_filter: Annotated[TaskFilter, Query(alias="filter")] = "all",
) -> TaskListResponse:
    tasks = await repository.list_tasks(user_id, task_filter)
    total, completed = await repository.counts(user_id)
    return TaskListResponse(
        tasks=[TaskOut.model_validate(task) for task in tasks],
        total=total,
        active=total - completed,
        completed=completed,
    )


@app.post("/api/tasks", status_code=201)
async def create_task(
    user_id: CurrentUserId, request: TaskCreate, repository: RepositoryDep
) -> TaskOut:
    task = await repository.create(user_id, request.text, request.image_url)
    return TaskOut.model_validate(task)


@app.delete("/api/tasks/completed")
async def clear_completed(
    user_id: CurrentUserId, repository: RepositoryDep
) -> ClearCompletedResponse:
    deleted = await repository.clear_completed(user_id)
    return ClearCompletedResponse(deleted_count=deleted)


@app.patch("/api/tasks/{task_id}")
async def update_task(
    task_id: uuid.UUID, user_id: CurrentUserId, request: TaskUpdate, repository: RepositoryDep
) -> TaskOut:
    task = await repository.update(
        user_id, task_id, text=request.text, completed=request.completed
    )
    return TaskOut.model_validate(task)


@app.post("/api/tasks/{task_id}/toggle")
async def toggle_task(
    task_id: uuid.UUID, user_id: CurrentUserId, repository: RepositoryDep
) -> TaskOut:
    task = await repository.toggle(user_id, task_id)
    return TaskOut.model_validate(task)


@app.delete("/api/tasks/{task_id}", status_code=204)
async def delete_task(
    task_id: uuid.UUID, user_id: CurrentUserId, repository: RepositoryDep
) -> None:
    await repository.delete(user_id, task_id)


def run() -> None:
    import uvicorn

    uvicorn.run("smart_todo.main:app", host=settings.host, port=settings.port)
