"""Owner-scoped persistence for todo items.

Every query filters on ``user_id``; a task owned by someone else is reported
as missing rather than forbidden. Each mutating call runs in its own
transaction and commits before returning.
"""

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, NoReturn

from sqlalchemy import case, delete, func, select
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import Executable

from smart_todo.errors import PersistenceFailure, TaskNotFound
from smart_todo.models.requests import TaskFilter
from smart_todo.models.task import Task


logger = logging.getLogger(__name__)


class TaskRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_tasks(self, user_id: str, task_filter: TaskFilter = "all") -> list[Task]:
        stmt = select(Task).where(Task.user_id == user_id)
        if task_filter == "active":
            stmt = stmt.where(Task.completed.is_(False))
        elif task_filter == "completed":
            stmt = stmt.where(Task.completed.is_(True))
        stmt = stmt.order_by(Task.created_at.desc(), Task.id)
        result = await self._execute("list", stmt)
        return list(result.scalars().all())

    async def counts(self, user_id: str) -> tuple[int, int]:
        """Return ``(total, completed)`` for the owner."""
        stmt = select(
            func.count(Task.id),
            func.coalesce(func.sum(case((Task.completed.is_(True), 1), else_=0)), 0),
        ).where(Task.user_id == user_id)
        total, completed = (await self._execute("count", stmt)).one()
        return int(total), int(completed)

    async def get(self, user_id: str, task_id: uuid.UUID) -> Task:
        result = await self._execute(
            "get", select(Task).where(Task.id == task_id, Task.user_id == user_id)
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise TaskNotFound()
        return task

    async def create(self, user_id: str, text: str, image_url: str | None = None) -> Task:
        tasks = await self.insert_many(user_id, [text], image_url)
        return tasks[0]

    async def insert_many(
        self, user_id: str, texts: Sequence[str], image_url: str | None = None
    ) -> list[Task]:
        """Insert one row per text in a single transaction.

        Either every row is committed or none is.
        """
        tasks = [
            Task(user_id=user_id, text=text, completed=False, image_url=image_url or None)
            for text in texts
        ]
        self.session.add_all(tasks)
        await self._commit("insert", count=len(tasks))
        return tasks

    async def update(
        self,
        user_id: str,
        task_id: uuid.UUID,
        *,
        text: str | None = None,
        completed: bool | None = None,
    ) -> Task:
        task = await self.get(user_id, task_id)
        if text is not None:
            task.text = text
        if completed is not None:
            task.completed = completed
        task.updated_at = datetime.now(UTC)
        await self._commit("update", count=1)
        return task

    async def toggle(self, user_id: str, task_id: uuid.UUID) -> Task:
        task = await self.get(user_id, task_id)
        return await self.update(user_id, task_id, completed=not task.completed)

    async def delete(self, user_id: str, task_id: uuid.UUID) -> None:
        task = await self.get(user_id, task_id)
        await self.session.delete(task)
        await self._commit("delete", count=1)

    async def clear_completed(self, user_id: str) -> int:
        result = await self._execute(
            "clear_completed",
            delete(Task).where(Task.user_id == user_id, Task.completed.is_(True)),
            message=None,
        )
        deleted = result.rowcount or 0
        await self._commit("clear_completed", count=deleted)
        return deleted

    async def _execute(
        self, operation: str, stmt: Executable, message: str | None = "Failed to load tasks"
    ) -> Result[Any]:
        try:
            return await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            await self._fail(operation, 0, exc, message)

    async def _commit(self, operation: str, count: int) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self._fail(operation, count, exc)

    async def _fail(
        self, operation: str, count: int, exc: SQLAlchemyError, message: str | None = None
    ) -> NoReturn:
        await self.session.rollback()
        logger.error(
            "Task %s failed (%s rows): %s",
            operation,
            count,
            exc,
            extra={"error.code": PersistenceFailure.code},
        )
        raise PersistenceFailure(message) from exc
