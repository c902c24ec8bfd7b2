"""Turn free text or an image into stored todo items.

The model is asked to list the to-do items it finds, one per line. The reply
is normalized into task strings and every string becomes one ``Task`` row.
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

from llama_index.core.llms import ChatMessage, ImageBlock, MessageRole, TextBlock
from opentelemetry import metrics

from smart_todo.errors import (
    ExtractionEmpty,
    InvalidInput,
    Unauthorized,
    UpstreamExtractionFailure,
)
from smart_todo.services.llm import LLMClient
from smart_todo.services.prompts import load_prompt
from smart_todo.services.tasks import TaskRepository


logger = logging.getLogger(__name__)

extracted_tasks = metrics.get_meter("smart_todo").create_histogram(
    name="todo.extraction.tasks",
    description="Number of tasks extracted per submission",
    unit="{task}",
)

ENDPOINT = "/api/parse-tasks"

_ENUMERATION_PREFIX_RE = re.compile(r"^\d+\.\s*")


def parse_task_lines(reply: str | None) -> list[str]:
    """Split a model reply into task strings.

    Blank lines are dropped and a leading ``"<digits>. "`` is removed from
    each line. Lines left empty after that are dropped as well.
    """
    if not reply:
        return []
    tasks = []
    for line in reply.split("\n"):
        task = _ENUMERATION_PREFIX_RE.sub("", line.strip()).strip()
        if task:
            tasks.append(task)
    return tasks


def _is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _modality(text: str | None, image_url: str | None) -> str:
    if text and image_url:
        return "text+image"
    return "image" if image_url else "text"


class TaskExtractor:
    def __init__(self, client: LLMClient, prompt_version: str = "v1") -> None:
        self.client = client
        self._prompt = load_prompt(f"extract_tasks_{prompt_version}")

    def build_messages(self, text: str | None, image_url: str | None) -> list[ChatMessage]:
        messages = [ChatMessage(role=MessageRole.SYSTEM, content=self._prompt.system)]
        if image_url:
            if not _is_http_url(image_url):
                raise InvalidInput("imageUrl must be an http(s) URL")
            messages.append(
                ChatMessage(
                    role=MessageRole.USER,
                    blocks=[TextBlock(text=self._prompt.user), ImageBlock(url=image_url)],
                )
            )
        if text:
            messages.append(ChatMessage(role=MessageRole.USER, content=text))
        return messages

    async def extract(self, text: str | None, image_url: str | None) -> list[str]:
        messages = self.build_messages(text, image_url)
        try:
            reply = await self.client.chat(messages, endpoint=ENDPOINT)
        except Exception as exc:
            logger.error(
                "Extraction model call failed: %s: %s",
                type(exc).__name__,
                exc,
                extra={"error.code": UpstreamExtractionFailure.code},
            )
            raise UpstreamExtractionFailure() from exc

        tasks = parse_task_lines(reply)
        extracted_tasks.record(len(tasks), {"input.modality": _modality(text, image_url)})
        if not tasks:
            logger.info("Extraction produced no tasks", extra={"error.code": ExtractionEmpty.code})
            raise ExtractionEmpty()
        return tasks


@dataclass(frozen=True)
class ExtractionResult:
    created_count: int
    tasks: list[str]


async def extract_and_store_tasks(
    extractor: TaskExtractor,
    repository: TaskRepository,
    owner_id: str | None,
    text: str | None = None,
    image_url: str | None = None,
) -> ExtractionResult:
    """Extract tasks from ``text`` and/or ``image_url`` and store them for ``owner_id``.

    The owner is checked first so unauthenticated calls never reach the model.
    Nothing is written unless extraction yields at least one task, and the
    rows are written in one transaction.
    """
    if not owner_id:
        raise Unauthorized()

    text = text if text and text.strip() else None
    image_url = image_url.strip() if image_url and image_url.strip() else None
    if text is None and image_url is None:
        raise InvalidInput()

    tasks = await extractor.extract(text, image_url)
    await repository.insert_many(owner_id, tasks, image_url)
    logger.info(
        "Stored %d extracted tasks",
        len(tasks),
        extra={"input.modality": _modality(text, image_url)},
    )
    return ExtractionResult(created_count=len(tasks), tasks=tasks)

