"""Error taxonomy for the todo service.

Every error carries the HTTP status it maps to and a stable ``code`` used in
logs. The FastAPI app renders them as ``{"error": message}``.
"""


class TodoError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(TodoError):
    status_code = 400
    code = "invalid_input"
    default_message = "Provide text or an image"


class ExtractionEmpty(TodoError):
    status_code = 400
    code = "extraction_empty"
    default_message = "No tasks recognized"


class Unauthorized(TodoError):
    status_code = 401
    code = "unauthorized"
    default_message = "User not signed in"


class TaskNotFound(TodoError):
    status_code = 404
    code = "task_not_found"
    default_message = "Task not found"


class UpstreamExtractionFailure(TodoError):
    status_code = 500
    code = "upstream_extraction_failure"
    default_message = "Failed to parse tasks"


class PersistenceFailure(TodoError):
    status_code = 500
    code = "persistence_failure"
    default_message = "Failed to save tasks"
