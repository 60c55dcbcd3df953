"""Persistence gateway: workflow outcomes -> project messages and fragments.

Every write runs as a named step, so a replayed run does not write the same
message twice. Title and user-facing response are derived from the agent's
task summary without any extra model calls.
"""

import re

import structlog

from agents.utils import extract_tag, strip_tags
from models.database import ProjectStore
from models.schemas import MessageRole, MessageType, WorkflowOutcome
from retry import is_quota_error, root_cause
from steps import StepExecutor

logger = structlog.get_logger()

MAX_TITLE_LENGTH = 50
MIN_SENTENCE_LENGTH = 10

DEFAULT_TITLE = "Untitled"
FALLBACK_RESPONSE = "Here is the agent I built for you."
QUOTA_ERROR_MESSAGE = (
    "The AI provider's usage limit has been reached. "
    "Please wait a few minutes and try again."
)
GENERIC_ERROR_MESSAGE = "Something went wrong while building your agent. Please try again."

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


class PersistenceError(Exception):
    """Raised when writing a run's outcome fails.

    Attributes:
        message_id: Id of the message whose row was already written, if any.
    """

    def __init__(self, message: str, message_id: str | None = None) -> None:
        super().__init__(message)
        self.message_id = message_id


def derive_title(summary: str | None) -> str:
    """Title of a run from its task summary.

    Uses the ``<title>`` tag when present, otherwise the first non-empty line
    of the tag-stripped summary cut to 50 characters.

    Examples:
        >>> derive_title("<task_summary><title>Hello Agent</title></task_summary>")
        'Hello Agent'
    """
    title = extract_tag(summary, "title")
    if title:
        return title
    if not summary:
        return DEFAULT_TITLE
    for line in strip_tags(summary).splitlines():
        line = line.strip()
        if line:
            return line[:MAX_TITLE_LENGTH]
    return DEFAULT_TITLE


def derive_response(summary: str | None) -> str:
    """User-facing response text from a task summary.

    Uses the ``<response>`` tag when present, otherwise the first two
    sentences of at least 10 characters.
    """
    response = extract_tag(summary, "response")
    if response:
        return response
    if not summary:
        return FALLBACK_RESPONSE

    text = " ".join(strip_tags(summary).split())
    sentences = [
        sentence.strip()
        for sentence in _SENTENCE_BOUNDARY.split(text)
        if len(sentence.strip()) >= MIN_SENTENCE_LENGTH
    ]
    if not sentences:
        return FALLBACK_RESPONSE
    return " ".join(sentences[:2])


def failure_message(error: BaseException) -> str:
    """User-facing explanation of a failed run."""
    if is_quota_error(root_cause(error)) or is_quota_error(error):
        return QUOTA_ERROR_MESSAGE
    return GENERIC_ERROR_MESSAGE


class PersistenceGateway:
    """Writes workflow outcomes to the project store."""

    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    async def _create_message(
        self,
        project_id: str,
        content: str,
        type: MessageType,
    ) -> str:
        message = await self.store.create_message(
            project_id=project_id,
            content=content,
            role=MessageRole.ASSISTANT,
            type=type,
        )
        return message["id"]

    async def _write_message(
        self,
        project_id: str,
        content: str,
        type: MessageType,
        steps: StepExecutor,
        step_name: str,
    ) -> str:
        """Create an ASSISTANT message, then append it to the project.

        Creation and append are separate steps, so a failed append never
        hides that the message row already exists.

        Raises:
            PersistenceError: ``message_id`` is set when only the append failed.
        """
        try:
            message_id = await steps.run(
                step_name, lambda: self._create_message(project_id, content, type)
            )
        except Exception as e:
            raise PersistenceError(f"Failed to write {type.lower()} message: {e}") from e

        try:
            await steps.run(
                f"{step_name}-append",
                lambda: self.store.append_project_message(project_id, message_id),
            )
        except Exception as e:
            raise PersistenceError(
                f"Failed to append {type.lower()} message: {e}", message_id=message_id
            ) from e
        return message_id

    async def _write_fragment(self, message_id: str, outcome: WorkflowOutcome) -> str:
        fragment = await self.store.create_fragment(
            message_id=message_id,
            sandbox_url=outcome.url or "",
            title=outcome.title,
            files=outcome.files,
        )
        await self.store.attach_fragment(message_id, fragment["id"])
        return fragment["id"]

    async def persist_success(
        self,
        project_id: str,
        outcome: WorkflowOutcome,
        steps: StepExecutor,
    ) -> str:
        """Write the RESULT message and, with a preview URL, its fragment.

        Returns:
            Id of the RESULT message.

        Raises:
            PersistenceError: If a write failed. ``message_id`` is set when
                the RESULT message itself was already written.
        """
        message_id = await self._write_message(
            project_id,
            derive_response(outcome.summary),
            MessageType.RESULT,
            steps,
            "persist-message",
        )

        if outcome.url and outcome.summary:
            try:
                fragment_id = await steps.run(
                    "persist-fragment",
                    lambda: self._write_fragment(message_id, outcome),
                )
            except Exception as e:
                raise PersistenceError(
                    f"Failed to write fragment: {e}", message_id=message_id
                ) from e
            logger.info(
                "outcome_persisted",
                run_id=steps.run_id,
                project_id=project_id,
                message_id=message_id,
                fragment_id=fragment_id,
                files=len(outcome.files),
            )
        else:
            logger.info(
                "outcome_persisted_without_fragment",
                run_id=steps.run_id,
                project_id=project_id,
                message_id=message_id,
                has_url=bool(outcome.url),
            )
        return message_id

    async def persist_failure(
        self,
        project_id: str,
        error: BaseException,
        steps: StepExecutor,
    ) -> str:
        """Write the ERROR message of a failed run.

        Returns:
            Id of the ERROR message.
        """
        content = failure_message(error)
        message_id = await self._write_message(
            project_id, content, MessageType.ERROR, steps, "persist-error"
        )
        logger.info(
            "failure_persisted",
            run_id=steps.run_id,
            project_id=project_id,
            message_id=message_id,
            quota=content == QUOTA_ERROR_MESSAGE,
        )
        return message_id
