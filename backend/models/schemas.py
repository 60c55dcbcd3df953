"""Pydantic schemas for records, workflow outcomes and API models.

All models use Pydantic v2 with strict type validation.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from cache import request_fingerprint


class MessageRole(StrEnum):
    """Author of a project message."""

    USER = "USER"
    ASSISTANT = "ASSISTANT"


class MessageType(StrEnum):
    """Whether a message carries a result or reports a failure."""

    RESULT = "RESULT"
    ERROR = "ERROR"


class WorkflowRequest(BaseModel):
    """One request to run the code agent for a project."""

    model_config = ConfigDict(frozen=True)

    raw_prompt: str = Field(min_length=1, description="The user's request")
    project_id: str = Field(min_length=1, description="Project the run belongs to")

    @property
    def fingerprint(self) -> str:
        """Cache key of the request (see ``cache.request_fingerprint``)."""
        return request_fingerprint(self.project_id, self.raw_prompt)


class WorkflowOutcome(BaseModel):
    """Result of one workflow run, as cached and returned to callers.

    Success outcomes carry the preview URL, title, files and summary; failure
    outcomes carry ``title="Error"`` and a user-facing ``message``.
    """

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    title: str
    url: str | None = None
    files: dict[str, str] = Field(default_factory=dict)
    summary: str | None = None
    sandbox_id: str | None = Field(default=None, alias="sandboxId")
    message: str | None = None

    @classmethod
    def failure(cls, message: str) -> "WorkflowOutcome":
        return cls(success=False, title="Error", message=message)

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize with the field set of the outcome kind."""
        if self.success:
            return self.model_dump(
                by_alias=True, include={"url", "title", "files", "summary", "sandbox_id", "success"}
            )
        return self.model_dump(by_alias=True, include={"title", "message", "success"})


class CreateProjectRequest(BaseModel):
    """Request body for creating a project from a first prompt."""

    value: str = Field(
        min_length=1,
        max_length=10000,
        description="The first request for the project",
        examples=["Build a hello world agent that greets the user by name."],
    )


class CreateMessageRequest(BaseModel):
    """Request body for a follow-up prompt in an existing project."""

    value: str = Field(
        min_length=1,
        max_length=10000,
        description="The follow-up request",
        examples=["Add a /health endpoint to the agent."],
    )


class FragmentResponse(BaseModel):
    """File snapshot and preview URL produced by a successful run."""

    id: str = Field(description="Fragment identifier")
    message_id: str = Field(description="Message the fragment belongs to")
    sandbox_url: str = Field(
        description="Preview URL of the sandbox",
        examples=["http://localhost:49153"],
    )
    title: str = Field(description="Short title of the generated project")
    files: dict[str, str] = Field(description="Path -> content of generated files")
    created_at: float = Field(description="Unix timestamp of creation")


class MessageResponse(BaseModel):
    """A project message with its fragment embedded."""

    id: str = Field(description="Message identifier")
    project_id: str = Field(description="Owning project")
    content: str = Field(description="Message text")
    role: MessageRole
    type: MessageType
    fragment: FragmentResponse | None = Field(
        default=None,
        description="Fragment produced with this message, if any",
    )
    created_at: float = Field(description="Unix timestamp of creation")


class ProjectResponse(BaseModel):
    """Project metadata."""

    id: str = Field(description="Project identifier")
    name: str = Field(
        description="Generated project slug",
        examples=["brave-otter"],
    )
    user_id: str = Field(description="Owner of the project")
    messages: list[str] = Field(
        default_factory=list,
        description="Ordered message ids (filled on single-project reads)",
    )
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of the last message")


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
