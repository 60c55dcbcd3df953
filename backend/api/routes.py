"""HTTP API routes for the agent builder backend.

This module defines the project, message and fragment endpoints plus the
health check. Creating a project or posting a message schedules a workflow
run in the background; clients poll the message list for its outcome.
"""

from __future__ import annotations

import random
import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, Header, HTTPException, Path, Response, status

from models.database import StoreError
from models.schemas import (
    CreateMessageRequest,
    CreateProjectRequest,
    FragmentResponse,
    HealthResponse,
    MessageResponse,
    MessageRole,
    MessageType,
    ProjectResponse,
    WorkflowRequest,
)

if TYPE_CHECKING:
    from models.database import ProjectStore
    from workflow import CodeAgentWorkflow

logger = structlog.get_logger(__name__)

router = APIRouter()

_ADJECTIVES = (
    "amber", "bold", "brave", "bright", "calm", "clever", "cosmic", "crisp",
    "eager", "fancy", "gentle", "golden", "happy", "humble", "jolly", "lively",
    "lucky", "mellow", "nimble", "proud", "quiet", "rapid", "shiny", "silent",
    "snowy", "spry", "sunny", "swift", "tidy", "vivid", "witty", "zesty",
)
_NOUNS = (
    "badger", "beacon", "canyon", "comet", "falcon", "fern", "forest", "harbor",
    "heron", "island", "lantern", "maple", "meadow", "meteor", "orbit", "otter",
    "panda", "pebble", "pine", "planet", "raven", "river", "rocket", "sparrow",
    "summit", "thunder", "tiger", "valley", "willow", "wolf", "zebra", "glacier",
)

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def generate_project_name() -> str:
    """Random two-word kebab-case project name, e.g. ``brave-otter``."""
    return f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}"


def _require_user(user_id: str | None) -> str:
    """Return the caller's user id or reject the request."""
    if not user_id or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No authenticated user found",
        )
    return user_id.strip()


def _to_message_response(message: dict[str, Any]) -> MessageResponse:
    fragment = message.get("fragment")
    return MessageResponse(
        id=message["id"],
        project_id=message["project_id"],
        content=message["content"],
        role=MessageRole(message["role"]),
        type=MessageType(message["type"]),
        fragment=FragmentResponse(**fragment) if fragment else None,
        created_at=message["created_at"],
    )


def _store_failure(operation: str, error: StoreError) -> HTTPException:
    logger.error("store_request_failed", operation=operation, error=str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {operation}",
    )


# Dependencies (set during application startup)
_store: ProjectStore | None = None
_workflow: CodeAgentWorkflow | None = None


def set_store(store: ProjectStore) -> None:
    """Set the project store instance for the routes.

    Args:
        store: The ProjectStore instance to use for all routes.
    """
    global _store
    _store = store
    logger.info("project_store_configured")


def get_store() -> ProjectStore:
    """Get the project store instance.

    Raises:
        RuntimeError: If the store has not been configured.
    """
    if _store is None:
        logger.error("project_store_not_configured")
        raise RuntimeError("ProjectStore not configured. Call set_store() during startup.")
    return _store


def set_workflow(workflow: CodeAgentWorkflow) -> None:
    """Set the workflow that runs submitted requests."""
    global _workflow
    _workflow = workflow
    logger.info("workflow_configured")


def get_workflow() -> CodeAgentWorkflow:
    """Get the workflow instance.

    Raises:
        RuntimeError: If the workflow has not been configured.
    """
    if _workflow is None:
        logger.error("workflow_not_configured")
        raise RuntimeError(
            "CodeAgentWorkflow not configured. Call set_workflow() during startup."
        )
    return _workflow


async def _get_owned_project(
    store: ProjectStore, project_id: str, user_id: str
) -> dict[str, Any]:
    try:
        project = await store.get_project(project_id)
    except StoreError as e:
        raise _store_failure("fetch project", e) from e
    if project is None or project["user_id"] != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {project_id} not found",
        )
    return project


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
    description="Create a project from a first prompt and start building it.",
)
async def create_project(
    request: CreateProjectRequest,
    x_user_id: Annotated[str | None, Header()] = None,
) -> ProjectResponse:
    """Create a project, record the prompt as a USER message, run the agent."""
    user_id = _require_user(x_user_id)
    store = get_store()
    workflow = get_workflow()

    try:
        project = await store.create_project(user_id=user_id, name=generate_project_name())
        message = await store.create_message(
            project_id=project["id"],
            content=request.value,
            role=MessageRole.USER,
            type=MessageType.RESULT,
        )
        await store.append_project_message(project["id"], message["id"])
    except StoreError as e:
        raise _store_failure("create project", e) from e
    project["messages"] = [message["id"]]

    workflow.submit(WorkflowRequest(raw_prompt=request.value, project_id=project["id"]))

    logger.info(
        "project_created",
        project_id=project["id"],
        name=project["name"],
        prompt_length=len(request.value),
    )
    return ProjectResponse(**project)


@router.get(
    "/api/projects",
    response_model=list[ProjectResponse],
    summary="List projects",
    description="List the caller's projects, newest first.",
)
async def list_projects(
    x_user_id: Annotated[str | None, Header()] = None,
) -> list[ProjectResponse]:
    user_id = _require_user(x_user_id)
    try:
        projects = await get_store().list_projects(user_id)
    except StoreError as e:
        raise _store_failure("fetch projects", e) from e
    return [ProjectResponse(**project) for project in projects]


@router.get(
    "/api/projects/{project_id}",
    response_model=ProjectResponse,
    summary="Get a project",
)
async def get_project(
    project_id: Annotated[str, Path(description="The project ID")],
    x_user_id: Annotated[str | None, Header()] = None,
) -> ProjectResponse:
    user_id = _require_user(x_user_id)
    project = await _get_owned_project(get_store(), project_id, user_id)
    return ProjectResponse(**project)


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects/{project_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a follow-up prompt",
    description="Record a USER message for the project and start a new run.",
)
async def create_message(
    project_id: Annotated[str, Path(description="The project ID")],
    request: CreateMessageRequest,
    x_user_id: Annotated[str | None, Header()] = None,
) -> MessageResponse:
    user_id = _require_user(x_user_id)
    store = get_store()
    workflow = get_workflow()
    await _get_owned_project(store, project_id, user_id)

    try:
        message = await store.create_message(
            project_id=project_id,
            content=request.value,
            role=MessageRole.USER,
            type=MessageType.RESULT,
        )
        await store.append_project_message(project_id, message["id"])
    except StoreError as e:
        raise _store_failure("create message", e) from e

    workflow.submit(WorkflowRequest(raw_prompt=request.value, project_id=project_id))

    logger.info("message_created", project_id=project_id, message_id=message["id"])
    return _to_message_response({**message, "fragment": None})


@router.get(
    "/api/projects/{project_id}/messages",
    response_model=list[MessageResponse],
    summary="List messages",
    description="List project messages, newest first, with their fragments.",
)
async def list_messages(
    project_id: Annotated[str, Path(description="The project ID")],
    x_user_id: Annotated[str | None, Header()] = None,
) -> list[MessageResponse]:
    user_id = _require_user(x_user_id)
    store = get_store()
    await _get_owned_project(store, project_id, user_id)
    try:
        messages = await store.list_messages(project_id)
    except StoreError as e:
        raise _store_failure("fetch messages", e) from e
    return [_to_message_response(message) for message in messages]


@router.delete(
    "/api/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a message",
)
async def delete_message(
    message_id: Annotated[str, Path(description="The message ID")],
    x_user_id: Annotated[str | None, Header()] = None,
) -> Response:
    user_id = _require_user(x_user_id)
    store = get_store()

    try:
        message = await store.get_message(message_id)
    except StoreError as e:
        raise _store_failure("fetch message", e) from e
    if message is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Message {message_id} not found",
        )
    await _get_owned_project(store, message["project_id"], user_id)

    try:
        await store.delete_message(message_id)
    except StoreError as e:
        raise _store_failure("delete message", e) from e

    logger.info("message_deleted", message_id=message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# -----------------------------------------------------------------------------
# Fragments
# -----------------------------------------------------------------------------


@router.get(
    "/api/fragments/{fragment_id}",
    response_model=FragmentResponse,
    summary="Get a fragment",
    description="Return a fragment if the caller owns its project.",
)
async def get_fragment(
    fragment_id: Annotated[str, Path(description="The fragment ID")],
    x_user_id: Annotated[str | None, Header()] = None,
) -> FragmentResponse:
    user_id = _require_user(x_user_id)
    store = get_store()

    try:
        fragment = await store.get_fragment(fragment_id)
        owner = await store.get_fragment_owner(fragment_id) if fragment else None
    except StoreError as e:
        raise _store_failure("fetch fragment", e) from e

    if fragment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Fragment {fragment_id} not found",
        )
    if owner != user_id:
        logger.warning("fragment_access_denied", fragment_id=fragment_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unauthorized access to fragment",
        )
    return FragmentResponse(**fragment)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status."""
    docker_available = False

    try:
        workflow = get_workflow()
        docker_available = workflow.sandbox_manager.is_docker_available()
    except RuntimeError:
        # Workflow not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    overall_status = "healthy" if docker_available else "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        docker_available=docker_available,
    )
