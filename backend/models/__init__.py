"""Models module for Pydantic schemas and the SQLite store.

This module exposes the records, workflow outcome and API models, plus the
ProjectStore that persists them.
"""

from models.database import ProjectStore, StoreError
from models.schemas import (
    CreateMessageRequest,
    CreateProjectRequest,
    FragmentResponse,
    HealthResponse,
    MessageResponse,
    MessageRole,
    MessageType,
    ProjectResponse,
    WorkflowOutcome,
    WorkflowRequest,
)

__all__ = [
    "CreateMessageRequest",
    "CreateProjectRequest",
    "FragmentResponse",
    "HealthResponse",
    "MessageResponse",
    "MessageRole",
    "MessageType",
    "ProjectResponse",
    "ProjectStore",
    "StoreError",
    "WorkflowOutcome",
    "WorkflowRequest",
]
