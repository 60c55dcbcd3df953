"""Sandbox management module for Docker-based code execution.

This module provides the SandboxManager class for provisioning isolated Docker
containers where the code agent writes files and runs commands.
"""

from sandbox.manager import (
    CommandExitError,
    CommandResult,
    ProvisionError,
    SandboxConnectionError,
    SandboxHandle,
    SandboxManager,
    SandboxSession,
)
from sandbox.paths import normalize_workspace_path, resolve_workspace_path

__all__ = [
    "CommandExitError",
    "CommandResult",
    "ProvisionError",
    "SandboxConnectionError",
    "SandboxHandle",
    "SandboxManager",
    "SandboxSession",
    "normalize_workspace_path",
    "resolve_workspace_path",
]
