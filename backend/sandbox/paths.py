"""Workspace path policy for sandbox file operations.

Every file the agent writes is recorded in ``NetworkState.files`` under a
normalized key, so the same file reached through different spellings
(``./main.py``, ``/workspace/main.py``, ``main.py``) ends up in one entry.
"""

import posixpath


def normalize_workspace_path(path: str, workspace_root: str = "/workspace") -> str:
    """Normalize a path supplied by the agent into a ``NetworkState.files`` key.

    Args:
        path: Path as written by the agent.
        workspace_root: Absolute workspace directory inside the sandbox.

    Returns:
        A workspace-relative key for paths inside the workspace, or the
        normalized absolute path for paths outside it.

    Raises:
        ValueError: If the path is empty or contains a ``..`` component.

    Examples:
        >>> normalize_workspace_path("/workspace/src/app.py")
        'src/app.py'
        >>> normalize_workspace_path("./main.py")
        'main.py'
        >>> normalize_workspace_path("/tmp/out.log")
        '/tmp/out.log'
    """
    if path is None:
        raise ValueError("Path cannot be empty")

    cleaned = path.strip().replace("\\", "/")
    if not cleaned:
        raise ValueError("Path cannot be empty")

    # Reject parent traversal as a component, allow names like "file..bak".
    if ".." in cleaned.split("/"):
        raise ValueError(f"Path traversal blocked: {path}")

    normalized = posixpath.normpath(cleaned)
    # normpath keeps a leading "//" (POSIX implementation-defined)
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    root = posixpath.normpath(workspace_root)

    if normalized.startswith("/"):
        if normalized == root:
            raise ValueError(f"Path refers to the workspace root: {path}")
        if normalized.startswith(root + "/"):
            return normalized[len(root) + 1:]
        return normalized

    if normalized in (".", ""):
        raise ValueError("Path cannot be empty")
    return normalized


def resolve_workspace_path(key: str, workspace_root: str = "/workspace") -> str:
    """Turn a normalized key back into an absolute sandbox path."""
    if key.startswith("/"):
        return key
    return posixpath.join(posixpath.normpath(workspace_root), key)


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Truncate excessively long command output.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The output, with a truncation marker when it was cut.
    """
    if not output:
        return ""

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output
