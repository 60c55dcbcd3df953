"""Docker-backed sandbox manager for agent code execution.

A sandbox is a detached container running the sandbox image with the preview
port published on a random host port. The manager does not keep a registry of
live sandboxes: every tool call reconnects by container id, and the expiry
label on the container is the only lifetime bookkeeping (see ``reap_expired``).
"""

import asyncio
import posixpath
import tarfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from io import BytesIO

import docker
import structlog
from docker.errors import DockerException, NotFound

from config import settings
from sandbox.paths import sanitize_output

logger = structlog.get_logger()

MANAGED_LABEL = "agent-builder.managed"
EXPIRES_AT_LABEL = "agent-builder.expires-at"

OutputCallback = Callable[[str], None]

# Container resource and privilege limits
CONTAINER_CONFIG: dict[str, object] = {
    "mem_limit": "2048m",
    "cpu_period": 100000,
    "cpu_quota": 50000,  # 50% of one CPU core
    "network_mode": "bridge",  # package installs need network access
    "security_opt": ["no-new-privileges"],
    "cap_drop": ["ALL"],
    "cap_add": ["CHOWN", "DAC_OVERRIDE", "FOWNER", "SETUID", "SETGID"],
}


class ProvisionError(Exception):
    """Raised when a sandbox cannot be created."""


class SandboxConnectionError(ConnectionError):
    """Raised when an existing sandbox cannot be reached."""


class CommandExitError(Exception):
    """Raised when a sandbox command exits with a non-zero status."""

    def __init__(self, exit_code: int, stdout: str, stderr: str) -> None:
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command exited with code {exit_code}")


@dataclass(frozen=True)
class SandboxHandle:
    """Opaque reference to a provisioned sandbox."""

    id: str


@dataclass
class CommandResult:
    """Result of executing a command in the sandbox."""

    stdout: str
    stderr: str
    exit_code: int


class SandboxSession:
    """A live connection to one sandbox container."""

    def __init__(
        self,
        manager: "SandboxManager",
        container: docker.models.containers.Container,
    ) -> None:
        self._manager = manager
        self._container = container

    @property
    def sandbox_id(self) -> str:
        return self._container.id

    async def run_command(
        self,
        command: str,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a shell command in the workspace, streaming its output.

        Output chunks are delivered to the callbacks as they arrive.

        Args:
            command: Shell command, run through ``/bin/sh -lc``.
            on_stdout: Called with every decoded stdout chunk.
            on_stderr: Called with every decoded stderr chunk.
            timeout: Seconds before giving up (default: settings).

        Returns:
            CommandResult for a zero exit status.

        Raises:
            CommandExitError: If the command exits with a non-zero status.
            TimeoutError: If the command does not finish in time.
        """
        timeout = timeout if timeout is not None else settings.command_timeout_seconds

        try:
            result = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None,
                    self._exec_streaming,
                    command,
                    on_stdout,
                    on_stderr,
                ),
                timeout=timeout,
            )
        except TimeoutError:
            logger.warning(
                "command_timeout",
                sandbox_id=self.sandbox_id[:12],
                command=command[:50],
                timeout=timeout,
            )
            raise

        logger.debug(
            "command_executed",
            sandbox_id=self.sandbox_id[:12],
            command=command[:50],
            exit_code=result.exit_code,
        )

        if result.exit_code != 0:
            raise CommandExitError(result.exit_code, result.stdout, result.stderr)
        return result

    def _exec_streaming(
        self,
        command: str,
        on_stdout: OutputCallback | None,
        on_stderr: OutputCallback | None,
    ) -> CommandResult:
        """Create, stream and inspect an exec instance (blocking operation)."""
        api = self._manager.client.api
        exec_id = api.exec_create(
            self._container.id,
            ["/bin/sh", "-lc", command],
            workdir=settings.sandbox_workspace,
        )["Id"]

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        for stdout_chunk, stderr_chunk in api.exec_start(exec_id, stream=True, demux=True):
            if stdout_chunk:
                text = stdout_chunk.decode("utf-8", errors="replace")
                stdout_parts.append(text)
                if on_stdout:
                    on_stdout(text)
            if stderr_chunk:
                text = stderr_chunk.decode("utf-8", errors="replace")
                stderr_parts.append(text)
                if on_stderr:
                    on_stderr(text)

        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return CommandResult(
            stdout=sanitize_output("".join(stdout_parts)),
            stderr=sanitize_output("".join(stderr_parts)),
            exit_code=exit_code if exit_code is not None else -1,
        )

    async def write_file(self, path: str, content: str) -> None:
        """Write a file at an absolute sandbox path, creating parent directories."""
        await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None, self._put_file, path, content
            ),
            timeout=30,
        )
        logger.debug("file_written", sandbox_id=self.sandbox_id[:12], path=path)

    def _put_file(self, path: str, content: str) -> None:
        """Write file to container using tar archive (blocking operation)."""
        parent_dir, name = posixpath.split(path)
        parent_dir = parent_dir or "/"

        # List form avoids shell injection through the path
        self._container.exec_run(["mkdir", "-p", parent_dir])

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            file_data = content.encode("utf-8")
            tarinfo = tarfile.TarInfo(name=name)
            tarinfo.size = len(file_data)
            tarinfo.mode = 0o644
            tarinfo.mtime = int(time.time())
            tar.addfile(tarinfo, BytesIO(file_data))

        tar_stream.seek(0)
        self._container.put_archive(parent_dir, tar_stream)

    async def read_file(self, path: str) -> str:
        """Read a file at an absolute sandbox path.

        Raises:
            FileNotFoundError: If the file does not exist.
            IsADirectoryError: If the path is not a regular file.
        """
        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, self._get_file, path),
            timeout=30,
        )

    def _get_file(self, path: str) -> str:
        """Read file from container using tar archive (blocking operation)."""
        try:
            bits, _ = self._container.get_archive(path)
        except NotFound as err:
            raise FileNotFoundError(f"File not found: {path}") from err

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.getmembers()[0]
            extracted = tar.extractfile(member)
            if extracted is None or not member.isfile():
                raise IsADirectoryError(f"Not a regular file: {path}")
            return extracted.read().decode("utf-8", errors="replace")

    async def get_host(self, port: int) -> str:
        return await self._manager.get_host(SandboxHandle(self._container.id), port)


class SandboxManager:
    """Creates, reconnects to and disposes of Docker sandboxes.

    Attributes:
        image_name: The Docker image to use for sandbox containers.
        ttl_minutes: Lifetime recorded in the expiry label of new sandboxes.
        connect_retries: Attempts made by ``connect`` before giving up.
    """

    def __init__(
        self,
        image_name: str | None = None,
        ttl_minutes: int | None = None,
        connect_retries: int | None = None,
        client: docker.DockerClient | None = None,
    ) -> None:
        self.image_name = image_name or settings.sandbox_image
        self.ttl_minutes = ttl_minutes if ttl_minutes is not None else settings.sandbox_ttl_minutes
        self.connect_retries = (
            connect_retries if connect_retries is not None else settings.sandbox_connect_retries
        )
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def is_docker_available(self) -> bool:
        """Check whether the Docker daemon is reachable."""
        try:
            self.client.ping()
            return True
        except DockerException as e:
            logger.warning("docker_unavailable", error=str(e))
            return False

    async def create(self) -> SandboxHandle:
        """Create and start a new sandbox container.

        Returns:
            Handle of the running sandbox.

        Raises:
            ProvisionError: If the container cannot be created in time.
        """
        name = f"sandbox-{uuid.uuid4().hex[:12]}"
        try:
            container = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None, self._create_container, name
                ),
                timeout=30,
            )
        except (DockerException, TimeoutError) as e:
            logger.error("sandbox_creation_failed", name=name, error=str(e))
            raise ProvisionError(f"Failed to create sandbox: {e}") from e

        logger.info("sandbox_created", name=name, sandbox_id=container.id[:12])
        return SandboxHandle(id=container.id)

    def _create_container(self, name: str) -> docker.models.containers.Container:
        """Create the Docker container (blocking operation)."""
        expires_at = time.time() + self.ttl_minutes * 60
        return self.client.containers.run(
            self.image_name,
            name=name,
            detach=True,
            remove=False,
            # None asks Docker for a random free host port
            ports={f"{settings.sandbox_preview_port}/tcp": None},
            labels={
                MANAGED_LABEL: "true",
                EXPIRES_AT_LABEL: str(int(expires_at)),
            },
            working_dir=settings.sandbox_workspace,
            environment={"PORT": str(settings.sandbox_preview_port)},
            **CONTAINER_CONFIG,
        )

    async def connect(self, handle: SandboxHandle) -> SandboxSession:
        """Reconnect to a running sandbox.

        Raises:
            SandboxConnectionError: If the sandbox is gone or not running
                after all attempts.
        """
        last_error: str = ""
        for attempt in range(1, self.connect_retries + 1):
            try:
                container = await asyncio.get_running_loop().run_in_executor(
                    None, self.client.containers.get, handle.id
                )
                if container.status == "running":
                    return SandboxSession(self, container)
                last_error = f"container status is {container.status}"
            except DockerException as e:
                last_error = str(e)

            logger.warning(
                "sandbox_connect_retry",
                sandbox_id=handle.id[:12],
                attempt=attempt,
                error=last_error,
            )
            if attempt < self.connect_retries:
                await asyncio.sleep(0.5 * attempt)

        raise SandboxConnectionError(
            f"Cannot connect to sandbox {handle.id[:12]}: {last_error}"
        )

    async def get_host(self, handle: SandboxHandle, port: int) -> str:
        """Return the public preview URL for ``port`` inside the sandbox.

        Raises:
            SandboxConnectionError: If the sandbox is gone or the port is not
                published.
        """
        try:
            host_port = await asyncio.get_running_loop().run_in_executor(
                None, self._published_port, handle.id, port
            )
        except DockerException as e:
            raise SandboxConnectionError(f"Cannot inspect sandbox: {e}") from e

        if host_port is None:
            raise SandboxConnectionError(f"Port {port} is not published")
        return f"http://{settings.sandbox_public_host}:{host_port}"

    def _published_port(self, container_id: str, port: int) -> str | None:
        """Look up the host port mapped to ``port`` (blocking operation)."""
        container = self.client.containers.get(container_id)
        container.reload()
        bindings = container.ports.get(f"{port}/tcp") or []
        for binding in bindings:
            if binding.get("HostPort"):
                return binding["HostPort"]
        return None

    async def terminate(self, handle: SandboxHandle) -> None:
        """Kill and remove a sandbox. Failures are logged, never raised."""
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self._remove_container, handle.id
            )
            logger.info("sandbox_terminated", sandbox_id=handle.id[:12])
        except NotFound:
            logger.info("sandbox_already_removed", sandbox_id=handle.id[:12])
        except Exception as e:
            logger.warning(
                "sandbox_terminate_failed", sandbox_id=handle.id[:12], error=str(e)
            )

    def _remove_container(self, container_id: str) -> None:
        """Force-remove a container (blocking operation)."""
        self.client.containers.get(container_id).remove(force=True)

    async def reap_expired(self) -> int:
        """Remove managed sandboxes whose expiry label lies in the past.

        Returns:
            The number of sandboxes removed.
        """
        containers = await asyncio.get_running_loop().run_in_executor(
            None,
            lambda: self.client.containers.list(
                all=True, filters={"label": MANAGED_LABEL}
            ),
        )

        now = time.time()
        reaped = 0
        for container in containers:
            try:
                expires_at = float(container.labels.get(EXPIRES_AT_LABEL, "0"))
            except ValueError:
                expires_at = 0.0
            if expires_at > now:
                continue
            await self.terminate(SandboxHandle(container.id))
            reaped += 1

        if reaped:
            logger.info("sandboxes_reaped", count=reaped)
        return reaped
