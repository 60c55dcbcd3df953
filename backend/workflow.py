"""End-to-end orchestration of one code agent run.

The workflow ties together the response cache, the sandbox manager, the
agent network (wrapped by the quota retry controller) and the persistence
gateway:

    cache lookup -> initial stagger -> create sandbox -> agent network
    -> sandbox URL -> persist outcome -> cache store

Every side effect runs as a named step, so re-running a failed run with the
same ``run_id`` replays what already happened. Any exception is caught once
at the top of ``run``: the sandbox is terminated and exactly one ERROR
message is written for the project.

Usage:
    >>> workflow = CodeAgentWorkflow(store, SandboxManager(), LLMClient())
    >>> outcome = await workflow.run(
    ...     WorkflowRequest(raw_prompt="code a hello world agent", project_id=pid)
    ... )
    >>> outcome.title
    'Hello Agent'
"""

import asyncio
import uuid

import structlog

from agents.network import AgentNetwork
from agents.utils import LLMClient
from cache import ResponseCache
from config import settings
from models.database import ProjectStore
from models.schemas import WorkflowOutcome, WorkflowRequest
from persistence import PersistenceError, PersistenceGateway, derive_title, failure_message
from rate_limiter import PacingPolicy
from retry import QuotaRetryController
from sandbox.manager import SandboxConnectionError, SandboxHandle, SandboxManager
from steps import SleepFn, StepExecutor, StepLog

logger = structlog.get_logger()


class CodeAgentWorkflow:
    """Runs code agent requests and records their outcomes.

    Attributes:
        store: Project store the outcome is written to.
        sandbox_manager: Manager providing one sandbox per run.
        llm_client: Client used by the agent network.
        cache: Memo of successful outcomes keyed by request fingerprint.
        retry: Quota retry controller wrapping the agent network.
        pacing: Pacing policy applied before every tool call.
    """

    def __init__(
        self,
        store: ProjectStore,
        sandbox_manager: SandboxManager,
        llm_client: LLMClient,
        cache: ResponseCache | None = None,
        retry: QuotaRetryController | None = None,
        pacing: PacingPolicy | None = None,
        step_log: StepLog | None = None,
        sleep: SleepFn | None = None,
        initial_stagger_ms: int | None = None,
        max_iterations: int | None = None,
    ) -> None:
        self.store = store
        self.sandbox_manager = sandbox_manager
        self.llm_client = llm_client
        self.cache = cache or ResponseCache(
            ttl_seconds=settings.cache_ttl_seconds,
            capacity=settings.cache_capacity,
        )
        self.retry = retry or QuotaRetryController.from_settings()
        self.pacing = pacing or PacingPolicy.from_settings()
        self.persistence = PersistenceGateway(store)
        self.step_log: StepLog = step_log if step_log is not None else store
        self.initial_stagger_ms = (
            initial_stagger_ms if initial_stagger_ms is not None
            else settings.initial_stagger_ms
        )
        self.max_iterations = max_iterations
        self._sleep = sleep
        self._tasks: set[asyncio.Task[WorkflowOutcome]] = set()

    async def _create_sandbox(self) -> str:
        handle = await self.sandbox_manager.create()
        return handle.id

    async def _sandbox_url(self, handle: SandboxHandle) -> str | None:
        """Preview URL of the sandbox, or None when it cannot be resolved."""
        try:
            return await self.sandbox_manager.get_host(
                handle, settings.sandbox_preview_port
            )
        except SandboxConnectionError as e:
            logger.warning("sandbox_url_unavailable", sandbox_id=handle.id[:12], error=str(e))
            return None

    async def run(
        self, request: WorkflowRequest, run_id: str | None = None
    ) -> WorkflowOutcome:
        """Run the workflow for ``request``.

        Args:
            request: Prompt and owning project.
            run_id: Id scoping step replay. Passing the id of an earlier,
                failed run resumes it; a fresh id is generated otherwise.

        Returns:
            The success outcome, or a failure outcome after the ERROR message
            was written. Never raises for run-level errors; cancellation is
            re-raised after the ERROR message was written.
        """
        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        fingerprint = request.fingerprint

        cached = self.cache.get(fingerprint)
        if cached is not None:
            logger.info(
                "workflow_cache_hit", run_id=run_id, project_id=request.project_id
            )
            return cached

        steps = StepExecutor(run_id, log=self.step_log, sleep=self._sleep)
        handle: SandboxHandle | None = None

        logger.info(
            "workflow_start",
            run_id=run_id,
            project_id=request.project_id,
            prompt_length=len(request.raw_prompt),
        )

        try:
            await steps.sleep("initial-stagger", self.initial_stagger_ms)

            sandbox_id = await steps.run("get-sandbox-id", self._create_sandbox)
            handle = SandboxHandle(sandbox_id)

            network = AgentNetwork(
                llm_client=self.llm_client,
                sandbox_manager=self.sandbox_manager,
                handle=handle,
                steps=steps,
                max_iterations=self.max_iterations,
                pacing=self.pacing,
            )
            result = await self.retry.run(
                lambda: network.run(request.raw_prompt), steps
            )

            url = await steps.run("get-sandbox-url", lambda: self._sandbox_url(handle))

            summary = result.state.summary
            outcome = WorkflowOutcome(
                success=True,
                url=url,
                title=derive_title(summary),
                files=dict(result.state.files),
                summary=summary,
                sandbox_id=sandbox_id,
            )
            await self.persistence.persist_success(request.project_id, outcome, steps)
        except asyncio.CancelledError as e:
            # Shielded so the ERROR message lands even though the task is cancelled
            await asyncio.shield(self._fail(request, steps, handle, e))
            raise
        except Exception as e:
            return await self._fail(request, steps, handle, e)

        self.cache.set(fingerprint, outcome)
        logger.info(
            "workflow_complete",
            run_id=run_id,
            project_id=request.project_id,
            sandbox_id=sandbox_id[:12],
            files=len(outcome.files),
            has_url=outcome.url is not None,
        )
        return outcome

    async def _fail(
        self,
        request: WorkflowRequest,
        steps: StepExecutor,
        handle: SandboxHandle | None,
        error: BaseException,
    ) -> WorkflowOutcome:
        """Clean up after a failed run and record its ERROR message."""
        logger.error(
            "workflow_failed",
            run_id=steps.run_id,
            project_id=request.project_id,
            error_type=type(error).__name__,
            error=str(error)[:500],
        )

        if handle is not None:
            await self.sandbox_manager.terminate(handle)

        if isinstance(error, PersistenceError) and error.message_id is not None:
            # The RESULT message is the run's terminal message already.
            logger.warning(
                "workflow_result_without_fragment",
                run_id=steps.run_id,
                message_id=error.message_id,
            )
        else:
            try:
                await self.persistence.persist_failure(request.project_id, error, steps)
            except Exception as persist_error:
                logger.exception(
                    "workflow_failure_not_persisted",
                    run_id=steps.run_id,
                    project_id=request.project_id,
                    error=str(persist_error),
                )

        return WorkflowOutcome.failure(failure_message(error))

    def submit(
        self, request: WorkflowRequest, run_id: str | None = None
    ) -> asyncio.Task[WorkflowOutcome]:
        """Schedule ``run`` as a tracked background task."""
        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        task = asyncio.create_task(self.run(request, run_id), name=f"workflow_{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("workflow_submitted", run_id=run_id, project_id=request.project_id)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_all(self) -> list[WorkflowOutcome]:
        """Wait for every submitted run to finish."""
        if not self._tasks:
            return []
        return list(await asyncio.gather(*list(self._tasks)))

    async def cancel_all(self) -> None:
        """Cancel in-flight runs; each still records its ERROR message."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("workflow_tasks_cancelled", count=len(tasks))
