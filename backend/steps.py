"""Named, memoized workflow steps.

A workflow run is a sequence of named steps. The result of every completed
step is appended to a step log keyed by ``(run_id, name)``; when a run is
re-executed with the same ``run_id`` (after a crash, or on a retry attempt),
completed steps return their recorded result instead of running again. This
gives at-least-once execution of side effects with idempotent replay.

Usage:
    >>> steps = StepExecutor("run-1")
    >>> handle = await steps.run("get-sandbox-id", manager.create)
    >>> await steps.sleep("initial-stagger", 1000)
"""

import asyncio
import hashlib
import inspect
import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()

SleepFn = Callable[[float], Awaitable[None]]


class StepLog(Protocol):
    """Append-only storage of step results."""

    async def load_steps(self, run_id: str) -> dict[str, Any]: ...

    async def append_step(self, run_id: str, name: str, result: Any) -> None: ...


class InMemoryStepLog:
    """Step log kept in process memory. Replay survives retries, not restarts."""

    def __init__(self) -> None:
        self._runs: dict[str, dict[str, Any]] = {}

    async def load_steps(self, run_id: str) -> dict[str, Any]:
        return dict(self._runs.get(run_id, {}))

    async def append_step(self, run_id: str, name: str, result: Any) -> None:
        self._runs.setdefault(run_id, {})[name] = result


def content_digest(content: Any) -> str:
    """Short stable digest of a JSON-serialisable value."""
    canonical = json.dumps(content, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:12]


class StepExecutor:
    """Runs named steps for one workflow run.

    Args:
        run_id: Identifier of the run; replay is scoped to it.
        log: Step log to read recorded results from and append new ones to.
        sleep: Coroutine used for timed sleeps (``asyncio.sleep`` signature).
    """

    def __init__(
        self,
        run_id: str,
        log: StepLog | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.run_id = run_id
        self._log = log if log is not None else InMemoryStepLog()
        self._sleep = sleep or asyncio.sleep
        self._records: dict[str, Any] | None = None
        self._counters: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._active_step: str | None = None
        self._active_task: asyncio.Task | None = None

    async def _load(self) -> dict[str, Any]:
        if self._records is None:
            self._records = await self._log.load_steps(self.run_id)
            if self._records:
                logger.info(
                    "step_log_loaded", run_id=self.run_id, steps=len(self._records)
                )
        return self._records

    def is_recorded(self, name: str) -> bool:
        return self._records is not None and name in self._records

    async def run(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` as step ``name``, or return its recorded result.

        ``fn`` may be a plain callable or return an awaitable. A step that
        raises is not recorded and runs again on the next attempt.

        Raises:
            RuntimeError: If called from inside another step of this executor.
        """
        current = asyncio.current_task()
        if self._active_step is not None and self._active_task is current:
            raise RuntimeError(
                f"Step '{name}' started inside step '{self._active_step}'"
            )

        async with self._lock:
            records = await self._load()
            if name in records:
                logger.debug("step_replayed", run_id=self.run_id, step=name)
                return records[name]

            self._active_step = name
            self._active_task = current
            try:
                result = fn()
                if inspect.isawaitable(result):
                    result = await result
            finally:
                self._active_step = None
                self._active_task = None

            records[name] = result
            await self._log.append_step(self.run_id, name, result)
            logger.debug("step_completed", run_id=self.run_id, step=name)
            return result

    async def sleep(self, name: str, duration_ms: int) -> None:
        """Suspend the run for ``duration_ms`` as step ``name``.

        A recorded sleep is not repeated on replay.
        """
        records = await self._load()
        if name in records:
            return
        if duration_ms > 0:
            logger.debug(
                "step_sleeping", run_id=self.run_id, step=name, duration_ms=duration_ms
            )
            await self._sleep(duration_ms / 1000)
        records[name] = {"slept_ms": duration_ms}
        await self._log.append_step(self.run_id, name, records[name])

    def name_for(self, kind: str, content: Any) -> str:
        """Deterministic step name for one logical operation.

        Identical operations in the same pass get ``-2``, ``-3``, ... suffixes,
        so a replayed pass maps every call to the same name again.
        """
        base = f"{kind}-{content_digest(content)}"
        count = self._counters.get(base, 0) + 1
        self._counters[base] = count
        return base if count == 1 else f"{base}-{count}"

    def begin_pass(self) -> None:
        """Reset per-pass name counters before re-executing a step sequence."""
        self._counters.clear()
