"""Code agent network: a LangGraph loop over agent turns.

The graph has a single node that loops on a conditional edge:

    START -> agent -> [continue -> agent | end -> END]

Each pass through ``agent`` is one turn:
1. call the LLM with the conversation so far (memoized as step ``agent-turn-N``)
2. execute the requested tool calls sequentially through the ToolRegistry
3. observe the turn text: a ``<task_summary>`` block becomes the network summary
4. evaluate the termination rule

``NetworkState`` is the run's working memory: tool handlers fill ``files``,
the turn observer sets ``summary``. It is reset at the start of every run so a
retried run starts from the same empty state and rebuilds it from replayed
steps.
"""

import operator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.prompts import NUDGE_PROMPT, get_code_agent_system_prompt
from agents.tools import ToolRegistry, get_tool_definitions_for_llm
from agents.utils import (
    LLMClient,
    ToolCallData,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)
from config import settings
from rate_limiter import PacingPolicy
from sandbox.manager import SandboxHandle, SandboxManager
from steps import StepExecutor

logger = structlog.get_logger()

SUMMARY_TAG = "<task_summary>"


class IncompleteRunError(Exception):
    """Raised when the network stops without producing a task summary."""


@dataclass
class NetworkState:
    """Shared state of one agent network run.

    Attributes:
        files: Normalized path -> latest content written by the agent.
        summary: Final turn text containing ``<task_summary>``, once produced.
    """

    files: dict[str, str] = field(default_factory=dict)
    summary: str | None = None

    def reset(self) -> None:
        self.files.clear()
        self.summary = None


class Termination(StrEnum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    PARTIAL = "partial"
    EXHAUSTED = "exhausted"


def evaluate_termination(
    state: NetworkState, iteration: int, max_iterations: int
) -> Termination:
    """Decide whether the network stops after ``iteration`` turns.

    A summary always stops the run: with files it is complete, without files
    it is a partial (summary-only) result. Without a summary the run continues
    until the iteration budget is used up.
    """
    if state.summary:
        return Termination.COMPLETE if state.files else Termination.PARTIAL
    if iteration >= max_iterations:
        return Termination.EXHAUSTED
    return Termination.CONTINUE


class AgentGraphState(TypedDict):
    """LangGraph state of the agent loop.

    Attributes:
        messages: Conversation history, appended to by each turn
        iteration: Number of completed turns
        termination: Result of the termination rule after the last turn
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    iteration: int
    termination: str


@dataclass
class NetworkResult:
    state: NetworkState
    iterations: int
    termination: Termination


class AgentNetwork:
    """Runs the code agent against one sandbox.

    Usage:
        >>> network = AgentNetwork(llm_client, sandbox_manager, handle, steps)
        >>> result = await network.run("Build a hello world agent")
        >>> result.state.files
        {'main.py': '...'}
    """

    def __init__(
        self,
        llm_client: LLMClient,
        sandbox_manager: SandboxManager,
        handle: SandboxHandle,
        steps: StepExecutor,
        max_iterations: int | None = None,
        temperature: float | None = None,
        pacing: PacingPolicy | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.steps = steps
        self.max_iterations = (
            max_iterations if max_iterations is not None
            else settings.max_agent_iterations
        )
        self.temperature = (
            temperature if temperature is not None else settings.agent_temperature
        )
        self.state = NetworkState()
        self.tools = ToolRegistry(
            sandbox_manager=sandbox_manager,
            handle=handle,
            state=self.state,
            steps=steps,
            pacing=pacing,
        )
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> StateGraph:
        """Build and compile the LangGraph StateGraph."""
        graph = StateGraph(AgentGraphState)

        graph.add_node("agent", self._agent_turn)
        graph.add_edge(START, "agent")
        graph.add_conditional_edges(
            "agent",
            self._should_continue,
            {
                "continue": "agent",
                "end": END,
            },
        )

        return graph.compile()

    async def _call_llm(self, messages: list[dict[str, Any]], iteration: int) -> dict[str, Any]:
        """One LLM call, reduced to a JSON-serialisable turn record."""
        response = await self.llm_client.call(
            messages=messages,
            tools=get_tool_definitions_for_llm(),
            temperature=self.temperature,
        )
        return {
            "content": response.content or "",
            "tool_calls": [
                {
                    "id": tc.id or f"call_{iteration}_{index}",
                    "name": tc.name,
                    "args": tc.args,
                }
                for index, tc in enumerate(response.tool_calls)
            ],
        }

    def _observe(self, content: str) -> None:
        """Capture the turn text as the summary when it carries the summary tag."""
        if content and SUMMARY_TAG in content:
            self.state.summary = content

    async def _agent_turn(self, graph_state: AgentGraphState) -> dict[str, Any]:
        """Run one agent turn: LLM call, tool calls, observation."""
        iteration = graph_state["iteration"] + 1
        messages = list(graph_state["messages"])

        logger.info("agent_turn_start", run_id=self.steps.run_id, iteration=iteration)

        turn = await self.steps.run(
            f"agent-turn-{iteration}",
            lambda: self._call_llm(messages, iteration),
        )
        tool_calls = [ToolCallData(**tc) for tc in turn.get("tool_calls", [])]

        new_messages: list[dict[str, Any]] = [
            format_assistant_message_with_tools(turn.get("content", ""), tool_calls)
        ]

        failures = 0
        for tool_call in tool_calls:
            result = await self.tools.execute(
                tool_call.name, tool_call.args, tool_call.id
            )
            if not result.success:
                failures += 1
            new_messages.append(format_tool_result_for_llm(tool_call.id, result.content))

        self._observe(turn.get("content", ""))
        termination = evaluate_termination(self.state, iteration, self.max_iterations)

        # Models stall when an assistant-only turn is not followed by a user turn.
        if termination == Termination.CONTINUE and not tool_calls:
            new_messages.append({"role": "user", "content": NUDGE_PROMPT})

        logger.info(
            "agent_turn_complete",
            run_id=self.steps.run_id,
            iteration=iteration,
            tool_calls=len(tool_calls),
            tool_failures=failures,
            files=len(self.state.files),
            termination=termination.value,
        )

        return {
            "messages": new_messages,
            "iteration": iteration,
            "termination": termination.value,
        }

    def _should_continue(self, graph_state: AgentGraphState) -> str:
        if graph_state["termination"] == Termination.CONTINUE:
            return "continue"
        return "end"

    async def run(self, task: str) -> NetworkResult:
        """Run the agent loop until it terminates.

        Args:
            task: The user's request.

        Returns:
            NetworkResult with the final network state.

        Raises:
            IncompleteRunError: If the loop ended without a task summary.
        """
        self.state.reset()
        self.steps.begin_pass()

        initial_state = AgentGraphState(
            messages=[
                {
                    "role": "system",
                    "content": get_code_agent_system_prompt(settings.sandbox_preview_port),
                },
                {"role": "user", "content": task},
            ],
            iteration=0,
            termination=Termination.CONTINUE.value,
        )

        final_state = await self._compiled_graph.ainvoke(
            initial_state,
            config={"recursion_limit": self.max_iterations * 2 + 5},
        )

        termination = Termination(final_state["termination"])
        iterations = final_state["iteration"]

        if not self.state.summary:
            logger.warning(
                "agent_network_incomplete",
                run_id=self.steps.run_id,
                iterations=iterations,
                files=len(self.state.files),
            )
            raise IncompleteRunError(
                f"Agent stopped after {iterations} iterations without a task summary"
            )

        logger.info(
            "agent_network_complete",
            run_id=self.steps.run_id,
            iterations=iterations,
            termination=termination.value,
            files=len(self.state.files),
        )
        return NetworkResult(state=self.state, iterations=iterations, termination=termination)
