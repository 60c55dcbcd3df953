"""Agent tools, prompts, LLM integration, and the agent network.

This module exports the key components needed for agent execution:
- Tool definitions and the registry dispatching them to the sandbox
- The code agent system prompt
- LLM client utilities with rate limiting and retries
- The LangGraph agent network and its termination rule
"""

from agents.network import (
    AgentNetwork,
    IncompleteRunError,
    NetworkResult,
    NetworkState,
    Termination,
    evaluate_termination,
)
from agents.prompts import CODE_AGENT_PROMPT, get_code_agent_system_prompt
from agents.tools import (
    TOOL_DEFINITIONS,
    ToolArgumentError,
    ToolExecutionError,
    ToolName,
    ToolRegistry,
    ToolResult,
    get_tool_definitions_for_llm,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    extract_tag,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)

__all__ = [
    # Tools
    "TOOL_DEFINITIONS",
    "ToolArgumentError",
    "ToolExecutionError",
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "get_tool_definitions_for_llm",
    # Prompts
    "CODE_AGENT_PROMPT",
    "get_code_agent_system_prompt",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "extract_tag",
    "format_assistant_message_with_tools",
    "format_tool_result_for_llm",
    # Network
    "AgentNetwork",
    "IncompleteRunError",
    "NetworkResult",
    "NetworkState",
    "Termination",
    "evaluate_termination",
]
