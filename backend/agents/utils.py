"""LLM client utilities and helper functions for agent execution.

This module provides:
- LLMClient: Wrapper around LiteLLM with rate limiting and retries for
  transient provider failures
- MockLLMClient: Scripted client for tests
- Message formatting helpers for the tool-calling loop
- Tag helpers for ``<task_summary>``, ``<title>`` and ``<response>`` blocks
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from rate_limiter import RateLimiter, get_rate_limiter

logger = structlog.get_logger()


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). This helper guarantees downstream tool
    execution always receives a dict-like payload.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMMetrics:
    """Token usage and latency of one LLM call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str = "stop"
    metrics: LLMMetrics = field(default_factory=lambda: LLMMetrics(model="unknown"))
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with rate limiting and transient-error retries.

    Retries on: ServiceUnavailableError (500/502/503) and Timeout.
    Quota errors (RateLimitError, HTTP 429) are NOT retried here; they
    propagate to the quota retry controller, which owns the long backoffs.
    AuthenticationError and BadRequestError are never retried.

    Attributes:
        default_model: Default model to use if not specified
        retry_attempts: Number of retry attempts for transient failures
        retry_delay: Base delay between retry attempts in seconds
        rate_limiter: RateLimiter instance for throttling API calls
    """

    def __init__(
        self,
        default_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.default_model = default_model or settings.default_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_transient_retries
        )
        self.retry_delay = retry_delay
        self._rate_limiter = rate_limiter

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Make an LLM call with rate limiting and retry logic.

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Maximum tokens in response

        Returns:
            LLMResponse with content, tool calls, and metrics

        Raises:
            RateLimitError: On provider quota errors (not retried here)
            AuthenticationError: If API key is invalid
            BadRequestError: If request is malformed
            ServiceUnavailableError | Timeout: After all retries are exhausted
        """
        model = model or self.default_model
        start_time = time.time()

        # Rough estimate: 4 chars per token
        estimated_tokens = max(count_messages_tokens(messages), 500)
        reservation = await self.rate_limiter.acquire(estimated_tokens=estimated_tokens)

        last_exception: Exception | None = None
        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except (ServiceUnavailableError, Timeout) as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(
                    "llm_call_failed_all_retries",
                    model=model,
                    attempts=self.retry_attempts + 1,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise
            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            latency_ms = int((time.time() - start_time) * 1000)
            llm_response = self._parse_response(response, model, latency_ms)
            self.rate_limiter.record_usage(
                reservation,
                llm_response.metrics.input_tokens + llm_response.metrics.output_tokens
            )

            logger.info(
                "llm_call_complete",
                model=model,
                input_tokens=llm_response.metrics.input_tokens,
                output_tokens=llm_response.metrics.output_tokens,
                latency_ms=latency_ms,
                tool_calls=len(llm_response.tool_calls),
                attempt=attempt + 1,
            )
            return llm_response

        raise last_exception or RuntimeError("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallData] = []
        if message.tool_calls:
            for tc in message.tool_calls:
                tool_calls.append(
                    ToolCallData(
                        id=tc.id,
                        name=tc.function.name,
                        args=normalize_tool_args(tc.function.arguments),
                    )
                )

        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )


def count_messages_tokens(messages: list[dict[str, Any]]) -> int:
    """Estimate total token count for a list of messages.

    Uses the ~4 characters per token heuristic. Counts content and
    tool call arguments.
    """
    total_chars = 0
    for msg in messages:
        content = msg.get("content", "")
        if isinstance(content, str):
            total_chars += len(content)

        for tc in msg.get("tool_calls", []) or []:
            args = tc.get("function", {}).get("arguments", "")
            if isinstance(args, str):
                total_chars += len(args)
            elif isinstance(args, dict):
                total_chars += len(json.dumps(args))

    return total_chars // 4


def extract_tag(text: str | None, tag: str) -> str | None:
    """Return the stripped content of the first ``<tag>...</tag>`` block.

    Returns None when the tag is absent or empty.
    """
    if not text:
        return None
    match = re.search(rf"<{tag}>(.*?)</{tag}>", text, re.DOTALL | re.IGNORECASE)
    if not match:
        return None
    content = match.group(1).strip()
    return content or None


def strip_tags(text: str) -> str:
    """Remove XML-like tags, keeping their inner text."""
    return re.sub(r"</?[a-zA-Z_][\w-]*>", "", text)


def format_tool_result_for_llm(
    tool_call_id: str,
    result: str,
) -> dict[str, Any]:
    """Format a tool result as a message for the LLM.

    Args:
        tool_call_id: The ID of the tool call this result corresponds to
        result: The string result from tool execution

    Returns:
        A message dict in the format expected by LLMs
    """
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message that includes tool calls.

    Args:
        content: The assistant's text response
        tool_calls: List of ToolCallData the assistant made

    Returns:
        A message dict in the format expected by LLMs
    """
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]

    return message


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Returns predefined responses in order. An exception instance in the list
    is raised instead of returned, which lets tests script provider failures.

    Usage:
        >>> responses = [
        ...     LLMResponse(content="Hello", tool_calls=[]),
        ...     RateLimitError("429 quota", "gemini", "gemini-1.5-flash"),
        ...     LLMResponse(content="<task_summary>done</task_summary>", tool_calls=[]),
        ... ]
        >>> client = MockLLMClient(responses=responses)
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | Exception] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Return (or raise) the next predefined response.

        Raises:
            IndexError: If no more responses available
        """
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        if isinstance(response, Exception):
            raise response

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )
        return response

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
