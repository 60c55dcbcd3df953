"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the agent
builder backend. All settings can be overridden via environment variables or
a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        gemini_api_key: API key for Google Gemini models.
        default_model: LiteLLM model id used by the code agent.
        llm_request_timeout_seconds: Timeout for a single LLM request.
        llm_transient_retries: Retries for transient (non-quota) provider errors.
        llm_rate_limit_rpm: Requests per minute allowed towards the provider.
        llm_rate_limit_tpm: Tokens per minute allowed towards the provider.
        max_agent_iterations: Iteration budget of the agent network.
        agent_temperature: Sampling temperature for agent turns.
        sandbox_image: Docker image for sandbox containers.
        sandbox_workspace: Workspace root inside the sandbox.
        sandbox_preview_port: Port the generated app listens on in the sandbox.
        sandbox_public_host: Hostname used when building preview URLs.
        sandbox_ttl_minutes: Lifetime of a sandbox before the reaper kills it.
        sandbox_reap_interval_minutes: Interval of the background reaper.
        sandbox_connect_retries: Reconnect attempts before giving up.
        command_timeout_seconds: Timeout for a single sandbox command.
        package_install_command: Package manager invocation for install_packages.
        pacing_base_delay_ms: Minimum spacing before every tool call.
        pacing_per_file_delay_ms: Extra spacing per additional file written.
        pacing_max_delay_ms: Upper bound for a single pacing delay.
        initial_stagger_ms: Pause at the start of every workflow run.
        quota_max_retries: Retries of the agent network on quota errors.
        quota_default_delay_ms: First backoff when the provider gives no hint.
        quota_base_delay_ms: Base of the exponential backoff.
        cache_ttl_seconds: Lifetime of a cached workflow outcome.
        cache_capacity: Maximum number of cached outcomes.
        database_path: SQLite file for projects, messages and the step log.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    gemini_api_key: str = ""
    # Model names must include provider prefix for LiteLLM (e.g., gemini/)
    default_model: str = "gemini/gemini-1.5-flash"
    llm_request_timeout_seconds: int = 120
    llm_transient_retries: int = 2
    llm_rate_limit_rpm: int = 15
    llm_rate_limit_tpm: int = 250_000

    # Agent Network
    max_agent_iterations: int = 10
    agent_temperature: float = 0.4

    # Sandbox Configuration
    sandbox_image: str = "agent-builder-sandbox:latest"
    sandbox_workspace: str = "/workspace"
    sandbox_preview_port: int = 8000
    sandbox_public_host: str = "localhost"
    sandbox_ttl_minutes: int = 30
    sandbox_reap_interval_minutes: int = 5
    sandbox_connect_retries: int = 3
    command_timeout_seconds: int = 120
    package_install_command: str = "pip install --no-cache-dir"

    # Tool pacing (provider rate limits)
    pacing_base_delay_ms: int = 500
    pacing_per_file_delay_ms: int = 250
    pacing_max_delay_ms: int = 3000
    initial_stagger_ms: int = 1000

    # Quota retry
    quota_max_retries: int = 5
    quota_default_delay_ms: int = 120_000
    quota_base_delay_ms: int = 60_000

    # Response cache
    cache_ttl_seconds: float = 300.0
    cache_capacity: int = 100

    # Database Configuration
    database_path: str = "./data/agent_builder.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from a JSON array, a comma-separated string or a list."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export the Gemini key to os.environ for LiteLLM discovery."""
        if self.gemini_api_key:
            os.environ.setdefault("GEMINI_API_KEY", self.gemini_api_key)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
