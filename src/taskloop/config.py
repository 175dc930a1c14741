"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


DEFAULT_SYSTEM_PROMPT = """You are a personal productivity assistant. You help with tasks, research, notes, and planning.

When given a task:
1. Think step-by-step about what you need
2. Use tools one at a time, waiting for each result before proceeding
3. Provide a clear, concise final answer

Rules:
- Answer well-known facts directly from your own knowledge instead of calling tools.
- If a tool returns an ERROR, do NOT call the same tool again with the same input. \
Answer from your own knowledge or clearly explain the limitation.
- Be concise and actionable."""


class GatewayConfig(BaseModel):
    backend: Literal["anthropic", "openai"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.7


class AnthropicConfig(BaseModel):
    api_key: str = ""
    base_url: Optional[str] = None
    max_retries: int = 0  # retries are owned by the resilience layer
    timeout: int = 120


class OpenAIConfig(BaseModel):
    """Any OpenAI-compatible chat completions endpoint (OpenAI, Groq, Gemini)."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    connect_timeout: float = 5.0
    read_timeout: float = 120.0


class EmbeddingConfig(BaseModel):
    enabled: bool = True
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "text-embedding-3-small"
    timeout: float = 30.0
    cache_ttl_days: int = 7


class AgentConfig(BaseModel):
    max_iterations: int = Field(default=10, ge=1)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class MemoryConfig(BaseModel):
    session_max_messages: int = Field(default=20, ge=2)
    session_ttl_minutes: int = Field(default=60, ge=1)
    max_facts_per_owner: int = Field(default=500, ge=1)
    semantic_top_k: int = Field(default=5, ge=1)
    similarity_threshold: float = Field(default=0.75, ge=-1.0, le=1.0)
    extraction_enabled: bool = True


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_backoff_seconds: float = 2.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 8.0
    jitter_seconds: float = 0.0


class CircuitBreakerConfig(BaseModel):
    window_size: int = Field(default=10, ge=1)
    minimum_calls: int = Field(default=5, ge=1)
    failure_rate_threshold: float = Field(default=0.5, gt=0.0, le=1.0)
    cooldown_seconds: float = 30.0
    half_open_max_calls: int = Field(default=1, ge=1)


class ResilienceConfig(BaseModel):
    retry: RetryConfig = Field(default_factory=RetryConfig)
    model_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    extraction_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    idempotency_ttl_hours: int = Field(default=24, ge=1)


class BackgroundConfig(BaseModel):
    workers: int = Field(default=2, ge=1)
    queue_size: int = Field(default=50, ge=1)
    shutdown_timeout_seconds: float = 30.0


class FileOpsConfig(BaseModel):
    base_directory: str = "./agent-files"
    max_file_size_kb: int = 512
    allowed_extensions: list[str] = Field(
        default_factory=lambda: ["txt", "md", "json", "csv", "yaml", "yml", "log"]
    )


class HttpCallerConfig(BaseModel):
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    allowed_domains: list[str] = Field(default_factory=list)  # empty = allow all


class DatabaseToolConfig(BaseModel):
    db_path: str = "./data/workspace.db"
    readable_tables: list[str] = Field(default_factory=list)  # empty = allow all
    writable_tables: list[str] = Field(default_factory=list)  # empty = allow none
    max_result_rows: int = 100


class ToolsConfig(BaseModel):
    enabled: list[str] = Field(
        default_factory=lambda: [
            "echo",
            "file_ops",
            "call_api",
            "query_database",
            "save_memory",
            "search_memory",
        ]
    )
    file_ops: FileOpsConfig = Field(default_factory=FileOpsConfig)
    call_api: HttpCallerConfig = Field(default_factory=HttpCallerConfig)
    query_database: DatabaseToolConfig = Field(default_factory=DatabaseToolConfig)


class StorageConfig(BaseModel):
    db_path: str = "./data/taskloop.db"


class JanitorConfig(BaseModel):
    purge_interval_minutes: int = Field(default=10, ge=1)


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    anthropic: Optional[AnthropicConfig] = None
    openai: Optional[OpenAIConfig] = None
    embeddings: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    janitor: JanitorConfig = Field(default_factory=JanitorConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced by other paths as ${data_dir}
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
