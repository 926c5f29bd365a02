"""
Configuration management for the Exercise Runner.
Supports environment variables and .env files.
"""

import sys
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class InterpreterConfig(BaseSettings):
    """In-process interpreter worker configuration."""

    model_config = SettingsConfigDict(env_prefix="INTERPRETER_")

    python_executable: str = Field(
        default=sys.executable,
        description="Interpreter used to launch the isolated worker"
    )
    init_timeout: float = Field(
        default=20.0,
        gt=0,
        description="Seconds to wait for the worker handshake"
    )
    max_output_size: int = Field(
        default=100_000,
        description="Max characters kept per output stream"
    )
    scratch_dir: str | None = Field(
        default=None,
        description="Parent directory for worker filesystems (system temp when unset)"
    )

    # Resource limits applied inside the worker (None disables one)
    memory_limit_mb: int | None = Field(
        default=512,
        gt=0,
        description="Address space of the worker process"
    )
    file_size_limit_mb: int | None = Field(
        default=16,
        gt=0,
        description="Largest file the worker may write"
    )
    cpu_limit_seconds: int | None = Field(
        default=30,
        gt=0,
        description="CPU time granted to a single run"
    )
    max_processes: int | None = Field(
        default=None,
        ge=0,
        description="RLIMIT_NPROC for the worker's user (process creation is denied regardless)"
    )
    blocked_modules: list[str] = Field(
        default=["ctypes", "multiprocessing", "signal", "_thread"],
        description="Top-level modules submissions may not import"
    )


class SandboxConfig(BaseSettings):
    """Remote (Docker) sandbox configuration."""

    model_config = SettingsConfigDict(env_prefix="SANDBOX_")

    image_name: str = Field(default="python:3.12-slim", description="Sandbox image")
    auto_pull_image: bool = Field(
        default=True,
        description="Pull the image on startup when it is missing"
    )
    container_workdir: str = Field(default="/workspace", description="Upload target")

    # Resource limits
    memory_limit: str = Field(default="256m", description="Container memory limit")
    cpu_period: int = Field(default=100_000, description="CFS period")
    cpu_quota: int = Field(default=50_000, description="CFS quota (50% of one CPU)")
    pids_limit: int = Field(default=64, description="Max processes per container")
    network_enabled: bool = Field(default=False, description="Allow network access")

    max_output_size: int = Field(
        default=100_000,
        description="Max characters kept per output stream"
    )
    provision_retry_delay: float = Field(
        default=0.5,
        ge=0,
        description="Delay before the single retry of a transient provisioning failure"
    )
    teardown_grace: float = Field(
        default=1.0,
        ge=0,
        description="Extra seconds granted to the remote-enforced timeout"
    )


class QueueConfig(BaseSettings):
    """Admission control configuration."""

    model_config = SettingsConfigDict(env_prefix="QUEUE_")

    max_concurrent_per_session: int = Field(
        default=1,
        ge=1,
        description="In-flight executions per session"
    )
    max_concurrent_global: int = Field(
        default=8,
        ge=1,
        description="In-flight executions across all sessions"
    )
    default_timeout_ms: int = Field(
        default=10_000,
        gt=0,
        description="Per-execution ceiling when the request has none"
    )
    max_timeout_ms: int = Field(
        default=60_000,
        gt=0,
        description="Upper bound for any per-execution ceiling"
    )


class SessionConfig(BaseSettings):
    """Execution session lifetime configuration."""

    model_config = SettingsConfigDict(env_prefix="SESSION_")

    idle_ttl: float = Field(
        default=900.0,
        gt=0,
        description="Seconds without activity before a session is closed"
    )
    sweep_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between idle-session sweeps"
    )


class SubmissionConfig(BaseSettings):
    """Submission orchestration configuration."""

    model_config = SettingsConfigDict(env_prefix="SUBMISSION_")

    default_backend: Literal["in_process", "remote"] = Field(
        default="in_process",
        description="Backend used when the caller does not pick one"
    )
    aggregate_timeout_ms: int = Field(
        default=120_000,
        gt=0,
        description="Ceiling across the whole submission"
    )
    stop_on_timeout: bool = Field(
        default=True,
        description="Mark remaining tests timed out once one test times out"
    )
    persistence_retries: int = Field(
        default=1,
        ge=0,
        le=1,
        description="Inline retries when saving a submission fails"
    )


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    url: str = Field(
        default="sqlite+aiosqlite:///./exercise_runner.db",
        description="Database connection URL"
    )
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Max overflow connections")
    echo: bool = Field(default=False, description="Echo SQL statements")


class ServerConfig(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    workers: int = Field(default=1, description="Number of workers")
    debug: bool = Field(default=False, description="Debug mode")
    cors_origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000"],
        description="Allowed CORS origins"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__"
    )

    app_name: str = "Exercise Runner"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = Field(default=False, description="Debug mode")

    interpreter: InterpreterConfig = Field(default_factory=InterpreterConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    submission: SubmissionConfig = Field(default_factory=SubmissionConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("debug", mode="before")
    @classmethod
    def validate_debug(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
