"""Configuration loader for the nanoclaw harness.

Loads config.yml and credentials.yml and validates them into Pydantic
models. Credentials may also come from the environment, which wins over
the file so a one-off ``ANTHROPIC_API_KEY=... nanoclaw-harness smoke`` works.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config.yml")
DEFAULT_CREDENTIALS_PATH = Path("credentials.yml")

API_KEY_NAME = "ANTHROPIC_API_KEY"
OAUTH_TOKEN_NAME = "CLAUDE_CODE_OAUTH_TOKEN"


class AssistantConfig(BaseModel):
    """Identity the agent is told to use.

    Attributes:
        name: Assistant name passed as ``assistantName``.
        channel_id: Routing key passed as ``chatJid`` for headless chats.
    """

    name: str = "Agent"
    channel_id: str = "headless@local"


class RuntimeConfig(BaseModel):
    """Container runtime CLI settings.

    Attributes:
        cli: Runtime executable (podman, docker, ...).
        image: Agent image reference.
        userns_keep_id: Map the host UID into the container (rootless podman)
            so bind mounts stay writable.
        launch_failure_codes: Exit codes the runtime reserves for its own
            failures (image missing, command not found). These surface as
            LaunchError instead of workload exit codes.
    """

    cli: str = "podman"
    image: str = "nanoclaw-agent:latest"
    userns_keep_id: bool = True
    launch_failure_codes: list[int] = Field(default_factory=lambda: [125, 126, 127])


class ContainerConfig(BaseModel):
    """Per-invocation limits.

    Attributes:
        timeout_ms: Hard timeout for a chat turn.
        start_check_timeout_ms: Timeout for the credential-free start check.
        agent_check_timeout_ms: Timeout for the smoke agent response check.
        stop_grace_ms: Grace period given to the graceful stop before a kill.
        max_output_size_bytes: Maximum bytes read back from captured output.
        memory: Memory limit (runtime syntax), or None for no limit.
        cpus: CPU quota, or None.
        pids_limit: Process limit, or None.
        model: Claude model passed as CLAUDE_MODEL.
    """

    timeout_ms: int = 300_000
    start_check_timeout_ms: int = 60_000
    agent_check_timeout_ms: int = 180_000
    stop_grace_ms: int = 5_000
    max_output_size_bytes: int = 10_485_760
    memory: str | None = None
    cpus: float | None = None
    pids_limit: int | None = None
    model: str = Field(default_factory=lambda: os.environ.get("CLAUDE_MODEL", "haiku"))

    @property
    def timeout_s(self) -> float:
        """Timeout in seconds."""
        return self.timeout_ms / 1000.0

    @property
    def start_check_timeout_s(self) -> float:
        """Start check timeout in seconds."""
        return self.start_check_timeout_ms / 1000.0

    @property
    def agent_check_timeout_s(self) -> float:
        """Agent check timeout in seconds."""
        return self.agent_check_timeout_ms / 1000.0

    @property
    def stop_grace_s(self) -> float:
        """Stop grace period in seconds."""
        return self.stop_grace_ms / 1000.0


class IpcConfig(BaseModel):
    """IPC close-signal timing.

    Attributes:
        enabled: Write the _close marker once a response has been seen.
        close_grace_ms: Delay between seeing the end marker and closing.
        poll_interval_ms: How often captured stdout is re-read.
    """

    enabled: bool = True
    close_grace_ms: int = 500
    poll_interval_ms: int = 250

    @property
    def close_grace_s(self) -> float:
        """Close grace in seconds."""
        return self.close_grace_ms / 1000.0

    @property
    def poll_interval_s(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000.0


class SessionsConfig(BaseModel):
    """Where session ids are persisted.

    Attributes:
        backend: 'file' (one file per workspace folder) or 'sqlite'.
    """

    backend: str = "file"

    @field_validator("backend")
    @classmethod
    def validate_backend(_cls, v: str) -> str:  # noqa: N804
        """Validate the backend is a known value."""
        if v not in {"file", "sqlite"}:
            raise ValueError(f"Invalid sessions backend '{v}'. Must be 'file' or 'sqlite'")
        return v


class PathsConfig(BaseModel):
    """Filesystem locations.

    Attributes:
        nanoclaw_dir: Checkout of the nanoclaw project.
        data_dir: Harness state (sessions, database).
    """

    nanoclaw_dir: str = "~/nanoclaw"
    data_dir: str = "~/.local/share/nanoclaw-harness"

    @property
    def nanoclaw_path(self) -> Path:
        """Expanded nanoclaw directory."""
        return Path(self.nanoclaw_dir).expanduser()

    @property
    def data_path(self) -> Path:
        """Expanded data directory."""
        return Path(self.data_dir).expanduser()


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        file: Optional log file path. Empty disables file logging.
    """

    level: str = "WARNING"
    file: str = ""

    @field_validator("level")
    @classmethod
    def validate_level(_cls, v: str) -> str:  # noqa: N804
        """Validate log level is a known value."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Invalid log level '{v}'. Must be one of: {valid}")
        return v.upper()


class AppConfig(BaseModel):
    """Root configuration loaded from config.yml."""

    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    container: ContainerConfig = Field(default_factory=ContainerConfig)
    ipc: IpcConfig = Field(default_factory=IpcConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class Credentials(BaseModel):
    """Agent credentials. At most one is sent to the container.

    Attributes:
        anthropic_api_key: Anthropic API key.
        claude_code_oauth_token: Claude Code OAuth token.
    """

    anthropic_api_key: str = ""
    claude_code_oauth_token: str = ""

    @property
    def configured(self) -> bool:
        """Whether any credential is available."""
        return bool(self.anthropic_api_key or self.claude_code_oauth_token)

    def to_secrets(self) -> dict[str, str]:
        """Build the ``secrets`` mapping for the entrypoint.

        Exactly one credential is sent when any is configured. The API key
        takes precedence; if both are set the OAuth token is dropped with a
        warning rather than silently sending both.

        Returns:
            Dict with a single credential, or empty if none is configured.
        """
        if self.anthropic_api_key:
            if self.claude_code_oauth_token:
                logger.warning(
                    "Both %s and %s are set; sending only %s",
                    API_KEY_NAME,
                    OAUTH_TOKEN_NAME,
                    API_KEY_NAME,
                )
            return {API_KEY_NAME: self.anthropic_api_key}
        if self.claude_code_oauth_token:
            return {OAUTH_TOKEN_NAME: self.claude_code_oauth_token}
        return {}


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load and validate configuration.

    Args:
        config_path: Path to config.yml. When omitted, config.yml in the
            current directory is used if present, defaults otherwise.

    Returns:
        Validated AppConfig instance.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
        ValueError: If config values fail Pydantic validation.
    """
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return AppConfig()
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    with config_path.open() as f:
        data = yaml.safe_load(f) or {}
    return AppConfig.model_validate(data)


def load_credentials(
    credentials_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Credentials:
    """Load credentials from credentials.yml, then the environment.

    Args:
        credentials_path: Path to credentials.yml. Defaults to
            credentials.yml in the current directory. A missing file is fine.
        environ: Environment mapping. Defaults to os.environ.

    Returns:
        Credentials instance, possibly empty.
    """
    env = os.environ if environ is None else environ
    path = credentials_path or DEFAULT_CREDENTIALS_PATH
    data: dict[str, str] = {}
    if path.exists():
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    creds = Credentials.model_validate(data)
    updates = {
        field: env[name]
        for field, name in (
            ("anthropic_api_key", API_KEY_NAME),
            ("claude_code_oauth_token", OAUTH_TOKEN_NAME),
        )
        if env.get(name)
    }
    return creds.model_copy(update=updates) if updates else creds
