"""Pydantic models shared across the harness.

Field names are snake_case in Python; the nanoclaw entrypoint speaks
camelCase on the wire, so wire names are declared as aliases.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvocationRequest(BaseModel):
    """One turn sent to the agent container on stdin.

    Attributes:
        prompt: The user prompt. Must be non-empty.
        session_id: Session to resume. None starts a new session.
        workspace_folder: Logical name of the isolated working directory.
        channel_id: Routing key for the conversation (a chat JID upstream).
        is_primary: Whether the workspace is the primary (main) group.
        is_scheduled: Whether the turn comes from a scheduled task.
        assistant_name: Name the agent answers to.
        secrets: Credential name -> value. Always serialized, possibly empty.
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(min_length=1)
    session_id: str | None = Field(default=None, alias="sessionId")
    workspace_folder: str = Field(alias="groupFolder")
    channel_id: str = Field(alias="chatJid")
    is_primary: bool = Field(default=False, alias="isMain")
    is_scheduled: bool = Field(default=False, alias="isScheduledTask")
    assistant_name: str = Field(default="Agent", alias="assistantName")
    secrets: dict[str, str] = Field(default_factory=dict)

    @field_validator("session_id")
    @classmethod
    def blank_session_is_none(_cls, v: str | None) -> str | None:  # noqa: N804
        """Treat an empty session id as no session at all."""
        return v or None


class InvocationResult(BaseModel):
    """Structured payload parsed from between the output sentinels.

    Attributes:
        status: 'success' or 'error'.
        result: Human-readable result text, or the error message on failure.
        new_session_id: Session id to use for the next turn, if any.
        error: Error detail some agent-runner builds emit alongside status.
    """

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = Field(default=None, alias="newSessionId")
    error: str | None = None

    @property
    def message(self) -> str:
        """Best human-readable text for this result."""
        return self.result or self.error or ""


class VolumeMount(BaseModel):
    """A bind mount from the host into the container."""

    host_path: str
    container_path: str
    readonly: bool = False


class ResourceLimits(BaseModel):
    """Resource bounds applied to the container.

    Attributes:
        memory: Memory limit in runtime syntax (e.g. '2g'), or None.
        cpus: CPU quota (e.g. 2.0), or None.
        pids_limit: Maximum number of processes, or None.
    """

    memory: str | None = None
    cpus: float | None = None
    pids_limit: int | None = None


class ContainerSpec(BaseModel):
    """Everything needed to launch one workload.

    Attributes:
        image: Container image reference.
        name: Container name. Must be unique among running instances.
        mounts: Bind mounts.
        env: Environment variables passed with -e.
        limits: Resource limits.
        command: Optional command override appended after the image.
    """

    image: str
    name: str
    mounts: list[VolumeMount] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    command: list[str] = Field(default_factory=list)
