"""Pydantic v2 models for teamstream.yaml configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PermissionMode = Literal["bypassPermissions", "default", "acceptEdits", "plan"]


class AgentSettings(BaseModel):
    """How the external agent CLI is located, launched and authenticated."""

    model_config = ConfigDict(extra="forbid")

    binary: str | None = Field(
        default=None,
        description="Path to the agent CLI (auto-discovered when unset)",
    )
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional arguments appended to every invocation",
    )
    permission_mode: PermissionMode = Field(
        default="bypassPermissions",
        description="Permission mode; anything but bypass prompts the client",
    )
    api_key_env: str | None = Field(
        default=None,
        description="Env var whose value is passed as ANTHROPIC_API_KEY",
    )
    base_url: str | None = Field(
        default=None,
        description="Override for ANTHROPIC_BASE_URL",
    )
    node_heap_limit_mb: int = Field(
        default=2048,
        ge=0,
        description="V8 heap cap for the Node.js CLI (0 to disable)",
    )


class TimeoutSettings(BaseModel):
    """Stall detection and shutdown timing, in seconds."""

    model_config = ConfigDict(extra="forbid")

    check_interval: float = Field(
        default=5.0, gt=0, description="How often inactivity is checked"
    )
    idle_timeout: float = Field(
        default=60.0, gt=0, description="Silence before a running agent is interrupted"
    )
    post_result_grace: float = Field(
        default=5.0,
        gt=0,
        description="Time allowed to exit after the terminal result record",
    )
    close_grace: float = Field(
        default=5.0, gt=0, description="Wait after interrupt before force-killing"
    )

    @model_validator(mode="after")
    def _validate_ordering(self) -> TimeoutSettings:
        if self.post_result_grace > self.idle_timeout:
            msg = "post_result_grace must not exceed idle_timeout"
            raise ValueError(msg)
        return self


class ResumeSettings(BaseModel):
    """Bounds for the team-mode resume loop."""

    model_config = ConfigDict(extra="forbid")

    poll_interval: float = Field(
        default=5.0, ge=0, description="Wait before each work-state check"
    )
    max_cycles: int = Field(
        default=30, ge=0, description="Maximum resume cycles per stream"
    )


class TeamSettings(BaseModel):
    """Team mode and where its shared task/inbox files live."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Enable team mode by default")
    claude_home: Path = Field(
        default_factory=lambda: Path.home() / ".claude",
        description="Directory holding tasks/ and teams/",
    )

    @field_validator("claude_home")
    @classmethod
    def _expand_home(cls, v: Path) -> Path:
        return v.expanduser()


class StoreSettings(BaseModel):
    """Location of the JSON session store used by the CLI."""

    model_config = ConfigDict(extra="forbid")

    path: Path = Field(
        default=Path(".teamstream/sessions"),
        description="Directory of per-session JSON files",
    )


class TeamstreamConfig(BaseModel):
    """Top-level teamstream.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    model: str | None = Field(
        default=None,
        description="Default model passed to the agent CLI",
    )
    agent: AgentSettings = Field(default_factory=AgentSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    resume: ResumeSettings = Field(default_factory=ResumeSettings)
    team: TeamSettings = Field(default_factory=TeamSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
