"""Configuration loading for handback.

Reads .handback/config.yaml. Pydantic models validate the schema; a handful
of environment variables override deployment-specific values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from handback.models import AgentTool, ResumeMode

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".handback"
CONFIG_FILENAME = "config.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str = "handback"


class AgentConfig(BaseModel):
    # Default resume_mode for boards created without one
    resume_mode: ResumeMode = ResumeMode.COMMAND
    default_agent: str = "agent"  # author_id for agent comments posted by `block`
    default_author: str = ""  # author_id for human comments


class PromptConfig(BaseModel):
    description_limit: int = Field(default=500, ge=1)
    minimal_comments: int = Field(default=3, ge=1)
    minimal_comment_chars: int = Field(default=200, ge=1)
    comment_limit: int | None = Field(
        default=None, ge=1, description="Cap on comments fetched for a resume; None = all"
    )


class ToolConfig(BaseModel):
    executable: str


def _default_tools() -> dict[AgentTool, ToolConfig]:
    return {
        AgentTool.CLAUDE_CODE: ToolConfig(executable="claude"),
        AgentTool.OPENCODE: ToolConfig(executable="opencode"),
        AgentTool.CODEX: ToolConfig(executable="codex"),
    }


class EventsConfig(BaseModel):
    queue_size: int = Field(default=1000, ge=1)
    # Comment IDs, trigger decisions and surfaced commands kept in memory
    seen_limit: int = Field(default=10_000, ge=1)


class HandbackConfig(BaseModel):
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    tools: dict[AgentTool, ToolConfig] = Field(default_factory=_default_tools)
    events: EventsConfig = Field(default_factory=EventsConfig)
    data_dir: str | None = None

    @field_validator("tools")
    @classmethod
    def _fill_missing_tools(cls, v: dict[AgentTool, ToolConfig]) -> dict[AgentTool, ToolConfig]:
        """Partial ``tools:`` sections keep the defaults for unlisted tools."""
        merged = _default_tools()
        merged.update(v)
        return merged

    def executable_for(self, tool: AgentTool) -> str:
        return self.tools[tool].executable

    def resolve_data_dir(self, root: Path) -> Path:
        if self.data_dir:
            path = Path(self.data_dir).expanduser()
            return path if path.is_absolute() else root / path
        return root / ".handback-data"


# ── Config Loader ────────────────────────────────────────────────────────────


def _apply_env_overrides(config: HandbackConfig) -> HandbackConfig:
    data_dir = os.environ.get("HANDBACK_DATA_DIR")
    if data_dir:
        config.data_dir = data_dir

    resume_mode = os.environ.get("HANDBACK_RESUME_MODE")
    if resume_mode:
        try:
            config.agent.resume_mode = ResumeMode(resume_mode)
        except ValueError:
            logger.warning(
                "Ignoring invalid HANDBACK_RESUME_MODE=%r (must be one of %s)",
                resume_mode,
                [m.value for m in ResumeMode],
            )
    return config


def load_config(config_dir: Path) -> HandbackConfig:
    """Load handback configuration from a .handback/ directory.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    config_path = config_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"handback config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = _apply_env_overrides(HandbackConfig(**raw))
    logger.info("Loaded handback config: project=%s", config.project.name)
    return config


def load_config_or_default(config_dir: Path) -> HandbackConfig:
    """Like load_config, but fall back to defaults when no config file exists."""
    try:
        return load_config(config_dir)
    except FileNotFoundError:
        logger.warning("No config at %s, using defaults", config_dir / CONFIG_FILENAME)
        return _apply_env_overrides(HandbackConfig())


DEFAULT_CONFIG = """\
# .handback/config.yaml: handback project configuration

project:
  name: "{project_name}"

agent:
  # manual | command | auto; default for boards created without one
  resume_mode: command
  default_agent: agent

prompt:
  description_limit: 500
  minimal_comments: 3
  minimal_comment_chars: 200

tools:
  claude-code:
    executable: claude
  opencode:
    executable: opencode
  codex:
    executable: codex

events:
  queue_size: 1000
  seen_limit: 10000
"""
