"""YAML configuration loader.

Loads a single YAML file with engine, backend, project, provider and
agent profile settings. When no YAML is provided, env vars work
exactly as before.

Example YAML:
    engine:
      python_command: python3
      connector_port: 24337
      worktree_branch_prefix: taskdesk/

    aider:
      options: "--map-tokens 2048"
      auto_commits: true
      watch_files: false
      caching_enabled: true
      environment:
        AIDER_DARK_MODE: "true"

    project:
      main_model: anthropic/claude-sonnet-4-5
      weak_model: anthropic/claude-haiku-4-5
      architect_model: openai/o3
      reasoning_effort: medium
      model_edit_formats:
        openai/o3: architect

    providers:
      anthropic:
        api_key_env: ANTHROPIC_API_KEY
      openrouter:
        api_key_env: OPENROUTER_API_KEY
        prefix: openrouter/

    agent_profiles:
      default:
        name: Default agent
        model: claude-sonnet-4-5
        allowed_tools: [Read, Edit, Write, Grep, Glob, Bash]
    default_agent_profile: default
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import AiderSettings, EngineConfig, ProjectSettings
from .models import AgentProfile

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Credentials and model-name prefix for one LLM provider."""
    name: str
    api_key_env: str | None = None
    api_key: str | None = None
    # Prefix the subprocess backend expects on model names, if any.
    prefix: str | None = None


@dataclass
class TaskDeskConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    aider: AiderSettings
    project: ProjectSettings
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    agent_profiles: dict[str, AgentProfile] = field(default_factory=dict)
    default_agent_profile: str | None = None

    @classmethod
    def from_env(cls) -> TaskDeskConfig:
        """Defaults plus TASKDESK_* overrides, with no profiles or providers."""
        return cls(
            engine=EngineConfig.from_env(),
            aider=AiderSettings.from_env(),
            project=ProjectSettings(),
        )

    def resolve_agent_profile(self, profile_id: str | None = None) -> AgentProfile | None:
        """Return the requested profile, else the default, else None."""
        for candidate in (profile_id, self.project.agent_profile_id, self.default_agent_profile):
            if candidate and candidate in self.agent_profiles:
                return self.agent_profiles[candidate]
        return None


def _parse_agent_profiles(raw: dict) -> dict[str, AgentProfile]:
    profiles: dict[str, AgentProfile] = {}
    for profile_id, body in (raw or {}).items():
        body = body or {}
        kwargs = {
            k: body[k]
            for k in (
                "provider", "model", "system_prompt", "allowed_tools",
                "permission_mode", "max_turns",
            )
            if k in body
        }
        profiles[profile_id] = AgentProfile(
            id=profile_id,
            name=body.get("name", profile_id),
            **kwargs,
        )
    return profiles


def load_yaml_config(path: str | Path) -> TaskDeskConfig:
    """Load and parse a YAML config file."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s: sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    # ── Engine config ──────────────────────────────────────────
    engine_raw = raw.get("engine", {}) or {}
    engine = EngineConfig(
        python_command=engine_raw.get(
            "python_command", EngineConfig.python_command
        ),
        connector_host=engine_raw.get(
            "connector_host", EngineConfig.connector_host
        ),
        connector_port=int(engine_raw.get(
            "connector_port", EngineConfig.connector_port
        )),
        data_dir_name=engine_raw.get(
            "data_dir_name", EngineConfig.data_dir_name
        ),
        worktree_branch_prefix=engine_raw.get(
            "worktree_branch_prefix", EngineConfig.worktree_branch_prefix
        ),
        default_main_model=engine_raw.get(
            "default_main_model", EngineConfig.default_main_model
        ),
        log_level=engine_raw.get("log_level", EngineConfig.log_level),
    )
    if engine_raw.get("pid_files_dir"):
        engine.pid_files_dir = str(Path(engine_raw["pid_files_dir"]).expanduser())

    # ── Subprocess backend ─────────────────────────────────────
    aider_raw = raw.get("aider", {}) or {}
    aider = AiderSettings(
        options=str(aider_raw.get("options", "") or ""),
        environment_variables={
            str(k): str(v) for k, v in (aider_raw.get("environment") or {}).items()
        },
        auto_commits=bool(aider_raw.get("auto_commits", True)),
        watch_files=bool(aider_raw.get("watch_files", False)),
        caching_enabled=bool(aider_raw.get("caching_enabled", False)),
        add_rule_files=bool(aider_raw.get("add_rule_files", True)),
        confirm_before_edit=bool(aider_raw.get("confirm_before_edit", False)),
    )

    # ── Project models ─────────────────────────────────────────
    project_raw = raw.get("project", {}) or {}
    project = ProjectSettings(
        main_model=project_raw.get("main_model", engine.default_main_model),
        weak_model=project_raw.get("weak_model"),
        architect_model=project_raw.get("architect_model"),
        model_edit_formats=dict(project_raw.get("model_edit_formats") or {}),
        reasoning_effort=project_raw.get("reasoning_effort"),
        thinking_tokens=(
            str(project_raw["thinking_tokens"])
            if project_raw.get("thinking_tokens") is not None else None
        ),
        agent_profile_id=project_raw.get("agent_profile"),
    )

    providers = {
        name: ProviderConfig(
            name=name,
            api_key_env=(body or {}).get("api_key_env"),
            api_key=(body or {}).get("api_key"),
            prefix=(body or {}).get("prefix"),
        )
        for name, body in (raw.get("providers") or {}).items()
    }

    profiles = _parse_agent_profiles(raw.get("agent_profiles") or {})
    default_profile = raw.get("default_agent_profile")
    if default_profile and default_profile not in profiles:
        logger.warning(
            "default_agent_profile '%s' is not defined in agent_profiles",
            default_profile,
        )

    return TaskDeskConfig(
        engine=engine,
        aider=aider,
        project=project,
        providers=providers,
        agent_profiles=profiles,
        default_agent_profile=default_profile,
    )
