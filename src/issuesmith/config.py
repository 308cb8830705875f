"""Configuration via Pydantic settings, optionally overlaid by a YAML file."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = Path("config.yaml")


class IssuesmithConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ISSUESMITH_", env_file=".env", extra="ignore")

    # GitHub
    github_token: str = ""
    repositories: list[str] = []
    branch_prefix: str = "issuesmith"

    # Assistant
    assistant_provider: str = "openrouter"
    assistant_model: str = "openrouter/auto"
    assistant_api_key: str = ""
    assistant_base_url: str = "https://openrouter.ai/api/v1"
    assistant_max_tokens: int = 8096

    # Code generation retries (seconds); the last step repeats
    generation_backoff_s: list[int] = [60, 120, 240]
    max_generation_attempts: int = 0

    # Scheduler
    poll_interval_s: int = 60
    stuck_threshold_s: int = 600
    max_concurrent_issues: int = 3

    # Heuristic overrides (empty = built-in tables)
    question_phrases: list[str] = []
    ready_phrases: list[str] = []

    # Webhook mode
    webhook_secret: str = ""
    server_host: str = "0.0.0.0"
    server_port: int = 8080

    # Paths
    state_db_path: Path = Path("./agent_state.db")

    @field_validator("assistant_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("openrouter", "claude"):
            raise ValueError(f"Unknown assistant_provider: {value!r} (expected openrouter or claude)")
        return value

    @field_validator("repositories")
    @classmethod
    def _strip_repositories(cls, value: list[str]) -> list[str]:
        return [r.strip() for r in value if r.strip()]

    def resolved_db_path(self) -> Path:
        return self.state_db_path.expanduser()

    def display(self) -> str:
        lines = [
            "",
            "Agent Configuration:",
            f"  Repositories:    {', '.join(self.repositories) or '(none)'}",
            f"  Poll Interval:   {self.poll_interval_s}s",
            f"  State DB:        {self.resolved_db_path()}",
            f"  Assistant:       {self.assistant_provider} ({self.assistant_model})",
            f"  Assistant Key:   {mask_secret(self.assistant_api_key)}",
            f"  GitHub Token:    {mask_secret(self.github_token)}",
            f"  Webhook:         {self.server_host}:{self.server_port}",
            f"  Webhook Secret:  {mask_secret(self.webhook_secret)}",
            "",
        ]
        return "\n".join(lines)


def mask_secret(secret: str) -> str:
    if not secret:
        return "(not set)"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


def load_config(path: Path | str | None = None) -> IssuesmithConfig:
    """Build config from env/.env, with values from a YAML file taking precedence.

    A missing file at the default location is fine; an explicitly named one must exist.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return IssuesmithConfig()

    data = yaml.safe_load(config_path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return IssuesmithConfig(**data)
