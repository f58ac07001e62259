"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    agent_name: str = ""
    tracker_token: str = ""
    tracker_repo: str = ""
    api_url: str = "https://api.github.com"
    poll_interval: float = 15.0
    work_dir: Path = field(default_factory=lambda: Path.cwd())
    model: str = "sonnet"
    use_worktree: bool = True
    agent_command: str = "claude"
    execution_timeout: float = 7200.0
    shutdown_grace_seconds: float = 30.0
    startup_grace_seconds: float = 120.0
    runtime_stale_seconds: float = 300.0
    max_rss_mb: int = 1024
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 9100
    public_url: str | None = None
    log_dir: Path = field(default_factory=lambda: Path.home() / ".agent_queue")
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    merge_lock: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        values: dict = {}

        if name := os.environ.get("AQ_AGENT_NAME"):
            values["agent_name"] = name

        if token := os.environ.get("AQ_TRACKER_TOKEN") or os.environ.get("GITHUB_TOKEN"):
            values["tracker_token"] = token

        if repo := os.environ.get("AQ_TRACKER_REPO") or os.environ.get("GITHUB_REPO"):
            values["tracker_repo"] = repo

        if api_url := os.environ.get("AQ_API_URL"):
            values["api_url"] = api_url.rstrip("/")

        if interval := os.environ.get("AQ_POLL_INTERVAL"):
            values["poll_interval"] = float(interval)

        if work_dir := os.environ.get("AQ_WORK_DIR"):
            values["work_dir"] = Path(work_dir)

        if model := os.environ.get("AQ_MODEL"):
            values["model"] = model

        if use_worktree := os.environ.get("AQ_USE_WORKTREE"):
            values["use_worktree"] = _env_bool(use_worktree)

        if command := os.environ.get("AQ_AGENT_COMMAND"):
            values["agent_command"] = command

        if timeout := os.environ.get("AQ_EXECUTION_TIMEOUT"):
            values["execution_timeout"] = float(timeout)

        if grace := os.environ.get("AQ_SHUTDOWN_GRACE"):
            values["shutdown_grace_seconds"] = float(grace)

        if startup_grace := os.environ.get("AQ_STARTUP_GRACE"):
            values["startup_grace_seconds"] = float(startup_grace)

        if stale := os.environ.get("AQ_RUNTIME_STALE"):
            values["runtime_stale_seconds"] = float(stale)

        if max_rss := os.environ.get("AQ_MAX_RSS_MB"):
            values["max_rss_mb"] = int(max_rss)

        if host := os.environ.get("AQ_WEBHOOK_HOST"):
            values["webhook_host"] = host

        if port := os.environ.get("AQ_WEBHOOK_PORT"):
            values["webhook_port"] = int(port)

        if public_url := os.environ.get("AQ_PUBLIC_URL"):
            values["public_url"] = public_url

        if log_dir := os.environ.get("AQ_LOG_DIR"):
            values["log_dir"] = Path(log_dir)

        values["slack_bot_token"] = os.environ.get("SLACK_BOT_TOKEN")
        values["slack_channel"] = os.environ.get("AQ_SLACK_CHANNEL")

        if merge_lock := os.environ.get("AQ_MERGE_LOCK"):
            values["merge_lock"] = _env_bool(merge_lock)

        return cls(**values)

    def validate(self) -> "Config":
        """Raise ConfigError if anything required to run the daemon is missing."""
        missing = []
        if not self.agent_name:
            missing.append("agent name (AQ_AGENT_NAME)")
        if not self.tracker_token:
            missing.append("tracker token (AQ_TRACKER_TOKEN or GITHUB_TOKEN)")
        if not self.tracker_repo:
            missing.append("tracker repository (AQ_TRACKER_REPO or GITHUB_REPO)")
        if missing:
            raise ConfigError("Missing required configuration: " + ", ".join(missing))
        if self.poll_interval <= 0:
            raise ConfigError("Poll interval must be positive")
        return self

    @property
    def log_file(self) -> Path:
        return self.log_dir / f"agent-{self.agent_name or 'default'}.log"


def get_config() -> Config:
    return Config.from_env()
